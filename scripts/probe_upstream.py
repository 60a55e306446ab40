#!/usr/bin/env python3
import json
import os
import sys

# Ensure repo root is on sys.path for `import pbsync_http`
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from pbsync_http import PbassClient, UpstreamError, extract_records  # noqa: E402


def describe(node, depth=0, max_depth=3):
    pad = "  " * depth
    if isinstance(node, dict):
        for k, v in node.items():
            kind = f"list[{len(v)}]" if isinstance(v, list) else type(v).__name__
            print(f"{pad}{k}: {kind}")
            if depth < max_depth and isinstance(v, dict):
                describe(v, depth + 1, max_depth)
    elif isinstance(node, list):
        print(f"{pad}list[{len(node)}]")
    else:
        print(f"{pad}{type(node).__name__}")


def main() -> None:
    client = PbassClient.from_settings()
    url = sys.argv[1] if len(sys.argv) > 1 else client.base_url
    try:
        payload = client.get_json(url)
    except UpstreamError as e:
        print(f"fail: {url} -> [{e.kind}] {e}")
        sys.exit(1)

    print(f"OK: {url}")
    describe(payload)
    records = extract_records(payload)
    print(f"records: {len(records)}")
    if records:
        print(json.dumps(records[0], indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
