from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode, urlsplit

import httpx
import structlog

from pbsync_settings import RawSettings, get_settings

logger = structlog.get_logger()

WRAPPER_KEYS = ("data", "records")
MAX_SEARCH_DEPTH = 10


class UpstreamError(RuntimeError):
    """Transport or decoding failure talking to PBASS."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass
class FetchResult:
    success: bool
    records: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    @property
    def count(self) -> int:
        return len(self.records)

    @classmethod
    def failed(cls, err: UpstreamError) -> FetchResult:
        return cls(success=False, error=str(err), error_kind=err.kind)


@dataclass
class ConnectionCheck:
    success: bool
    message: str
    latency_ms: int


def mask_proxy(url: str) -> str:
    return re.sub(r":[^:@/]+@", ":***@", url)


def is_proxy_excluded(host: str, no_proxy: str) -> bool:
    """NO_PROXY check: exact host or domain-suffix match, '*' excludes everything."""
    host = (host or "").lower()
    for entry in (no_proxy or "").split(","):
        entry = entry.strip().lower().lstrip(".")
        if not entry:
            continue
        if entry == "*" or host == entry or host.endswith("." + entry):
            return True
    return False


def find_largest_array(node: Any, max_depth: int = MAX_SEARCH_DEPTH) -> list | None:
    """Return the largest list anywhere in a nested dict/list tree.

    Depth is bounded; on ties the first list found wins.
    """
    best: list | None = None

    def visit(value: Any, depth: int) -> None:
        nonlocal best
        if depth > max_depth:
            return
        if isinstance(value, list):
            if best is None or len(value) > len(best):
                best = value
            children = value
        elif isinstance(value, dict):
            children = list(value.values())
        else:
            return
        for child in children:
            if isinstance(child, (list, dict)):
                visit(child, depth + 1)

    visit(node, 0)
    return best


def extract_records(payload: Any) -> list[dict[str, Any]]:
    """Pull the record array out of whatever shape PBASS answered with.

    Tries a top-level list, then the known wrapper keys, then the largest
    nested list. Returns [] when nothing array-like is found.
    """
    found: list | None = None
    if isinstance(payload, list):
        found = payload
    elif isinstance(payload, dict):
        for key in WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                found = payload[key]
                break
        if found is None:
            found = find_largest_array(payload)
            if found is not None:
                logger.info("Records located by nested array search", size=len(found))

    if found is None:
        shape = sorted(payload.keys()) if isinstance(payload, dict) else type(payload).__name__
        logger.warning("Unexpected PBASS response format, no record array", shape=shape)
        return []

    records = [r for r in found if isinstance(r, dict)]
    if len(records) != len(found):
        logger.warning("Dropped non-object entries", dropped=len(found) - len(records))
    return records


def decode_body(text: str) -> Any:
    """Decode JSON, decoding a second time when the upstream double-encoded it."""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise UpstreamError("malformed_json", f"PBASS API returned malformed JSON: {e}") from e
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            # A plain string body carries no records
            logger.warning("PBASS answered a bare JSON string", preview=data[:100])
    return data


def _classify_connect_error(err: Exception, base_url: str) -> UpstreamError:
    text = str(err).lower()
    if any(
        hint in text
        for hint in ("name or service not known", "nodename nor servname", "getaddrinfo", "name resolution")
    ):
        return UpstreamError(
            "dns", f"DNS resolution failed for {base_url}. Check network connectivity."
        )
    if "refused" in text or "errno 111" in text:
        return UpstreamError(
            "refused",
            f"Connection refused to {base_url}. Server may be down or firewall blocking.",
        )
    return UpstreamError("connect", f"Connection to {base_url} failed: {err}")


class PbassClient:
    """HTTP client for the PBASS inbound-invoice endpoint."""

    def __init__(
        self,
        base_url: str | None,
        token: str | None = None,
        timeout_ms: int = 30000,
        ignore_ssl: bool = False,
        proxy_url: str | None = None,
        no_proxy: str = "",
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or "").strip()
        self.token = token
        self.timeout_ms = timeout_ms
        self.ignore_ssl = ignore_ssl
        self.proxy_url = proxy_url
        self.no_proxy = no_proxy
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: RawSettings | None = None) -> PbassClient:
        s = settings or get_settings()
        return cls(
            base_url=s.PBASS_API_URL,
            token=s.PBASS_API_TOKEN,
            timeout_ms=s.PBASS_API_TIMEOUT,
            ignore_ssl=s.PBASS_API_IGNORE_SSL,
            proxy_url=s.PROXY_URL,
            no_proxy=s.NO_PROXY,
        )

    def build_url(self, filters: dict[str, str | None] | None = None) -> str:
        params = {k: v for k, v in (filters or {}).items() if v}
        if not params:
            return self.base_url
        sep = "&" if "?" in self.base_url else "?"
        return f"{self.base_url}{sep}{urlencode(params)}"

    def _proxy_for(self, url: str) -> str | None:
        if not self.proxy_url:
            return None
        host = urlsplit(url).hostname or ""
        if is_proxy_excluded(host, self.no_proxy):
            logger.info("Bypassing proxy", host=host)
            return None
        logger.info("Using proxy", proxy=mask_proxy(self.proxy_url), host=host)
        return self.proxy_url

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client_kwargs(self, url: str) -> dict[str, Any]:
        if self.ignore_ssl:
            logger.warning("TLS certificate verification disabled for PBASS", url=url)
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self.timeout_ms / 1000),
            "verify": not self.ignore_ssl,
            # Proxies come from settings only, never implicitly from the environment
            "trust_env": False,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            proxy = self._proxy_for(url)
            if proxy:
                kwargs["proxy"] = proxy
        return kwargs

    def _timed_out(self) -> UpstreamError:
        return UpstreamError("timeout", f"Request timeout after {self.timeout_ms}ms")

    def _read_body(self, r: httpx.Response, deadline: float) -> str:
        """Read a streamed body, aborting once the overall deadline passes."""
        if time.monotonic() > deadline:
            raise self._timed_out()
        chunks = []
        for chunk in r.iter_bytes():
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise self._timed_out()
        return b"".join(chunks).decode(r.encoding or "utf-8", errors="replace")

    def get_json(self, url: str) -> Any:
        """GET url and return the decoded body; raises UpstreamError.

        timeout_ms bounds the whole exchange, body included, not just each
        socket read.
        """
        deadline = time.monotonic() + self.timeout_ms / 1000
        try:
            with httpx.Client(**self._client_kwargs(url)) as client:
                with client.stream("GET", url, headers=self._headers()) as r:
                    body = self._read_body(r, deadline)
        except httpx.TimeoutException as e:
            raise self._timed_out() from e
        except httpx.ProxyError as e:
            if "407" in str(e):
                raise UpstreamError(
                    "proxy_auth", "Proxy authentication required. Check proxy username/password."
                ) from e
            raise UpstreamError("proxy", f"Proxy error: {e}. Check HTTPS_PROXY.") from e
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
            raise UpstreamError("invalid_url", f"Invalid PBASS URL {url}: {e}") from e
        except httpx.ConnectError as e:
            raise _classify_connect_error(e, self.base_url or url) from e
        except httpx.TransportError as e:
            raise UpstreamError("connect", f"Transport error talking to PBASS: {e}") from e

        if r.status_code == 407:
            raise UpstreamError(
                "proxy_auth", "Proxy authentication required. Check proxy username/password."
            )
        if not r.is_success:
            logger.error("HTTP error", url=url, status_code=r.status_code, response=body[:500])
            raise UpstreamError(
                "http_status", f"PBASS API returned {r.status_code}: {r.reason_phrase}"
            )
        return decode_body(body)

    def fetch_records(
        self,
        custom_url: str | None = None,
        filters: dict[str, str | None] | None = None,
    ) -> FetchResult:
        """Fetch invoice line records; failures come back as a failed FetchResult."""
        if not (custom_url or self.base_url):
            return FetchResult.failed(
                UpstreamError("not_configured", "PBASS_API_URL is not configured")
            )
        url = custom_url or self.build_url(filters)
        logger.info("Fetching from PBASS API", url=url)

        try:
            payload = self.get_json(url)
        except UpstreamError as e:
            logger.error("PBASS API error", kind=e.kind, error=str(e))
            return FetchResult.failed(e)

        records = extract_records(payload)
        logger.info("Fetched records from PBASS API", count=len(records))
        return FetchResult(success=True, records=records)

    def test_connection(self) -> ConnectionCheck:
        start = time.monotonic()
        result = self.fetch_records()
        latency = int((time.monotonic() - start) * 1000)
        if result.success:
            return ConnectionCheck(
                True, f"Connected successfully. Found {result.count} records.", latency
            )
        return ConnectionCheck(False, result.error or "Connection failed", latency)
