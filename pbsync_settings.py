from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env at import so env vars are available early
load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


class RawSettings(BaseModel):
    # Upstream endpoint
    PBASS_API_URL: str | None = None
    PBASS_API_TOKEN: str | None = None

    # Transport
    PBASS_API_TIMEOUT: int = 30000  # milliseconds
    PBASS_API_IGNORE_SSL: bool = False
    PROXY_URL: str | None = None
    NO_PROXY: str = ""

    # Local store / scheduling
    DB_PATH: str = "pbsync.sqlite3"
    SYNC_INTERVAL: int = 300


class SettingsStrict(BaseModel):
    PBASS_API_URL: str
    PBASS_API_TOKEN: str | None = None

    PBASS_API_TIMEOUT: int = 30000
    PBASS_API_IGNORE_SSL: bool = False
    PROXY_URL: str | None = None
    NO_PROXY: str = ""

    DB_PATH: str = "pbsync.sqlite3"
    SYNC_INTERVAL: int = 300


_cache: RawSettings | None = None


def _read_env_dict() -> dict:
    return {
        "PBASS_API_URL": os.getenv("PBASS_API_URL"),
        "PBASS_API_TOKEN": os.getenv("PBASS_API_TOKEN"),
        "PBASS_API_TIMEOUT": int(os.getenv("PBASS_API_TIMEOUT", "30000")),
        # Only an explicit truthy value turns verification off
        "PBASS_API_IGNORE_SSL": os.getenv("PBASS_API_IGNORE_SSL", "").strip().lower() in _TRUTHY,
        "PROXY_URL": os.getenv("HTTPS_PROXY") or os.getenv("HTTP_PROXY"),
        "NO_PROXY": os.getenv("NO_PROXY", ""),
        "DB_PATH": os.getenv("PBSYNC_DB", "pbsync.sqlite3"),
        "SYNC_INTERVAL": int(os.getenv("PBSYNC_INTERVAL", "300")),
    }


def get_settings() -> RawSettings:
    global _cache
    if _cache is None:
        _cache = RawSettings(**_read_env_dict())
    return _cache


def require_settings() -> SettingsStrict:
    """Return validated settings; raises ValidationError if any required are missing."""
    data = _read_env_dict()
    return SettingsStrict(**data)


def missing_required_keys(source: str = "api") -> list[str]:
    """Return list of missing required env keys for user-friendly errors.

    The CSV source reads a local export and needs no upstream endpoint.
    """
    required: list[str] = []
    if source == "api":
        required.append("PBASS_API_URL")
    return [k for k in required if os.getenv(k) in (None, "")]
