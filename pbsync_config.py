from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = "pbsync.config.json"
DEFAULT_KEYWORDS = ["RAMP", "DIVERTER"]


class SyncConfig(BaseModel):
    source: Literal["api", "csv"] = "api"
    csv_path: str | None = None
    keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_KEYWORDS))
    lookback_days: int = Field(default=30, ge=1)

    @field_validator("keywords")
    @classmethod
    def _clean_keywords(cls, value: list[str]) -> list[str]:
        cleaned = [kw.strip() for kw in value if kw and kw.strip()]
        if not cleaned:
            raise ValueError("at least one keyword is required")
        return cleaned


def load_config(path: str | Path | None = None) -> SyncConfig:
    """Load the sync behaviour file.

    An explicit path must exist; the default path is optional and falls back
    to built-in defaults when absent.
    """
    p = Path(path or DEFAULT_CONFIG_PATH)
    if not p.exists():
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {p}")
        return SyncConfig()
    data = json.loads(p.read_text(encoding="utf-8"))
    return SyncConfig.model_validate(data)
