"""Application configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent / ".env"
load_dotenv(ENV_PATH, encoding="utf-8-sig")

DEFAULT_DATABASE_PATH = Path(__file__).resolve().parent / "data" / "lostfound.sqlite3"


def _env(key: str, default: str | None = None) -> str:
    value = os.getenv(key, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def _env_int(key: str, default: int | None = None) -> int:
    value = _env(key, str(default) if default is not None else None)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be an integer") from None


def _env_float(key: str, default: float | None = None) -> float:
    value = _env(key, str(default) if default is not None else None)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be a number") from None


def _env_optional(key: str) -> Optional[str]:
    value = os.getenv(key, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    max_bot_token: str
    max_api_base: str
    database_path: Path
    secrets_key: Optional[str]
    front_origin: str
    donation_url: Optional[str]
    session_ttl_minutes: int
    match_min_score: int
    match_radius_km: float
    match_suggestions: int
    http_timeout_seconds: int

    @property
    def front_link_allowed(self) -> bool:
        return self.front_origin.startswith("https://")

    @classmethod
    def from_env(cls) -> "Settings":
        database_value = os.getenv("DATABASE_PATH")
        database_path = Path(database_value).expanduser() if database_value else DEFAULT_DATABASE_PATH
        return cls(
            max_bot_token=_env("MAX_BOT_TOKEN"),
            max_api_base=_env("MAX_API_BASE", "https://platform-api.max.ru").rstrip("/"),
            database_path=database_path,
            secrets_key=_env_optional("SECRETS_KEY"),
            front_origin=_env("FRONT_ORIGIN", "http://localhost:5173").strip(),
            donation_url=_env_optional("DONATION_URL"),
            session_ttl_minutes=max(0, _env_int("SESSION_TTL_MINUTES", 0)),
            match_min_score=_env_int("MATCH_MIN_SCORE", 50),
            match_radius_km=_env_float("MATCH_RADIUS_KM", 5.0),
            match_suggestions=_env_int("MATCH_SUGGESTIONS", 3),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 15),
        )
