from __future__ import annotations

"""Environment-driven settings for the analysis service."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_BASE_URL = "https://app.wordware.ai/api/released-app"
DEFAULT_PROMPT_VERSION = "^3.2"


@dataclass(frozen=True)
class Settings:
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    standard_prompt_id: str = ""
    extended_prompt_id: str = ""
    prompt_version: str = DEFAULT_PROMPT_VERSION
    run_timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 10.0
    admission_cooldown_seconds: int = 180
    # Safety valve for upstreams that never open the "output" phase; 0 disables it.
    force_output_after_events: int = 2000
    user_store_impl: str = "memory"
    users_file: Optional[str] = None
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "personality"
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        root = Path(__file__).resolve().parents[2]
        return cls(
            api_key=os.getenv("WORDWARE_API_KEY", ""),
            base_url=(os.getenv("WORDWARE_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            standard_prompt_id=os.getenv("WORDWARE_ROAST_PROMPT_ID", ""),
            extended_prompt_id=os.getenv("WORDWARE_FULL_PROMPT_ID", ""),
            prompt_version=os.getenv("WORDWARE_PROMPT_VERSION") or DEFAULT_PROMPT_VERSION,
            run_timeout_seconds=_env_float("PERSONALITY_RUN_TIMEOUT_SECONDS", 300.0),
            connect_timeout_seconds=_env_float("PERSONALITY_CONNECT_TIMEOUT_SECONDS", 10.0),
            admission_cooldown_seconds=_env_int("PERSONALITY_ADMISSION_COOLDOWN_SECONDS", 180),
            force_output_after_events=_env_int("PERSONALITY_FORCE_OUTPUT_AFTER_EVENTS", 2000, allow_zero=True),
            user_store_impl=(os.getenv("PERSONALITY_USER_STORE_IMPL") or "memory").lower(),
            users_file=os.getenv("PERSONALITY_USERS_FILE") or str(root / "run" / "users.json"),
            mongo_url=os.getenv("MONGO_URL", "mongodb://localhost:27017"),
            mongo_db=os.getenv("MONGO_DB", "personality"),
            redis_url=os.getenv("REDIS_URL") or None,
        )


def _env_int(name: str, default: int, *, allow_zero: bool = False) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment (useful for tests)."""

    global _settings
    _settings = None
