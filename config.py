"""Settings loaded from environment variables (+ optional .env)."""
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv(override=False)

DEFAULT_DATABASE_URL = "mongodb://localhost:27017/?replicaSet=rs0"


def _first_env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip() != "":
            return value.strip()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_name: str
    server_selection_timeout_ms: int
    port: int
    log_level: str
    cors_origins: List[str]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_first_env("DATABASE_URL", "MONGODB_URI", default=DEFAULT_DATABASE_URL),
            database_name=_first_env("DATABASE_NAME", default="tasktrack"),
            server_selection_timeout_ms=_env_int("SERVER_SELECTION_TIMEOUT_MS", 10000),
            port=_env_int("PORT", 8000),
            log_level=_first_env("LOG_LEVEL", default="INFO").upper(),
            cors_origins=_env_list("CORS_ORIGINS", ["*"]),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
