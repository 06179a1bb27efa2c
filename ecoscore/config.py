"""Environment-driven settings for EcoScore."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_TIMEOUT = 600.0
DEFAULT_WEBHOOK_TIMEOUT = 10.0


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value <= 0:
        log.warning("Ignoring non-positive %s=%r, using %s", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str
    webhook_url: str | None
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_POLL_TIMEOUT

    @classmethod
    def from_env(cls) -> Settings:
        url = os.environ.get("ECOSCORE_DATABASE_URL", "").strip()
        if not url:
            db_path = Path(os.environ.get("ECOSCORE_DB_PATH", "").strip() or DATA_DIR / "ecoscore.db")
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{db_path}"
        return cls(
            database_url=url,
            webhook_url=os.environ.get("ECOSCORE_WEBHOOK_URL", "").strip() or None,
            webhook_timeout=_env_float("ECOSCORE_WEBHOOK_TIMEOUT", DEFAULT_WEBHOOK_TIMEOUT),
            poll_interval=_env_float("ECOSCORE_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            poll_timeout=_env_float("ECOSCORE_POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT),
        )
