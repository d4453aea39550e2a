"""Runtime configuration for the review queue store."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from review_queue.storage.sqlmodel_models import DEFAULT_AGENT

DEFAULT_BUSY_TIMEOUT_MS = 5_000


def default_db_path() -> Path:
    """Per-user database location."""

    return Path.home() / ".review_queue" / "reviews.db"


@dataclass(slots=True)
class StoreSettings:
    """Store location, lock policy and enqueue defaults."""

    db_path: Path = field(default_factory=default_db_path)
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    default_agent: str = DEFAULT_AGENT

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> StoreSettings:
        """Load settings from environment, falling back to per-user defaults."""

        env_path = os.getenv("REVIEW_QUEUE_DB_PATH", "").strip()
        settings = cls(
            db_path=db_path or (Path(env_path).expanduser() if env_path else default_db_path()),
            busy_timeout_ms=_env_int("REVIEW_QUEUE_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS),
            default_agent=os.getenv("REVIEW_QUEUE_DEFAULT_AGENT", "").strip() or DEFAULT_AGENT,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.busy_timeout_ms <= 0:
            raise ValueError("REVIEW_QUEUE_BUSY_TIMEOUT_MS must be > 0.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error
