"""
Stock Ledger — 設定

起動時に環境変数から一度だけ読み込む。
"""

import logging
import os
from dataclasses import dataclass


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str | None = None
    redis_channel_prefix: str = "fishmarket"
    lock_timeout: float = 5.0
    conflict_retries: int = 5
    transient_retries: int = 3
    backoff_base: float = 0.05
    backoff_max: float = 1.0
    notify_queue_size: int = 256
    create_schema: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL") or None,
            redis_channel_prefix=env.get("REDIS_CHANNEL_PREFIX", "fishmarket"),
            lock_timeout=float(env.get("LEDGER_LOCK_TIMEOUT", "5.0")),
            conflict_retries=int(env.get("LEDGER_CONFLICT_RETRIES", "5")),
            transient_retries=int(env.get("LEDGER_TRANSIENT_RETRIES", "3")),
            backoff_base=float(env.get("LEDGER_BACKOFF_BASE", "0.05")),
            backoff_max=float(env.get("LEDGER_BACKOFF_MAX", "1.0")),
            notify_queue_size=int(env.get("NOTIFY_QUEUE_SIZE", "256")),
            create_schema=_flag(env.get("CREATE_SCHEMA", "1")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
