from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_PREFIX = "BIRTHDAY_"


@dataclass(frozen=True)
class Settings:
    db_path: Path = PROJECT_ROOT / "data.sqlite3"
    scan_interval_seconds: float = 60.0
    target_hour: int = 9
    max_ledger_retries: int = 5
    max_delivery_retries: int = 3
    retry_window_days: int = 1
    backoff_base_seconds: float = 1.0
    recovery_lookback_days: int = 7
    delivery_timeout_seconds: float = 10.0
    webhook_url: str = ""


def _env(key: str) -> str | None:
    value = os.getenv(ENV_PREFIX + key, "").strip()
    return value or None


def _env_int(key: str, default: int, minimum: int = 0) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{key} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{ENV_PREFIX}{key} must be >= {minimum}, got {value}")
    return value


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{key} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{ENV_PREFIX}{key} must be >= 0, got {value}")
    return value


def load_settings() -> Settings:
    load_dotenv()
    defaults = Settings()

    target_hour = _env_int("TARGET_HOUR", defaults.target_hour)
    if target_hour > 23:
        raise ValueError(f"{ENV_PREFIX}TARGET_HOUR must be between 0 and 23, got {target_hour}")

    scan_interval = _env_float("SCAN_INTERVAL_SECONDS", defaults.scan_interval_seconds)
    if scan_interval <= 0:
        raise ValueError(f"{ENV_PREFIX}SCAN_INTERVAL_SECONDS must be positive, got {scan_interval}")

    db_path = _env("DB_PATH")
    return Settings(
        db_path=Path(db_path) if db_path else defaults.db_path,
        scan_interval_seconds=scan_interval,
        target_hour=target_hour,
        max_ledger_retries=_env_int("MAX_LEDGER_RETRIES", defaults.max_ledger_retries),
        max_delivery_retries=_env_int("MAX_DELIVERY_RETRIES", defaults.max_delivery_retries),
        retry_window_days=_env_int("RETRY_WINDOW_DAYS", defaults.retry_window_days),
        backoff_base_seconds=_env_float("BACKOFF_BASE_SECONDS", defaults.backoff_base_seconds),
        recovery_lookback_days=_env_int("RECOVERY_LOOKBACK_DAYS", defaults.recovery_lookback_days, minimum=1),
        delivery_timeout_seconds=_env_float("DELIVERY_TIMEOUT_SECONDS", defaults.delivery_timeout_seconds),
        webhook_url=_env("WEBHOOK_URL") or "",
    )
