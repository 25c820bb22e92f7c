from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_RATES_URL = "https://openexchangerates.org/api/latest.json"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./fxbudget.db"
    default_currency: str = "USD"
    pivot_currency: str = "USD"
    frontend_origin: str = "http://localhost:3000"
    bundled_api_key: str | None = None
    rates_url: str = DEFAULT_RATES_URL
    rate_retention_days: int = 365
    log_level: str = "INFO"
    log_format: str = "text"
    start_rate_scheduler: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        bundled_key = os.getenv("OPENEXCHANGE_API_KEY", "").strip() or None
        try:
            retention_days = int(os.getenv("RATE_RETENTION_DAYS", "365"))
        except ValueError:
            retention_days = 365
        try:
            pivot = normalize_currency(os.getenv("PIVOT_CURRENCY", "USD"))
        except ValueError:
            pivot = "USD"
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./fxbudget.db"),
            default_currency=get_system_default_currency(),
            pivot_currency=pivot,
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            bundled_api_key=bundled_key,
            rates_url=os.getenv("RATES_URL", DEFAULT_RATES_URL),
            rate_retention_days=retention_days,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
            start_rate_scheduler=os.getenv("RATE_SCHEDULER", "on").lower() not in {"0", "off", "false"},
        )
