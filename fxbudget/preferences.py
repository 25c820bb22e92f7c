"""Key/value persistence for app preferences and secrets.

``PreferenceStore`` replaces ambient user-defaults storage (reporting
currency, last rate update). ``CredentialStore`` is the secure storage for
the rate provider API key; raw values never appear in ``repr`` or logs.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection

from fxbudget.db import app_preferences, app_secrets

logger = logging.getLogger(__name__)

REPORTING_CURRENCY_KEY = "reporting_currency"
LAST_RATE_UPDATE_KEY = "last_rate_update"
RATES_API_KEY = "openexchange_api_key"


class PreferenceStore:
    def get(self, conn: Connection, key: str) -> str | None:
        return conn.execute(
            select(app_preferences.c.value).where(app_preferences.c.key == key)
        ).scalar_one_or_none()

    def set(self, conn: Connection, key: str, value: str) -> None:
        now = datetime.now()
        result = conn.execute(
            update(app_preferences)
            .where(app_preferences.c.key == key)
            .values(value=value, updated_at=now)
        )
        if result.rowcount == 0:
            conn.execute(insert(app_preferences).values(key=key, value=value, updated_at=now))

    def get_datetime(self, conn: Connection, key: str) -> datetime | None:
        raw = self.get(conn, key)
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unreadable timestamp preference %s=%r", key, raw)
            return None

    def set_datetime(self, conn: Connection, key: str, value: datetime) -> None:
        self.set(conn, key, value.isoformat())


class CredentialStore:
    def load(self, conn: Connection, key: str) -> str | None:
        value = conn.execute(
            select(app_secrets.c.secret_value).where(app_secrets.c.secret_key == key)
        ).scalar_one_or_none()
        return value or None

    def store(self, conn: Connection, key: str, value: str) -> None:
        if not value:
            raise ValueError("Secret value must be a non-empty string.")
        now = datetime.now()
        result = conn.execute(
            update(app_secrets)
            .where(app_secrets.c.secret_key == key)
            .values(secret_value=value, updated_at=now)
        )
        if result.rowcount == 0:
            conn.execute(
                insert(app_secrets).values(
                    secret_key=key,
                    secret_value=value,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("Stored secret %s", key)

    def delete(self, conn: Connection, key: str) -> bool:
        result = conn.execute(delete(app_secrets).where(app_secrets.c.secret_key == key))
        return result.rowcount > 0

    def __repr__(self) -> str:
        return "CredentialStore(table='app_secrets')"
