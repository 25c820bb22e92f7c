from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager, contextmanager, nullcontext
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Connection
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

metadata = MetaData()

currencies = Table(
    "currencies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(3), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("symbol", String(16)),
    Column("flag", String(16)),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("currency_code", String(3), nullable=False, index=True),
    Column("effective_date", Date, nullable=False, index=True),
    Column("fetched_at", DateTime, nullable=False),
    Column("rate_to_pivot", Numeric(18, 8), nullable=False),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("icon", String(32)),
    UniqueConstraint("name", name="uq_categories_name"),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("anchor_month", Date, nullable=False),
    Column("amount", Numeric(12, 2)),
    Column("currency", String(3), nullable=False),
    Column("alert_threshold", Numeric(12, 2)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("anchor_month", name="uq_budgets_anchor_month"),
)

category_budgets = Table(
    "category_budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("category_name", String(255)),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("converted_amount", Numeric(12, 2)),
    Column("conversion_rate", Numeric(18, 8)),
    Column("date", DateTime, nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("notes", String(500)),
)

app_preferences = Table(
    "app_preferences",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", String(255), nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

app_secrets = Table(
    "app_secrets",
    metadata,
    Column("secret_key", String(128), primary_key=True),
    Column("secret_value", String(1024), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


class Database:
    """Engine plus a single writer thread.

    Every mutation goes through :meth:`run`, which executes the callable
    inside one ``engine.begin()`` transaction on a dedicated worker thread,
    so writes are serialized and either commit whole or roll back whole.
    Reads for display use :meth:`read` on the caller's thread. An in-memory
    database lives on one shared connection, so there reads wait for the
    writer to commit instead of sharing its open transaction.
    """

    def __init__(self, url: str) -> None:
        connect_args: dict[str, Any] = {}
        shared = False
        engine_kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
            if url in {"sqlite://", "sqlite:///:memory:"}:
                engine_kwargs["poolclass"] = StaticPool
                shared = True
        self.url = url
        self.engine = create_engine(url, connect_args=connect_args, **engine_kwargs)
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fxbudget-writer")
        self._guard: AbstractContextManager = threading.RLock() if shared else nullcontext()

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        call = functools.partial(self.run_sync, fn, *args, **kwargs)
        return await loop.run_in_executor(self._writer, call)

    def run_sync(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._guard, self.engine.begin() as conn:
            return fn(conn, *args, **kwargs)

    @contextmanager
    def read(self) -> Iterator[Connection]:
        with self._guard, self.engine.connect() as conn:
            yield conn

    def close(self) -> None:
        self._writer.shutdown(wait=True)
        self.engine.dispose()
        logger.debug("Database %s closed", self.url)
