from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    true,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

recurring_rules = Table(
    "recurring_rules",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("kind", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("account", String(20), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("category", String(255)),
    Column("description", String(500), nullable=False, server_default=""),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("last_processed", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("account", String(20), nullable=False),
    Column("category", String(255)),
    Column("date", Date, nullable=False),
    Column("description", String(500), nullable=False, server_default=""),
    Column("source_rule_id", String(64)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

balances = Table(
    "balances",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(255), nullable=False),
    Column("account", String(20), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, server_default="0"),
    UniqueConstraint("owner_id", "account", name="uq_balances_owner_account"),
)


def is_in_memory(engine: Engine) -> bool:
    url = engine.url
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def build_engine(database_url: str) -> Engine:
    """Create the engine for ``database_url``.

    In-memory SQLite shares a single connection across threads and is only
    meant for tests; the app does not run the background scheduler on it.
    """
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def create_tables(engine: Engine) -> None:
    metadata.create_all(engine)
