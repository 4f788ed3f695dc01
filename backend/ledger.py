from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.recurring_rules import SUPPORTED_ACCOUNTS, TransientStoreError
from backend.tables import balances, transactions

ZERO = Decimal("0")
RECURRENCE_MARKER = "(Recurring)"


@dataclass(frozen=True)
class MaterializedTransaction:
    owner_id: str
    type: str
    amount: Decimal
    account: str
    date: date
    description: str
    category: str | None = None
    source_rule_id: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Balances:
    cash: Decimal = ZERO
    bank: Decimal = ZERO
    savings: Decimal = ZERO

    def as_dict(self) -> dict[str, Decimal]:
        return {"cash": self.cash, "bank": self.bank, "savings": self.savings}


def recurrence_description(description: str) -> str:
    if not description:
        return RECURRENCE_MARKER
    return f"{description} {RECURRENCE_MARKER}"


class SqlLedger:
    """Concrete transactions and running balances per owner.

    Calls made on the ledger yielded by :meth:`atomic` share one database
    transaction; everything else commits per call.
    """

    def __init__(self, engine: Engine, connection: Connection | None = None) -> None:
        self._engine = engine
        self._conn = connection

    @contextmanager
    def atomic(self) -> Iterator["SqlLedger"]:
        if self._conn is not None:
            yield self
            return
        try:
            with self._engine.begin() as conn:
                yield type(self)(self._engine, connection=conn)
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"Ledger unavailable: {exc}") from exc

    def append_transaction(self, tx: MaterializedTransaction) -> MaterializedTransaction:
        stmt = (
            insert(transactions)
            .values(
                owner_id=tx.owner_id,
                type=tx.type,
                amount=tx.amount,
                account=tx.account,
                category=tx.category,
                date=tx.date,
                description=tx.description,
                source_rule_id=tx.source_rule_id,
            )
            .returning(transactions.c.id, transactions.c.created_at)
        )
        with self._connect() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise TransientStoreError("Failed to append transaction.")
        return replace(tx, id=row["id"], created_at=row["created_at"])

    def adjust_balance(self, owner_id: str, account: str, delta: Decimal) -> Balances:
        if account not in SUPPORTED_ACCOUNTS:
            raise ValueError(f"Unknown account: {account}")
        with self._connect() as conn:
            result = conn.execute(
                update(balances)
                .where(balances.c.owner_id == owner_id, balances.c.account == account)
                .values(balance=balances.c.balance + delta)
            )
            if result.rowcount == 0:
                conn.execute(
                    insert(balances).values(
                        owner_id=owner_id, account=account, balance=delta
                    )
                )
            return _fetch_balances(conn, owner_id)

    def get_balances(self, owner_id: str) -> Balances:
        with self._connect() as conn:
            return _fetch_balances(conn, owner_id)

    def list_transactions(self, owner_id: str) -> list[MaterializedTransaction]:
        stmt = (
            select(transactions)
            .where(transactions.c.owner_id == owner_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        )
        with self._connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_transaction(row) for row in rows]

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        if self._conn is not None:
            yield self._conn
            return
        try:
            with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"Ledger unavailable: {exc}") from exc


def _fetch_balances(conn: Connection, owner_id: str) -> Balances:
    rows = conn.execute(
        select(balances.c.account, balances.c.balance).where(
            balances.c.owner_id == owner_id
        )
    ).all()
    amounts = {account: Decimal(str(balance)) for account, balance in rows}
    return Balances(
        cash=amounts.get("cash", ZERO),
        bank=amounts.get("bank", ZERO),
        savings=amounts.get("savings", ZERO),
    )


def _row_to_transaction(row: Mapping[str, Any]) -> MaterializedTransaction:
    return MaterializedTransaction(
        id=row["id"],
        owner_id=row["owner_id"],
        type=row["type"],
        amount=row["amount"],
        account=row["account"],
        category=row["category"],
        date=row["date"],
        description=row["description"],
        source_rule_id=row["source_rule_id"],
        created_at=row["created_at"],
    )
