from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Any, Iterator, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.recurring_rules import RecurrenceRule, TransientStoreError
from backend.tables import recurring_rules

UPDATABLE_COLUMNS = {"category", "description", "is_active"}


class SqlRuleStore:
    """Recurrence rules persisted as rows of ``recurring_rules``."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_active_rules(self, owner_id: str) -> list[RecurrenceRule]:
        stmt = (
            select(recurring_rules)
            .where(
                recurring_rules.c.owner_id == owner_id,
                recurring_rules.c.is_active.is_(True),
            )
            .order_by(recurring_rules.c.created_at, recurring_rules.c.id)
        )
        with self._transaction() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_rule(row) for row in rows]

    def list_rules(self, owner_id: str) -> list[RecurrenceRule]:
        stmt = (
            select(recurring_rules)
            .where(recurring_rules.c.owner_id == owner_id)
            .order_by(recurring_rules.c.created_at.desc(), recurring_rules.c.id)
        )
        with self._transaction() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_rule(row) for row in rows]

    def list_active_owner_ids(self) -> list[str]:
        stmt = (
            select(recurring_rules.c.owner_id)
            .where(recurring_rules.c.is_active.is_(True))
            .distinct()
            .order_by(recurring_rules.c.owner_id)
        )
        with self._transaction() as conn:
            return list(conn.execute(stmt).scalars().all())

    def get_rule(self, rule_id: str) -> RecurrenceRule | None:
        stmt = select(recurring_rules).where(recurring_rules.c.id == rule_id)
        with self._transaction() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_rule(row) if row else None

    def create_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        values = {
            "id": rule.id,
            "owner_id": rule.owner_id,
            "kind": rule.kind,
            "amount": rule.amount,
            "account": rule.account,
            "frequency": rule.frequency,
            "category": rule.category,
            "description": rule.description,
            "start_date": rule.start_date,
            "end_date": rule.end_date,
            "is_active": rule.is_active,
            "last_processed": rule.last_processed,
        }
        if rule.created_at is not None:
            values["created_at"] = rule.created_at
        stmt = insert(recurring_rules).values(**values).returning(*recurring_rules.c)
        with self._transaction() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise TransientStoreError(f"Failed to create rule {rule.id}.")
        return _row_to_rule(row)

    def update_rule(
        self, rule_id: str, patch: Mapping[str, Any]
    ) -> RecurrenceRule | None:
        unknown = set(patch) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns cannot be updated: {', '.join(sorted(unknown))}.")
        if not patch:
            return self.get_rule(rule_id)
        stmt = (
            update(recurring_rules)
            .where(recurring_rules.c.id == rule_id)
            .values(**patch)
            .returning(*recurring_rules.c)
        )
        with self._transaction() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_rule(row) if row else None

    def advance_watermark(
        self, rule_id: str, new_value: date, expected: date | None
    ) -> bool:
        """Compare-and-set ``last_processed`` from ``expected`` to ``new_value``.

        Refused (returns False) when the stored watermark moved since it was
        read, or when the rule was deactivated or deleted meanwhile.
        """
        if expected is not None and new_value < expected:
            raise ValueError("Watermark cannot move backwards.")
        if expected is None:
            current = recurring_rules.c.last_processed.is_(None)
        else:
            current = recurring_rules.c.last_processed == expected
        stmt = (
            update(recurring_rules)
            .where(
                recurring_rules.c.id == rule_id,
                recurring_rules.c.is_active.is_(True),
                current,
            )
            .values(last_processed=new_value)
        )
        with self._transaction() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    def delete_rule(self, rule_id: str) -> bool:
        stmt = recurring_rules.delete().where(recurring_rules.c.id == rule_id)
        with self._transaction() as conn:
            result = conn.execute(stmt)
        return result.rowcount > 0

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"Rule store unavailable: {exc}") from exc


def _row_to_rule(row: Mapping[str, Any]) -> RecurrenceRule:
    return RecurrenceRule(
        id=row["id"],
        owner_id=row["owner_id"],
        kind=row["kind"],
        amount=row["amount"],
        account=row["account"],
        frequency=row["frequency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        description=row["description"] or "",
        category=row["category"],
        is_active=bool(row["is_active"]),
        last_processed=row["last_processed"],
        created_at=row["created_at"],
    )
