from __future__ import annotations

import logging
from datetime import date

from backend.due_dates import evaluate_due
from backend.ledger import MaterializedTransaction, SqlLedger, recurrence_description
from backend.recurring_rules import (
    RecurrenceRule,
    TransientStoreError,
    WatermarkAdvanceFailure,
)
from backend.rule_store import SqlRuleStore

logger = logging.getLogger(__name__)


class Materializer:
    """Turns one due occurrence of a rule into a ledger entry.

    The ledger append and balance adjustment commit together; the watermark
    advance follows as a separate compare-and-set on the rule row. Only the
    Materializer writes the watermark.
    """

    def __init__(self, rule_store: SqlRuleStore, ledger: SqlLedger) -> None:
        self._rules = rule_store
        self._ledger = ledger

    def apply(
        self, rule: RecurrenceRule, occurrence_date: date
    ) -> MaterializedTransaction | None:
        """Materialize ``rule`` on ``occurrence_date``.

        Returns None without touching the ledger when the stored rule is gone,
        inactive, moved on since ``rule`` was read, or no longer due.
        """
        current = self._rules.get_rule(rule.id)
        if current is None or not current.is_active:
            logger.debug("Rule %s no longer active, skipping.", rule.id)
            return None
        if current.last_processed != rule.last_processed:
            logger.debug(
                "Rule %s watermark moved from %s to %s, skipping.",
                rule.id,
                rule.last_processed,
                current.last_processed,
            )
            return None
        if not evaluate_due(current, occurrence_date).due:
            return None

        draft = MaterializedTransaction(
            owner_id=current.owner_id,
            type=current.kind,
            amount=current.amount,
            account=current.account,
            category=current.category,
            date=occurrence_date,
            description=recurrence_description(current.description),
            source_rule_id=current.id,
        )
        # a TransientStoreError here leaves no trace; the caller logs and retries
        with self._ledger.atomic() as ledger:
            tx = ledger.append_transaction(draft)
            ledger.adjust_balance(
                current.owner_id, current.account, current.signed_amount
            )

        try:
            advanced = self._rules.advance_watermark(
                current.id, occurrence_date, expected=current.last_processed
            )
        except TransientStoreError as exc:
            raise self._watermark_failure(current, tx, str(exc)) from exc
        if not advanced:
            raise self._watermark_failure(current, tx, "watermark changed concurrently")

        logger.info(
            "Materialized rule %s for owner %s on %s: %s %s to %s (transaction %s).",
            current.id,
            current.owner_id,
            occurrence_date,
            current.kind,
            current.amount,
            current.account,
            tx.id,
        )
        return tx

    def _watermark_failure(
        self, rule: RecurrenceRule, tx: MaterializedTransaction, reason: str
    ) -> WatermarkAdvanceFailure:
        logger.error(
            "Watermark advance failed for rule %s after transaction %s was "
            "recorded; the next pass may duplicate it: %s",
            rule.id,
            tx.id,
            reason,
        )
        return WatermarkAdvanceFailure(rule.id, tx.id, reason)
