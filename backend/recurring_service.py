from __future__ import annotations

import logging
from typing import Any, Mapping

from backend.ledger import Balances, MaterializedTransaction, SqlLedger
from backend.recurring_rules import (
    NotFoundError,
    RecurrenceRule,
    TransientStoreError,
    ValidationError,
    build_rule,
    validate_rule_patch,
)
from backend.recurring_scheduler import PassResult, RecurringScheduler
from backend.rule_store import SqlRuleStore

logger = logging.getLogger(__name__)


class RecurringService:
    """Owner-facing operations on recurrence rules."""

    def __init__(
        self,
        rule_store: SqlRuleStore,
        ledger: SqlLedger,
        scheduler: RecurringScheduler,
    ) -> None:
        self._rules = rule_store
        self._ledger = ledger
        self._scheduler = scheduler

    def create_recurrence_rule(
        self, owner_id: str, fields: Mapping[str, Any]
    ) -> RecurrenceRule:
        """Validate and store a new rule, then materialize it if already due."""
        rule = self._rules.create_rule(build_rule(owner_id, fields))
        try:
            self._scheduler.evaluate_now(rule.owner_id)
        except TransientStoreError as exc:
            logger.warning(
                "Rule %s created but first evaluation failed: %s", rule.id, exc
            )
        return self._rules.get_rule(rule.id) or rule

    def evaluate_now(self, owner_id: str) -> PassResult:
        return self._scheduler.evaluate_now(owner_id)

    def list_rules(self, owner_id: str) -> list[RecurrenceRule]:
        return self._rules.list_rules(owner_id)

    def get_rule(self, owner_id: str, rule_id: str) -> RecurrenceRule:
        rule = self._rules.get_rule(rule_id)
        if rule is None or rule.owner_id != owner_id:
            raise NotFoundError(f"Recurring transaction {rule_id} not found.")
        return rule

    def update_rule(
        self, owner_id: str, rule_id: str, fields: Mapping[str, Any]
    ) -> RecurrenceRule:
        patch = validate_rule_patch(fields)
        self.get_rule(owner_id, rule_id)
        updated = self._rules.update_rule(rule_id, patch)
        if updated is None:
            raise NotFoundError(f"Recurring transaction {rule_id} not found.")
        return updated

    def set_rule_active(self, owner_id: str, rule_id: str, is_active: bool) -> None:
        if not isinstance(is_active, bool):
            raise ValidationError("is_active must be a boolean.")
        self.get_rule(owner_id, rule_id)
        if self._rules.update_rule(rule_id, {"is_active": is_active}) is None:
            raise NotFoundError(f"Recurring transaction {rule_id} not found.")

    def delete_rule(self, owner_id: str, rule_id: str) -> None:
        self.get_rule(owner_id, rule_id)
        if not self._rules.delete_rule(rule_id):
            raise NotFoundError(f"Recurring transaction {rule_id} not found.")

    def get_balances(self, owner_id: str) -> Balances:
        return self._ledger.get_balances(owner_id)

    def list_transactions(self, owner_id: str) -> list[MaterializedTransaction]:
        return self._ledger.list_transactions(owner_id)
