from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from backend.due_dates import evaluate_due
from backend.ledger import MaterializedTransaction
from backend.materializer import Materializer
from backend.recurring_rules import TransientStoreError, WatermarkAdvanceFailure
from backend.rule_store import SqlRuleStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


@dataclass
class PassResult:
    owner_id: str
    materialized: list[MaterializedTransaction] = field(default_factory=list)
    failed_rule_ids: list[str] = field(default_factory=list)
    skipped: bool = False


class RecurringScheduler:
    """Evaluates owners' active rules on a fixed interval or on demand.

    Passes for one owner never overlap: a periodic tick skips an owner whose
    pass is still running, an on-demand pass waits for it. Different owners
    are independent.
    """

    def __init__(
        self,
        rule_store: SqlRuleStore,
        materializer: Materializer,
        clock: Callable[[], date] = date.today,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero.")
        self._rules = rule_store
        self._materializer = materializer
        self._clock = clock
        self._interval = interval_seconds
        self._owner_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="recurring-scheduler"
        )
        self._thread.start()
        logger.info("Recurring scheduler started (every %ss).", self._interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop after the rule currently being applied, if any, completes."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Recurring scheduler did not stop within %ss.", timeout)
            else:
                self._thread = None
        logger.info("Recurring scheduler stopped.")

    def evaluate_now(self, owner_id: str) -> PassResult:
        return self.run_pass(owner_id, wait=True)

    def tick(self) -> dict[str, PassResult]:
        results: dict[str, PassResult] = {}
        try:
            owner_ids = self._rules.list_active_owner_ids()
        except TransientStoreError as exc:
            logger.warning("Could not list owners with active rules: %s", exc)
            return results
        for owner_id in owner_ids:
            if self._stop_event.is_set():
                break
            try:
                results[owner_id] = self.run_pass(
                    owner_id, wait=False, interruptible=True
                )
            except TransientStoreError as exc:
                logger.warning("Pass for owner %s failed: %s", owner_id, exc)
        return results

    def run_pass(
        self, owner_id: str, wait: bool = True, interruptible: bool = False
    ) -> PassResult:
        lock = self._lock_for(owner_id)
        if not lock.acquire(blocking=wait):
            logger.debug("Pass for owner %s still running, skipping tick.", owner_id)
            return PassResult(owner_id=owner_id, skipped=True)
        try:
            return self._evaluate_owner(owner_id, interruptible)
        finally:
            lock.release()

    def _evaluate_owner(self, owner_id: str, interruptible: bool) -> PassResult:
        result = PassResult(owner_id=owner_id)
        today = self._clock()
        for rule in self._rules.get_active_rules(owner_id):
            if interruptible and self._stop_event.is_set():
                break
            if not rule.is_active:
                continue
            decision = evaluate_due(rule, today)
            if not decision.due:
                continue
            try:
                tx = self._materializer.apply(rule, decision.occurrence_date)
            except WatermarkAdvanceFailure:
                result.failed_rule_ids.append(rule.id)
                continue
            except TransientStoreError as exc:
                logger.warning("Rule %s not applied: %s", rule.id, exc)
                result.failed_rule_ids.append(rule.id)
                continue
            except Exception:
                logger.exception("Unexpected error applying rule %s.", rule.id)
                result.failed_rule_ids.append(rule.id)
                continue
            if tx is not None:
                result.materialized.append(tx)
        return result

    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._owner_locks.get(owner_id)
            if lock is None:
                lock = threading.Lock()
                self._owner_locks[owner_id] = lock
            return lock

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Recurring scheduler tick failed.")
            self._stop_event.wait(self._interval)
