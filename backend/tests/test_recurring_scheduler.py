import threading
import unittest
from datetime import date
from decimal import Decimal

from backend.ledger import SqlLedger
from backend.materializer import Materializer
from backend.recurring_rules import TransientStoreError, build_rule
from backend.recurring_scheduler import RecurringScheduler
from backend.rule_store import SqlRuleStore
from backend.tables import build_engine, create_tables


class FakeClock:
    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


class SelectivelyFailingMaterializer(Materializer):
    def __init__(self, rule_store, ledger, failures) -> None:
        super().__init__(rule_store, ledger)
        self.failures = failures

    def apply(self, rule, occurrence_date):
        if rule.id in self.failures:
            raise self.failures[rule.id]
        return super().apply(rule, occurrence_date)


class GatedMaterializer(Materializer):
    def __init__(self, rule_store, ledger) -> None:
        super().__init__(rule_store, ledger)
        self.entered = threading.Event()
        self.release = threading.Event()

    def apply(self, rule, occurrence_date):
        self.entered.set()
        self.release.wait(5)
        return super().apply(rule, occurrence_date)


class SignallingMaterializer(Materializer):
    def __init__(self, rule_store, ledger) -> None:
        super().__init__(rule_store, ledger)
        self.applied = threading.Event()

    def apply(self, rule, occurrence_date):
        tx = super().apply(rule, occurrence_date)
        self.applied.set()
        return tx


def rule_fields(**overrides) -> dict:
    fields = {
        "kind": "income",
        "amount": "1000",
        "account": "bank",
        "frequency": "monthly",
        "start_date": "2024-01-15",
        "description": "Salary",
    }
    fields.update(overrides)
    return fields


class RecurringSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine("sqlite://")
        create_tables(self.engine)
        self.store = SqlRuleStore(self.engine)
        self.ledger = SqlLedger(self.engine)
        self.clock = FakeClock(date(2024, 1, 15))
        self.scheduler = self.make_scheduler(Materializer(self.store, self.ledger))

    def tearDown(self) -> None:
        self.scheduler.stop(timeout=5)
        self.engine.dispose()

    def make_scheduler(self, materializer, interval_seconds=60.0) -> RecurringScheduler:
        return RecurringScheduler(
            self.store,
            materializer,
            clock=self.clock,
            interval_seconds=interval_seconds,
        )

    def create_rule(self, owner_id="user-1", **overrides):
        return self.store.create_rule(build_rule(owner_id, rule_fields(**overrides)))

    def test_monthly_salary_end_to_end(self) -> None:
        rule = self.create_rule()

        first = self.scheduler.evaluate_now("user-1")
        self.assertEqual([tx.date for tx in first.materialized], [date(2024, 1, 15)])
        self.assertEqual(self.store.get_rule(rule.id).last_processed, date(2024, 1, 15))
        self.assertEqual(self.ledger.get_balances("user-1").bank, Decimal("1000"))

        again = self.scheduler.evaluate_now("user-1")
        self.assertEqual(again.materialized, [])
        self.assertEqual(len(self.ledger.list_transactions("user-1")), 1)

        self.clock.today = date(2024, 2, 15)
        second = self.scheduler.evaluate_now("user-1")
        self.assertEqual([tx.date for tx in second.materialized], [date(2024, 2, 15)])
        self.assertEqual(self.store.get_rule(rule.id).last_processed, date(2024, 2, 15))
        self.assertEqual(self.ledger.get_balances("user-1").bank, Decimal("2000"))

    def test_rule_past_end_date_does_not_fire(self) -> None:
        self.clock.today = date(2024, 2, 15)
        self.create_rule(end_date="2024-03-01")
        self.scheduler.evaluate_now("user-1")
        balance_after_last_run = self.ledger.get_balances("user-1")

        self.clock.today = date(2024, 4, 1)
        result = self.scheduler.evaluate_now("user-1")

        self.assertEqual(result.materialized, [])
        self.assertEqual(self.ledger.get_balances("user-1"), balance_after_last_run)

    def test_inactive_rules_are_not_selected(self) -> None:
        rule = self.create_rule()
        self.store.update_rule(rule.id, {"is_active": False})

        result = self.scheduler.evaluate_now("user-1")

        self.assertEqual(result.materialized, [])
        self.assertIsNone(self.store.get_rule(rule.id).last_processed)

    def test_future_rule_waits_for_start_date(self) -> None:
        self.create_rule(start_date="2024-02-01")

        self.assertEqual(self.scheduler.evaluate_now("user-1").materialized, [])
        self.clock.today = date(2024, 2, 1)
        self.assertEqual(len(self.scheduler.evaluate_now("user-1").materialized), 1)

    def test_missed_periods_create_one_occurrence(self) -> None:
        self.create_rule(frequency="daily")
        self.scheduler.evaluate_now("user-1")

        self.clock.today = date(2024, 1, 25)
        result = self.scheduler.evaluate_now("user-1")

        self.assertEqual([tx.date for tx in result.materialized], [date(2024, 1, 25)])
        self.assertEqual(len(self.ledger.list_transactions("user-1")), 2)

    def test_one_broken_rule_does_not_block_others(self) -> None:
        flaky = self.create_rule(description="Flaky")
        crashing = self.create_rule(description="Crashing")
        healthy = self.create_rule(description="Healthy")
        scheduler = self.make_scheduler(
            SelectivelyFailingMaterializer(
                self.store,
                self.ledger,
                {
                    flaky.id: TransientStoreError("timeout"),
                    crashing.id: RuntimeError("boom"),
                },
            )
        )

        with self.assertLogs("backend.recurring_scheduler", level="WARNING"):
            result = scheduler.evaluate_now("user-1")

        self.assertEqual([tx.source_rule_id for tx in result.materialized], [healthy.id])
        self.assertCountEqual(result.failed_rule_ids, [flaky.id, crashing.id])
        self.assertIsNone(self.store.get_rule(flaky.id).last_processed)

        retry = self.make_scheduler(Materializer(self.store, self.ledger))
        self.assertEqual(len(retry.evaluate_now("user-1").materialized), 2)

    def test_ledger_outage_is_logged_once(self) -> None:
        class LockedLedger(SqlLedger):
            def adjust_balance(self, owner_id, account, delta):
                raise TransientStoreError("balances table locked")

        rule = self.create_rule()
        scheduler = self.make_scheduler(
            Materializer(self.store, LockedLedger(self.engine))
        )

        with self.assertLogs(level="WARNING") as logs:
            result = scheduler.evaluate_now("user-1")

        self.assertEqual(result.failed_rule_ids, [rule.id])
        self.assertEqual(len([line for line in logs.output if rule.id in line]), 1)

    def test_tick_evaluates_every_owner_with_active_rules(self) -> None:
        self.create_rule("user-1")
        self.create_rule("user-2", kind="expense", account="cash", amount="20")
        self.create_rule("user-3", is_active=False)

        results = self.scheduler.tick()

        self.assertEqual(set(results), {"user-1", "user-2"})
        self.assertEqual(self.ledger.get_balances("user-1").bank, Decimal("1000"))
        self.assertEqual(self.ledger.get_balances("user-2").cash, Decimal("-20"))
        self.assertEqual(self.ledger.list_transactions("user-3"), [])

    def test_tick_skips_owner_with_pass_in_progress(self) -> None:
        self.create_rule()
        materializer = GatedMaterializer(self.store, self.ledger)
        scheduler = self.make_scheduler(materializer)
        worker = threading.Thread(target=scheduler.evaluate_now, args=("user-1",))
        worker.start()
        self.assertTrue(materializer.entered.wait(5))

        try:
            results = scheduler.tick()
        finally:
            materializer.release.set()
            worker.join(5)

        self.assertTrue(results["user-1"].skipped)
        self.assertEqual(len(self.ledger.list_transactions("user-1")), 1)

    def test_tick_survives_store_outage(self) -> None:
        class DownStore(SqlRuleStore):
            def list_active_owner_ids(self):
                raise TransientStoreError("database restarting")

        scheduler = RecurringScheduler(
            DownStore(self.engine),
            Materializer(self.store, self.ledger),
            clock=self.clock,
        )

        with self.assertLogs("backend.recurring_scheduler", level="WARNING"):
            self.assertEqual(scheduler.tick(), {})

    def test_background_loop_materializes_and_stops(self) -> None:
        self.create_rule()
        materializer = SignallingMaterializer(self.store, self.ledger)
        scheduler = self.make_scheduler(materializer, interval_seconds=0.01)

        scheduler.start()
        self.assertTrue(scheduler.is_running)
        self.assertTrue(materializer.applied.wait(5))
        scheduler.stop(timeout=5)

        self.assertFalse(scheduler.is_running)
        self.assertEqual(len(self.ledger.list_transactions("user-1")), 1)

    def test_stop_without_start_is_harmless(self) -> None:
        self.scheduler.stop()

        self.assertFalse(self.scheduler.is_running)

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            self.make_scheduler(Materializer(self.store, self.ledger), interval_seconds=0)


if __name__ == "__main__":
    unittest.main()
