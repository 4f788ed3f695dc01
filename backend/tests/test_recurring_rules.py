import unittest
from datetime import date, datetime
from decimal import Decimal

from backend.recurring_rules import (
    ValidationError,
    build_rule,
    validate_rule_patch,
)


def valid_fields(**overrides) -> dict:
    fields = {
        "kind": "income",
        "amount": "1000",
        "account": "bank",
        "frequency": "monthly",
        "start_date": "2024-01-15",
        "description": "Salary",
        "category": "Work",
    }
    fields.update(overrides)
    return fields


class BuildRuleTests(unittest.TestCase):
    def test_builds_normalized_rule(self) -> None:
        rule = build_rule(
            "user-1",
            valid_fields(kind=" Income ", account="BANK", frequency="Monthly"),
        )

        self.assertTrue(rule.id.startswith("rec_"))
        self.assertEqual(rule.owner_id, "user-1")
        self.assertEqual(rule.kind, "income")
        self.assertEqual(rule.account, "bank")
        self.assertEqual(rule.frequency, "monthly")
        self.assertEqual(rule.amount, Decimal("1000"))
        self.assertEqual(rule.start_date, date(2024, 1, 15))
        self.assertIsNone(rule.end_date)
        self.assertIsNone(rule.last_processed)
        self.assertTrue(rule.is_active)
        self.assertIsNotNone(rule.created_at)

    def test_ids_are_unique(self) -> None:
        first = build_rule("user-1", valid_fields())
        second = build_rule("user-1", valid_fields())

        self.assertNotEqual(first.id, second.id)

    def test_accepts_dates_and_timestamps(self) -> None:
        rule = build_rule(
            "user-1",
            valid_fields(
                start_date=datetime(2024, 1, 15, 9, 30),
                end_date="2024-12-31T00:00:00.000Z",
            ),
        )

        self.assertEqual(rule.start_date, date(2024, 1, 15))
        self.assertEqual(rule.end_date, date(2024, 12, 31))

    def test_ignores_supplied_watermark(self) -> None:
        rule = build_rule("user-1", valid_fields(last_processed="2024-02-15"))

        self.assertIsNone(rule.last_processed)

    def test_signed_amount_follows_kind(self) -> None:
        income = build_rule("user-1", valid_fields(amount="50"))
        expense = build_rule("user-1", valid_fields(kind="expense", amount="50"))

        self.assertEqual(income.signed_amount, Decimal("50"))
        self.assertEqual(expense.signed_amount, Decimal("-50"))

    def test_rejects_non_positive_amounts(self) -> None:
        for amount in ("0", "-5", None, "abc", "NaN", True, "0.004", "12.345"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    build_rule("user-1", valid_fields(amount=amount))

    def test_rejects_amounts_beyond_stored_precision(self) -> None:
        for amount in ("10000000000", "1e12", Decimal("99999999999.99")):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    build_rule("user-1", valid_fields(amount=amount))

    def test_accepts_cent_amounts_with_trailing_zeros(self) -> None:
        self.assertEqual(
            build_rule("user-1", valid_fields(amount="0.010")).amount, Decimal("0.01")
        )
        self.assertEqual(
            build_rule("user-1", valid_fields(amount="9999999999.99")).amount,
            Decimal("9999999999.99"),
        )

    def test_rejects_unknown_choices(self) -> None:
        cases = [
            {"kind": "transfer"},
            {"account": "brokerage"},
            {"frequency": "biweekly"},
            {"frequency": None},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    build_rule("user-1", valid_fields(**overrides))

    def test_rejects_start_after_end(self) -> None:
        with self.assertRaises(ValidationError):
            build_rule(
                "user-1",
                valid_fields(start_date="2024-03-01", end_date="2024-02-01"),
            )

    def test_rejects_missing_or_malformed_start(self) -> None:
        for start in (None, "", "15/01/2024"):
            with self.subTest(start=start):
                with self.assertRaises(ValidationError):
                    build_rule("user-1", valid_fields(start_date=start))

    def test_rejects_missing_owner(self) -> None:
        with self.assertRaises(ValidationError):
            build_rule("  ", valid_fields())

    def test_validation_error_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            build_rule("user-1", valid_fields(amount="-1"))


class RulePatchTests(unittest.TestCase):
    def test_only_descriptive_fields_are_editable(self) -> None:
        patch = validate_rule_patch({"description": "  Rent  ", "category": ""})

        self.assertEqual(patch, {"description": "Rent", "category": None})

    def test_rejects_schedule_fields(self) -> None:
        for field in ("amount", "frequency", "start_date", "last_processed", "is_active"):
            with self.subTest(field=field):
                with self.assertRaises(ValidationError):
                    validate_rule_patch({field: "x"})

    def test_rejects_non_text_labels(self) -> None:
        with self.assertRaises(ValidationError):
            validate_rule_patch({"description": 12})


if __name__ == "__main__":
    unittest.main()
