from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import uuid4

SUPPORTED_KINDS = {"income", "expense"}
SUPPORTED_ACCOUNTS = {"cash", "bank", "savings"}
SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
EDITABLE_FIELDS = {"category", "description"}

# amounts are stored as NUMERIC(12, 2)
AMOUNT_STEP = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")


class ValidationError(ValueError):
    """Raised when a recurrence rule or an edit to one is malformed."""


class NotFoundError(LookupError):
    """Raised when a rule does not exist or belongs to another owner."""


class TransientStoreError(RuntimeError):
    """Raised when the rule store or the ledger cannot be reached."""


class WatermarkAdvanceFailure(TransientStoreError):
    """The ledger accepted an occurrence but the rule's watermark did not move.

    The next pass will see the old watermark and may materialize the same
    occurrence again.
    """

    def __init__(self, rule_id: str, transaction_id: int | None, reason: str) -> None:
        super().__init__(
            f"Watermark for rule {rule_id} not advanced after transaction "
            f"{transaction_id}: {reason}"
        )
        self.rule_id = rule_id
        self.transaction_id = transaction_id


@dataclass(frozen=True)
class RecurrenceRule:
    id: str
    owner_id: str
    kind: str
    amount: Decimal
    account: str
    frequency: str
    start_date: date
    description: str = ""
    category: str | None = None
    end_date: date | None = None
    is_active: bool = True
    last_processed: date | None = None
    created_at: datetime | None = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.kind == "income" else -self.amount


def new_rule_id() -> str:
    return f"rec_{uuid4().hex}"


def build_rule(
    owner_id: str,
    fields: Mapping[str, Any],
) -> RecurrenceRule:
    """Validate raw rule fields and return a fresh, never-processed rule."""
    if not owner_id or not str(owner_id).strip():
        raise ValidationError("Owner is required.")

    amount = _parse_amount(fields.get("amount"))
    kind = _normalize_choice(fields.get("kind"), SUPPORTED_KINDS, "kind")
    account = _normalize_choice(fields.get("account"), SUPPORTED_ACCOUNTS, "account")
    frequency = _normalize_choice(
        fields.get("frequency"), SUPPORTED_FREQUENCIES, "frequency"
    )
    start_date = _parse_date(fields.get("start_date"), "start_date")
    if start_date is None:
        raise ValidationError("start_date is required.")
    end_date = _parse_date(fields.get("end_date"), "end_date")
    if end_date is not None and start_date > end_date:
        raise ValidationError("start_date must be on or before end_date.")

    is_active = fields.get("is_active", True)
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean.")

    return RecurrenceRule(
        id=new_rule_id(),
        owner_id=str(owner_id).strip(),
        kind=kind,
        amount=amount,
        account=account,
        frequency=frequency,
        start_date=start_date,
        end_date=end_date,
        description=_clean_text(fields.get("description"), "description") or "",
        category=_clean_text(fields.get("category"), "category"),
        is_active=is_active,
        last_processed=None,
        created_at=datetime.now(timezone.utc),
    )


def validate_rule_patch(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Check an owner edit and return the normalized column values.

    Only descriptive labels may change after creation; everything that drives
    scheduling is fixed once the rule exists.
    """
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Fields cannot be edited: {', '.join(sorted(unknown))}."
        )
    patch: dict[str, Any] = {}
    if "category" in fields:
        patch["category"] = _clean_text(fields["category"], "category")
    if "description" in fields:
        patch["description"] = _clean_text(fields["description"], "description") or ""
    return patch


def _parse_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError("Amount is required.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Amount must be a number.") from exc
    if not amount.is_finite():
        raise ValidationError("Amount must be a number.")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Amount must not exceed {MAX_AMOUNT}.")
    if amount != amount.quantize(AMOUNT_STEP):
        raise ValidationError("Amount must have at most two decimal places.")
    return amount


def _normalize_choice(value: Any, allowed: set[str], label: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{label} is required.")
    normalized = value.strip().lower()
    if normalized not in allowed:
        raise ValidationError(
            f"Invalid {label}. Use one of: {', '.join(sorted(allowed))}."
        )
    return normalized


def _parse_date(value: Any, label: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        try:
            return date.fromisoformat(raw[:10])
        except ValueError as exc:
            raise ValidationError(f"{label} must be in YYYY-MM-DD format.") from exc
    raise ValidationError(f"{label} must be a date.")


def _clean_text(value: Any, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be text.")
    cleaned = value.strip()
    return cleaned or None
