import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from sqlalchemy.engine import Engine

from backend.due_dates import next_occurrence
from backend.ledger import MaterializedTransaction, SqlLedger
from backend.materializer import Materializer
from backend.recurring_rules import (
    NotFoundError,
    RecurrenceRule,
    TransientStoreError,
)
from backend.recurring_scheduler import DEFAULT_INTERVAL_SECONDS, RecurringScheduler
from backend.recurring_service import RecurringService
from backend.rule_store import SqlRuleStore
from backend.tables import build_engine, create_tables, is_in_memory

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
database_url = os.getenv("DATABASE_URL", "sqlite:///./finance.db")


def get_recurring_interval() -> float:
    raw = os.getenv("RECURRING_INTERVAL_SECONDS", str(DEFAULT_INTERVAL_SECONDS))
    try:
        interval = float(raw)
    except ValueError:
        return DEFAULT_INTERVAL_SECONDS
    return interval if interval > 0 else DEFAULT_INTERVAL_SECONDS


def scheduler_enabled() -> bool:
    raw = os.getenv("RECURRING_SCHEDULER_ENABLED", "true")
    return raw.strip().lower() not in {"0", "false", "no", "off"}


class RecurringTransactionPayload(BaseModel):
    kind: str
    amount: Decimal
    account: str
    frequency: str
    start_date: date
    end_date: date | None = None
    category: str | None = None
    description: str | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(
        cls, payload: "RecurringTransactionPayload"
    ) -> "RecurringTransactionPayload":
        if payload.amount <= 0:
            raise ValueError("Recurring transaction amount must be greater than zero.")
        if payload.end_date is not None and payload.start_date > payload.end_date:
            raise ValueError("Start date must be on or before end date.")
        return payload


class RecurringTransactionUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str | None = None
    description: str | None = None
    is_active: bool | None = None


class RecurringTransactionResponse(BaseModel):
    id: str
    owner_id: str
    kind: str
    amount: Decimal
    account: str
    frequency: str
    start_date: date
    end_date: date | None = None
    category: str | None = None
    description: str
    is_active: bool
    last_processed: date | None = None
    next_due: date | None = None
    created_at: datetime | None = None


class TransactionResponse(BaseModel):
    id: int
    type: str
    amount: Decimal
    account: str
    date: date
    category: str | None = None
    description: str
    source_rule_id: str | None = None


class EvaluationResponse(BaseModel):
    materialized: list[TransactionResponse]
    failed_rule_ids: list[str]


class BalancesResponse(BaseModel):
    cash: Decimal
    bank: Decimal
    savings: Decimal


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def get_service(request: Request) -> RecurringService:
    return request.app.state.recurring_service


def get_today(request: Request) -> date:
    return request.app.state.clock()


def rule_response(rule: RecurrenceRule, today: date) -> RecurringTransactionResponse:
    return RecurringTransactionResponse(
        id=rule.id,
        owner_id=rule.owner_id,
        kind=rule.kind,
        amount=rule.amount,
        account=rule.account,
        frequency=rule.frequency,
        start_date=rule.start_date,
        end_date=rule.end_date,
        category=rule.category,
        description=rule.description,
        is_active=rule.is_active,
        last_processed=rule.last_processed,
        next_due=next_occurrence(rule, today),
        created_at=rule.created_at,
    )


def transaction_response(tx: MaterializedTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        type=tx.type,
        amount=tx.amount,
        account=tx.account,
        date=tx.date,
        category=tx.category,
        description=tx.description,
        source_rule_id=tx.source_rule_id,
    )


router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get(
    "/recurring-transactions", response_model=list[RecurringTransactionResponse]
)
def list_recurring_transactions(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
    today: date = Depends(get_today),
) -> list[RecurringTransactionResponse]:
    try:
        rules = service.list_rules(user_id)
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [rule_response(rule, today) for rule in rules]


@router.post("/recurring-transactions", response_model=RecurringTransactionResponse)
def create_recurring_transaction(
    payload: RecurringTransactionPayload,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
    today: date = Depends(get_today),
) -> RecurringTransactionResponse:
    try:
        payload = RecurringTransactionPayload.validate_payload(payload)
        rule = service.create_recurrence_rule(user_id, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail="Failed to create recurring transaction.") from exc
    return rule_response(rule, today)


@router.post("/recurring-transactions/evaluate", response_model=EvaluationResponse)
def evaluate_recurring_transactions(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
) -> EvaluationResponse:
    try:
        result = service.evaluate_now(user_id)
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return EvaluationResponse(
        materialized=[transaction_response(tx) for tx in result.materialized],
        failed_rule_ids=result.failed_rule_ids,
    )


@router.patch(
    "/recurring-transactions/{rule_id}", response_model=RecurringTransactionResponse
)
def update_recurring_transaction(
    rule_id: str,
    payload: RecurringTransactionUpdatePayload,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
    today: date = Depends(get_today),
) -> RecurringTransactionResponse:
    fields = payload.model_dump(exclude_unset=True)
    is_active = fields.pop("is_active", None)
    try:
        if is_active is not None:
            service.set_rule_active(user_id, rule_id, is_active)
        if fields or is_active is None:
            rule = service.update_rule(user_id, rule_id, fields)
        else:
            rule = service.get_rule(user_id, rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Recurring transaction not found.") from exc
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return rule_response(rule, today)


@router.delete("/recurring-transactions/{rule_id}")
def delete_recurring_transaction(
    rule_id: str,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
) -> dict:
    try:
        service.delete_rule(user_id, rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Recurring transaction not found.") from exc
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "deleted"}


@router.get("/balances", response_model=BalancesResponse)
def get_balances(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
) -> BalancesResponse:
    try:
        balances = service.get_balances(user_id)
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return BalancesResponse(**balances.as_dict())


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_service),
) -> list[TransactionResponse]:
    try:
        items = service.list_transactions(user_id)
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [transaction_response(tx) for tx in items]


def create_app(
    engine: Engine | None = None,
    clock: Callable[[], date] | None = None,
    interval_seconds: float | None = None,
    start_scheduler: bool | None = None,
) -> FastAPI:
    engine = engine or build_engine(database_url)
    clock = clock or date.today
    if start_scheduler is None:
        start_scheduler = scheduler_enabled()
    if start_scheduler and is_in_memory(engine):
        logger.warning(
            "In-memory database configured; recurring scheduler will not run."
        )
        start_scheduler = False

    if interval_seconds is None:
        interval_seconds = get_recurring_interval()
    scheduler_timeout = interval_seconds + 5

    rule_store = SqlRuleStore(engine)
    ledger = SqlLedger(engine)
    scheduler = RecurringScheduler(
        rule_store,
        Materializer(rule_store, ledger),
        clock=clock,
        interval_seconds=interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_tables(engine)
        if start_scheduler:
            scheduler.start()
        yield
        scheduler.stop(timeout=scheduler_timeout)

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.clock = clock
    app.state.scheduler = scheduler
    app.state.recurring_service = RecurringService(rule_store, ledger, scheduler)
    app.include_router(router)

    return app


app = create_app()
