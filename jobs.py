from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from budgets import BudgetEvaluator
from dispatcher import Dispatcher, JobReport, WorkUnit
from insights import InsightGenerator
from ledger import BudgetTarget, LedgerStore, run_atomic
from notifier import Notifier
from periods import local_now
from recurrence import RecurringEngine
from reports import MonthlyReporter
from schemas import RecurringTransactionEvent

logger = logging.getLogger(__name__)

RECURRING_EVENT = "transaction.recurring.process"


@dataclass
class JobContext:
    session_factory: Optional[sessionmaker]
    dispatcher: Dispatcher
    notifier: Notifier
    insights: Optional[InsightGenerator] = None
    clock: Callable[[], datetime] = local_now
    budget_alert_percent: Optional[int] = None


def check_budget_alerts(ctx: JobContext) -> JobReport:
    budgets = run_atomic(ctx.session_factory, lambda store: store.find_budgets())
    units = []
    skipped = []
    for target in budgets:
        key = f"check-budget-{target.budget_id}"
        if target.account_id is None:
            logger.info(
                f"budget_skipped: budget_id={target.budget_id} "
                "reason=no_default_account"
            )
            skipped.append(key)
            continue
        if target.limit_cents <= 0:
            logger.warning(
                f"budget_skipped: budget_id={target.budget_id} "
                "reason=non_positive_limit"
            )
            skipped.append(key)
            continue
        units.append(
            WorkUnit(key=key, fn=_budget_unit(ctx, target), owner=target.user_id)
        )
    report = ctx.dispatcher.run(units)
    report.skipped.extend(skipped)
    logger.info(f"budget_job_done: {report.as_dict()}")
    return report


def _budget_unit(ctx: JobContext, target: BudgetTarget) -> Callable[[], object]:
    def unit() -> object:
        now = ctx.clock()
        return run_atomic(
            ctx.session_factory,
            lambda store: BudgetEvaluator(
                store, ctx.notifier, ctx.budget_alert_percent
            ).evaluate(target, now),
        )

    return unit


def trigger_recurring_transactions(ctx: JobContext) -> int:
    now = ctx.clock()
    events = run_atomic(
        ctx.session_factory,
        lambda store: [
            {"transactionId": txn.id, "userId": txn.user_id}
            for txn in RecurringEngine(store).select_due(now)
        ],
    )
    if events:
        ctx.dispatcher.emit(RECURRING_EVENT, events)
    logger.info(f"recurring_triggered: count={len(events)}")
    return len(events)


def process_recurring_transaction(ctx: JobContext, payload: object) -> str:
    try:
        event = RecurringTransactionEvent.model_validate(payload)
    except ValidationError as exc:
        logger.error(
            f"recurring_event_invalid: payload={payload!r} errors={exc.errors()}"
        )
        return "invalid"

    now = ctx.clock()

    def materialize(store: LedgerStore) -> str:
        posted = RecurringEngine(store).materialize(
            event.transaction_id, event.user_id, now
        )
        return "processed" if posted else "skipped"

    return run_atomic(ctx.session_factory, materialize)


def generate_monthly_reports(ctx: JobContext) -> JobReport:
    user_ids = run_atomic(
        ctx.session_factory, lambda store: [user.id for user in store.list_users()]
    )
    units = [
        WorkUnit(
            key=f"generate-report-{user_id}",
            fn=_report_unit(ctx, user_id),
            owner=user_id,
        )
        for user_id in user_ids
    ]
    report = ctx.dispatcher.run(units)
    logger.info(f"report_job_done: {report.as_dict()}")
    return report


def _report_unit(ctx: JobContext, user_id: int) -> Callable[[], object]:
    def unit() -> object:
        now = ctx.clock()
        return run_atomic(
            ctx.session_factory,
            lambda store: MonthlyReporter(
                store, ctx.notifier, ctx.insights
            ).send_report(user_id, now),
        )

    return unit


def _recurring_key(payload: object) -> str:
    if isinstance(payload, dict):
        return f"process-transaction-{payload.get('transactionId')}"
    return f"process-transaction-{payload!r}"


def _recurring_owner(payload: object) -> object:
    return payload.get("userId") if isinstance(payload, dict) else None


def register_events(ctx: JobContext) -> None:
    ctx.dispatcher.register_event(
        RECURRING_EVENT,
        lambda payload: process_recurring_transaction(ctx, payload),
        key=_recurring_key,
        owner=_recurring_owner,
    )
