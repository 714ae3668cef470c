import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, TypeVar

from sqlalchemy import Row
from sqlalchemy.orm import Session

from dispatcher import MalformedInput
from ledger import LedgerStore
from models import RecurringInterval, Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

D = TypeVar("D", date, datetime)

RECURRING_SUFFIX = " (Recurring)"


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: D, months: int) -> D:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Days past the end of the target month snap to its last day (Jan 31 -> Feb 28/29).
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def next_date(anchor: D, interval: RecurringInterval) -> D:
    """Next due moment after ``anchor``; the time of day is preserved."""
    if interval == RecurringInterval.daily:
        return anchor + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return anchor + timedelta(days=7)
    if interval == RecurringInterval.monthly:
        return _add_months(anchor, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(anchor, 12)
    raise ValueError(f"Unknown recurring interval: {interval!r}")


def is_due(txn: Transaction, now: datetime) -> bool:
    if txn.last_processed is None:
        return True
    return txn.next_recurring_date is not None and txn.next_recurring_date <= now


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    return -amount_cents if txn_type == TransactionType.expense else amount_cents


@dataclass(frozen=True)
class Materialized:
    template_id: int
    created_id: int
    account_id: int
    delta_cents: int
    next_due: datetime


class RecurringEngine:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    @classmethod
    def for_session(cls, session: Session) -> "RecurringEngine":
        return cls(LedgerStore(session))

    def select_due(self, now: datetime) -> list[Row]:
        return self.store.find_due_recurring_transactions(now)

    def materialize(
        self, transaction_id: int, user_id: int, now: datetime
    ) -> Optional[Materialized]:
        """Post one occurrence of a recurring template.

        Must run inside a single unit of work: the template advance, the copy
        and the balance delta are flushed to the same session and commit or roll
        back together. The advance runs first and only matches a template that
        is still due, so a worker that loses the race writes nothing. Returns
        None when the template is missing or no longer due, which makes a
        repeated call a no-op.
        """
        try:
            template = self.store.get_transaction_for_update(transaction_id, user_id)
        except LookupError as exc:
            # Raised while loading a column value outside its enum.
            raise MalformedInput(
                f"Recurring transaction {transaction_id} is unreadable: {exc}"
            ) from exc
        if template is None:
            logger.warning(
                f"recurring_missing: transaction_id={transaction_id} user_id={user_id}"
            )
            return None
        if not template.is_recurring or template.status != TransactionStatus.completed:
            logger.info(f"recurring_inactive: transaction_id={transaction_id}")
            return None
        if not is_due(template, now):
            logger.info(
                f"recurring_not_due: transaction_id={transaction_id} "
                f"next_due={template.next_recurring_date}"
            )
            return None
        try:
            interval = RecurringInterval(template.recurring_interval)
        except ValueError as exc:
            raise MalformedInput(
                f"Recurring transaction {transaction_id} has interval "
                f"{template.recurring_interval!r}"
            ) from exc
        following = next_date(now, interval)
        if not self.store.claim_occurrence(template.id, now, following):
            logger.info(f"recurring_already_posted: transaction_id={transaction_id}")
            return None

        created = self.store.insert_transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            type=template.type,
            amount_cents=template.amount_cents,
            description=f"{template.description or ''}{RECURRING_SUFFIX}".strip(),
            category=template.category,
            date=now,
            status=TransactionStatus.completed,
            is_recurring=False,
            origin_transaction_id=template.id,
        )
        delta = signed_amount(template.type, template.amount_cents)
        self.store.update_account_balance(template.account_id, delta)
        logger.info(
            f"recurring_posted: transaction_id={template.id} created_id={created.id} "
            f"account_id={template.account_id} delta_cents={delta} next_due={following}"
        )
        return Materialized(
            template_id=template.id,
            created_id=created.id,
            account_id=template.account_id,
            delta_cents=delta,
            next_due=following,
        )
