from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import Row, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from periods import Period

T = TypeVar("T")


@dataclass(frozen=True)
class BudgetTarget:
    """A budget joined with its owner and the owner's default account."""

    budget_id: int
    user_id: int
    user_email: str
    user_name: Optional[str]
    limit_cents: int
    last_alert_sent: Optional[datetime]
    account_id: Optional[int]
    account_name: Optional[str]


def due_clause(now: datetime):
    return or_(
        Transaction.last_processed.is_(None),
        Transaction.next_recurring_date <= now,
    )


class LedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_budgets(self) -> list[BudgetTarget]:
        default_account = (
            select(Account.id, Account.user_id, Account.name)
            .where(Account.is_default.is_(True))
            .subquery()
        )
        stmt = (
            select(
                Budget.id,
                Budget.user_id,
                User.email,
                User.name,
                Budget.limit_cents,
                Budget.last_alert_sent,
                default_account.c.id,
                default_account.c.name,
            )
            .join(User, User.id == Budget.user_id)
            .outerjoin(default_account, default_account.c.user_id == Budget.user_id)
            .order_by(Budget.id)
        )
        targets: dict[int, BudgetTarget] = {}
        for row in self.session.execute(stmt):
            # More than one default account is a data error; the lowest id wins.
            if row[0] in targets:
                continue
            targets[row[0]] = BudgetTarget(*row)
        return list(targets.values())

    def find_due_recurring_transactions(self, now: datetime) -> list[Row]:
        # Ids only; a template with an unreadable column must not sink the scan.
        stmt = (
            select(Transaction.id, Transaction.user_id)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                due_clause(now),
            )
            .order_by(Transaction.user_id, Transaction.id)
        )
        return list(self.session.execute(stmt).all())

    def get_transaction_for_update(
        self, transaction_id: int, user_id: int
    ) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.id == transaction_id, Transaction.user_id == user_id)
            .with_for_update()
        )
        return self.session.scalar(stmt)

    def insert_transaction(self, **fields: object) -> Transaction:
        txn = Transaction(**fields)
        self.session.add(txn)
        self.session.flush()
        return txn

    def claim_occurrence(
        self, transaction_id: int, now: datetime, next_due: datetime
    ) -> bool:
        """Advance a template only while it is still due.

        The conditional UPDATE guards against two workers posting the same
        occurrence: whichever writes second matches no row.
        """
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.is_recurring.is_(True),
                due_clause(now),
            )
            .values(last_processed=now, next_recurring_date=next_due)
        )
        return result.rowcount == 1

    def update_account_balance(self, account_id: int, delta_cents: int) -> None:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta_cents)
        )
        if result.rowcount != 1:
            raise LookupError(f"Account {account_id} not found")

    def get_budget_for_update(self, budget_id: int) -> Optional[Budget]:
        stmt = select(Budget).where(Budget.id == budget_id).with_for_update()
        return self.session.scalar(stmt)

    def update_budget(self, budget_id: int, **fields: object) -> None:
        self.session.execute(
            update(Budget).where(Budget.id == budget_id).values(**fields)
        )

    def sum_expenses(self, user_id: int, account_id: int, window: Period) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == user_id,
                    Transaction.account_id == account_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(window.start, window.end),
                )
            ).scalar_one()
            or 0
        )

    def list_transactions(self, user_id: int, window: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.date.between(window.start, window.end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def list_users(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def mark_report_sent(self, user_id: int, report_month: str) -> None:
        self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(last_report_month=report_month)
        )


def run_atomic(
    session_factory: Optional[sessionmaker], fn: Callable[[LedgerStore], T]
) -> T:
    with session_scope(session_factory) as session:
        return fn(LedgerStore(session))
