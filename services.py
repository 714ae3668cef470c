from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger import LedgerStore
from models import Account, Budget, Transaction, TransactionStatus
from recurrence import next_date, signed_amount
from schemas import TransactionIn

logger = logging.getLogger(__name__)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.store = LedgerStore(session)

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def create(self, data: TransactionIn) -> Transaction:
        account = self._account(data.account_id)
        if data.is_recurring and data.recurring_interval is None:
            raise ValueError("Recurring transactions need an interval")

        next_due = (
            next_date(data.date, data.recurring_interval)
            if data.is_recurring and data.recurring_interval
            else None
        )
        try:
            txn = self.store.insert_transaction(
                user_id=self.user_id,
                account_id=account.id,
                type=data.type,
                amount_cents=data.amount_cents,
                category=data.category,
                description=data.description,
                date=data.date,
                status=data.status,
                is_recurring=data.is_recurring,
                recurring_interval=(
                    data.recurring_interval if data.is_recurring else None
                ),
                next_recurring_date=next_due,
            )
            # Only settled money moves the balance.
            if data.status == TransactionStatus.completed:
                self.store.update_account_balance(
                    account.id, signed_amount(data.type, data.amount_cents)
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} account_id={account.id} "
            f"recurring={txn.is_recurring}"
        )
        return txn

    def list_for_account(self, account_id: int) -> list[Transaction]:
        self._account(account_id)
        stmt = (
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, limit_cents: int) -> Budget:
        if limit_cents <= 0:
            raise ValueError("Budget limit must be positive")
        budget = self.get()
        if budget:
            budget.limit_cents = limit_cents
        else:
            budget = Budget(user_id=self.user_id, limit_cents=limit_cents)
            self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget
