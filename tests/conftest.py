from datetime import datetime
from typing import Optional

import pytest

from database import Base, make_engine, make_session_factory
from models import (
    Account,
    Budget,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)


class Seeder:
    def __init__(self, factory) -> None:
        self.factory = factory

    def _add(self, obj) -> int:
        with self.factory() as session:
            session.add(obj)
            session.commit()
            return obj.id

    def user(self, email: str = "ada@example.com", name: Optional[str] = "Ada") -> int:
        return self._add(User(email=email, name=name))

    def account(
        self,
        user_id: int,
        balance_cents: int = 0,
        is_default: bool = True,
        name: str = "Checking",
    ) -> int:
        return self._add(
            Account(
                user_id=user_id,
                name=name,
                balance_cents=balance_cents,
                is_default=is_default,
            )
        )

    def transaction(self, user_id: int, account_id: int, **fields) -> int:
        values = dict(
            type=TransactionType.expense,
            amount_cents=1000,
            description="Coffee",
            category="food",
            date=datetime(2024, 3, 1, 12, 0),
            status=TransactionStatus.completed,
            is_recurring=False,
        )
        values.update(fields)
        return self._add(Transaction(user_id=user_id, account_id=account_id, **values))

    def recurring(
        self,
        user_id: int,
        account_id: int,
        interval: RecurringInterval = RecurringInterval.monthly,
        **fields,
    ) -> int:
        values = dict(
            description="Rent",
            category="housing",
            amount_cents=5000,
            is_recurring=True,
            recurring_interval=interval,
        )
        values.update(fields)
        return self.transaction(user_id, account_id, **values)

    def budget(
        self,
        user_id: int,
        limit_cents: int,
        last_alert_sent: Optional[datetime] = None,
    ) -> int:
        return self._add(
            Budget(
                user_id=user_id,
                limit_cents=limit_cents,
                last_alert_sent=last_alert_sent,
            )
        )

    def get(self, model, obj_id: int):
        with self.factory() as session:
            return session.get(model, obj_id)

    def count(self, model, *criteria) -> int:
        with self.factory() as session:
            return session.query(model).filter(*criteria).count()


@pytest.fixture
def factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def seed(factory) -> Seeder:
    return Seeder(factory)
