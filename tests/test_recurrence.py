from datetime import date, datetime

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from dispatcher import MalformedInput
from ledger import LedgerStore, run_atomic
from models import (
    Account,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from recurrence import RecurringEngine, is_due, next_date

NOW = datetime(2024, 3, 15, 9, 0)


def test_next_date_daily_weekly_yearly():
    anchor = datetime(2024, 12, 31, 8, 30)
    assert next_date(anchor, RecurringInterval.daily) == datetime(2025, 1, 1, 8, 30)
    assert next_date(anchor, RecurringInterval.weekly) == datetime(2025, 1, 7, 8, 30)
    assert next_date(anchor, RecurringInterval.yearly) == datetime(2025, 12, 31, 8, 30)


def test_next_date_monthly_keeps_day_of_month():
    assert next_date(date(2024, 3, 15), RecurringInterval.monthly) == date(2024, 4, 15)
    assert next_date(date(2024, 12, 10), RecurringInterval.monthly) == date(2025, 1, 10)


def test_next_date_monthly_snaps_to_month_end():
    assert next_date(date(2024, 1, 31), RecurringInterval.monthly) == date(2024, 2, 29)
    assert next_date(date(2023, 1, 31), RecurringInterval.monthly) == date(2023, 2, 28)
    assert next_date(date(2024, 2, 29), RecurringInterval.yearly) == date(2025, 2, 28)


@pytest.mark.parametrize("interval", list(RecurringInterval))
def test_next_date_advances_monotonically(interval):
    current = datetime(2023, 1, 31, 23, 59)
    for _ in range(30):
        following = next_date(current, interval)
        assert following > current
        current = following


def test_next_date_rejects_unknown_interval():
    with pytest.raises(ValueError):
        next_date(date(2024, 1, 1), "FORTNIGHTLY")


def test_is_due():
    never_run = Transaction(last_processed=None, next_recurring_date=None)
    assert is_due(never_run, NOW)
    past = Transaction(last_processed=NOW, next_recurring_date=datetime(2024, 3, 15, 9, 0))
    assert is_due(past, NOW)
    future = Transaction(last_processed=NOW, next_recurring_date=datetime(2024, 3, 16))
    assert not is_due(future, NOW)


def test_select_due_filters_templates(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id)
    fresh = seed.recurring(user_id, account_id)
    overdue = seed.recurring(
        user_id,
        account_id,
        last_processed=datetime(2024, 2, 15),
        next_recurring_date=datetime(2024, 3, 15),
    )
    seed.recurring(
        user_id,
        account_id,
        last_processed=datetime(2024, 3, 1),
        next_recurring_date=datetime(2024, 4, 1),
    )
    seed.recurring(user_id, account_id, status=TransactionStatus.pending)
    seed.transaction(user_id, account_id)

    due = run_atomic(
        factory, lambda store: [t.id for t in RecurringEngine(store).select_due(NOW)]
    )
    assert due == [fresh, overdue]


def test_materialize_monthly_expense(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id, balance_cents=20_000)
    template_id = seed.recurring(user_id, account_id, amount_cents=5_000)

    posted = run_atomic(
        factory, lambda store: RecurringEngine(store).materialize(template_id, user_id, NOW)
    )
    assert posted is not None
    assert posted.delta_cents == -5_000

    assert seed.get(Account, account_id).balance_cents == 15_000
    copies = seed.count(Transaction, Transaction.origin_transaction_id == template_id)
    assert copies == 1
    copy = seed.get(Transaction, posted.created_id)
    assert copy.amount_cents == 5_000
    assert copy.is_recurring is False
    assert copy.status.value == "COMPLETED"
    assert copy.description == "Rent (Recurring)"
    assert copy.date == NOW

    template = seed.get(Transaction, template_id)
    assert template.last_processed == NOW
    assert template.next_recurring_date == datetime(2024, 4, 15, 9, 0)


def test_materialize_twice_is_noop(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id, balance_cents=20_000)
    template_id = seed.recurring(user_id, account_id, amount_cents=5_000)

    def materialize(store: LedgerStore):
        return RecurringEngine(store).materialize(template_id, user_id, NOW)

    assert run_atomic(factory, materialize) is not None
    assert run_atomic(factory, materialize) is None

    assert seed.get(Account, account_id).balance_cents == 15_000
    assert seed.count(Transaction, Transaction.origin_transaction_id == template_id) == 1


def test_materialize_income_increases_balance(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id, balance_cents=1_000)
    template_id = seed.recurring(
        user_id,
        account_id,
        interval=RecurringInterval.weekly,
        type=TransactionType.income,
        amount_cents=2_500,
        description="Salary",
    )
    posted = run_atomic(
        factory, lambda store: RecurringEngine(store).materialize(template_id, user_id, NOW)
    )
    assert posted.next_due == datetime(2024, 3, 22, 9, 0)
    assert seed.get(Account, account_id).balance_cents == 3_500


def test_materialize_wrong_owner_is_skipped(seed, factory):
    owner = seed.user()
    other = seed.user(email="eve@example.com", name="Eve")
    account_id = seed.account(owner, balance_cents=20_000)
    template_id = seed.recurring(owner, account_id)

    result = run_atomic(
        factory, lambda store: RecurringEngine(store).materialize(template_id, other, NOW)
    )
    assert result is None
    assert seed.get(Account, account_id).balance_cents == 20_000


def test_materialize_without_interval_is_malformed(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id)
    template_id = seed.recurring(user_id, account_id, recurring_interval=None)

    with pytest.raises(MalformedInput):
        run_atomic(
            factory,
            lambda store: RecurringEngine(store).materialize(template_id, user_id, NOW),
        )
    assert seed.count(Transaction) == 1


def test_materialize_failure_leaves_no_partial_state(seed, factory, monkeypatch):
    user_id = seed.user()
    account_id = seed.account(user_id, balance_cents=20_000)
    template_id = seed.recurring(user_id, account_id, amount_cents=5_000)

    def broken_update(self, account_id, delta_cents):
        raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))

    monkeypatch.setattr(LedgerStore, "update_account_balance", broken_update)

    with pytest.raises(OperationalError):
        run_atomic(
            factory,
            lambda store: RecurringEngine(store).materialize(template_id, user_id, NOW),
        )

    assert seed.get(Account, account_id).balance_cents == 20_000
    assert seed.count(Transaction) == 1
    template = seed.get(Transaction, template_id)
    assert template.last_processed is None
    assert template.next_recurring_date is None


def test_materialize_loses_race_to_concurrent_worker(seed, factory, monkeypatch):
    user_id = seed.user()
    account_id = seed.account(user_id, balance_cents=20_000)
    template_id = seed.recurring(user_id, account_id, amount_cents=5_000)

    def materialize(store: LedgerStore):
        return RecurringEngine(store).materialize(template_id, user_id, NOW)

    read_template = LedgerStore.get_transaction_for_update
    interleaved = []

    def read_then_let_other_worker_commit(self, transaction_id, owner_id):
        template = read_template(self, transaction_id, owner_id)
        if not interleaved:
            interleaved.append(run_atomic(factory, materialize))
        return template

    monkeypatch.setattr(
        LedgerStore, "get_transaction_for_update", read_then_let_other_worker_commit
    )

    assert run_atomic(factory, materialize) is None
    assert interleaved[0] is not None
    assert seed.get(Account, account_id).balance_cents == 15_000
    assert seed.count(Transaction, Transaction.origin_transaction_id == template_id) == 1


def test_materialize_unreadable_interval_is_malformed(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id, balance_cents=20_000)
    template_id = seed.recurring(user_id, account_id)
    with factory() as session:
        session.execute(
            text("UPDATE transactions SET recurring_interval = 'FORTNIGHTLY' WHERE id = :id"),
            {"id": template_id},
        )
        session.commit()

    due = run_atomic(
        factory, lambda store: [t.id for t in RecurringEngine(store).select_due(NOW)]
    )
    assert due == [template_id]
    with pytest.raises(MalformedInput):
        run_atomic(
            factory,
            lambda store: RecurringEngine(store).materialize(template_id, user_id, NOW),
        )
    assert seed.get(Account, account_id).balance_cents == 20_000
    assert seed.count(Transaction) == 1
