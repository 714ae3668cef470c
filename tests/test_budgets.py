from datetime import datetime
from decimal import Decimal

import pytest

from budgets import BudgetEvaluator, percentage_used, should_alert
from dispatcher import MalformedInput
from ledger import run_atomic
from models import Budget, TransactionType
from notifier import LogNotifier, NotificationError

NOW = datetime(2024, 3, 20, 10, 0)


class FailingNotifier:
    def send(self, message):
        raise NotificationError("smtp down")


def _evaluate(factory, notifier, now=NOW, threshold=80):
    def check(store):
        target = store.find_budgets()[0]
        return BudgetEvaluator(store, notifier, threshold).evaluate(target, now)

    return run_atomic(factory, check)


def test_percentage_boundary_flips_at_eighty():
    assert percentage_used(800, 1000) == Decimal(80)
    assert should_alert(percentage_used(800, 1000), None, NOW)
    assert not should_alert(percentage_used(799, 1000), None, NOW)
    assert not should_alert(Decimal("79.99"), None, NOW)


def test_should_alert_once_per_calendar_month():
    pct = Decimal(95)
    assert not should_alert(pct, datetime(2024, 3, 1), NOW)
    assert should_alert(pct, datetime(2024, 2, 29, 23, 59), NOW)
    assert should_alert(pct, datetime(2023, 3, 20), NOW)


def test_zero_limit_is_rejected():
    with pytest.raises(MalformedInput):
        percentage_used(100, 0)


def test_alert_fires_once_per_month(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id, name="Everyday")
    budget_id = seed.budget(user_id, limit_cents=100_000)
    seed.transaction(user_id, account_id, amount_cents=80_000, date=datetime(2024, 3, 5))
    notifier = LogNotifier()

    first = _evaluate(factory, notifier)
    assert first.alerted
    assert first.percentage_used == Decimal(80)
    assert seed.get(Budget, budget_id).last_alert_sent == NOW
    assert len(notifier.sent) == 1
    assert notifier.sent[0].to == "ada@example.com"
    assert notifier.sent[0].subject == "Budget Alert for Everyday"

    seed.transaction(user_id, account_id, amount_cents=5_000, date=datetime(2024, 3, 18))
    second = _evaluate(factory, notifier, now=datetime(2024, 3, 21))
    assert not second.alerted
    assert second.total_cents == 85_000
    assert len(notifier.sent) == 1
    assert seed.get(Budget, budget_id).last_alert_sent == NOW


def test_alert_fires_again_in_new_month(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id)
    budget_id = seed.budget(user_id, limit_cents=10_000, last_alert_sent=datetime(2024, 2, 25))
    seed.transaction(user_id, account_id, amount_cents=9_000, date=datetime(2024, 3, 2))
    notifier = LogNotifier()

    assert _evaluate(factory, notifier).alerted
    assert seed.get(Budget, budget_id).last_alert_sent == NOW


def test_only_current_month_expenses_on_default_account_count(seed, factory):
    user_id = seed.user()
    default_id = seed.account(user_id)
    savings_id = seed.account(user_id, is_default=False, name="Savings")
    seed.budget(user_id, limit_cents=10_000)
    seed.transaction(user_id, default_id, amount_cents=7_000, date=datetime(2024, 2, 29, 23, 59))
    seed.transaction(user_id, savings_id, amount_cents=7_000, date=datetime(2024, 3, 3))
    seed.transaction(
        user_id,
        default_id,
        amount_cents=7_000,
        type=TransactionType.income,
        date=datetime(2024, 3, 3),
    )
    seed.transaction(user_id, default_id, amount_cents=1_000, date=datetime(2024, 3, 1))

    result = _evaluate(factory, LogNotifier())
    assert result.total_cents == 1_000
    assert not result.alerted


def test_budget_without_default_account_is_malformed(seed, factory):
    user_id = seed.user()
    seed.account(user_id, is_default=False)
    seed.budget(user_id, limit_cents=10_000)
    notifier = LogNotifier()

    with pytest.raises(MalformedInput):
        _evaluate(factory, notifier)
    assert notifier.sent == []


def test_failed_notification_keeps_alert_owed(seed, factory):
    user_id = seed.user()
    account_id = seed.account(user_id)
    budget_id = seed.budget(user_id, limit_cents=10_000)
    seed.transaction(user_id, account_id, amount_cents=9_500, date=datetime(2024, 3, 2))

    with pytest.raises(NotificationError):
        _evaluate(factory, FailingNotifier())
    assert seed.get(Budget, budget_id).last_alert_sent is None

    assert _evaluate(factory, LogNotifier()).alerted
