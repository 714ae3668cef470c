import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from config import get_settings
from dispatcher import MalformedInput
from ledger import BudgetTarget, LedgerStore
from notifier import Notifier, budget_alert_message
from periods import current_month, month_window, same_month

logger = logging.getLogger(__name__)


def percentage_used(total_cents: int, limit_cents: int) -> Decimal:
    if limit_cents <= 0:
        raise MalformedInput(f"Budget limit must be positive, got {limit_cents}")
    return Decimal(total_cents) * 100 / Decimal(limit_cents)


def should_alert(
    percentage: Decimal,
    last_alert_sent: Optional[datetime],
    now: datetime,
    threshold: Union[int, Decimal] = 80,
) -> bool:
    if percentage < threshold:
        return False
    return last_alert_sent is None or not same_month(last_alert_sent, now)


@dataclass(frozen=True)
class BudgetCheck:
    budget_id: int
    total_cents: int
    percentage_used: Decimal
    alerted: bool


class BudgetEvaluator:
    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier,
        threshold: Optional[int] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.threshold = (
            threshold if threshold is not None else get_settings().budget_alert_percent
        )

    def evaluate(self, target: BudgetTarget, now: datetime) -> BudgetCheck:
        """Alert at most once per calendar month when spending crosses the threshold.

        The budget row is re-read under lock so two workers evaluating the same
        budget cannot both see an empty ``last_alert_sent``. The notification is
        sent before the timestamp is written; if sending fails the caller's unit
        of work rolls back and the alert is still owed on the next run.
        """
        if target.account_id is None:
            raise MalformedInput(f"Budget {target.budget_id} has no default account")

        budget = self.store.get_budget_for_update(target.budget_id)
        if budget is None:
            raise MalformedInput(f"Budget {target.budget_id} no longer exists")

        window = month_window(*current_month(now))
        total = self.store.sum_expenses(target.user_id, target.account_id, window)
        percentage = percentage_used(total, budget.limit_cents)
        logger.info(
            f"budget_checked: budget_id={budget.id} total_cents={total} "
            f"limit_cents={budget.limit_cents} percentage_used={percentage:.2f}"
        )

        if not should_alert(percentage, budget.last_alert_sent, now, self.threshold):
            return BudgetCheck(budget.id, total, percentage, alerted=False)

        self.notifier.send(
            budget_alert_message(
                to=target.user_email,
                user_name=target.user_name,
                account_name=target.account_name or "your account",
                percentage_used=float(percentage),
                limit_cents=budget.limit_cents,
                total_cents=total,
            )
        )
        self.store.update_budget(budget.id, last_alert_sent=now)
        logger.info(
            f"budget_alert_sent: budget_id={budget.id} user_id={target.user_id}"
        )
        return BudgetCheck(budget.id, total, percentage, alerted=True)
