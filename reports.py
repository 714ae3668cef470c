from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from insights import InsightGenerator, insights_for
from ledger import LedgerStore
from models import Transaction, TransactionType
from notifier import Notifier, monthly_report_message
from periods import month_key, month_window, previous_month

logger = logging.getLogger(__name__)


@dataclass
class MonthlyStats:
    total_income_cents: int = 0
    total_expenses_cents: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0
    unexpected_types: list[str] = field(default_factory=list)

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expenses_cents

    def as_dict(self) -> dict[str, object]:
        return {
            "total_income_cents": self.total_income_cents,
            "total_expenses_cents": self.total_expenses_cents,
            "net_cents": self.net_cents,
            "by_category": dict(self.by_category),
            "transaction_count": self.transaction_count,
        }


def aggregate(transactions: Iterable[Transaction]) -> MonthlyStats:
    stats = MonthlyStats()
    for txn in transactions:
        stats.transaction_count += 1
        if txn.type == TransactionType.expense:
            stats.total_expenses_cents += txn.amount_cents
            stats.by_category[txn.category] = (
                stats.by_category.get(txn.category, 0) + txn.amount_cents
            )
        elif txn.type == TransactionType.income:
            stats.total_income_cents += txn.amount_cents
        else:
            logger.warning(f"unknown_transaction_type: id={txn.id} type={txn.type!r}")
            stats.unexpected_types.append(str(txn.type))
    return stats


def monthly_stats(
    store: LedgerStore, user_id: int, year: int, month: int
) -> MonthlyStats:
    window = month_window(year, month)
    stats = aggregate(store.list_transactions(user_id, window))
    if stats.transaction_count == 0:
        logger.info(f"monthly_stats_empty: user_id={user_id} month={window.slug}")
    return stats


class MonthlyReporter:
    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier,
        insights: Optional[InsightGenerator] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.insights = insights

    def send_report(self, user_id: int, now: datetime) -> Optional[MonthlyStats]:
        """Report on the month before ``now``; skips users already reported for it."""
        user = self.store.get_user(user_id)
        if user is None:
            logger.warning(f"report_user_missing: user_id={user_id}")
            return None
        year, month = previous_month(now)
        key = month_key(year, month)
        if user.last_report_month == key:
            logger.info(f"report_already_sent: user_id={user_id} month={key}")
            return None

        stats = monthly_stats(self.store, user_id, year, month)
        month_name = calendar.month_name[month]
        insights = insights_for(stats, month_name, self.insights)
        self.notifier.send(
            monthly_report_message(
                to=user.email,
                user_name=user.name,
                month_name=month_name,
                total_income_cents=stats.total_income_cents,
                total_expenses_cents=stats.total_expenses_cents,
                by_category=stats.by_category,
                insights=insights,
            )
        )
        self.store.mark_report_sent(user_id, key)
        logger.info(
            f"report_sent: user_id={user_id} month={key} "
            f"transactions={stats.transaction_count}"
        )
        return stats
