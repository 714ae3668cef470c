from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Optional, Protocol
from urllib.error import URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from config import Settings, get_settings

if TYPE_CHECKING:  # pragma: no cover
    from reports import MonthlyStats

logger = logging.getLogger(__name__)

NO_ACTIVITY_INSIGHTS = [
    "No significant financial activity this month.",
    "Consider tracking your expenses more closely.",
    "Review your spending habits in the coming month.",
]

NO_EXPENSE_INSIGHTS = [
    "No expenses recorded this month.",
    "Great opportunity to start tracking your spending.",
    "Consider setting up a budget for next month.",
]

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

_FENCE_RE = re.compile(r"```(?:json)?\n?")


class InsightError(RuntimeError):
    pass


class InsightGenerator(Protocol):
    def generate(self, stats: "MonthlyStats", month: str) -> list[str]:
        """Return a few short insight sentences or raise InsightError."""


def parse_insights(text: str) -> list[str]:
    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise InsightError("Insight response is not JSON") from exc
    if (
        not isinstance(payload, list)
        or not payload
        or not all(isinstance(item, str) and item.strip() for item in payload)
    ):
        raise InsightError("Insight response is not a list of strings")
    return [item.strip() for item in payload]


def build_prompt(stats: "MonthlyStats", month: str) -> str:
    categories = ", ".join(
        f"{name}: {cents / 100:.2f}"
        for name, cents in sorted(stats.by_category.items())
    )
    return "\n".join(
        [
            "Analyze this monthly financial summary and give 3 short, friendly,",
            "actionable insights focused on spending patterns and ways to save.",
            "",
            f"Month: {month}",
            f"Total income: {stats.total_income_cents / 100:.2f}",
            f"Total expenses: {stats.total_expenses_cents / 100:.2f}",
            f"Net: {stats.net_cents / 100:.2f}",
            f"Expenses by category: {categories or 'none'}",
            "",
            'Answer with a JSON array of strings only, e.g. ["...", "...", "..."].',
        ]
    )


class GeminiInsightGenerator:
    endpoint = (
        "https://generativelanguage.googleapis.com/v1beta/models/"
        "{model}:generateContent?key={key}"
    )

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        if not self.settings.gemini_api_key:
            raise ValueError("LEDGER_GEMINI_API_KEY is not set")

    def generate(self, stats: "MonthlyStats", month: str) -> list[str]:
        url = self.endpoint.format(
            model=quote(self.settings.gemini_model),
            key=quote(self.settings.gemini_api_key or ""),
        )
        body = json.dumps(
            {"contents": [{"parts": [{"text": build_prompt(stats, month)}]}]}
        ).encode("utf-8")
        req = Request(
            url,
            data=body,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.insights_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise InsightError("Failed to reach the insight provider") from exc

        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise InsightError("Unexpected insight provider response") from exc
        return parse_insights(text)


def build_insight_generator(
    settings: Optional[Settings] = None,
) -> Optional[InsightGenerator]:
    settings = settings or get_settings()
    if not settings.gemini_api_key:
        return None
    return GeminiInsightGenerator(settings)


def insights_for(
    stats: "MonthlyStats", month: str, generator: Optional[InsightGenerator]
) -> list[str]:
    """Insights for a report; never raises, falls back to fixed text."""
    if stats.transaction_count == 0:
        return list(NO_ACTIVITY_INSIGHTS)
    if stats.total_expenses_cents == 0:
        return list(NO_EXPENSE_INSIGHTS)
    if generator is None:
        return list(FALLBACK_INSIGHTS)
    try:
        result = generator.generate(stats, month)
    except Exception as exc:
        logger.warning(f"insights_failed: month={month} error={exc!r}")
        return list(FALLBACK_INSIGHTS)
    if not isinstance(result, list) or not result or not all(
        isinstance(item, str) for item in result
    ):
        logger.warning(f"insights_malformed: month={month}")
        return list(FALLBACK_INSIGHTS)
    return result
