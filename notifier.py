from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Protocol

from config import Settings, get_settings

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    pass


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str


class Notifier(Protocol):
    def send(self, message: Message) -> None:
        """Deliver the whole message or raise NotificationError."""


class SmtpNotifier:
    def __init__(
        self, settings: Optional[Settings] = None, timeout: float = 10.0
    ) -> None:
        self.settings = settings or get_settings()
        self.timeout = timeout

    def send(self, message: Message) -> None:
        settings = self.settings
        email = EmailMessage()
        email["From"] = settings.smtp_sender
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content(message.body)
        try:
            with smtplib.SMTP(
                settings.smtp_host, settings.smtp_port, timeout=self.timeout
            ) as smtp:
                if settings.smtp_starttls:
                    smtp.starttls()
                if settings.smtp_username:
                    smtp.login(settings.smtp_username, settings.smtp_password or "")
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Failed to send email to {message.to}") from exc
        logger.info(f"email_sent: to={message.to} subject={message.subject!r}")


class LogNotifier:
    """Used when no SMTP host is configured; records what would have been sent."""

    def __init__(self) -> None:
        self.sent: list[Message] = []

    def send(self, message: Message) -> None:
        self.sent.append(message)
        logger.info(
            f"email_logged: to={message.to} subject={message.subject!r}\n{message.body}"
        )


def build_notifier(settings: Optional[Settings] = None) -> Notifier:
    settings = settings or get_settings()
    if settings.smtp_host:
        return SmtpNotifier(settings)
    return LogNotifier()


def format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def budget_alert_message(
    *,
    to: str,
    user_name: Optional[str],
    account_name: str,
    percentage_used: float,
    limit_cents: int,
    total_cents: int,
) -> Message:
    greeting = f"Hi {user_name}," if user_name else "Hi,"
    body = "\n".join(
        [
            greeting,
            "",
            f"You have used {percentage_used:.1f}% of your monthly budget "
            f"on {account_name}.",
            "",
            f"Budget: {format_cents(limit_cents)}",
            f"Spent so far: {format_cents(total_cents)}",
            f"Remaining: {format_cents(limit_cents - total_cents)}",
        ]
    )
    return Message(to=to, subject=f"Budget Alert for {account_name}", body=body)


def monthly_report_message(
    *,
    to: str,
    user_name: Optional[str],
    month_name: str,
    total_income_cents: int,
    total_expenses_cents: int,
    by_category: dict[str, int],
    insights: list[str],
) -> Message:
    greeting = f"Hi {user_name}," if user_name else "Hi,"
    lines = [
        greeting,
        "",
        f"Here is your financial summary for {month_name}.",
        "",
        f"Total income: {format_cents(total_income_cents)}",
        f"Total expenses: {format_cents(total_expenses_cents)}",
        f"Net: {format_cents(total_income_cents - total_expenses_cents)}",
    ]
    if by_category:
        lines += ["", "Expenses by category:"]
        ranked = sorted(by_category.items(), key=lambda x: x[1], reverse=True)
        for name, cents in ranked:
            lines.append(f"  {name}: {format_cents(cents)}")
    lines += ["", "Insights:"]
    lines += [f"  - {insight}" for insight in insights]
    return Message(
        to=to,
        subject=f"Your Monthly Financial Report - {month_name}",
        body="\n".join(lines),
    )
