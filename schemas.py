from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import RecurringInterval, TransactionStatus, TransactionType


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    date: datetime
    status: TransactionStatus = TransactionStatus.completed
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None


class RecurringTransactionEvent(BaseModel):
    """Payload of ``transaction.recurring.process``; both fields are required."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_id: int = Field(..., alias="transactionId")
    user_id: int = Field(..., alias="userId")


class JobRunOut(BaseModel):
    job: str
    source: str
    result: dict[str, object]


class JobInfoOut(BaseModel):
    id: str
    next_run_time: Optional[datetime] = None
