from __future__ import annotations
from datetime import datetime
from typing import Optional

from pydantic import Field

from .common import Account, RecordModel, Timestamp, gen_id


class Expense(RecordModel):
    id: str = Field(default_factory=gen_id)
    date: Timestamp = Field(default_factory=datetime.now)
    amount: float = Field(ge=0)
    category: str = "General"
    description: Optional[str] = None
    payment_method: Account = "Cash"
