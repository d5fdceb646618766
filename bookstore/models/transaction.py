from __future__ import annotations
from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from bookstore.config import CUSTOMER_PAYMENT_PREFIX
from .common import Account, RecordModel, Timestamp, gen_id

TransactionType = Literal["Receivable", "Payable"]
TransactionStatus = Literal["Pending", "Paid"]


class Transaction(RecordModel):
    """Money owed to (Receivable) or by (Payable) the shop."""

    id: str = Field(default_factory=gen_id)
    type: TransactionType
    description: str = ""
    amount: float = Field(ge=0)
    due_date: Timestamp = Field(default_factory=datetime.now)
    status: TransactionStatus = "Pending"
    customer_id: Optional[str] = None
    sale_id: Optional[str] = None
    payment_method: Optional[Account] = None
    paid_at: Optional[Timestamp] = None

    def event_date(self) -> datetime:
        """When the money moved (Paid) or fell due (Pending)."""
        if self.status == "Paid" and self.paid_at is not None:
            return self.paid_at
        return self.due_date

    def is_customer_payment(self) -> bool:
        return (
            self.type == "Receivable"
            and self.status == "Paid"
            and self.description.strip().lower().startswith(CUSTOMER_PAYMENT_PREFIX.lower())
        )
