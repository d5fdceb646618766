from __future__ import annotations
from datetime import datetime
from typing import Optional

from pydantic import Field

from bookstore.config import INITIAL_CAPITAL_SOURCE, INTERNAL_TRANSFER_DONOR
from .common import Account, RecordModel, Timestamp, gen_id


class Donation(RecordModel):
    id: str = Field(default_factory=gen_id)
    date: Timestamp = Field(default_factory=datetime.now)
    amount: float = Field(ge=0)
    donor_name: Optional[str] = None
    source: Optional[str] = None
    payment_method: Account = "Cash"

    def moves_money(self) -> bool:
        # capital injections and internal transfers are booked elsewhere
        return self.source != INITIAL_CAPITAL_SOURCE and self.donor_name != INTERNAL_TRANSFER_DONOR
