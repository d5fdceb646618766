from __future__ import annotations
from typing import Optional

from pydantic import EmailStr, Field

from .common import RecordModel, gen_id


class Address(RecordModel):
    line1: str
    line2: Optional[str] = None
    postal_code: Optional[str] = None
    city: str


class Customer(RecordModel):
    id: str = Field(default_factory=gen_id)
    name: str
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[Address] = None
    notes: Optional[str] = None
    # owed by the customer before the ledger started, booked as a pending receivable
    opening_balance: float = Field(default=0.0, ge=0)
    # cache only: recomputed from pending receivables on every read
    due_balance: float = 0.0
