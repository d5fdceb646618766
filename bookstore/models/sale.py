from __future__ import annotations
import math
from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, Field, model_validator

from .common import PaymentMethod, RecordModel, Timestamp, gen_id

TOTAL_TOLERANCE = 0.005


class SaleItem(RecordModel):
    book_id: str = Field(validation_alias=AliasChoices("book_id", "bookId", "itemId", "item_id"))
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)  # selling price at the time of sale

    def subtotal(self) -> float:
        return self.quantity * self.price


class Sale(RecordModel):
    id: str = Field(default_factory=gen_id)
    number: Optional[str] = Field(default=None, validation_alias=AliasChoices("number", "saleId", "sale_id"))
    date: Timestamp = Field(default_factory=datetime.now)
    customer_id: Optional[str] = None
    payment_method: PaymentMethod = "Cash"
    items: List[SaleItem] = Field(default_factory=list)
    total: Optional[float] = None

    @model_validator(mode="after")
    def _check_total(self) -> "Sale":
        computed = math.fsum(it.subtotal() for it in self.items)
        if self.total is None:
            self.total = computed
        elif not math.isclose(self.total, computed, abs_tol=TOTAL_TOLERANCE):
            raise ValueError(f"sale total {self.total} does not match its items ({computed})")
        if self.payment_method == "Due" and not self.customer_id:
            raise ValueError("a Due sale needs a customer_id")
        return self

    def is_paid_at_sale(self) -> bool:
        return self.payment_method in ("Cash", "Bank")
