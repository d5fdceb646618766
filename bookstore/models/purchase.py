from __future__ import annotations
import math
from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, Field, model_validator

from .common import PaymentMethod, RecordModel, Timestamp, gen_id
from .sale import TOTAL_TOLERANCE

BOOK_CATEGORY = "Book"


class PurchaseItem(RecordModel):
    book_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("book_id", "bookId", "itemId"))
    item_name: Optional[str] = None  # title when the book is not in the catalogue yet
    author: Optional[str] = None
    quantity: int = Field(ge=1)
    cost: float = Field(ge=0)  # unit cost
    category: str = Field(default=BOOK_CATEGORY, validation_alias=AliasChoices("category", "categoryName"))

    @model_validator(mode="after")
    def _named(self) -> "PurchaseItem":
        if self.is_book() and not (self.book_id or self.item_name):
            raise ValueError("a book line needs a book_id or an item_name")
        return self

    def is_book(self) -> bool:
        return self.category.strip().casefold() == BOOK_CATEGORY.casefold()

    def subtotal(self) -> float:
        return self.quantity * self.cost


class Purchase(RecordModel):
    id: str = Field(default_factory=gen_id)
    number: Optional[str] = Field(default=None, validation_alias=AliasChoices("number", "purchaseId"))
    date: Timestamp = Field(default_factory=datetime.now)
    items: List[PurchaseItem] = Field(default_factory=list)
    total: Optional[float] = Field(default=None, ge=0,
                                   validation_alias=AliasChoices("total", "totalAmount"))
    payment_method: PaymentMethod = "Cash"
    category: Optional[str] = None  # "Office Asset" for equipment bought as a whole
    supplier: Optional[str] = None
    due_date: Optional[Timestamp] = None  # for Due purchases: when the supplier expects payment
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_total(self) -> "Purchase":
        if not self.items:
            if self.total is None:
                raise ValueError("a purchase needs items or a total")
            return self
        computed = math.fsum(it.subtotal() for it in self.items)
        if self.total is None:
            self.total = computed
        elif not math.isclose(self.total, computed, abs_tol=TOTAL_TOLERANCE):
            raise ValueError(f"purchase total {self.total} does not match its items ({computed})")
        return self
