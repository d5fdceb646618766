from __future__ import annotations
import math
from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, Field, model_validator

from .common import RecordModel, Timestamp, gen_id
from .sale import TOTAL_TOLERANCE, SaleItem


class SalesReturn(RecordModel):
    """Books brought back by a customer. The value is credited to the customer, never refunded in cash here."""

    id: str = Field(default_factory=gen_id)
    number: Optional[str] = Field(default=None, validation_alias=AliasChoices("number", "returnId"))
    date: Timestamp = Field(default_factory=datetime.now)
    customer_id: str
    sale_id: Optional[str] = None  # the sale the books came from, when known
    items: List[SaleItem] = Field(default_factory=list)
    total: Optional[float] = Field(default=None, validation_alias=AliasChoices("total", "totalReturnValue"))

    @model_validator(mode="after")
    def _check_total(self) -> "SalesReturn":
        computed = math.fsum(it.subtotal() for it in self.items)
        if self.total is None:
            self.total = computed
        elif not math.isclose(self.total, computed, abs_tol=TOTAL_TOLERANCE):
            raise ValueError(f"return total {self.total} does not match its items ({computed})")
        return self
