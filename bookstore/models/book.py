from __future__ import annotations
from typing import Optional

from pydantic import Field

from .common import RecordModel, gen_id


class Book(RecordModel):
    id: str = Field(default_factory=gen_id)
    title: str
    author: Optional[str] = None
    stock: int = Field(default=0, ge=0)
    price: float = Field(default=0.0, ge=0)  # selling price
    production_price: float = Field(default=0.0, ge=0)  # unit cost
