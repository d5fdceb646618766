from __future__ import annotations
from datetime import date
from typing import Optional

from .common import RecordModel


class OpeningBalances(RecordModel):
    """Balances entered at onboarding, valid at the start of ``reference_date``."""

    cash: float = 0.0
    bank: float = 0.0
    stock_value: float = 0.0
    reference_date: Optional[date] = None
