from __future__ import annotations
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from .book import Book
from .customer import Customer
from .donation import Donation
from .expense import Expense
from .purchase import Purchase
from .sale import Sale
from .sales_return import SalesReturn
from .settings import OpeningBalances
from .transaction import Transaction
from .transfer import Transfer


class LookupMiss(BaseModel):
    """A joined id that could not be resolved; the line item counted as zero."""

    entity: str
    missing_id: str
    referenced_by: str  # id of the record holding the dangling reference
    detail: Optional[str] = None


class AmbiguousDuplicate(BaseModel):
    """A cash/bank sale and a paid customer payment that look like the same event.

    Left for a human to resolve; the payment is kept out of the cash totals.
    """

    sale: Sale
    transaction: Transaction

    @property
    def amount(self) -> float:
        return float(self.sale.total or 0.0)


class CashAndBank(BaseModel):
    cash: float = 0.0
    bank: float = 0.0
    excluded_duplicates: List[AmbiguousDuplicate] = Field(default_factory=list)

    @property
    def total(self) -> float:
        return self.cash + self.bank


class Receivables(BaseModel):
    pending_amount: float = 0.0
    pending_count: int = 0
    by_customer: Dict[str, float] = Field(default_factory=dict)


class GrossProfit(BaseModel):
    amount: float = 0.0
    lookup_misses: List[LookupMiss] = Field(default_factory=list)


class BalanceSheet(BaseModel):
    cash: float
    bank: float
    receivables: float
    stock_value: float
    office_assets_value: float
    payables: float

    @computed_field  # type: ignore[misc]
    @property
    def total_assets(self) -> float:
        return self.cash + self.bank + self.receivables + self.stock_value + self.office_assets_value

    @computed_field  # type: ignore[misc]
    @property
    def equity(self) -> float:
        # plug figure: whatever the assets are not owed to someone else
        return self.total_assets - self.payables


class DashboardStats(BaseModel):
    total_books_in_stock: int = 0
    total_book_titles: int = 0
    monthly_sales_value: float = 0.0
    monthly_sales_count: int = 0
    monthly_expenses: float = 0.0
    gross_profit: float = 0.0
    net_profit: float = 0.0
    receivables_amount: float = 0.0
    pending_receivables_count: int = 0
    stock_value: float = 0.0
    lookup_misses: List[LookupMiss] = Field(default_factory=list)


class MonthlyActivity(BaseModel):
    total_sales: float = 0.0
    sales_count: int = 0
    gross_profit: float = 0.0
    received_payments_from_dues: float = 0.0
    total_expenses: float = 0.0
    total_donations: float = 0.0


class MonthlyReport(BaseModel):
    year: int
    month: int
    opening_balances: OpeningBalances
    activity: MonthlyActivity
    # gross profit - expenses; donations never count as profit
    net_profit: float
    # net profit with the month's donations added back
    net_result: float
    closing_cash: float
    closing_bank: float
    lookup_misses: List[LookupMiss] = Field(default_factory=list)
    duplicates: List[AmbiguousDuplicate] = Field(default_factory=list)


class LedgerSnapshot(BaseModel):
    """Every collection of one owner, fetched at (approximately) the same instant."""

    books: List[Book] = Field(default_factory=list)
    sales: List[Sale] = Field(default_factory=list)
    purchases: List[Purchase] = Field(default_factory=list)
    expenses: List[Expense] = Field(default_factory=list)
    donations: List[Donation] = Field(default_factory=list)
    transactions: List[Transaction] = Field(default_factory=list)
    transfers: List[Transfer] = Field(default_factory=list)
    sales_returns: List[SalesReturn] = Field(default_factory=list)
    customers: List[Customer] = Field(default_factory=list)
