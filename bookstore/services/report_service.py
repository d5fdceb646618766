from __future__ import annotations
from datetime import date
from typing import List, Optional

from bookstore.config import DUPLICATE_WINDOW_DAYS
from bookstore.loggers import get_logger
from bookstore.models.context import OwnerContext, Period
from bookstore.models.summary import AmbiguousDuplicate, BalanceSheet, DashboardStats, MonthlyReport
from bookstore.services import aggregator as agg
from bookstore.services.record_service import RecordService
from bookstore.services.settings_service import SettingsService

log = get_logger("bookstore.reports")


class ReportService:
    """Fetches one owner's snapshot and hands it to the aggregator. Nothing is cached."""

    def __init__(
        self,
        records: Optional[RecordService] = None,
        settings: Optional[SettingsService] = None,
        window_days: Optional[int] = DUPLICATE_WINDOW_DAYS,
    ) -> None:
        self.records = records or RecordService()
        self.settings = settings or SettingsService(self.records.data_dir)
        self.window_days = window_days

    def dashboard(self, ctx: OwnerContext, today: Optional[date] = None) -> DashboardStats:
        snap = self.records.snapshot(ctx)
        return agg.compute_dashboard_stats(snap, today or date.today())

    def balance_sheet(self, ctx: OwnerContext, as_of: Optional[date] = None) -> BalanceSheet:
        snap = self.records.snapshot(ctx)
        opening = self.settings.get_opening_balances(ctx)

        balances = agg.compute_cash_and_bank(
            snap.sales, snap.transactions, snap.purchases, snap.expenses, snap.donations, opening,
            transfers=snap.transfers, as_of=as_of, window_days=self.window_days,
        )
        books = snap.books
        if as_of is not None:
            books = agg.compute_closing_stock(
                snap.books, snap.sales, as_of, purchases=snap.purchases, sales_returns=snap.sales_returns,
            )
        sheet = agg.compute_balance_sheet(
            cash=balances.cash,
            bank=balances.bank,
            receivables=agg.compute_receivables(snap.transactions, as_of=as_of),
            stock_value=agg.compute_stock_value(books),
            office_assets_value=agg.compute_office_assets_value(snap.purchases, as_of=as_of),
            payables=agg.compute_payables(snap.transactions, as_of=as_of),
        )
        if balances.excluded_duplicates:
            log.warning("balance sheet for %s: %d duplicate payment(s) left out of cash/bank",
                        ctx.owner_id, len(balances.excluded_duplicates))
        return sheet

    def monthly_report(self, ctx: OwnerContext, year: int, month: int) -> MonthlyReport:
        snap = self.records.snapshot(ctx)
        opening = self.settings.get_opening_balances(ctx)
        return agg.build_monthly_report(snap, opening, Period(year=year, month=month), window_days=self.window_days)

    def audit_cash_events(self, ctx: OwnerContext) -> List[AmbiguousDuplicate]:
        """Cash/bank sales with a second, suspicious payment record. For a human to resolve."""
        snap = self.records.snapshot(ctx)
        return agg.find_duplicate_cash_events(snap.sales, snap.transactions, window_days=self.window_days)
