"""
Ledger aggregation: derived financial views computed from raw record snapshots.

Every function here is pure. Inputs are record collections fetched by the
caller (models or plain dicts, dicts are validated on the way in) and are
assumed to come from approximately the same instant; keeping the collections
consistent with each other is the caller's job. Totals are accumulated with
``math.fsum`` so a result never depends on the order of the records.

Failures:
  - InvalidInput   a record or a required numeric field is missing / not finite,
                   the whole call fails
  - LookupMiss     a sale item points to an unknown book, the item counts as 0
                   and the miss is returned (and logged)
  - AmbiguousDuplicate
                   a cash/bank sale and a paid "payment from customer" record
                   describing the same money, returned as data for review
"""
from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from bookstore.config import DUPLICATE_WINDOW_DAYS, OFFICE_ASSET_CATEGORY
from bookstore.errors import InvalidInput, invalid_from_validation
from bookstore.loggers import get_logger
from bookstore.models.book import Book
from bookstore.models.context import Period
from bookstore.models.donation import Donation
from bookstore.models.expense import Expense
from bookstore.models.purchase import Purchase
from bookstore.models.sale import Sale
from bookstore.models.sales_return import SalesReturn
from bookstore.models.settings import OpeningBalances
from bookstore.models.summary import (
    AmbiguousDuplicate,
    BalanceSheet,
    CashAndBank,
    DashboardStats,
    GrossProfit,
    LedgerSnapshot,
    LookupMiss,
    MonthlyActivity,
    MonthlyReport,
    Receivables,
)
from bookstore.models.transaction import Transaction
from bookstore.models.transfer import Transfer

log = get_logger("bookstore.aggregator")

M = TypeVar("M", bound=BaseModel)
Moment = Union[date, datetime]

AMOUNT_TOLERANCE = 1e-6


# ---------- Ingestion helpers ---------- #

def _coerce(records: Optional[Iterable[Any]], model: Type[M], entity: str) -> List[M]:
    out: List[M] = []
    for r in records or ():
        if isinstance(r, model):
            out.append(r)
        elif isinstance(r, Mapping):
            try:
                out.append(model.model_validate(dict(r)))
            except ValidationError as e:
                raise invalid_from_validation(entity, e, record=r) from e
        else:
            raise InvalidInput(f"expected a {entity} record, got {type(r).__name__}", record=r)
    return out


def _coerce_one(record: Any, model: Type[M], entity: str) -> M:
    if record is None:
        raise InvalidInput(f"{entity} is required")
    return _coerce([record], model, entity)[0]


def _finite(value: Any, field: str, record: Any = None) -> float:
    if value is None:
        raise InvalidInput(f"missing numeric field '{field}'", record=record, field=field)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"field '{field}' is not a number: {value!r}", record=record, field=field)
    if not math.isfinite(value):
        raise InvalidInput(f"field '{field}' is not finite: {value!r}", record=record, field=field)
    return float(value)


def _number(record: Any, field: str) -> float:
    # models built with model_construct() skip validation, so check again here
    return _finite(getattr(record, field, None), field, record)


def _same_amount(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=0.0, abs_tol=AMOUNT_TOLERANCE)


# ---------- Date helpers ---------- #

def _start_of(moment: Optional[Moment]) -> Optional[datetime]:
    if moment is None:
        return None
    if isinstance(moment, datetime):
        return moment
    return datetime.combine(moment, time.min)


def _end_of(moment: Optional[Moment]) -> Optional[datetime]:
    # a plain date means "up to the end of that day"
    if moment is None:
        return None
    if isinstance(moment, datetime):
        return moment
    return datetime.combine(moment, time.max)


def _within(moment: datetime, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and moment < since:
        return False
    if until is not None and moment > until:
        return False
    return True


def _as_period(period: Union[Period, Moment]) -> Period:
    if isinstance(period, Period):
        return period
    if isinstance(period, date):
        return Period.of(period)
    raise InvalidInput(f"not a period: {period!r}")


def in_period(records: Iterable[M], period: Union[Period, Moment], attr: str = "date") -> List[M]:
    p = _as_period(period)
    return [r for r in records if p.contains(getattr(r, attr))]


# ---------- Reconciliation ---------- #

def _due_sale_keys(sales: Sequence[Sale]) -> Set[str]:
    keys: Set[str] = set()
    for s in sales:
        if s.payment_method == "Due":
            keys.add(s.id)
            if s.number:
                keys.add(s.number)
    return keys


def find_duplicate_cash_events(
    sales: Iterable[Any],
    transactions: Iterable[Any],
    *,
    window_days: Optional[int] = DUPLICATE_WINDOW_DAYS,
) -> List[AmbiguousDuplicate]:
    """
    Pairs each cash/bank sale with at most one paid "payment from customer"
    record for the same customer and amount (dated within ``window_days`` of
    the sale; ``None`` disables the date check).

    A payment linked through ``sale_id`` to a Due sale is the collection of
    that sale and never pairs. Sales and payments are walked in (date, id)
    order so the pairing is the same whatever the input order.
    """
    sale_list = _coerce(sales, Sale, "sale")
    tx_list = _coerce(transactions, Transaction, "transaction")
    due_keys = _due_sale_keys(sale_list)
    window = timedelta(days=window_days) if window_days is not None else None

    candidates = sorted(
        (
            t for t in tx_list
            if t.is_customer_payment() and t.customer_id and t.sale_id not in due_keys
        ),
        key=lambda t: (t.event_date(), t.id),
    )
    paid_sales = sorted(
        (s for s in sale_list if s.is_paid_at_sale() and s.customer_id),
        key=lambda s: (s.date, s.id),
    )

    used: Set[str] = set()
    pairs: List[AmbiguousDuplicate] = []
    for sale in paid_sales:
        total = _number(sale, "total")
        for tx in candidates:
            if tx.id in used or tx.customer_id != sale.customer_id:
                continue
            if not _same_amount(_number(tx, "amount"), total):
                continue
            if window is not None and abs(tx.event_date() - sale.date) > window:
                continue
            used.add(tx.id)
            pairs.append(AmbiguousDuplicate(sale=sale, transaction=tx))
            break

    if pairs:
        log.warning(
            "%d customer payment(s) duplicate a cash/bank sale: %s",
            len(pairs),
            ", ".join(f"{p.transaction.id}~{p.sale.id}" for p in pairs),
        )
    return pairs


# ---------- Cash & bank ---------- #

def compute_cash_and_bank(
    sales: Iterable[Any],
    transactions: Iterable[Any],
    purchases: Iterable[Any],
    expenses: Iterable[Any],
    donations: Iterable[Any],
    opening_balances: Any,
    *,
    transfers: Iterable[Any] = (),
    as_of: Optional[Moment] = None,
    window_days: Optional[int] = DUPLICATE_WINDOW_DAYS,
) -> CashAndBank:
    """
    Cash and bank balances: opening figures plus every money movement dated
    between the opening reference date and ``as_of`` (both inclusive).

    Due sales move nothing; their money arrives when the matching receivable
    is marked Paid. Paid customer payments that duplicate a cash/bank sale are
    left out and returned in ``excluded_duplicates``.
    """
    opening = _coerce_one(opening_balances, OpeningBalances, "opening balances")
    sale_list = _coerce(sales, Sale, "sale")
    tx_list = _coerce(transactions, Transaction, "transaction")
    purchase_list = _coerce(purchases, Purchase, "purchase")
    expense_list = _coerce(expenses, Expense, "expense")
    donation_list = _coerce(donations, Donation, "donation")
    transfer_list = _coerce(transfers, Transfer, "transfer")

    since = _start_of(opening.reference_date)
    until = _end_of(as_of)

    buckets: Dict[str, List[float]] = {
        "Cash": [_number(opening, "cash")],
        "Bank": [_number(opening, "bank")],
    }

    # duplicates are searched over everything up to as_of: a sale already
    # folded into the opening figures still makes a later copy a duplicate
    duplicates = find_duplicate_cash_events(
        [s for s in sale_list if _within(s.date, None, until)],
        [t for t in tx_list if _within(t.event_date(), None, until)],
        window_days=window_days,
    )
    excluded = {d.transaction.id for d in duplicates}

    for s in sale_list:
        total = _number(s, "total")
        if _within(s.date, since, until) and s.payment_method in buckets:
            buckets[s.payment_method].append(total)

    for t in tx_list:
        amount = _number(t, "amount")
        if t.status != "Paid" or t.payment_method is None:
            continue
        if not _within(t.event_date(), since, until):
            continue
        if t.type == "Payable":
            buckets[t.payment_method].append(-amount)
        elif t.id not in excluded:
            buckets[t.payment_method].append(amount)

    for p in purchase_list:
        total = _number(p, "total")
        if _within(p.date, since, until) and p.payment_method in buckets:
            buckets[p.payment_method].append(-total)

    for e in expense_list:
        amount = _number(e, "amount")
        if _within(e.date, since, until):
            buckets[e.payment_method].append(-amount)

    for d in donation_list:
        amount = _number(d, "amount")
        if _within(d.date, since, until) and d.moves_money():
            buckets[d.payment_method].append(amount)

    for tr in transfer_list:
        amount = _number(tr, "amount")
        if _within(tr.date, since, until):
            buckets[tr.from_account].append(-amount)
            buckets[tr.to_account].append(amount)

    return CashAndBank(
        cash=math.fsum(buckets["Cash"]),
        bank=math.fsum(buckets["Bank"]),
        excluded_duplicates=duplicates,
    )


# ---------- Receivables / payables ---------- #

def _outstanding(tx: Transaction, until: Optional[datetime]) -> bool:
    if until is None:
        return tx.status == "Pending"
    if tx.due_date > until:
        return False
    return tx.status == "Pending" or tx.event_date() > until


def compute_receivables(transactions: Iterable[Any], *, as_of: Optional[Moment] = None) -> Receivables:
    """Pending receivables, in total and per customer (the customers' due balances)."""
    until = _end_of(as_of)
    amounts: List[float] = []
    grouped: Dict[str, List[float]] = {}
    for t in _coerce(transactions, Transaction, "transaction"):
        amount = _number(t, "amount")
        # a payment is money in, never money owed
        if t.type != "Receivable" or t.is_customer_payment():
            continue
        if not _outstanding(t, until):
            continue
        amounts.append(amount)
        if t.customer_id:
            grouped.setdefault(t.customer_id, []).append(amount)

    return Receivables(
        pending_amount=math.fsum(amounts),
        pending_count=len(amounts),
        by_customer={cid: math.fsum(v) for cid, v in sorted(grouped.items())},
    )


def compute_payables(transactions: Iterable[Any], *, as_of: Optional[Moment] = None) -> float:
    until = _end_of(as_of)
    amounts: List[float] = []
    for t in _coerce(transactions, Transaction, "transaction"):
        amount = _number(t, "amount")
        if t.type == "Payable" and _outstanding(t, until):
            amounts.append(amount)
    return math.fsum(amounts)


# ---------- Stock ---------- #

def compute_stock_value(books: Iterable[Any]) -> float:
    """Σ production_price * stock. The one stock valuation every report uses."""
    return math.fsum(
        _number(b, "production_price") * _number(b, "stock")
        for b in _coerce(books, Book, "book")
    )


def compute_closing_stock(
    books: Iterable[Any],
    sales: Iterable[Any],
    as_of: Moment,
    *,
    purchases: Iterable[Any] = (),
    sales_returns: Iterable[Any] = (),
) -> List[Book]:
    """
    Books with ``stock`` rolled back to what was on hand at ``as_of``:
    sales after the date are added back, purchases and returns after it
    taken out again. Never below zero.
    """
    until = _end_of(as_of)
    moved: Dict[str, int] = {}

    def shift(book_id: Optional[str], qty: int) -> None:
        if book_id:
            moved[book_id] = moved.get(book_id, 0) + qty

    for s in _coerce(sales, Sale, "sale"):
        if s.date > until:
            for it in s.items:
                shift(it.book_id, it.quantity)
    for p in _coerce(purchases, Purchase, "purchase"):
        if p.date > until:
            for pi in p.items:
                if pi.is_book():
                    shift(pi.book_id, -pi.quantity)
    for r in _coerce(sales_returns, SalesReturn, "sales return"):
        if r.date > until:
            for it in r.items:
                shift(it.book_id, -it.quantity)

    return [
        b.model_copy(update={"stock": max(0, b.stock + moved.get(b.id, 0))})
        for b in _coerce(books, Book, "book")
    ]


def compute_office_assets_value(purchases: Iterable[Any], *, as_of: Optional[Moment] = None) -> float:
    """Purchases categorised "Office Asset" as a whole, plus "Office Asset" lines of other purchases."""
    until = _end_of(as_of)
    wanted = OFFICE_ASSET_CATEGORY.casefold()
    amounts: List[float] = []
    for p in _coerce(purchases, Purchase, "purchase"):
        total = _number(p, "total")
        if not _within(p.date, None, until):
            continue
        if (p.category or "").strip().casefold() == wanted:
            amounts.append(total)
        else:
            amounts.extend(pi.subtotal() for pi in p.items if pi.category.strip().casefold() == wanted)
    return math.fsum(amounts)


# ---------- Profit ---------- #

def compute_gross_profit(sales: Iterable[Any], books: Iterable[Any], period: Union[Period, Moment]) -> GrossProfit:
    """
    Σ (item.price - book.production_price) * item.quantity over the sales of
    one calendar month. Items whose book no longer exists count as zero and
    come back in ``lookup_misses``.
    """
    p = _as_period(period)
    catalog = {b.id: b for b in _coerce(books, Book, "book")}
    contributions: List[float] = []
    misses: List[LookupMiss] = []

    for sale in _coerce(sales, Sale, "sale"):
        if not p.contains(sale.date):
            continue
        for item in sale.items:
            price = _number(item, "price")
            quantity = _number(item, "quantity")
            book = catalog.get(item.book_id)
            if book is None:
                misses.append(LookupMiss(
                    entity="book", missing_id=item.book_id, referenced_by=sale.id,
                    detail=f"{item.quantity} x {item.price:g}",
                ))
                continue
            contributions.append((price - _number(book, "production_price")) * quantity)

    misses.sort(key=lambda m: (m.referenced_by, m.missing_id))
    if misses:
        log.warning(
            "gross profit %s: %d sale item(s) reference unknown books (%s), counted as 0",
            p.label(), len(misses), ", ".join(sorted({m.missing_id for m in misses})),
        )
    return GrossProfit(amount=math.fsum(contributions), lookup_misses=misses)


def _gross_amount(gross_profit: Union[GrossProfit, float]) -> float:
    if isinstance(gross_profit, GrossProfit):
        return _number(gross_profit, "amount")
    return _finite(gross_profit, "gross_profit")


def compute_net_profit(
    gross_profit: Union[GrossProfit, float],
    expenses_in_period: Iterable[Any],
    *,
    period: Optional[Union[Period, Moment]] = None,
) -> float:
    """Gross profit minus operating expenses. Donations are not profit."""
    expenses = _coerce(expenses_in_period, Expense, "expense")
    if period is not None:
        expenses = in_period(expenses, period)
    return _gross_amount(gross_profit) - math.fsum(_number(e, "amount") for e in expenses)


def compute_net_result(
    gross_profit: Union[GrossProfit, float],
    expenses_in_period: Iterable[Any],
    donations_in_period: Iterable[Any],
    *,
    period: Optional[Union[Period, Moment]] = None,
) -> float:
    """Net profit with the period's donations added back (the monthly report's bottom line)."""
    donations = [d for d in _coerce(donations_in_period, Donation, "donation") if d.moves_money()]
    if period is not None:
        donations = in_period(donations, period)
    net = compute_net_profit(gross_profit, expenses_in_period, period=period)
    return net + math.fsum(_number(d, "amount") for d in donations)


# ---------- Balance sheet ---------- #

def compute_balance_sheet(
    cash: float,
    bank: float,
    receivables: Union[Receivables, float],
    stock_value: float,
    office_assets_value: float,
    payables: float,
) -> BalanceSheet:
    if isinstance(receivables, Receivables):
        receivables = receivables.pending_amount
    return BalanceSheet(
        cash=_finite(cash, "cash"),
        bank=_finite(bank, "bank"),
        receivables=_finite(receivables, "receivables"),
        stock_value=_finite(stock_value, "stock_value"),
        office_assets_value=_finite(office_assets_value, "office_assets_value"),
        payables=_finite(payables, "payables"),
    )


# ---------- Composite views ---------- #

def compute_dashboard_stats(snapshot: LedgerSnapshot, today: date) -> DashboardStats:
    period = Period.of(today)
    month_sales = in_period(snapshot.sales, period)
    month_expenses = in_period(snapshot.expenses, period)

    gross = compute_gross_profit(month_sales, snapshot.books, period)
    receivables = compute_receivables(snapshot.transactions)

    return DashboardStats(
        total_books_in_stock=sum(b.stock for b in snapshot.books),
        total_book_titles=len(snapshot.books),
        monthly_sales_value=math.fsum(_number(s, "total") for s in month_sales),
        monthly_sales_count=len(month_sales),
        monthly_expenses=math.fsum(_number(e, "amount") for e in month_expenses),
        gross_profit=gross.amount,
        net_profit=compute_net_profit(gross, month_expenses),
        receivables_amount=receivables.pending_amount,
        pending_receivables_count=sum(1 for v in receivables.by_customer.values() if v > 0),
        stock_value=compute_stock_value(snapshot.books),
        lookup_misses=gross.lookup_misses,
    )


def build_monthly_report(
    snapshot: LedgerSnapshot,
    opening_balances: Any,
    period: Union[Period, Moment],
    *,
    window_days: Optional[int] = DUPLICATE_WINDOW_DAYS,
) -> MonthlyReport:
    """
    Month activity plus the balances either side of it. Two bottom lines are
    kept apart: ``net_profit`` (gross - expenses) and ``net_result``
    (net profit + donations).
    """
    p = _as_period(period)
    opening = _coerce_one(opening_balances, OpeningBalances, "opening balances")
    eve = p.previous().end

    def cash_and_bank(as_of: datetime) -> CashAndBank:
        return compute_cash_and_bank(
            snapshot.sales, snapshot.transactions, snapshot.purchases,
            snapshot.expenses, snapshot.donations, opening,
            transfers=snapshot.transfers, as_of=as_of, window_days=window_days,
        )

    before = cash_and_bank(eve)
    after = cash_and_bank(p.end)
    excluded = {d.transaction.id for d in after.excluded_duplicates}

    month_sales = in_period(snapshot.sales, p)
    month_expenses = in_period(snapshot.expenses, p)
    month_donations = [d for d in in_period(snapshot.donations, p) if d.moves_money()]
    collected = [
        t for t in snapshot.transactions
        if t.type == "Receivable" and t.status == "Paid" and t.payment_method is not None
        and t.id not in excluded and p.contains(t.event_date())
    ]

    gross = compute_gross_profit(month_sales, snapshot.books, p)
    activity = MonthlyActivity(
        total_sales=math.fsum(_number(s, "total") for s in month_sales),
        sales_count=len(month_sales),
        gross_profit=gross.amount,
        received_payments_from_dues=math.fsum(_number(t, "amount") for t in collected),
        total_expenses=math.fsum(_number(e, "amount") for e in month_expenses),
        total_donations=math.fsum(_number(d, "amount") for d in month_donations),
    )
    opening_stock = compute_stock_value(compute_closing_stock(
        snapshot.books, snapshot.sales, eve, purchases=snapshot.purchases, sales_returns=snapshot.sales_returns,
    ))

    return MonthlyReport(
        year=p.year,
        month=p.month,
        opening_balances=OpeningBalances(
            cash=before.cash, bank=before.bank, stock_value=opening_stock, reference_date=p.start.date(),
        ),
        activity=activity,
        net_profit=compute_net_profit(gross, month_expenses),
        net_result=compute_net_result(gross, month_expenses, month_donations),
        closing_cash=after.cash,
        closing_bank=after.bank,
        lookup_misses=gross.lookup_misses,
        duplicates=[d for d in after.excluded_duplicates if p.contains(d.transaction.event_date())],
    )
