from __future__ import annotations

import itertools
import math
import random
from datetime import date, datetime

import pytest

from builders import make_payment, make_sale
from bookstore.errors import InvalidInput
from bookstore.models.book import Book
from bookstore.models.context import Period
from bookstore.models.donation import Donation
from bookstore.models.expense import Expense
from bookstore.models.purchase import Purchase, PurchaseItem
from bookstore.models.sale import Sale, SaleItem
from bookstore.models.sales_return import SalesReturn
from bookstore.models.settings import OpeningBalances
from bookstore.models.transaction import Transaction
from bookstore.models.transfer import Transfer
from bookstore.services import aggregator as agg

DEC = Period(year=2025, month=12)
ZERO = OpeningBalances()


def _cash_and_bank(sales=(), transactions=(), purchases=(), expenses=(), donations=(), opening=ZERO, **kw):
    return agg.compute_cash_and_bank(sales, transactions, purchases, expenses, donations, opening, **kw)


# ---------- cash & bank ---------- #

def test_cash_and_bank_buckets_by_payment_method():
    res = _cash_and_bank(
        sales=[make_sale(100, "Cash"), make_sale(250, "Bank"), make_sale(70, "Due")],
        purchases=[Purchase(total=40, payment_method="Cash", date=datetime(2025, 12, 2)),
                   Purchase(total=60, payment_method="Due", date=datetime(2025, 12, 2))],
        expenses=[Expense(amount=15, date=datetime(2025, 12, 3)),
                  Expense(amount=5, payment_method="Bank", date=datetime(2025, 12, 3))],
        donations=[Donation(amount=200, date=datetime(2025, 12, 4)),
                   Donation(amount=999, source="Initial Capital", date=datetime(2025, 12, 4)),
                   Donation(amount=999, donor_name="Internal Transfer", payment_method="Bank",
                            date=datetime(2025, 12, 4))],
        opening=OpeningBalances(cash=1000, bank=500),
    )
    assert res.cash == 1000 + 100 - 40 - 15 + 200
    assert res.bank == 500 + 250 - 5
    assert res.excluded_duplicates == []


def test_paid_payable_leaves_and_pending_payable_does_not():
    paid = Transaction(type="Payable", description="Purchase PUR-0001", amount=300, status="Paid",
                       payment_method="Bank", due_date=datetime(2025, 12, 5))
    pending = Transaction(type="Payable", description="Purchase PUR-0002", amount=800,
                          due_date=datetime(2025, 12, 5))
    res = _cash_and_bank(transactions=[paid, pending], opening=OpeningBalances(bank=1000))
    assert res.bank == 700
    assert res.cash == 0


def test_transfers_move_money_between_buckets_only():
    transfers = [
        Transfer(amount=400, from_account="Cash", to_account="Bank", date=datetime(2025, 12, 6)),
        Transfer.model_validate({"amount": 50, "from": "Bank", "to": "Cash", "date": "2025-12-07T10:00:00"}),
    ]
    res = _cash_and_bank(transfers=transfers, opening=OpeningBalances(cash=1000, bank=100))
    assert (res.cash, res.bank) == (650, 450)
    assert res.total == 1100


def test_cash_and_bank_is_insensitive_to_record_order():
    sales = [make_sale(amount, "Cash", sale_id=f"s{i}") for i, amount in enumerate([0.1, 0.2, 0.3, 1e16, 7.7, 3.3])]
    expected = _cash_and_bank(sales=sales)
    for perm in itertools.permutations(sales):
        assert _cash_and_bank(sales=list(perm)) == expected


def test_cash_and_bank_order_independence_across_all_collections():
    sales = [make_sale(a, m, sale_id=f"s{i}", customer_id=f"C{i % 3}")
             for i, (a, m) in enumerate([(0.1, "Cash"), (0.7, "Bank"), (12.35, "Cash"), (1800, "Cash"), (3.3, "Due")])]
    txs = [make_payment(1800, "C0", tx_id="t1"), make_payment(0.7, "C1", method="Bank", tx_id="t2"),
           make_payment(9.99, "C2", tx_id="t3")]
    expenses = [Expense(id=f"e{i}", amount=a, date=datetime(2025, 12, 9)) for i, a in enumerate([0.3, 0.1, 2.2])]

    expected = _cash_and_bank(sales=sales, transactions=txs, expenses=expenses)
    rng = random.Random(7)
    for _ in range(25):
        rng.shuffle(sales)
        rng.shuffle(txs)
        rng.shuffle(expenses)
        assert _cash_and_bank(sales=sales, transactions=txs, expenses=expenses) == expected


def test_records_before_reference_date_are_already_in_opening_balances():
    opening = OpeningBalances(cash=34891, reference_date=date(2025, 12, 1))
    res = _cash_and_bank(
        sales=[make_sale(500, "Cash", when=datetime(2025, 11, 30, 18)), make_sale(160, "Cash", when=datetime(2025, 12, 1, 9))],
        expenses=[Expense(amount=20, date=datetime(2025, 11, 29))],
        opening=opening,
    )
    assert res.cash == 34891 + 160


def test_as_of_cuts_off_later_records():
    sales = [make_sale(100, "Cash", when=datetime(2025, 12, 1)), make_sale(40, "Cash", when=datetime(2025, 12, 31, 23, 59))]
    assert _cash_and_bank(sales=sales, as_of=date(2025, 12, 30)).cash == 100
    assert _cash_and_bank(sales=sales, as_of=date(2025, 12, 31)).cash == 140


# ---------- reconciliation ---------- #

def test_payment_duplicating_a_cash_sale_is_counted_once():
    sale = make_sale(1800, "Cash", customer_id="C1")
    tx = make_payment(1800, customer_id="C1")

    pairs = agg.find_duplicate_cash_events([sale], [tx])
    assert len(pairs) == 1
    assert pairs[0].sale.id == sale.id
    assert pairs[0].transaction.id == tx.id
    assert pairs[0].amount == 1800

    res = _cash_and_bank(sales=[sale], transactions=[tx])
    assert res.cash == 1800
    assert [d.transaction.id for d in res.excluded_duplicates] == [tx.id]


def test_payment_for_a_due_sale_is_not_a_duplicate():
    cash_sale = make_sale(1800, "Cash", sale_id="s-cash")
    due_sale = make_sale(1800, "Due", sale_id="s-due", number="SALE-0002")
    collected = make_payment(1800, sale_id="SALE-0002")

    assert agg.find_duplicate_cash_events([cash_sale, due_sale], [collected]) == []
    assert _cash_and_bank(sales=[cash_sale, due_sale], transactions=[collected]).cash == 3600


def test_duplicate_needs_same_customer_amount_and_window():
    sale = make_sale(1800, "Cash", customer_id="C1", when=datetime(2025, 12, 10, 11))
    other_customer = make_payment(1800, customer_id="C2")
    other_amount = make_payment(1799.5, customer_id="C1")
    weeks_later = make_payment(1800, customer_id="C1", when=datetime(2025, 12, 28))
    txs = [other_customer, other_amount, weeks_later]

    assert agg.find_duplicate_cash_events([sale], txs) == []
    assert len(agg.find_duplicate_cash_events([sale], txs, window_days=None)) == 1


def test_duplicate_pairing_is_one_to_one():
    sales = [make_sale(1800, "Cash", sale_id="s1"), make_sale(1800, "Bank", sale_id="s2")]
    txs = [make_payment(1800, tx_id="t1"), make_payment(1800, tx_id="t2"), make_payment(1800, tx_id="t3")]
    pairs = agg.find_duplicate_cash_events(sales, txs)
    assert sorted((p.sale.id, p.transaction.id) for p in pairs) == [("s1", "t1"), ("s2", "t2")]

    res = _cash_and_bank(sales=sales, transactions=txs)
    # t3 has no sale left to shadow, so it is real money
    assert (res.cash, res.bank) == (1800 + 1800, 1800)


def test_due_sale_cash_arrives_once_when_receivable_is_paid():
    sale = make_sale(500, "Due", sale_id="s-500", when=datetime(2025, 12, 2, 10))
    pending = Transaction(id="r-500", type="Receivable", description="Due from SALE-0001", amount=500,
                          due_date=sale.date, customer_id="C1", sale_id=sale.id)

    before = _cash_and_bank(sales=[sale], transactions=[pending])
    assert before.cash == 0
    assert agg.compute_receivables([pending]).pending_amount == 500

    paid = pending.model_copy(update={"status": "Paid", "payment_method": "Cash", "paid_at": datetime(2025, 12, 20, 15)})
    after = _cash_and_bank(sales=[sale], transactions=[paid])
    assert after.cash == 500
    assert agg.compute_receivables([paid]).pending_amount == 0
    assert agg.compute_receivables([paid]).pending_count == 0
    # attributed to the payment, not to the sale
    assert _cash_and_bank(sales=[sale], transactions=[paid], as_of=date(2025, 12, 19)).cash == 0


# ---------- receivables / payables ---------- #

def test_receivables_group_by_customer_and_skip_payments():
    txs = [
        Transaction(type="Receivable", amount=100, customer_id="C1", description="Due from SALE-0001"),
        Transaction(type="Receivable", amount=50, customer_id="C1", description="Due from SALE-0003"),
        Transaction(type="Receivable", amount=70, customer_id="C2", description="Due from SALE-0004"),
        Transaction(type="Receivable", amount=70, customer_id="C2", status="Paid", payment_method="Cash"),
        Transaction(type="Payable", amount=900, description="Purchase PUR-0001"),
        make_payment(30, customer_id="C1"),
    ]
    rec = agg.compute_receivables(txs)
    assert rec.pending_amount == 220
    assert rec.pending_count == 3
    assert rec.by_customer == {"C1": 150, "C2": 70}
    assert agg.compute_payables(txs) == 900


def test_receivables_as_of_count_what_was_still_open():
    tx = Transaction(type="Receivable", amount=400, customer_id="C1", due_date=datetime(2025, 11, 5),
                     status="Paid", payment_method="Bank", paid_at=datetime(2025, 12, 15))
    assert agg.compute_receivables([tx], as_of=date(2025, 11, 4)).pending_amount == 0
    assert agg.compute_receivables([tx], as_of=date(2025, 11, 30)).pending_amount == 400
    assert agg.compute_receivables([tx], as_of=date(2025, 12, 15)).pending_amount == 0


# ---------- stock ---------- #

def test_stock_value_uses_production_price():
    books = [Book(title="A", stock=3, production_price=120.5), Book(title="B", stock=0, production_price=80),
             Book(title="C", stock=10, production_price=0.1)]
    assert agg.compute_stock_value(books) == math.fsum([361.5, 0, 1.0])
    assert agg.compute_stock_value([]) == 0


def test_closing_stock_adds_back_later_sales():
    books = [Book(id="b-poems", title="Poems", stock=6, production_price=180)]
    sales = [make_sale(300, when=datetime(2025, 11, 20)), make_sale(300, when=datetime(2025, 12, 3)),
             Sale(date=datetime(2025, 12, 4), items=[SaleItem(book_id="b-poems", quantity=2, price=300)])]
    closing = agg.compute_closing_stock(books, sales, date(2025, 11, 30))
    assert closing[0].stock == 6 + 1 + 2
    assert books[0].stock == 6
    assert agg.compute_stock_value(closing) == 9 * 180


def test_office_assets_come_from_categorised_purchases():
    purchases = [Purchase(total=12000, category="Office Asset", date=datetime(2025, 10, 1)),
                 Purchase(total=3000, category="office asset", date=datetime(2025, 12, 20)),
                 Purchase(total=5000, category="Books", date=datetime(2025, 10, 1))]
    assert agg.compute_office_assets_value(purchases) == 15000
    assert agg.compute_office_assets_value(purchases, as_of=date(2025, 11, 30)) == 12000


# ---------- profit ---------- #

BOOKS = [Book(id="b-poems", title="Poems", stock=5, price=300, production_price=180),
         Book(id="b-atlas", title="Atlas", stock=2, price=900, production_price=600)]


def test_gross_profit_over_empty_sales_is_zero():
    res = agg.compute_gross_profit([], BOOKS, DEC)
    assert res.amount == 0
    assert res.lookup_misses == []


def test_gross_profit_uses_calendar_month():
    sales = [
        make_sale(300, when=datetime(2025, 11, 30, 23, 59, 59)),
        make_sale(300, when=datetime(2025, 12, 1, 0, 0)),
        make_sale(300, when=datetime(2025, 12, 31, 23, 59, 59)),
        make_sale(300, when=datetime(2026, 1, 1, 0, 0)),
    ]
    assert agg.compute_gross_profit(sales, BOOKS, DEC).amount == 2 * (300 - 180)
    assert agg.compute_gross_profit(sales, BOOKS, date(2025, 11, 15)).amount == 120


def test_unknown_book_counts_zero_and_is_reported(caplog):
    sale = Sale(id="s-mixed", date=datetime(2025, 12, 8), items=[
        SaleItem(book_id="b-poems", quantity=2, price=300),
        SaleItem(book_id="b-deleted", quantity=1, price=450),
        SaleItem(book_id="b-atlas", quantity=1, price=850),
    ])
    with caplog.at_level("WARNING"):
        res = agg.compute_gross_profit([sale], BOOKS, DEC)

    assert res.amount == 2 * 120 + 250
    assert len(res.lookup_misses) == 1
    miss = res.lookup_misses[0]
    assert (miss.entity, miss.missing_id, miss.referenced_by) == ("book", "b-deleted", "s-mixed")
    assert "b-deleted" in caplog.text


def test_net_profit_and_net_result_stay_separate():
    expenses = [Expense(amount=100, date=datetime(2025, 12, 2)), Expense(amount=40, date=datetime(2025, 11, 2))]
    donations = [Donation(amount=2000, date=datetime(2025, 12, 5)),
                 Donation(amount=500, source="Initial Capital", date=datetime(2025, 12, 5))]

    assert agg.compute_net_profit(1000, expenses, period=DEC) == 900
    assert agg.compute_net_profit(1000, expenses) == 860
    assert agg.compute_net_result(1000, expenses, donations, period=DEC) == 2900


# ---------- balance sheet ---------- #

def test_balance_sheet_equity_is_the_remainder():
    sheet = agg.compute_balance_sheet(cash=65191, bank=12000, receivables=4300, stock_value=88000,
                                      office_assets_value=15000, payables=9000)
    assert sheet.total_assets == 65191 + 12000 + 4300 + 88000 + 15000
    assert sheet.equity == sheet.total_assets - 9000
    assert sheet.total_assets == sheet.payables + sheet.equity
    assert set(sheet.model_dump()) >= {"total_assets", "equity"}


def test_balance_sheet_identity_holds_for_generated_sheets():
    rng = random.Random(2025)
    for _ in range(200):
        values = [round(rng.uniform(0, 1e6), 2) for _ in range(6)]
        sheet = agg.compute_balance_sheet(*values)
        assert sheet.payables + sheet.equity == pytest.approx(sheet.total_assets, abs=1e-6)


def test_balance_sheet_accepts_receivables_summary():
    rec = agg.compute_receivables([Transaction(type="Receivable", amount=75, customer_id="C1")])
    assert agg.compute_balance_sheet(0, 0, rec, 0, 0, 0).receivables == 75


# ---------- invalid input ---------- #

def test_raw_dicts_are_validated_on_the_way_in():
    sales = [{"id": "s1", "date": "2025-12-03T10:00:00", "paymentMethod": "Bank", "customerId": "C9",
              "items": [{"bookId": "b-poems", "quantity": 2, "price": 300}], "total": 600}]
    assert _cash_and_bank(sales=sales).bank == 600


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), None])
def test_non_finite_or_missing_amount_fails_the_whole_call(bad):
    expenses = [{"amount": 10, "date": "2025-12-01T00:00:00"}, {"amount": bad, "date": "2025-12-01T00:00:00"}]
    with pytest.raises(InvalidInput):
        _cash_and_bank(expenses=expenses)


def test_unvalidated_models_are_still_checked():
    broken = Sale.model_construct(id="s-x", date=datetime(2025, 12, 1), payment_method="Cash", items=[], total=None)
    with pytest.raises(InvalidInput) as exc:
        _cash_and_bank(sales=[broken])
    assert exc.value.field == "total"

    with pytest.raises(InvalidInput):
        agg.compute_balance_sheet(1, 2, 3, float("nan"), 0, 0)
    with pytest.raises(InvalidInput):
        agg.compute_net_profit(float("inf"), [])


def test_missing_opening_balances_is_invalid():
    with pytest.raises(InvalidInput):
        agg.compute_cash_and_bank([], [], [], [], [], None)


def test_closing_stock_takes_back_later_purchases_and_returns():
    books = [Book(id="b-poems", title="Poems", stock=12, production_price=180)]
    purchases = [Purchase(date=datetime(2025, 12, 5), items=[
        PurchaseItem(book_id="b-poems", quantity=5, cost=180),
        PurchaseItem(item_name="Shelf", quantity=1, cost=4000, category="Office Asset"),
    ])]
    returns = [SalesReturn(customer_id="C1", date=datetime(2025, 12, 6),
                           items=[SaleItem(book_id="b-poems", quantity=1, price=300)])]
    sales = [make_sale(300, when=datetime(2025, 12, 7))]

    closing = agg.compute_closing_stock(books, sales, date(2025, 11, 30), purchases=purchases, sales_returns=returns)
    assert closing[0].stock == 12 + 1 - 5 - 1
    assert agg.compute_closing_stock(books, [], date(2025, 11, 30), purchases=purchases * 3)[0].stock == 0


def test_office_asset_lines_inside_mixed_purchases():
    purchases = [Purchase(date=datetime(2025, 12, 5), items=[
        PurchaseItem(book_id="b-poems", quantity=5, cost=180),
        PurchaseItem(item_name="Shelf", quantity=2, cost=4000, category="Office Asset"),
    ])]
    assert agg.compute_office_assets_value(purchases) == 8000
