from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from bookstore.config import (
    CUSTOMER_PAYMENT_PREFIX,
    DEFAULT_MARKUP,
    PURCHASE_NUMBER_PREFIX,
    RETURN_CREDIT_PREFIX,
    RETURN_NUMBER_PREFIX,
    SALE_DUE_PREFIX,
    SALE_NUMBER_PREFIX,
)
from bookstore.errors import InvalidInput, RecordNotFound
from bookstore.loggers import get_logger
from bookstore.models.book import Book
from bookstore.models.common import Account
from bookstore.models.context import OwnerContext
from bookstore.models.donation import Donation
from bookstore.models.expense import Expense
from bookstore.models.purchase import Purchase
from bookstore.models.sale import Sale
from bookstore.models.sales_return import SalesReturn
from bookstore.models.transaction import Transaction
from bookstore.models.transfer import Transfer
from bookstore.services.aggregator import AMOUNT_TOLERANCE, find_duplicate_cash_events
from bookstore.services.record_service import RecordService

log = get_logger("bookstore.workflow")

# ("add" | "save", record) pairs, applied once a whole operation is known to be valid
Writes = List[Tuple[str, Transaction]]


class WorkflowService:
    """
    Write paths. Each economic event lands in exactly one record:
      - a Cash/Bank sale carries its own payment, nothing else is written
      - a Due sale writes one Pending receivable linked by ``sale_id``
      - collecting a due flips that receivable to Paid (split when partial),
        whichever entry point is used; no parallel "payment" record is
        created for the settled amount
    """

    def __init__(self, records: Optional[RecordService] = None) -> None:
        self.records = records or RecordService()

    # ---------- numbering ---------- #

    def _next_number(self, ctx: OwnerContext, collection: str, prefix: str) -> str:
        max_n = 0
        for row in self.records.repo(ctx, collection).list_all():
            num = row.get("number") or ""
            if isinstance(num, str) and num.startswith(prefix):
                tail = num[len(prefix):]
                if tail.isdigit():
                    max_n = max(max_n, int(tail))
        return f"{prefix}{max_n + 1:04d}"

    # ---------- lookups ---------- #

    def _require_customer(self, ctx: OwnerContext, customer_id: Optional[str]) -> None:
        if customer_id and self.records.repo(ctx, "customers").get_by_id(customer_id) is None:
            raise RecordNotFound("customer", customer_id)

    def _find_sale(self, ctx: OwnerContext, ref: str) -> Optional[Sale]:
        """A sale by id or by its SALE-NNNN number."""
        row = self.records.repo(ctx, "sales").find_one(lambda r: r.get("id") == ref or r.get("number") == ref)
        return self.records.hydrate("sales", row) if row else None

    def _sale_receivables(self, ctx: OwnerContext, sale: Sale) -> List[Transaction]:
        # unnumbered sales (imports) are only reachable by id
        keys = {k for k in (sale.id, sale.number) if k}
        return [
            t for t in self.records.list(ctx, "transactions")
            if t.type == "Receivable" and t.sale_id in keys
        ]

    def _pending_receivables(self, ctx: OwnerContext, customer_id: str) -> List[Transaction]:
        """Oldest first."""
        return sorted(
            (
                t for t in self.records.list(ctx, "transactions")
                if t.type == "Receivable" and t.status == "Pending" and t.customer_id == customer_id
            ),
            key=lambda t: (t.due_date, t.id),
        )

    def _apply(self, ctx: OwnerContext, writes: Writes) -> None:
        for op, tx in writes:
            if op == "add":
                self.records.add(ctx, "transactions", tx)
            else:
                self.records.save(ctx, "transactions", tx)

    # ---------- settlement ---------- #

    @staticmethod
    def _settle(
        pending: Iterable[Transaction],
        amount: float,
        *,
        payment_method: Optional[Account],
        at: datetime,
        label: str,
    ) -> Tuple[Writes, List[Transaction], float]:
        """
        Plans how ``amount`` closes ``pending`` receivables, in the given order.

        Fully covered receivables become Paid. The first one only partly
        covered is split into a Paid part (described ``"<label> <ref>"``)
        and a smaller Pending remainder with the same ``sale_id``. Returns
        the writes, the Paid records and what is left of ``amount``.
        ``payment_method=None`` closes receivables without moving money.
        """
        writes: Writes = []
        settled: List[Transaction] = []
        remaining = amount
        for rec in pending:
            if remaining <= AMOUNT_TOLERANCE:
                break
            if remaining >= rec.amount - AMOUNT_TOLERANCE:
                paid = rec.model_copy(update={"status": "Paid", "payment_method": payment_method, "paid_at": at})
                writes.append(("save", paid))
                settled.append(paid)
                remaining -= rec.amount
                continue
            ref = rec.description.replace(SALE_DUE_PREFIX, "", 1).strip() or rec.id
            writes.append(("save", rec.model_copy(update={"amount": rec.amount - remaining})))
            part = Transaction(
                type="Receivable",
                description=f"{label} {ref}",
                amount=remaining,
                due_date=rec.due_date,
                status="Paid",
                customer_id=rec.customer_id,
                sale_id=rec.sale_id,
                payment_method=payment_method,
                paid_at=at,
            )
            writes.append(("add", part))
            settled.append(part)
            remaining = 0.0
        return writes, settled, max(remaining, 0.0)

    # ---------- books ---------- #

    def add_book(self, ctx: OwnerContext, book: Book) -> Book:
        return self.records.add(ctx, "books", book)

    def update_book(self, ctx: OwnerContext, book: Book) -> Book:
        self.records.repo(ctx, "books").require(book.id)
        return self.records.save(ctx, "books", book)

    # ---------- sales ---------- #

    def record_sale(self, ctx: OwnerContext, sale: Sale) -> Tuple[Sale, Optional[Transaction]]:
        if not sale.items:
            raise InvalidInput("a sale needs at least one item", record=sale)
        self._require_customer(ctx, sale.customer_id)

        # 1) stock check over the whole sale before touching anything
        books: Dict[str, Book] = {b.id: b for b in self.records.list(ctx, "books")}
        wanted: Dict[str, int] = {}
        for item in sale.items:
            if item.book_id not in books:
                raise RecordNotFound("book", item.book_id)
            wanted[item.book_id] = wanted.get(item.book_id, 0) + item.quantity
        for book_id, qty in wanted.items():
            book = books[book_id]
            if book.stock < qty:
                raise InvalidInput(
                    f"Not enough stock for {book.title}. Available: {book.stock}, Requested: {qty}",
                    record=sale, field="items",
                )

        # 2) the sale itself
        if not sale.number:
            sale = sale.model_copy(update={"number": self._next_number(ctx, "sales", SALE_NUMBER_PREFIX)})
        saved: Sale = self.records.add(ctx, "sales", sale)

        # 3) exactly one receivable for a Due sale
        receivable: Optional[Transaction] = None
        if saved.payment_method == "Due":
            receivable = self.records.add(ctx, "transactions", Transaction(
                type="Receivable",
                description=f"{SALE_DUE_PREFIX} {saved.number}",
                amount=saved.total,
                due_date=saved.date,
                status="Pending",
                customer_id=saved.customer_id,
                sale_id=saved.id,
            ))

        # 4) stock out
        for book_id, qty in wanted.items():
            book = books[book_id]
            self.records.save(ctx, "books", book.model_copy(update={"stock": book.stock - qty}))

        log.info("sale %s recorded: %s %.2f (%s)", saved.number, saved.payment_method, saved.total, ctx.owner_id)
        return saved, receivable

    def delete_sale(self, ctx: OwnerContext, sale_id: str) -> None:
        sale = self._find_sale(ctx, sale_id)
        if sale is None:
            raise RecordNotFound("sale", sale_id)
        linked = self._sale_receivables(ctx, sale)
        if any(t.status == "Paid" for t in linked):
            raise InvalidInput(f"sale {sale.number or sale.id} has collected payments; reverse them first", record=sale)

        books = self.records.repo(ctx, "books")
        for item in sale.items:
            row = books.get_by_id(item.book_id)
            if row is None:
                log.warning("sale %s: book %s is gone, stock not restored", sale.id, item.book_id)
                continue
            row["stock"] = int(row.get("stock") or 0) + item.quantity
            books.update(row)

        for t in linked:
            self.records.delete(ctx, "transactions", t.id)
        self.records.delete(ctx, "sales", sale.id)
        log.info("sale %s deleted with %d receivable(s)", sale.number or sale.id, len(linked))

    # ---------- sales returns ---------- #

    def record_sales_return(self, ctx: OwnerContext, ret: SalesReturn) -> Tuple[SalesReturn, List[Transaction]]:
        """
        Puts the books back in stock and credits the customer with the
        return value: the sale's own pending receivable first, then the
        customer's other pending receivables oldest first. Credit left over
        becomes a Pending payable owed to the customer. Returns the return
        and the transaction records written.
        """
        if not ret.items:
            raise InvalidInput("a return needs at least one item", record=ret)
        self._require_customer(ctx, ret.customer_id)

        books: Dict[str, Book] = {b.id: b for b in self.records.list(ctx, "books")}
        back: Dict[str, int] = {}
        for item in ret.items:
            if item.book_id not in books:
                raise RecordNotFound("book", item.book_id)
            back[item.book_id] = back.get(item.book_id, 0) + item.quantity

        sale: Optional[Sale] = None
        if ret.sale_id:
            sale = self._find_sale(ctx, ret.sale_id)
            if sale is None:
                raise RecordNotFound("sale", ret.sale_id)
            if sale.customer_id != ret.customer_id:
                raise InvalidInput(f"sale {sale.number or sale.id} belongs to another customer", record=ret)
            self._check_returnable(ctx, sale, back, ret)

        if not ret.number:
            ret = ret.model_copy(update={"number": self._next_number(ctx, "sales_returns", RETURN_NUMBER_PREFIX)})

        pending = self._pending_receivables(ctx, ret.customer_id)
        if sale is not None:
            keys = {k for k in (sale.id, sale.number) if k}
            pending.sort(key=lambda t: t.sale_id not in keys)  # stable: the sale's own receivable first
        writes, written, credit = self._settle(
            pending, ret.total, payment_method=None, at=ret.date, label=f"Return {ret.number} against",
        )
        if credit > AMOUNT_TOLERANCE:
            owed = Transaction(
                type="Payable",
                description=f"{RETURN_CREDIT_PREFIX} {ret.number}",
                amount=credit,
                due_date=ret.date,
                customer_id=ret.customer_id,
            )
            writes.append(("add", owed))
            written.append(owed)

        saved: SalesReturn = self.records.add(ctx, "sales_returns", ret)
        self._apply(ctx, writes)
        for book_id, qty in back.items():
            book = books[book_id]
            self.records.save(ctx, "books", book.model_copy(update={"stock": book.stock + qty}))

        log.info("return %s from %s: %.2f credited (%s)", saved.number, saved.customer_id, saved.total, ctx.owner_id)
        return saved, written

    def _check_returnable(self, ctx: OwnerContext, sale: Sale, back: Dict[str, int], ret: SalesReturn) -> None:
        keys = {k for k in (sale.id, sale.number) if k}
        returned: Dict[str, int] = {}
        for r in self.records.list(ctx, "sales_returns"):
            if r.sale_id in keys:
                for it in r.items:
                    returned[it.book_id] = returned.get(it.book_id, 0) + it.quantity
        sold: Dict[str, int] = {}
        for it in sale.items:
            sold[it.book_id] = sold.get(it.book_id, 0) + it.quantity
        for book_id, qty in back.items():
            left = sold.get(book_id, 0) - returned.get(book_id, 0)
            if qty > left:
                raise InvalidInput(
                    f"sale {sale.number or sale.id}: cannot return {qty} of {book_id}, {left} left to return",
                    record=ret, field="items",
                )

    # ---------- receivables / payables ---------- #

    def _check_transaction(self, ctx: OwnerContext, tx: Transaction) -> None:
        self._require_customer(ctx, tx.customer_id)
        if tx.status == "Paid" and tx.payment_method is None:
            raise InvalidInput("a Paid transaction needs a payment_method", record=tx, field="payment_method")

        if tx.type == "Receivable" and tx.sale_id:
            sale = self._find_sale(ctx, tx.sale_id)
            if sale is None:
                raise RecordNotFound("sale", tx.sale_id)
            if sale.payment_method != "Due":
                raise InvalidInput(
                    f"sale {sale.number or sale.id} was paid by {sale.payment_method}; it has nothing to collect",
                    record=tx, field="sale_id",
                )
            if tx.status == "Pending" and any(t.status == "Pending" for t in self._sale_receivables(ctx, sale)):
                raise InvalidInput(f"sale {sale.number or sale.id} already has a pending receivable", record=tx)
            return

        if tx.is_customer_payment():
            dup = find_duplicate_cash_events(self.records.list(ctx, "sales"), [tx])
            if dup:
                sale = dup[0].sale
                log.warning("refused payment %s: same money as sale %s", tx.id, sale.number or sale.id)
                raise InvalidInput(
                    f"payment of {tx.amount:g} from customer {tx.customer_id} is already counted by "
                    f"{sale.payment_method} sale {sale.number or sale.id}",
                    record=tx,
                )

    def _collect_for_sale(self, ctx: OwnerContext, tx: Transaction) -> Transaction:
        # money for a Due sale closes that sale's receivable instead of standing beside it
        sale = self._find_sale(ctx, tx.sale_id)
        pending = sorted(
            (t for t in self._sale_receivables(ctx, sale) if t.status == "Pending"),
            key=lambda t: (t.due_date, t.id),
        )
        outstanding = math.fsum(t.amount for t in pending)
        if tx.amount <= AMOUNT_TOLERANCE or tx.amount > outstanding + AMOUNT_TOLERANCE:
            raise InvalidInput(
                f"payment of {tx.amount:g} for sale {sale.number or sale.id} does not fit "
                f"the {outstanding:g} still due",
                record=tx, field="amount",
            )
        writes, settled, _ = self._settle(
            pending, tx.amount, payment_method=tx.payment_method, at=tx.paid_at, label="Partial payment for",
        )
        self._apply(ctx, writes)
        log.info("collected %.2f for sale %s (%s)", tx.amount, sale.number or sale.id, ctx.owner_id)
        return settled[0]

    def add_transaction(self, ctx: OwnerContext, tx: Transaction) -> Transaction:
        """
        Writes a receivable or payable. A Paid receivable linked to a Due
        sale is not stored as such: it settles the sale's pending
        receivable, and the resulting Paid record is returned.
        """
        self._check_transaction(ctx, tx)
        if tx.status == "Paid" and tx.paid_at is None:
            tx = tx.model_copy(update={"paid_at": tx.due_date})
        if tx.type == "Receivable" and tx.status == "Paid" and tx.sale_id:
            return self._collect_for_sale(ctx, tx)
        return self.records.add(ctx, "transactions", tx)

    def mark_transaction_paid(
        self,
        ctx: OwnerContext,
        tx_id: str,
        payment_method: Account,
        at: Optional[datetime] = None,
    ) -> Transaction:
        tx: Transaction = self.records.get(ctx, "transactions", tx_id)
        if tx.status == "Paid":
            raise InvalidInput(f"transaction {tx_id} is already paid", record=tx)
        paid = tx.model_copy(update={
            "status": "Paid",
            "payment_method": payment_method,
            "paid_at": at or datetime.now(),
        })
        return self.records.save(ctx, "transactions", paid)

    def delete_transaction(self, ctx: OwnerContext, tx_id: str) -> bool:
        return self.records.delete(ctx, "transactions", tx_id)

    def receive_payment(
        self,
        ctx: OwnerContext,
        customer_id: str,
        amount: float,
        payment_method: Account,
        at: Optional[datetime] = None,
    ) -> List[Transaction]:
        """
        Settles the customer's pending receivables, oldest first.

        Money left after every receivable is settled is kept as a Paid
        "Payment from customer" advance. An advance that looks like a
        cash/bank sale of the same customer is still written; the cash
        audit reports the pair. Returns the Paid records written.
        """
        if amount is None or not math.isfinite(amount) or amount <= 0:
            raise InvalidInput(f"payment amount must be a positive number, got {amount!r}", field="amount")
        self._require_customer(ctx, customer_id)
        at = at or datetime.now()

        writes, settled, remaining = self._settle(
            self._pending_receivables(ctx, customer_id), amount,
            payment_method=payment_method, at=at, label="Partial payment for",
        )
        if remaining > AMOUNT_TOLERANCE:
            advance = Transaction(
                type="Receivable",
                description=CUSTOMER_PAYMENT_PREFIX,
                amount=remaining,
                due_date=at,
                status="Paid",
                customer_id=customer_id,
                payment_method=payment_method,
                paid_at=at,
            )
            if find_duplicate_cash_events(self.records.list(ctx, "sales"), [advance]):
                log.warning("advance of %.2f from %s matches a cash/bank sale; left for the cash audit",
                            remaining, customer_id)
            writes.append(("add", advance))
            settled.append(advance)

        self._apply(ctx, writes)
        log.info("payment %.2f (%s) from %s settled %d record(s)", amount, payment_method, customer_id, len(settled))
        return settled

    # ---------- purchases ---------- #

    def _restock(self, ctx: OwnerContext, purchase: Purchase) -> Tuple[Purchase, Dict[str, Book]]:
        """Resolves book lines to catalogue books (creating missing ones) and plans their new stock."""
        catalog: Dict[str, Book] = {b.id: b for b in self.records.list(ctx, "books")}
        by_title = {b.title.strip().casefold(): b.id for b in catalog.values()}
        touched: Dict[str, Book] = {}
        items = []
        for item in purchase.items:
            if not item.is_book():
                items.append(item)
                continue
            if item.book_id:
                if item.book_id not in catalog:
                    raise RecordNotFound("book", item.book_id)
                book_id = item.book_id
            else:
                book_id = by_title.get(item.item_name.strip().casefold())
                if book_id is None:
                    new = Book(
                        title=item.item_name.strip(),
                        author=item.author,
                        stock=0,
                        production_price=item.cost,
                        price=round(item.cost * DEFAULT_MARKUP, 2),
                    )
                    catalog[new.id] = new
                    by_title[new.title.casefold()] = new.id
                    book_id = new.id
            book = touched.get(book_id, catalog[book_id])
            touched[book_id] = book.model_copy(update={"stock": book.stock + item.quantity})
            items.append(item.model_copy(update={"book_id": book_id}))
        return purchase.model_copy(update={"items": items}), touched

    def add_purchase(self, ctx: OwnerContext, purchase: Purchase) -> Tuple[Purchase, Optional[Transaction]]:
        """
        Book lines go into stock (unknown titles become new books). A Due
        purchase writes one Pending payable; paid purchases write nothing else.
        """
        purchase, restocked = self._restock(ctx, purchase)
        if not purchase.number:
            purchase = purchase.model_copy(update={"number": self._next_number(ctx, "purchases", PURCHASE_NUMBER_PREFIX)})
        saved: Purchase = self.records.add(ctx, "purchases", purchase)
        for book in restocked.values():
            self.records.save(ctx, "books", book)

        payable: Optional[Transaction] = None
        if saved.payment_method == "Due":
            label = f"Purchase {saved.number}" + (f" from {saved.supplier}" if saved.supplier else "")
            payable = self.records.add(ctx, "transactions", Transaction(
                type="Payable",
                description=label,
                amount=saved.total,
                due_date=saved.due_date or saved.date,
            ))
        if restocked:
            log.info("purchase %s restocked %d book(s)", saved.number, len(restocked))
        return saved, payable

    # ---------- other money movements ---------- #

    def add_expense(self, ctx: OwnerContext, expense: Expense) -> Expense:
        return self.records.add(ctx, "expenses", expense)

    def add_donation(self, ctx: OwnerContext, donation: Donation) -> Donation:
        return self.records.add(ctx, "donations", donation)

    def add_transfer(self, ctx: OwnerContext, transfer: Transfer) -> Transfer:
        return self.records.add(ctx, "transfers", transfer)
