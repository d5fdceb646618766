from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from bookstore.config import OPENING_BALANCE_LABEL
from bookstore.errors import InvalidInput, RecordNotFound
from bookstore.loggers import get_logger
from bookstore.models.context import OwnerContext
from bookstore.models.customer import Customer
from bookstore.models.transaction import Transaction
from bookstore.services.aggregator import AMOUNT_TOLERANCE, compute_receivables
from bookstore.services.record_service import RecordService

log = get_logger("bookstore.customers")


class CustomerService:
    """
    Customers, with ``due_balance`` always recomputed from pending receivables.

    A customer's ``opening_balance`` is booked once as a Pending receivable
    ("Opening balance"), so it is collected like any other due.
    """

    def __init__(self, records: Optional[RecordService] = None) -> None:
        self.records = records or RecordService()

    def _with_due(self, ctx: OwnerContext, customers: List[Customer]) -> List[Customer]:
        dues = compute_receivables(self.records.list(ctx, "transactions")).by_customer
        # the stored value is a stale cache, never trusted
        return [c.model_copy(update={"due_balance": dues.get(c.id, 0.0)}) for c in customers]

    def _opening_receivables(self, ctx: OwnerContext, customer_id: str) -> List[Transaction]:
        return [
            t for t in self.records.list(ctx, "transactions")
            if t.type == "Receivable" and t.customer_id == customer_id and t.description == OPENING_BALANCE_LABEL
        ]

    def _book_opening_balance(self, ctx: OwnerContext, customer: Customer) -> None:
        self.records.add(ctx, "transactions", Transaction(
            type="Receivable",
            description=OPENING_BALANCE_LABEL,
            amount=customer.opening_balance,
            due_date=datetime.now(),
            customer_id=customer.id,
        ))

    def list_customers(self, ctx: OwnerContext) -> List[Customer]:
        customers = sorted(self.records.list(ctx, "customers"), key=lambda c: c.name.casefold())
        return self._with_due(ctx, customers)

    def list_with_due(self, ctx: OwnerContext) -> List[Customer]:
        due = [c for c in self.list_customers(ctx) if c.due_balance > 0]
        return sorted(due, key=lambda c: c.due_balance, reverse=True)

    def get_by_id(self, ctx: OwnerContext, customer_id: str) -> Customer:
        customer = self.records.get(ctx, "customers", customer_id)
        return self._with_due(ctx, [customer])[0]

    def add_customer(self, ctx: OwnerContext, customer: Customer) -> Customer:
        saved = self.records.add(ctx, "customers", customer.model_copy(update={"due_balance": 0.0}))
        if saved.opening_balance > 0:
            self._book_opening_balance(ctx, saved)
        return self._with_due(ctx, [saved])[0]

    def update_customer(self, ctx: OwnerContext, customer: Customer) -> Customer:
        row = self.records.repo(ctx, "customers").get_by_id(customer.id)
        if row is None:
            raise RecordNotFound("customer", customer.id)
        before = self.records.hydrate("customers", row).opening_balance

        if abs(customer.opening_balance - before) > AMOUNT_TOLERANCE:
            booked = self._opening_receivables(ctx, customer.id)
            if not booked:
                if before > AMOUNT_TOLERANCE:
                    raise InvalidInput(f"opening balance of {customer.id} was settled; it can no longer change",
                                       record=customer, field="opening_balance")
                self._book_opening_balance(ctx, customer)
            elif len(booked) == 1 and booked[0].status == "Pending" and abs(booked[0].amount - before) <= AMOUNT_TOLERANCE:
                if customer.opening_balance > 0:
                    self.records.save(ctx, "transactions", booked[0].model_copy(update={"amount": customer.opening_balance}))
                else:
                    self.records.delete(ctx, "transactions", booked[0].id)
            else:
                raise InvalidInput(f"opening balance of {customer.id} is partly collected; it can no longer change",
                                   record=customer, field="opening_balance")
            log.info("opening balance of %s changed %.2f -> %.2f", customer.id, before, customer.opening_balance)

        saved = self.records.save(ctx, "customers", customer.model_copy(update={"due_balance": 0.0}))
        return self._with_due(ctx, [saved])[0]

    def delete_customer(self, ctx: OwnerContext, customer_id: str) -> bool:
        return self.records.delete(ctx, "customers", customer_id)
