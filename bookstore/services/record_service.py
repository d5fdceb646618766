from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from bookstore.config import DATA_DIR
from bookstore.errors import InvalidInput, RecordNotFound, invalid_from_validation
from bookstore.loggers import get_logger
from bookstore.models.book import Book
from bookstore.models.context import OwnerContext
from bookstore.models.customer import Customer
from bookstore.models.donation import Donation
from bookstore.models.expense import Expense
from bookstore.models.purchase import Purchase
from bookstore.models.sale import Sale
from bookstore.models.sales_return import SalesReturn
from bookstore.models.summary import LedgerSnapshot
from bookstore.models.transaction import Transaction
from bookstore.models.transfer import Transfer
from bookstore.storage.json_repo import JsonRepository

log = get_logger("bookstore.records")

# collection name -> (model, entity label, field used to order pages)
COLLECTIONS: Dict[str, Tuple[Type[BaseModel], str, str]] = {
    "books": (Book, "book", "title"),
    "sales": (Sale, "sale", "date"),
    "purchases": (Purchase, "purchase", "date"),
    "expenses": (Expense, "expense", "date"),
    "donations": (Donation, "donation", "date"),
    "transactions": (Transaction, "transaction", "due_date"),
    "transfers": (Transfer, "transfer", "date"),
    "customers": (Customer, "customer", "name"),
    "sales_returns": (SalesReturn, "sales return", "date"),
}


class RecordService:
    """
    Owner-scoped record fetch. Each owner gets ``<data_dir>/<owner_id>/`` with
    one JSON file per collection; nothing is shared between owners.
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None) -> None:
        self.data_dir = Path(data_dir) if data_dir else DATA_DIR
        self._repos: Dict[Tuple[str, str], JsonRepository] = {}

    def owner_dir(self, ctx: OwnerContext) -> Path:
        return self.data_dir / ctx.owner_id

    def repo(self, ctx: OwnerContext, collection: str) -> JsonRepository:
        if collection not in COLLECTIONS:
            raise KeyError(f"unknown collection '{collection}'")
        key = (ctx.owner_id, collection)
        if key not in self._repos:
            _, entity, _ = COLLECTIONS[collection]
            self._repos[key] = JsonRepository(
                self.owner_dir(ctx) / f"{collection}.json", entity_name=entity, key="id"
            )
        return self._repos[key]

    # ---------- hydration ---------- #

    @staticmethod
    def hydrate(collection: str, row: Dict[str, Any]) -> Any:
        model, entity, _ = COLLECTIONS[collection]
        try:
            return model.model_validate(row)
        except ValidationError as e:
            log.error("invalid %s row %s: %s", entity, row.get("id"), e.errors()[:1])
            raise invalid_from_validation(entity, e, record=row) from e

    # ---------- reads ---------- #

    def list(self, ctx: OwnerContext, collection: str) -> List[Any]:
        return [self.hydrate(collection, r) for r in self.repo(ctx, collection).list_all()]

    def get(self, ctx: OwnerContext, collection: str, record_id: str) -> Any:
        row = self.repo(ctx, collection).require(record_id)
        return self.hydrate(collection, row)

    def page(
        self,
        ctx: OwnerContext,
        collection: str,
        *,
        limit: int = 10,
        after_id: Optional[str] = None,
    ) -> Tuple[List[Any], bool]:
        """
        One page of a collection, newest first (books/customers: by name).
        ``after_id`` is the last id of the previous page; returns
        ``(records, has_more)``.
        """
        if limit < 1:
            raise InvalidInput(f"page limit must be >= 1, got {limit}")
        _, _, order_field = COLLECTIONS[collection]
        newest_first = order_field not in ("title", "name")

        records = self.list(ctx, collection)
        records.sort(
            key=lambda r: (getattr(r, order_field), r.id),
            reverse=newest_first,
        )
        start = 0
        if after_id is not None:
            ids = [r.id for r in records]
            if after_id not in ids:
                raise RecordNotFound(COLLECTIONS[collection][1], after_id)
            start = ids.index(after_id) + 1
        chunk = records[start:start + limit]
        return chunk, start + limit < len(records)

    def snapshot(self, ctx: OwnerContext) -> LedgerSnapshot:
        """Every collection of the owner, read back to back."""
        return LedgerSnapshot(**{name: self.list(ctx, name) for name in COLLECTIONS})

    # ---------- writes ---------- #

    def save(self, ctx: OwnerContext, collection: str, record: BaseModel) -> Any:
        row = self.repo(ctx, collection).upsert(record)
        return self.hydrate(collection, row)

    def add(self, ctx: OwnerContext, collection: str, record: BaseModel) -> Any:
        row = self.repo(ctx, collection).add(record)
        return self.hydrate(collection, row)

    def delete(self, ctx: OwnerContext, collection: str, record_id: str) -> bool:
        return self.repo(ctx, collection).delete(record_id)
