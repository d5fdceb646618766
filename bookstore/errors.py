from __future__ import annotations
from typing import Any, Optional

from pydantic import ValidationError


class LedgerError(Exception):
    """Base class for every error raised by the bookstore ledger."""


class InvalidInput(LedgerError, ValueError):
    """A record is malformed or a required numeric field is missing / not finite.

    Fails the whole computation: nothing partial is returned.
    """

    def __init__(self, message: str, *, record: Any = None, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.record = record
        self.field = field


class RecordNotFound(LedgerError, LookupError):
    def __init__(self, entity: str, record_id: Any) -> None:
        super().__init__(f"{entity} with id={record_id} not found")
        self.entity = entity
        self.record_id = record_id


def invalid_from_validation(entity: str, err: ValidationError, record: Any = None) -> InvalidInput:
    first = err.errors()[0] if err.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ())) or None
    return InvalidInput(f"invalid {entity}: {first.get('msg', err)} ({loc})", record=record, field=loc)
