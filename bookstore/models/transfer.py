from __future__ import annotations
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, Field, model_validator

from .common import Account, RecordModel, Timestamp, gen_id


class Transfer(RecordModel):
    """Cash <-> bank movement (deposit or withdrawal)."""

    id: str = Field(default_factory=gen_id)
    date: Timestamp = Field(default_factory=datetime.now)
    amount: float = Field(gt=0)
    from_account: Account = Field(validation_alias=AliasChoices("from_account", "fromAccount", "from"))
    to_account: Account = Field(validation_alias=AliasChoices("to_account", "toAccount", "to"))
    note: Optional[str] = None

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "Transfer":
        if self.from_account == self.to_account:
            raise ValueError("transfer needs two different accounts")
        return self
