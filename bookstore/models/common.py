from __future__ import annotations
from datetime import datetime
from typing import Annotated, Literal
import uuid

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

Account = Literal["Cash", "Bank"]
PaymentMethod = Literal["Cash", "Bank", "Due"]


def gen_id() -> str:
    return str(uuid.uuid4())


def _naive(v: datetime) -> datetime:
    # stored documents mix "...Z" stamps and local ones; compare everything in local time
    if v.tzinfo is not None:
        return v.astimezone().replace(tzinfo=None)
    return v


Timestamp = Annotated[datetime, AfterValidator(_naive)]


class RecordModel(BaseModel):
    """Base of every persisted record.

    Accepts snake_case or camelCase keys (documents exported from the old
    store are camelCase), drops unknown keys, refuses NaN/Infinity.
    """

    model_config = ConfigDict(
        extra="ignore",
        allow_inf_nan=False,
        populate_by_name=True,
        alias_generator=to_camel,
    )
