from __future__ import annotations
import calendar
from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field


class OwnerContext(BaseModel):
    """Request-scoped identity; every fetch/aggregate call receives one explicitly."""

    model_config = ConfigDict(frozen=True)

    owner_id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")


class Period(BaseModel):
    """A calendar month, both ends inclusive."""

    model_config = ConfigDict(frozen=True)

    year: int = Field(ge=1900, le=9999)
    month: int = Field(ge=1, le=12)

    @classmethod
    def of(cls, d: date) -> "Period":
        return cls(year=d.year, month=d.month)

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1)

    @property
    def end(self) -> datetime:
        last = calendar.monthrange(self.year, self.month)[1]
        return datetime.combine(date(self.year, self.month, last), time.max)

    def contains(self, moment: date) -> bool:
        if not isinstance(moment, datetime):
            moment = datetime.combine(moment, time.min)
        return self.start <= moment <= self.end

    def previous(self) -> "Period":
        if self.month == 1:
            return Period(year=self.year - 1, month=12)
        return Period(year=self.year, month=self.month - 1)

    def label(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"
