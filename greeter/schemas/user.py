import re
import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field, computed_field, field_validator

from greeter.core.datetime_utils import is_valid_timezone, month_day, parse_birthday
from greeter.schemas.common import CamelModel

_BIRTHDAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _validate_birthday(v: Any) -> Any:
    if isinstance(v, date):
        return v
    if not isinstance(v, str) or not _BIRTHDAY_RE.match(v):
        raise ValueError(f"Invalid birthday: {v}. Must be in YYYY-MM-DD format.")
    try:
        return parse_birthday(v)
    except ValueError as e:
        raise ValueError(f"Invalid birthday: {v}. Must be in YYYY-MM-DD format.") from e


def _validate_location(v: str) -> str:
    if not is_valid_timezone(v):
        raise ValueError(f"Invalid location: {v}")
    return v


class UserCreate(CamelModel):
    """Request body for creating a user."""

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    birthday: date
    location: str = Field(max_length=64)

    @field_validator("birthday", mode="before")
    @classmethod
    def validate_birthday(cls, v: Any) -> Any:
        return _validate_birthday(v)

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        return _validate_location(v)


class UserUpdate(CamelModel):
    """Request body for a partial user update. Omitted fields are left alone."""

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    birthday: date | None = None
    location: str | None = Field(default=None, max_length=64)

    @field_validator("birthday", mode="before")
    @classmethod
    def validate_birthday(cls, v: Any) -> Any:
        if v is None:
            return v
        return _validate_birthday(v)

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_location(v)


class UserResponse(CamelModel):
    """User as returned by the API."""

    id: uuid.UUID = Field(serialization_alias="userId")
    first_name: str
    last_name: str
    birthday: date
    location: str
    last_greeting_sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field(alias="birthdayMD")  # type: ignore[prop-decorator]
    @property
    def birthday_md(self) -> str:
        return month_day(self.birthday)
