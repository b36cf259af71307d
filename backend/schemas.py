"""Request payload schemas.

Each incoming JSON or form body is parsed through one of these pydantic models;
``parse_payload`` converts pydantic's error list into a 422 ``ValidationError``
with per-field messages.
"""

import re
from typing import List, Literal, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HANDLE_PATTERN = re.compile(r"^[a-z0-9_.\-]{3,30}$", re.IGNORECASE)


def _strip_or_none(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class RegisterPayload(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=72)
    display_name: str = Field(min_length=2, max_length=60)

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        value = value.strip().lower()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    @field_validator("display_name", mode="before")
    @classmethod
    def strip_display_name(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginPayload(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, value):
        return value.strip().lower()


class FriendRequestPayload(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=32)


class RespondPayload(BaseModel):
    action: Literal["accept", "decline"]


class MarkReadPayload(BaseModel):
    ids: Optional[List[str]] = None
    mark_all: Optional[bool] = None

    @model_validator(mode="after")
    def require_target(self):
        if not self.mark_all and not self.ids:
            raise ValueError("Provide notification ids or mark_all.")
        return self


class ProfilePayload(BaseModel):
    display_name: str = Field(min_length=2, max_length=60)
    handle: Optional[str] = None
    bio: Optional[str] = None

    @field_validator("display_name", mode="before")
    @classmethod
    def strip_display_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("handle", mode="before")
    @classmethod
    def check_handle(cls, value):
        value = _strip_or_none(value)
        if value is None:
            return None
        if not HANDLE_PATTERN.match(value):
            raise ValueError(
                "Handle must be 3-30 characters and contain only letters, numbers, "
                "underscores, dots, or dashes."
            )
        return value.lower()

    @field_validator("bio", mode="before")
    @classmethod
    def check_bio(cls, value):
        value = _strip_or_none(value)
        if value is not None and len(value) > 160:
            raise ValueError("Bio must be 160 characters or less.")
        return value


def parse_payload(schema, data, message="Invalid payload"):
    """Validate data against schema, raising ValidationError with field details."""
    try:
        return schema.model_validate(data if data is not None else {})
    except pydantic.ValidationError as exc:
        details = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "payload"
            details.setdefault(field, []).append(error["msg"])
        raise ValidationError(message, details=details) from exc
