"""Validated input accepted when registering a password account."""

from __future__ import annotations

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

E164_PATTERN = r"^\+[1-9]\d{6,14}$"


class RegistrationRequest(BaseModel):
    email: EmailStr | None = None
    phone: str | None = Field(default=None, pattern=E164_PATTERN)
    # passwords are taken verbatim, surrounding whitespace included
    password: str | None = Field(default=None, max_length=256)
    full_name: str = Field(..., min_length=1, max_length=200)
    location: str = Field(..., min_length=1, max_length=200)
    preferred_language: str = Field(default="en", pattern=r"^[a-z]{2}$")
    accepted_terms_version: str | None = None
    profile_picture_url: str | None = Field(default=None, max_length=2048)

    @field_validator(
        "email",
        "phone",
        "full_name",
        "location",
        "preferred_language",
        "accepted_terms_version",
        "profile_picture_url",
        mode="before",
    )
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _require_contact(self) -> "RegistrationRequest":
        if not self.email and not self.phone:
            raise ValueError("either email or phone is required")
        return self
