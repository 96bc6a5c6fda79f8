"""Domain event contracts published by the identity core."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..domain.account import AccountStatus, UserRole


class ContactInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    email: str | None = None
    phone: str | None = None


class DomainEvent(BaseModel):
    """Common envelope; consumers deduplicate on ``eventId``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    topic: ClassVar[str] = ""

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    account_id: str
    timestamp: datetime

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UserCreated(DomainEvent):
    topic: ClassVar[str] = "UserCreated"

    contact: ContactInfo


class UserVerified(DomainEvent):
    topic: ClassVar[str] = "UserVerified"


class UserRoleChanged(DomainEvent):
    topic: ClassVar[str] = "UserRoleChanged"

    old_role: UserRole
    new_role: UserRole


class AccountLocked(DomainEvent):
    topic: ClassVar[str] = "AccountLocked"

    until: datetime


class AccountStatusChanged(DomainEvent):
    topic: ClassVar[str] = "AccountStatusChanged"

    old_status: AccountStatus
    new_status: AccountStatus
    reason: str | None = None


class PasswordReset(DomainEvent):
    topic: ClassVar[str] = "PasswordReset"
