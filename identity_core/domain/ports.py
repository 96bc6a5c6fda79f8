"""Collaborator contracts consumed by the account lifecycle manager."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Protocol

from .account import Account


class NotificationChannel(str, Enum):
    email = "email"
    sms = "sms"


class DeliveryStatus(str, Enum):
    ok = "ok"
    failed = "failed"


class PublishStatus(str, Enum):
    ok = "ok"
    unknown = "unknown"


@dataclass(frozen=True, slots=True)
class SigningKey:
    key_id: str
    secret: str
    algorithm: str = "HS256"


class UserStore(Protocol):
    """Durable account storage with conditional (versioned) writes.

    ``create`` raises :class:`~identity_core.errors.ConflictError` when a unique
    field is taken; ``update`` raises
    :class:`~identity_core.errors.VersionConflictError` when ``expected_version``
    is stale. Both return the stored account carrying its new version.
    """

    def get_by_id(self, account_id: str) -> Account | None: ...

    def get_by_contact(self, value: str) -> Account | None: ...

    def get_by_oauth_identity(self, provider_name: str, subject_id: str) -> Account | None: ...

    def create(self, account: Account) -> Account: ...

    def update(self, account: Account, expected_version: Any) -> Account: ...


class Notifier(Protocol):
    def send(
        self,
        channel: NotificationChannel,
        destination: str,
        template_id: str,
        payload: Mapping[str, Any],
    ) -> DeliveryStatus: ...


class EventSink(Protocol):
    def publish(self, topic: str, payload: Mapping[str, Any]) -> PublishStatus: ...


class SigningKeySource(Protocol):
    def current_key(self) -> SigningKey: ...

    def key_by_id(self, key_id: str) -> SigningKey | None: ...
