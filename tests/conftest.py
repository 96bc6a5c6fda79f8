from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from identity_core.collaborators import BoundedCaller
from identity_core.config import Settings
from identity_core.domain.account import Account
from identity_core.domain.lockout import LockoutPolicy
from identity_core.domain.ports import DeliveryStatus, NotificationChannel, PublishStatus, SigningKey
from identity_core.domain.service import AccountLifecycleManager
from identity_core.errors import ConflictError, VersionConflictError
from identity_core.repository import account_from_document, account_to_document
from identity_core.security.codes import OneTimeCodeEngine
from identity_core.security.passwords import CredentialHasher
from identity_core.security.rate_limiter import SlidingWindowRateLimiter
from identity_core.security.tokens import KeyRing, TokenIssuer

SIGNING_SECRET = "test-signing-secret-with-enough-entropy-0123456789"


class FrozenClock:
    """Manually advanced clock shared by the manager and the tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeUserStore:
    """In-memory store mimicking the Postgres adapter's versioned writes.

    Accounts are kept as JSON documents so every read hands out an
    independent copy, like a real database would.
    """

    def __init__(self) -> None:
        self._rows: dict[str, tuple[str, int]] = {}
        self._lock = threading.Lock()
        self.before_update: Callable[[Account], None] | None = None
        self.update_delay = 0.0
        self.update_calls = 0

    def get_by_id(self, account_id: str) -> Account | None:
        with self._lock:
            row = self._rows.get(account_id)
        return self._load(row)

    def get_by_contact(self, value: str) -> Account | None:
        value = value.strip()
        value = value.lower() if "@" in value else value
        with self._lock:
            for row in self._rows.values():
                document = json.loads(row[0])
                if value in (document.get("email"), document.get("phone")):
                    return self._load(row)
        return None

    def get_by_oauth_identity(self, provider_name: str, subject_id: str) -> Account | None:
        with self._lock:
            for row in self._rows.values():
                auth = json.loads(row[0])["auth"]
                if (
                    auth["kind"] == "oauth"
                    and auth["provider_name"] == provider_name
                    and auth["provider_subject_id"] == subject_id
                ):
                    return self._load(row)
        return None

    def create(self, account: Account) -> Account:
        document = account_to_document(account)
        with self._lock:
            self._check_unique(document, exclude=None)
            self._rows[account.account_id] = (json.dumps(document), 1)
            row = self._rows[account.account_id]
        return self._load(row)

    def update(self, account: Account, expected_version: Any) -> Account:
        if self.before_update is not None:
            self.before_update(account)
        if self.update_delay:
            time.sleep(self.update_delay)
        document = account_to_document(account)
        with self._lock:
            self.update_calls += 1
            current = self._rows.get(account.account_id)
            if current is None or current[1] != expected_version:
                raise VersionConflictError("stale version")
            self._check_unique(document, exclude=account.account_id)
            self._rows[account.account_id] = (json.dumps(document), current[1] + 1)
            row = self._rows[account.account_id]
        return self._load(row)

    def version_of(self, account_id: str) -> int:
        return self._rows[account_id][1]

    def touch(self, account_id: str) -> None:
        """Simulate a write from another replica by bumping the stored version."""
        with self._lock:
            raw, version = self._rows[account_id]
            self._rows[account_id] = (raw, version + 1)

    def _check_unique(self, document: dict[str, Any], exclude: str | None) -> None:
        for account_id, (raw, _) in self._rows.items():
            if account_id == exclude:
                continue
            other = json.loads(raw)
            for field in ("email", "phone"):
                if document.get(field) and document.get(field) == other.get(field):
                    raise ConflictError(f"{field} already registered")
            if document["auth"]["kind"] == "oauth" and other["auth"] == document["auth"]:
                raise ConflictError("identity already registered")

    @staticmethod
    def _load(row: tuple[str, int] | None) -> Account | None:
        if row is None:
            return None
        return account_from_document(json.loads(row[0]), row[1])


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False
        self.delay = 0.0

    def send(
        self,
        channel: NotificationChannel,
        destination: str,
        template_id: str,
        payload: dict[str, Any],
    ) -> DeliveryStatus:
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            return DeliveryStatus.failed
        self.sent.append(
            {"channel": channel, "destination": destination, "template_id": template_id, "payload": payload}
        )
        return DeliveryStatus.ok

    def last_code(self, template_id: str = "verification_code") -> str:
        for message in reversed(self.sent):
            if message["template_id"] == template_id:
                return message["payload"]["code"]
        raise AssertionError(f"no {template_id} message was sent")


class FakeEventSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    def publish(self, topic: str, payload: dict[str, Any]) -> PublishStatus:
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.events.append((topic, payload))
        return PublishStatus.ok

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def sink() -> FakeEventSink:
    return FakeEventSink()


@pytest.fixture()
def keys() -> KeyRing:
    return KeyRing(SigningKey(key_id="test-1", secret=SIGNING_SECRET))


@pytest.fixture()
def hasher() -> CredentialHasher:
    return CredentialHasher()


@pytest.fixture()
def caller():
    bounded = BoundedCaller(max_workers=8)
    yield bounded
    bounded.shutdown()


@pytest.fixture()
def make_manager(store, notifier, sink, clock, keys, hasher, caller):
    """Factory building a lifecycle manager over the fakes, with overridable settings."""

    def _make(rate_limiter=None, credential_hasher=None, **overrides: Any) -> AccountLifecycleManager:
        settings = Settings(**{"store_timeout_seconds": 1.0, "notifier_timeout_seconds": 1.0, **overrides})
        return AccountLifecycleManager(
            store,
            notifier,
            sink,
            hasher=credential_hasher or hasher,
            codes=OneTimeCodeEngine("otp-test-secret"),
            tokens=TokenIssuer(keys, issuer="identity-test"),
            lockout=LockoutPolicy(),
            settings=settings,
            rate_limiter=rate_limiter or SlidingWindowRateLimiter(1000, 60),
            caller=caller,
            clock=clock,
        )

    return _make


@pytest.fixture()
def manager(make_manager) -> AccountLifecycleManager:
    return make_manager()


@pytest.fixture()
def registration() -> dict[str, Any]:
    return {
        "email": "Ada@Example.com",
        "password": "correct horse battery",
        "full_name": "Ada Lovelace",
        "location": "London",
        "accepted_terms_version": "2024-01",
    }
