"""Registration, verification and login flows through the lifecycle manager."""

from __future__ import annotations

from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from identity_core.domain.account import AccountStatus, UserRole, VerificationState
from identity_core.domain.ports import DeliveryStatus, NotificationChannel
from identity_core.errors import (
    ConflictError,
    DeliveryFailedError,
    InvalidCredentials,
    InvalidTransitionError,
    LockedError,
    RateLimitedError,
    ValidationError,
)
from identity_core.security.codes import CodeOutcome
from identity_core.security.rate_limiter import SlidingWindowRateLimiter
from identity_core.security.tokens import TokenOutcome


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


def test_register_verify_then_lock_out(manager, notifier, sink):
    result = manager.register({"email": "a@x.com", "password": "Passw0rd!", "full_name": "A", "location": "Nairobi"})
    account = result.account
    assert account.verification_state is VerificationState.unverified
    assert account.status is AccountStatus.active
    assert account.role is UserRole.not_allocated
    assert sink.topics() == ["UserCreated"]
    assert len(notifier.sent) == 1

    assert manager.verify_code(account.account_id, notifier.last_code()) is CodeOutcome.valid
    assert manager.get_account(account.account_id).is_verified
    assert sink.topics() == ["UserCreated", "UserVerified"]

    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            manager.login("a@x.com", "wrong-password")
    with pytest.raises(LockedError):
        manager.login("a@x.com", "wrong-password")
    with pytest.raises(LockedError) as excinfo:
        manager.login("a@x.com", "Passw0rd!")
    assert excinfo.value.remaining.total_seconds() > 0
    assert sink.topics()[-1] == "AccountLocked"


def test_register_normalises_and_hashes(manager, registration, notifier, sink):
    result = manager.register(registration)
    account = result.account
    assert account.email == "ada@example.com"
    assert account.auth_provider == "password_email"
    assert account.credential.hash.startswith("$argon2id$")
    assert registration["password"] not in account.credential.hash
    assert account.pending_code is not None
    assert notifier.last_code() not in account.pending_code.code_hash
    assert result.delivery is DeliveryStatus.ok

    message = notifier.sent[0]
    assert message["channel"] is NotificationChannel.email
    assert message["destination"] == "ada@example.com"
    assert message["template_id"] == "verification_code"

    topic, payload = sink.events[0]
    assert topic == "UserCreated"
    assert payload["accountId"] == account.account_id
    assert payload["contact"] == {"email": "ada@example.com", "phone": None}
    assert "eventId" in payload and "timestamp" in payload


def test_password_whitespace_is_preserved(manager, registration):
    account = manager.register(
        {**registration, "password": "  padded secret  ", "full_name": "  Ada Lovelace  "}
    ).account
    assert account.full_name == "Ada Lovelace"

    assert manager.login(registration["email"], "  padded secret  ").account_id == account.account_id
    with pytest.raises(InvalidCredentials):
        manager.login(registration["email"], "padded secret")


def test_register_by_phone_uses_sms(manager, notifier):
    result = manager.register({"phone": "+254700000001", "password": "Passw0rd!", "full_name": "B", "location": "Mombasa"})
    assert result.account.auth_provider == "password_phone"
    assert notifier.sent[0]["channel"] is NotificationChannel.sms
    assert notifier.sent[0]["destination"] == "+254700000001"


@pytest.mark.parametrize(
    "overrides",
    [
        {"email": None},
        {"email": "not-an-email"},
        {"password": "short"},
        {"full_name": ""},
        {"phone": "0700000000"},
    ],
)
def test_register_rejects_invalid_input(manager, registration, overrides, sink):
    with pytest.raises(ValidationError):
        manager.register({**registration, **overrides})
    assert sink.events == []


def test_register_rejects_taken_contact(manager, registration):
    manager.register(registration)
    with pytest.raises(ConflictError):
        manager.register({**registration, "email": "ADA@example.com"})


def test_delivery_failure_keeps_account(manager, registration, notifier, store):
    notifier.fail = True
    result = manager.register(registration)
    assert result.delivery_failed
    assert store.get_by_id(result.account.account_id) is not None

    with pytest.raises(DeliveryFailedError):
        manager.resend_verification_code(result.account.account_id)

    notifier.fail = False
    manager.resend_verification_code(result.account.account_id)
    assert manager.verify_code(result.account.account_id, notifier.last_code()) is CodeOutcome.valid


def test_slow_notifier_counts_as_failed_delivery(make_manager, registration, notifier):
    manager = make_manager(notifier_timeout_seconds=0.1)
    notifier.delay = 0.5
    result = manager.register(registration)
    assert result.delivery is DeliveryStatus.failed


def test_event_sink_failure_is_not_fatal(manager, registration, sink):
    sink.fail = True
    result = manager.register(registration)
    assert result.account.account_id


def test_resend_replaces_code_and_rejects_verified(manager, registration, notifier):
    account = manager.register(registration).account
    first = notifier.last_code()
    manager.resend_verification_code(account.account_id)
    second = notifier.last_code()
    if first != second:
        assert manager.verify_code(account.account_id, first) is CodeOutcome.mismatch
    assert manager.verify_code(account.account_id, second) is CodeOutcome.valid
    with pytest.raises(InvalidTransitionError):
        manager.resend_verification_code(account.account_id)


def test_verification_attempts_are_capped(manager, registration, notifier):
    account = manager.register(registration).account
    code = notifier.last_code()
    for _ in range(5):
        assert manager.verify_code(account.account_id, _wrong(code)) is CodeOutcome.mismatch
    assert manager.verify_code(account.account_id, code) is CodeOutcome.rate_limited
    assert not manager.get_account(account.account_id).is_verified


def test_verification_code_expires(manager, registration, notifier, clock):
    account = manager.register(registration).account
    clock.advance(minutes=10)
    assert manager.verify_code(account.account_id, notifier.last_code()) is CodeOutcome.expired
    assert manager.get_account(account.account_id).pending_code is None


def test_login_issues_tokens_and_records_login(manager, registration, clock):
    account = manager.register(registration).account
    tokens = manager.login(" ADA@example.com ", registration["password"], ip="10.0.0.7", device_info="cli")
    assert tokens.account_id == account.account_id
    assert tokens.token_type == "bearer"
    assert tokens.access_expires_in == 900

    validation = manager.validate_access_token(tokens.access_token)
    assert validation.outcome is TokenOutcome.valid
    assert validation.claims.account_id == account.account_id

    stored = manager.get_account(account.account_id)
    assert stored.last_login_at == clock.now
    assert stored.last_login_ip == "10.0.0.7"
    assert len(stored.refresh_tokens) == 1

    clock.advance(minutes=16)
    assert manager.validate_access_token(tokens.access_token).outcome is TokenOutcome.expired


def test_unknown_contact_and_wrong_password_look_the_same(manager, registration):
    manager.register(registration)
    with pytest.raises(InvalidCredentials) as unknown:
        manager.login("nobody@example.com", "whatever-password")
    with pytest.raises(InvalidCredentials) as wrong:
        manager.login(registration["email"], "whatever-password")
    assert str(unknown.value) == str(wrong.value)


def test_lock_expires_and_success_resets_failures(manager, registration, clock):
    account = manager.register(registration).account
    before = REGISTRY.get_sample_value("identity_account_lockouts_total") or 0.0
    for _ in range(5):
        with pytest.raises((InvalidCredentials, LockedError)):
            manager.login(registration["email"], "wrong-password")
    assert REGISTRY.get_sample_value("identity_account_lockouts_total") == before + 1

    locked = manager.get_account(account.account_id).lock_state
    assert locked.is_locked
    assert locked.locked_until == clock.now + timedelta(minutes=5)

    clock.advance(minutes=5)
    manager.login(registration["email"], registration["password"])
    state = manager.get_account(account.account_id).lock_state
    assert state.consecutive_failures == 0
    assert not state.is_locked
    assert state.lock_cycle == 0


def test_locked_login_skips_password_check(manager, registration, hasher, monkeypatch):
    manager.register(registration)
    for _ in range(5):
        with pytest.raises((InvalidCredentials, LockedError)):
            manager.login(registration["email"], "wrong-password")

    def fail_verify(*args, **kwargs):
        raise AssertionError("password must not be checked while locked")

    monkeypatch.setattr(hasher, "verify", fail_verify)
    with pytest.raises(LockedError):
        manager.login(registration["email"], registration["password"])


def test_login_rate_limited_per_contact(make_manager, registration):
    manager = make_manager(rate_limiter=SlidingWindowRateLimiter(2, 60))
    manager.register(registration)
    manager.login(registration["email"], registration["password"])
    manager.login(registration["email"], registration["password"])
    with pytest.raises(RateLimitedError):
        manager.login(registration["email"], registration["password"])


def test_account_without_password_cannot_log_in(manager, registration):
    manager.register({**registration, "password": None})
    with pytest.raises(InvalidCredentials):
        manager.login(registration["email"], "anything-at-all")


def test_unverified_account_may_log_in(manager, registration):
    account = manager.register(registration).account
    assert manager.login(registration["email"], registration["password"]).account_id == account.account_id
