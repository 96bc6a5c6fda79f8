"""Tests for access token signing and refresh token rotation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from identity_core.domain.account import Account, PasswordAuth, ContactChannel, UserRole
from identity_core.domain.ports import SigningKey
from identity_core.security.tokens import (
    KeyRing,
    RotationOutcome,
    TokenIssuer,
    TokenOutcome,
    parse_refresh_handle,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def account() -> Account:
    return Account(
        account_id="acct-1",
        auth=PasswordAuth(channel=ContactChannel.email),
        created_at=NOW,
        updated_at=NOW,
        email="ada@example.com",
        role=UserRole.member,
    )


@pytest.fixture()
def issuer(keys) -> TokenIssuer:
    return TokenIssuer(keys, issuer="identity-test", max_refresh_tokens=3)


def test_access_token_carries_minimal_claims(issuer, keys, account):
    access = issuer.issue_access_token(account, NOW)
    assert access.expires_in == 900

    secret = keys.current_key().secret
    claims = jwt.decode(access.token, secret, algorithms=["HS256"], options={"verify_exp": False})
    assert set(claims) == {"iss", "sub", "role", "iat", "exp"}
    assert claims["sub"] == "acct-1"
    assert claims["role"] == "member"
    assert jwt.get_unverified_header(access.token)["kid"] == "test-1"


def test_access_token_validation_honours_clock(issuer, account):
    access = issuer.issue_access_token(account, NOW)
    result = issuer.validate_access_token(access.token, NOW + timedelta(minutes=14))
    assert result.outcome is TokenOutcome.valid
    assert result.claims.account_id == "acct-1"
    assert result.claims.role is UserRole.member

    expired = issuer.validate_access_token(access.token, NOW + timedelta(minutes=15))
    assert expired.outcome is TokenOutcome.expired


def test_forged_or_foreign_tokens_are_invalid(issuer):
    forged = jwt.encode(
        {"iss": "identity-test", "sub": "acct-1", "role": "admin", "iat": 0, "exp": 2**40},
        "f" * 48,
        algorithm="HS256",
        headers={"kid": "test-1"},
    )
    assert issuer.validate_access_token(forged, NOW).outcome is TokenOutcome.invalid
    assert issuer.validate_access_token("not-a-jwt", NOW).outcome is TokenOutcome.invalid

    foreign = jwt.encode({"sub": "acct-1"}, "x" * 40, algorithm="HS256", headers={"kid": "unknown"})
    assert issuer.validate_access_token(foreign, NOW).outcome is TokenOutcome.invalid


def test_key_rotation_keeps_old_tokens_valid(keys, account):
    issuer = TokenIssuer(keys, issuer="identity-test")
    old = issuer.issue_access_token(account, NOW)

    keys.rotate(SigningKey(key_id="test-2", secret="y" * 48))
    new = issuer.issue_access_token(account, NOW)
    assert jwt.get_unverified_header(new.token)["kid"] == "test-2"
    assert issuer.validate_access_token(old.token, NOW).outcome is TokenOutcome.valid

    keys.rotate(SigningKey(key_id="test-3", secret="z" * 48), drop=["test-1"])
    assert issuer.validate_access_token(old.token, NOW).outcome is TokenOutcome.invalid
    assert issuer.validate_access_token(new.token, NOW).outcome is TokenOutcome.valid


def test_access_ttl_bounds_enforced(keys):
    with pytest.raises(ValueError):
        TokenIssuer(keys, issuer="x", access_ttl=timedelta(minutes=5))
    with pytest.raises(ValueError):
        TokenIssuer(keys, issuer="x", access_ttl=timedelta(hours=2))


def test_refresh_secret_is_stored_hashed(issuer, account):
    issued = issuer.issue_refresh_token(account, "laptop", NOW)
    record = account.refresh_tokens[0]
    assert record.secret_hash != issued.secret
    assert issued.secret not in record.secret_hash
    assert parse_refresh_handle(issued.handle) == ("acct-1", issued.token_id, issued.secret)


def test_rotation_replaces_token_in_same_family(issuer, account):
    first = issuer.issue_refresh_token(account, "laptop", NOW)
    rotation = issuer.rotate_refresh_token(account, first.token_id, first.secret, NOW)
    assert rotation.outcome is RotationOutcome.rotated
    assert rotation.access is not None

    old, new = account.refresh_tokens
    assert old.revoked and old.replaced_by == new.token_id
    assert new.family_id == old.family_id
    assert not new.revoked


def test_reuse_revokes_whole_family_but_not_other_devices(issuer, account):
    first = issuer.issue_refresh_token(account, "laptop", NOW)
    phone = issuer.issue_refresh_token(account, "phone", NOW)
    issuer.rotate_refresh_token(account, first.token_id, first.secret, NOW)

    reuse = issuer.rotate_refresh_token(account, first.token_id, first.secret, NOW)
    assert reuse.outcome is RotationOutcome.reused
    assert reuse.revoked_count == 1

    laptop_family = [r for r in account.refresh_tokens if r.device_info == "laptop"]
    assert all(r.revoked for r in laptop_family)
    other = issuer.rotate_refresh_token(account, phone.token_id, phone.secret, NOW)
    assert other.outcome is RotationOutcome.rotated


def test_wrong_secret_and_unknown_token_are_invalid(issuer, account):
    issued = issuer.issue_refresh_token(account, None, NOW)
    assert issuer.rotate_refresh_token(account, issued.token_id, "guess", NOW).outcome is RotationOutcome.invalid
    assert issuer.rotate_refresh_token(account, "missing", issued.secret, NOW).outcome is RotationOutcome.invalid
    assert not account.refresh_tokens[0].revoked


def test_expired_refresh_token(issuer, account):
    issued = issuer.issue_refresh_token(account, None, NOW)
    rotation = issuer.rotate_refresh_token(account, issued.token_id, issued.secret, NOW + timedelta(days=31))
    assert rotation.outcome is RotationOutcome.expired


def test_refresh_records_are_capped(issuer, account):
    for minute in range(5):
        issuer.issue_refresh_token(account, None, NOW + timedelta(minutes=minute))
    assert len(account.refresh_tokens) == 3
    assert min(r.issued_at for r in account.refresh_tokens) == NOW + timedelta(minutes=2)


def test_cap_evicts_rotated_records_before_live_sessions(issuer, account):
    laptop = issuer.issue_refresh_token(account, "laptop", NOW)
    phone = issuer.issue_refresh_token(account, "phone", NOW)
    for minute in range(1, 4):
        phone = issuer.rotate_refresh_token(account, phone.token_id, phone.secret, NOW + timedelta(minutes=minute)).refresh

    assert len(account.refresh_tokens) == 3
    live = [r for r in account.refresh_tokens if not r.revoked]
    assert sorted(r.device_info for r in live) == ["laptop", "phone"]
    rotation = issuer.rotate_refresh_token(account, laptop.token_id, laptop.secret, NOW + timedelta(minutes=5))
    assert rotation.outcome is RotationOutcome.rotated


def test_revoke_and_revoke_all(issuer, account):
    first = issuer.issue_refresh_token(account, None, NOW)
    issuer.issue_refresh_token(account, None, NOW)
    assert issuer.revoke(account, first.token_id)
    assert not issuer.revoke(account, first.token_id)
    assert issuer.revoke_all(account) == 1
    assert issuer.verify_secret(account, first.token_id, first.secret)
    assert not issuer.verify_secret(account, first.token_id, "nope")


def test_malformed_handles():
    assert parse_refresh_handle("only.two") is None
    assert parse_refresh_handle("a..c") is None


def test_key_ring_lookup():
    ring = KeyRing(SigningKey("new", "n" * 40), retired=[SigningKey("old", "o" * 40)])
    assert ring.current_key().key_id == "new"
    assert ring.key_by_id("old").secret == "o" * 40
    assert ring.key_by_id("missing") is None
