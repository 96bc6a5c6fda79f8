"""Signed access tokens and rotating refresh tokens."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping

import jwt

from ..domain.account import Account, RefreshTokenRecord, UserRole
from ..domain.ports import SigningKey, SigningKeySource

logger = logging.getLogger(__name__)

MIN_ACCESS_TTL = timedelta(minutes=15)
MAX_ACCESS_TTL = timedelta(minutes=60)


def generate_refresh_token() -> tuple[str, str]:
    """Generate a refresh token secret and its SHA-256 hash."""
    token = secrets.token_urlsafe(48)
    return token, hash_refresh_token(token)


def hash_refresh_token(token: str) -> str:
    """Return the SHA-256 hex digest for a refresh token secret."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def encode_refresh_handle(account_id: str, token_id: str, secret: str) -> str:
    """Join the parts a client needs to present a refresh token later."""
    return f"{account_id}.{token_id}.{secret}"


def parse_refresh_handle(handle: str) -> tuple[str, str, str] | None:
    """Split a refresh handle into ``(account_id, token_id, secret)``; ``None`` if malformed."""
    parts = handle.strip().split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


@dataclass(frozen=True, slots=True)
class KeySnapshot:
    current: SigningKey
    by_id: Mapping[str, SigningKey]


class KeyRing:
    """Process-wide signing keys, swapped as immutable snapshots on rotation.

    Retired keys stay resolvable by ``kid`` so tokens signed before a
    rotation keep validating until they expire.
    """

    def __init__(self, current: SigningKey, retired: list[SigningKey] | None = None) -> None:
        keys = {key.key_id: key for key in retired or []}
        keys[current.key_id] = current
        self._snapshot = KeySnapshot(current=current, by_id=MappingProxyType(keys))
        self._rotate_lock = Lock()

    def current_key(self) -> SigningKey:
        return self._snapshot.current

    def key_by_id(self, key_id: str) -> SigningKey | None:
        return self._snapshot.by_id.get(key_id)

    def rotate(self, new_key: SigningKey, *, drop: list[str] | None = None) -> None:
        """Make ``new_key`` current, keeping previous keys unless listed in ``drop``."""
        with self._rotate_lock:
            keys = dict(self._snapshot.by_id)
            for key_id in drop or []:
                if key_id != new_key.key_id:
                    keys.pop(key_id, None)
            keys[new_key.key_id] = new_key
            self._snapshot = KeySnapshot(current=new_key, by_id=MappingProxyType(keys))
        logger.info("signing key rotated to %s", new_key.key_id)


class TokenOutcome(str, Enum):
    valid = "valid"
    invalid = "invalid"
    expired = "expired"


class RotationOutcome(str, Enum):
    rotated = "rotated"
    invalid = "invalid"
    reused = "reused"
    expired = "expired"


@dataclass(frozen=True, slots=True)
class AccessToken:
    token: str
    expires_in: int


@dataclass(frozen=True, slots=True)
class AccessClaims:
    account_id: str
    role: UserRole
    issued_at: datetime
    expires_at: datetime
    key_id: str


@dataclass(frozen=True, slots=True)
class AccessValidation:
    outcome: TokenOutcome
    claims: AccessClaims | None = None


@dataclass(frozen=True, slots=True)
class IssuedRefreshToken:
    """Refresh token as handed to the client; ``secret`` is never stored."""

    account_id: str
    token_id: str
    secret: str
    expires_at: datetime

    @property
    def handle(self) -> str:
        return encode_refresh_handle(self.account_id, self.token_id, self.secret)


@dataclass(frozen=True, slots=True)
class Rotation:
    outcome: RotationOutcome
    access: AccessToken | None = None
    refresh: IssuedRefreshToken | None = None
    revoked_count: int = 0


class TokenIssuer:
    """Mint and validate session tokens.

    Refresh token records live on the account aggregate; methods that touch
    them mutate ``account.refresh_tokens`` in place and leave persistence to
    the caller.
    """

    def __init__(
        self,
        keys: SigningKeySource,
        *,
        issuer: str,
        access_ttl: timedelta = MIN_ACCESS_TTL,
        refresh_ttl: timedelta = timedelta(days=30),
        max_refresh_tokens: int = 10,
    ) -> None:
        if not MIN_ACCESS_TTL <= access_ttl <= MAX_ACCESS_TTL:
            raise ValueError("access token lifetime must be between 15 and 60 minutes")
        if max_refresh_tokens < 1:
            raise ValueError("max_refresh_tokens must be at least 1")
        self._keys = keys
        self._issuer = issuer
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._max_refresh_tokens = max_refresh_tokens

    @property
    def refresh_ttl(self) -> timedelta:
        return self._refresh_ttl

    def issue_access_token(self, account: Account, now: datetime) -> AccessToken:
        """Create a signed JWT for ``account``.

        Only the claims authorization needs are embedded: subject, role,
        issued-at and expiry.
        """
        key = self._keys.current_key()
        issued_at = int(now.timestamp())
        expires_in = int(self._access_ttl.total_seconds())
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": account.account_id,
            "role": account.role.value,
            "iat": issued_at,
            "exp": issued_at + expires_in,
        }
        token = jwt.encode(payload, key.secret, algorithm=key.algorithm, headers={"kid": key.key_id})
        return AccessToken(token=token, expires_in=expires_in)

    def validate_access_token(self, token: str, now: datetime) -> AccessValidation:
        """Verify signature, issuer and expiry of ``token`` against ``now``."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError:
            return AccessValidation(TokenOutcome.invalid)
        key_id = header.get("kid")
        key = self._keys.key_by_id(key_id) if isinstance(key_id, str) else None
        if key is None:
            return AccessValidation(TokenOutcome.invalid)
        try:
            claims = jwt.decode(
                token,
                key.secret,
                algorithms=[key.algorithm],
                issuer=self._issuer,
                options={
                    "require": ["iss", "sub", "iat", "exp"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
            role = UserRole(claims.get("role"))
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
        except (jwt.PyJWTError, ValueError, TypeError):
            return AccessValidation(TokenOutcome.invalid)
        if now >= expires_at:
            return AccessValidation(TokenOutcome.expired)
        return AccessValidation(
            TokenOutcome.valid,
            AccessClaims(
                account_id=str(claims["sub"]),
                role=role,
                issued_at=issued_at,
                expires_at=expires_at,
                key_id=key.key_id,
            ),
        )

    def issue_refresh_token(
        self,
        account: Account,
        device_info: str | None,
        now: datetime,
        *,
        family_id: str | None = None,
    ) -> IssuedRefreshToken:
        """Append a new refresh token record to ``account`` and return the raw secret once."""
        secret, secret_hash = generate_refresh_token()
        record = RefreshTokenRecord(
            token_id=uuid.uuid4().hex,
            family_id=family_id or uuid.uuid4().hex,
            secret_hash=secret_hash,
            issued_at=now,
            expires_at=now + self._refresh_ttl,
            device_info=device_info,
        )
        account.refresh_tokens.append(record)
        self._prune(account, now)
        return IssuedRefreshToken(
            account_id=account.account_id,
            token_id=record.token_id,
            secret=secret,
            expires_at=record.expires_at,
        )

    def rotate_refresh_token(
        self,
        account: Account,
        token_id: str,
        presented_secret: str,
        now: datetime,
    ) -> Rotation:
        """Exchange a refresh token for a new access/refresh pair.

        A token that was already rotated or revoked is treated as stolen:
        every token of its family is revoked and ``reused`` is returned.
        """
        record = self._find(account, token_id)
        if record is None:
            return Rotation(RotationOutcome.invalid)
        if not hmac.compare_digest(hash_refresh_token(presented_secret), record.secret_hash):
            return Rotation(RotationOutcome.invalid)
        if record.revoked:
            revoked = self._revoke_family(account, record.family_id)
            logger.warning(
                "refresh token reuse detected for account %s; revoked %d tokens in family",
                account.account_id,
                revoked,
            )
            return Rotation(RotationOutcome.reused, revoked_count=revoked)
        if now >= record.expires_at:
            record.revoked = True
            return Rotation(RotationOutcome.expired, revoked_count=1)

        record.revoked = True
        refresh = self.issue_refresh_token(account, record.device_info, now, family_id=record.family_id)
        record.replaced_by = refresh.token_id
        access = self.issue_access_token(account, now)
        return Rotation(RotationOutcome.rotated, access=access, refresh=refresh, revoked_count=1)

    def verify_secret(self, account: Account, token_id: str, presented_secret: str) -> bool:
        """Return ``True`` when ``presented_secret`` belongs to the token ``token_id``."""
        record = self._find(account, token_id)
        if record is None:
            return False
        return hmac.compare_digest(hash_refresh_token(presented_secret), record.secret_hash)

    def revoke(self, account: Account, token_id: str) -> bool:
        """Mark a refresh token revoked; returns ``False`` if unknown or already revoked."""
        record = self._find(account, token_id)
        if record is None or record.revoked:
            return False
        record.revoked = True
        return True

    def revoke_all(self, account: Account) -> int:
        count = 0
        for record in account.refresh_tokens:
            if not record.revoked:
                record.revoked = True
                count += 1
        return count

    def _find(self, account: Account, token_id: str) -> RefreshTokenRecord | None:
        for record in account.refresh_tokens:
            if record.token_id == token_id:
                return record
        return None

    def _revoke_family(self, account: Account, family_id: str) -> int:
        count = 0
        for record in account.refresh_tokens:
            if record.family_id == family_id and not record.revoked:
                record.revoked = True
                count += 1
        return count

    def _prune(self, account: Account, now: datetime) -> None:
        tokens = account.refresh_tokens
        if len(tokens) <= self._max_refresh_tokens:
            return
        # expired, then rotated, then otherwise revoked, then the oldest live sessions
        def rank(indexed: tuple[int, RefreshTokenRecord]) -> tuple[int, datetime, int]:
            index, record = indexed
            if now >= record.expires_at:
                tier = 0
            elif record.revoked and record.replaced_by is not None:
                tier = 1
            elif record.revoked:
                tier = 2
            else:
                tier = 3
            return tier, record.issued_at, index

        excess = len(tokens) - self._max_refresh_tokens
        dropped = {index for index, _ in sorted(enumerate(tokens), key=rank)[:excess]}
        tokens[:] = [record for index, record in enumerate(tokens) if index not in dropped]
