"""Postgres-backed ``UserStore`` for identity accounts."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .domain.account import (
    Account,
    AccountStatus,
    CodePurpose,
    ContactChannel,
    LockState,
    OAuthAuth,
    OAuthIdentity,
    PasswordAuth,
    PasswordCredential,
    PendingCode,
    RefreshTokenRecord,
    UserRole,
    VerificationState,
)
from .errors import ConflictError, StoreUnavailableError, VersionConflictError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS identity_accounts (
    account_id TEXT PRIMARY KEY,
    email TEXT UNIQUE,
    phone TEXT UNIQUE,
    oauth_provider TEXT,
    oauth_subject TEXT,
    document JSONB NOT NULL,
    version BIGINT NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (oauth_provider, oauth_subject)
)
"""

_SELECT = "SELECT document, version FROM identity_accounts"


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def account_to_document(account: Account) -> dict[str, Any]:
    """Serialise an account aggregate into the JSON document stored per row."""
    if isinstance(account.auth, OAuthAuth):
        auth: dict[str, Any] = {
            "kind": "oauth",
            "provider_name": account.auth.identity.provider_name,
            "provider_subject_id": account.auth.identity.provider_subject_id,
        }
    else:
        credential = account.auth.credential
        auth = {
            "kind": "password",
            "channel": account.auth.channel.value,
            "credential": None
            if credential is None
            else {"hash": credential.hash, "salt": credential.salt, "params": dict(credential.params)},
        }
    pending = account.pending_code
    lock = account.lock_state
    return {
        "account_id": account.account_id,
        "auth": auth,
        "email": account.email,
        "phone": account.phone,
        "full_name": account.full_name,
        "location": account.location,
        "profile_picture_url": account.profile_picture_url,
        "preferred_language": account.preferred_language,
        "accepted_terms_version": account.accepted_terms_version,
        "verification_state": account.verification_state.value,
        "pending_code": None
        if pending is None
        else {
            "code_hash": pending.code_hash,
            "purpose": pending.purpose.value,
            "issued_at": _ts(pending.issued_at),
            "expires_at": _ts(pending.expires_at),
            "attempt_count": pending.attempt_count,
        },
        "lock_state": {
            "is_locked": lock.is_locked,
            "locked_until": _ts(lock.locked_until),
            "consecutive_failures": lock.consecutive_failures,
            "lock_cycle": lock.lock_cycle,
        },
        "status": account.status.value,
        "role": account.role.value,
        "refresh_tokens": [
            {
                "token_id": record.token_id,
                "family_id": record.family_id,
                "secret_hash": record.secret_hash,
                "issued_at": _ts(record.issued_at),
                "expires_at": _ts(record.expires_at),
                "device_info": record.device_info,
                "revoked": record.revoked,
                "replaced_by": record.replaced_by,
            }
            for record in account.refresh_tokens
        ],
        "last_login_at": _ts(account.last_login_at),
        "last_login_ip": account.last_login_ip,
        "created_at": _ts(account.created_at),
        "updated_at": _ts(account.updated_at),
    }


def account_from_document(document: dict[str, Any], version: Any) -> Account:
    """Rebuild an account aggregate from its stored document."""
    auth_doc = document["auth"]
    if auth_doc["kind"] == "oauth":
        auth: PasswordAuth | OAuthAuth = OAuthAuth(
            identity=OAuthIdentity(
                provider_name=auth_doc["provider_name"],
                provider_subject_id=auth_doc["provider_subject_id"],
            )
        )
    else:
        credential_doc = auth_doc.get("credential")
        auth = PasswordAuth(
            channel=ContactChannel(auth_doc["channel"]),
            credential=None
            if credential_doc is None
            else PasswordCredential(
                hash=credential_doc["hash"],
                salt=credential_doc["salt"],
                params=dict(credential_doc["params"]),
            ),
        )
    pending_doc = document.get("pending_code")
    lock_doc = document.get("lock_state") or {}
    return Account(
        account_id=document["account_id"],
        auth=auth,
        created_at=_parse_ts(document["created_at"]),
        updated_at=_parse_ts(document["updated_at"]),
        email=document.get("email"),
        phone=document.get("phone"),
        full_name=document.get("full_name", ""),
        location=document.get("location"),
        profile_picture_url=document.get("profile_picture_url"),
        preferred_language=document.get("preferred_language", "en"),
        accepted_terms_version=document.get("accepted_terms_version"),
        verification_state=VerificationState(document["verification_state"]),
        pending_code=None
        if pending_doc is None
        else PendingCode(
            code_hash=pending_doc["code_hash"],
            purpose=CodePurpose(pending_doc["purpose"]),
            issued_at=_parse_ts(pending_doc["issued_at"]),
            expires_at=_parse_ts(pending_doc["expires_at"]),
            attempt_count=pending_doc.get("attempt_count", 0),
        ),
        lock_state=LockState(
            is_locked=lock_doc.get("is_locked", False),
            locked_until=_parse_ts(lock_doc.get("locked_until")),
            consecutive_failures=lock_doc.get("consecutive_failures", 0),
            lock_cycle=lock_doc.get("lock_cycle", 0),
        ),
        status=AccountStatus(document["status"]),
        role=UserRole(document["role"]),
        refresh_tokens=[
            RefreshTokenRecord(
                token_id=item["token_id"],
                family_id=item["family_id"],
                secret_hash=item["secret_hash"],
                issued_at=_parse_ts(item["issued_at"]),
                expires_at=_parse_ts(item["expires_at"]),
                device_info=item.get("device_info"),
                revoked=item.get("revoked", False),
                replaced_by=item.get("replaced_by"),
            )
            for item in document.get("refresh_tokens", [])
        ],
        last_login_at=_parse_ts(document.get("last_login_at")),
        last_login_ip=document.get("last_login_ip"),
        version=version,
    )


class AccountRepository:
    """Postgres persistence for account aggregates with version-checked writes.

    Each account is one row: the aggregate as a JSONB document, plus the
    contact and OAuth columns that carry the uniqueness constraints, plus a
    monotonically increasing ``version`` used for compare-and-swap updates.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create_schema(self) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()

    def get_by_id(self, account_id: str) -> Account | None:
        return self._fetch_one(f"{_SELECT} WHERE account_id = %s", (account_id,))

    def get_by_contact(self, value: str) -> Account | None:
        """Look up an account by email (case-insensitively) or phone."""
        value = value.strip()
        if "@" in value:
            return self._fetch_one(f"{_SELECT} WHERE email = %s", (value.lower(),))
        return self._fetch_one(f"{_SELECT} WHERE phone = %s", (value,))

    def get_by_oauth_identity(self, provider_name: str, subject_id: str) -> Account | None:
        return self._fetch_one(
            f"{_SELECT} WHERE oauth_provider = %s AND oauth_subject = %s",
            (provider_name, subject_id),
        )

    def create(self, account: Account) -> Account:
        """Insert a new account; a taken contact or OAuth identity raises ``ConflictError``."""
        document = account_to_document(account)
        identity = account.oauth_identity
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO identity_accounts
                            (account_id, email, phone, oauth_provider, oauth_subject,
                             document, version, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, 1, %s, %s)
                        RETURNING version
                        """,
                        (
                            account.account_id,
                            account.email,
                            account.phone,
                            identity.provider_name if identity else None,
                            identity.provider_subject_id if identity else None,
                            Jsonb(document),
                            account.created_at,
                            account.updated_at,
                        ),
                    )
                except pg_errors.UniqueViolation as exc:
                    conn.rollback()
                    raise ConflictError("contact or identity already registered") from exc
                row = cur.fetchone()
            conn.commit()
        return account_from_document(document, row[0])

    def update(self, account: Account, expected_version: Any) -> Account:
        """Write ``account`` only if the stored version still equals ``expected_version``."""
        document = account_to_document(account)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        """
                        UPDATE identity_accounts
                        SET email = %s, phone = %s, document = %s,
                            version = version + 1, updated_at = %s
                        WHERE account_id = %s AND version = %s
                        RETURNING version
                        """,
                        (
                            account.email,
                            account.phone,
                            Jsonb(document),
                            account.updated_at,
                            account.account_id,
                            expected_version,
                        ),
                    )
                except pg_errors.UniqueViolation as exc:
                    conn.rollback()
                    raise ConflictError("contact already registered") from exc
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise VersionConflictError(
                        f"account {account.account_id} is no longer at version {expected_version}"
                    )
            conn.commit()
        return account_from_document(document, row[0])

    def _fetch_one(self, query: str, params: tuple) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        if not row:
            return None
        return account_from_document(row[0], row[1])

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        try:
            with self._pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            logger.warning("account store unavailable: %s", exc)
            raise StoreUnavailableError("account store unavailable") from exc
