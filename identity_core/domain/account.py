from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union


class ContactChannel(str, Enum):
    email = "email"
    phone = "phone"


class VerificationState(str, Enum):
    unverified = "unverified"
    verified = "verified"


class AccountStatus(str, Enum):
    active = "active"
    deactivated = "deactivated"
    suspended = "suspended"


class UserRole(str, Enum):
    """Platform-wide initial role; group-specific roles live elsewhere."""

    not_allocated = "not_allocated"
    admin = "admin"
    member = "member"


class CodePurpose(str, Enum):
    verification = "verification"
    password_reset = "password_reset"


@dataclass(frozen=True, slots=True)
class PasswordCredential:
    """Argon2id hash plus the salt and cost parameters it was produced with."""

    hash: str
    salt: str
    params: dict[str, int]


@dataclass(frozen=True, slots=True)
class OAuthIdentity:
    provider_name: str
    provider_subject_id: str


@dataclass(frozen=True, slots=True)
class PasswordAuth:
    """Password-based provider bound to the contact channel used for login."""

    channel: ContactChannel
    credential: PasswordCredential | None = None


@dataclass(frozen=True, slots=True)
class OAuthAuth:
    identity: OAuthIdentity


AuthMethod = Union[PasswordAuth, OAuthAuth]


@dataclass(frozen=True, slots=True)
class PendingCode:
    """Hashed one-time code outstanding for verification or password reset."""

    code_hash: str
    purpose: CodePurpose
    issued_at: datetime
    expires_at: datetime
    attempt_count: int = 0


@dataclass(frozen=True, slots=True)
class LockState:
    is_locked: bool = False
    locked_until: datetime | None = None
    consecutive_failures: int = 0
    lock_cycle: int = 0


@dataclass(slots=True)
class RefreshTokenRecord:
    """Server-side record of an issued refresh token; the secret is stored hashed."""

    token_id: str
    family_id: str
    secret_hash: str
    issued_at: datetime
    expires_at: datetime
    device_info: str | None = None
    revoked: bool = False
    replaced_by: str | None = None


@dataclass(slots=True)
class Account:
    """Aggregate root for a platform identity."""

    account_id: str
    auth: AuthMethod
    created_at: datetime
    updated_at: datetime
    email: str | None = None
    phone: str | None = None
    full_name: str = ""
    location: str | None = None
    profile_picture_url: str | None = None
    preferred_language: str = "en"
    accepted_terms_version: str | None = None
    verification_state: VerificationState = VerificationState.unverified
    pending_code: PendingCode | None = None
    lock_state: LockState = field(default_factory=LockState)
    status: AccountStatus = AccountStatus.active
    role: UserRole = UserRole.not_allocated
    refresh_tokens: list[RefreshTokenRecord] = field(default_factory=list)
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    version: Any = None

    @property
    def auth_provider(self) -> str:
        """Return the provider variant name, e.g. ``password_email`` or ``oauth:google``."""
        if isinstance(self.auth, OAuthAuth):
            return f"oauth:{self.auth.identity.provider_name}"
        return f"password_{self.auth.channel.value}"

    @property
    def credential(self) -> PasswordCredential | None:
        if isinstance(self.auth, PasswordAuth):
            return self.auth.credential
        return None

    @property
    def oauth_identity(self) -> OAuthIdentity | None:
        if isinstance(self.auth, OAuthAuth):
            return self.auth.identity
        return None

    @property
    def is_verified(self) -> bool:
        return self.verification_state is VerificationState.verified

    @property
    def primary_contact(self) -> tuple[ContactChannel, str]:
        """Return the channel and destination used for outbound codes."""
        if isinstance(self.auth, PasswordAuth) and self.auth.channel is ContactChannel.phone and self.phone:
            return ContactChannel.phone, self.phone
        if self.email:
            return ContactChannel.email, self.email
        if self.phone:
            return ContactChannel.phone, self.phone
        raise ValueError(f"account {self.account_id} has no contact")

    def contacts(self) -> list[str]:
        return [value for value in (self.email, self.phone) if value]
