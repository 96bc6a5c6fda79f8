"""Domain-level result contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass

from .account import Account, UserRole
from .ports import DeliveryStatus


@dataclass(slots=True)
class TokenPair:
    """Encapsulates the access/refresh token pair returned after authentication."""

    account_id: str
    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int
    token_type: str = "bearer"


@dataclass(slots=True)
class RegistrationResult:
    """Outcome of a registration; ``delivery`` reports the verification code dispatch."""

    account: Account
    delivery: DeliveryStatus

    @property
    def delivery_failed(self) -> bool:
        return self.delivery is DeliveryStatus.failed


@dataclass(slots=True)
class OAuthLoginResult:
    account: Account
    tokens: TokenPair
    created: bool


@dataclass(slots=True)
class RoleChange:
    account: Account
    old_role: UserRole
    new_role: UserRole
    changed: bool
