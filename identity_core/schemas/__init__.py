"""Shared schema exports."""

from .events import (
    AccountLocked,
    AccountStatusChanged,
    ContactInfo,
    DomainEvent,
    PasswordReset,
    UserCreated,
    UserRoleChanged,
    UserVerified,
)
from .registration import RegistrationRequest

__all__ = [
    "AccountLocked",
    "AccountStatusChanged",
    "ContactInfo",
    "DomainEvent",
    "PasswordReset",
    "RegistrationRequest",
    "UserCreated",
    "UserRoleChanged",
    "UserVerified",
]
