"""Short-lived numeric one-time codes for contact verification and password reset."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from ..domain.account import CodePurpose, PendingCode

CODE_DIGITS = 6


class CodeOutcome(str, Enum):
    valid = "valid"
    expired = "expired"
    mismatch = "mismatch"
    rate_limited = "rate_limited"


@dataclass(frozen=True, slots=True)
class IssuedCode:
    """Plaintext code for delivery plus the hashed record to persist."""

    code: str
    record: PendingCode


@dataclass(frozen=True, slots=True)
class CodeCheck:
    """Validation outcome and the record that should replace the stored one."""

    outcome: CodeOutcome
    record: PendingCode | None


class OneTimeCodeEngine:
    """Issue and validate 6-digit codes stored as keyed HMAC digests."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
    ) -> None:
        if not secret:
            raise ValueError("one-time code secret must not be empty")
        self._key = secret.encode("utf-8")
        self._ttl = ttl
        self._max_attempts = max_attempts

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self, account_id: str, purpose: CodePurpose, now: datetime) -> IssuedCode:
        code = f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"
        record = PendingCode(
            code_hash=self._digest(account_id, purpose, code),
            purpose=purpose,
            issued_at=now,
            expires_at=now + self._ttl,
        )
        return IssuedCode(code=code, record=record)

    def validate(
        self,
        account_id: str,
        submitted_code: str,
        record: PendingCode | None,
        now: datetime,
        purpose: CodePurpose = CodePurpose.verification,
    ) -> CodeCheck:
        """Check ``submitted_code`` against ``record``.

        Every call against a live code counts as an attempt. Expired,
        exhausted and successfully used codes come back with ``record=None``
        so the caller clears them; mismatches return the record with the
        incremented counter.
        """
        if record is None or record.purpose is not purpose:
            return CodeCheck(CodeOutcome.expired, record)
        if now >= record.expires_at:
            return CodeCheck(CodeOutcome.expired, None)

        attempts = record.attempt_count + 1
        if attempts > self._max_attempts:
            return CodeCheck(CodeOutcome.rate_limited, None)

        expected = self._digest(account_id, purpose, submitted_code.strip())
        if hmac.compare_digest(expected, record.code_hash):
            return CodeCheck(CodeOutcome.valid, None)
        return CodeCheck(CodeOutcome.mismatch, replace(record, attempt_count=attempts))

    def _digest(self, account_id: str, purpose: CodePurpose, code: str) -> str:
        message = f"{account_id}:{purpose.value}:{code}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()
