"""Argon2id password hashing with a bounded concurrency budget."""

from __future__ import annotations

import base64
import logging
import secrets
from contextlib import contextmanager
from threading import BoundedSemaphore, Lock
from typing import Iterator

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from argon2.low_level import hash_secret

from ..domain.account import PasswordCredential
from ..errors import CredentialCorruptedError, ThrottledError
from .. import metrics

logger = logging.getLogger(__name__)

MIN_MEMORY_COST_KIB = 65536
MIN_TIME_COST = 3
MIN_SALT_LEN = 16


class CredentialHasher:
    """Hash and verify passwords with Argon2id.

    Hashing is memory-hard and CPU-bound, so at most ``max_concurrent``
    operations run at once; callers past that budget get
    :class:`~identity_core.errors.ThrottledError` instead of waiting.
    """

    def __init__(
        self,
        *,
        time_cost: int = MIN_TIME_COST,
        memory_cost: int = MIN_MEMORY_COST_KIB,
        parallelism: int = 1,
        hash_len: int = 32,
        salt_len: int = MIN_SALT_LEN,
        max_concurrent: int = 4,
    ) -> None:
        if memory_cost < MIN_MEMORY_COST_KIB:
            raise ValueError(f"argon2 memory cost must be at least {MIN_MEMORY_COST_KIB} KiB")
        if time_cost < MIN_TIME_COST:
            raise ValueError(f"argon2 time cost must be at least {MIN_TIME_COST}")
        if parallelism < 1:
            raise ValueError("argon2 parallelism must be at least 1")
        if salt_len < MIN_SALT_LEN:
            raise ValueError(f"salt length must be at least {MIN_SALT_LEN} bytes")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._params = {
            "time_cost": time_cost,
            "memory_cost": memory_cost,
            "parallelism": parallelism,
            "hash_len": hash_len,
        }
        self._salt_len = salt_len
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )
        self._slots = BoundedSemaphore(max_concurrent)
        self._dummy: PasswordCredential | None = None
        self._dummy_lock = Lock()

    @property
    def params(self) -> dict[str, int]:
        return dict(self._params)

    def hash(self, password: str, salt: bytes | None = None) -> PasswordCredential:
        """Derive a credential record for ``password``, generating a salt if none is given."""
        if salt is None:
            salt = secrets.token_bytes(self._salt_len)
        elif len(salt) < MIN_SALT_LEN:
            raise ValueError(f"salt length must be at least {MIN_SALT_LEN} bytes")
        with self._slot():
            encoded = hash_secret(
                password.encode("utf-8"),
                salt,
                time_cost=self._params["time_cost"],
                memory_cost=self._params["memory_cost"],
                parallelism=self._params["parallelism"],
                hash_len=self._params["hash_len"],
                type=Type.ID,
            )
        return PasswordCredential(
            hash=encoded.decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
            params=self.params,
        )

    def verify(self, password: str, stored: PasswordCredential) -> bool:
        """Return ``True`` when ``password`` matches the stored credential.

        Raises
        ------
        CredentialCorruptedError
            If the stored hash cannot be decoded.
        ThrottledError
            If the hashing budget is exhausted.
        """
        with self._slot():
            try:
                return self._hasher.verify(stored.hash, password)
            except VerifyMismatchError:
                return False
            except (InvalidHashError, VerificationError) as exc:
                logger.error("stored credential could not be verified: %s", type(exc).__name__)
                raise CredentialCorruptedError("stored credential is malformed") from exc

    def needs_rehash(self, stored: PasswordCredential) -> bool:
        """Return ``True`` when ``stored`` was produced with weaker parameters than configured."""
        try:
            return self._hasher.check_needs_rehash(stored.hash)
        except InvalidHashError as exc:
            raise CredentialCorruptedError("stored credential is malformed") from exc

    def verify_dummy(self, password: str) -> None:
        """Spend the same work as a real verification against a throwaway hash."""
        with self._dummy_lock:
            if self._dummy is None:
                self._dummy = self.hash(secrets.token_urlsafe(16))
            dummy = self._dummy
        self.verify(password, dummy)

    @contextmanager
    def _slot(self) -> Iterator[None]:
        if not self._slots.acquire(blocking=False):
            metrics.HASH_THROTTLED.inc()
            logger.warning("password hashing throttled: concurrency budget exhausted")
            raise ThrottledError("password hashing capacity exhausted")
        try:
            yield
        finally:
            self._slots.release()
