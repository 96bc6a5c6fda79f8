"""Account lifecycle manager orchestrating registration, login, sessions and role changes."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Tuple, TypeVar

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .. import metrics
from ..collaborators import BoundedCaller, CollaboratorTimeout
from ..config import Settings, get_settings
from ..errors import (
    AccountNotFoundError,
    ConcurrencyError,
    ConflictError,
    DeliveryFailedError,
    InvalidCredentials,
    InvalidTransitionError,
    LinkingConflictError,
    LockedError,
    RateLimitedError,
    SessionExpiredError,
    StoreUnavailableError,
    TokenReuseError,
    UnknownOutcomeError,
    ValidationError,
    VersionConflictError,
)
from ..schemas import (
    AccountLocked,
    AccountStatusChanged,
    ContactInfo,
    DomainEvent,
    PasswordReset,
    RegistrationRequest,
    UserCreated,
    UserRoleChanged,
    UserVerified,
)
from ..security.codes import CodeOutcome, OneTimeCodeEngine
from ..security.passwords import CredentialHasher
from ..security.rate_limiter import RateLimiter, contact_rate_key
from ..security.tokens import (
    AccessToken,
    AccessValidation,
    IssuedRefreshToken,
    RotationOutcome,
    TokenIssuer,
    parse_refresh_handle,
)
from .account import (
    Account,
    AccountStatus,
    CodePurpose,
    ContactChannel,
    LockState,
    OAuthAuth,
    OAuthIdentity,
    PasswordAuth,
    PasswordCredential,
    UserRole,
    VerificationState,
)
from .contracts import OAuthLoginResult, RegistrationResult, RoleChange, TokenPair
from .lockout import LockoutPolicy
from .ports import DeliveryStatus, EventSink, NotificationChannel, Notifier, PublishStatus, UserStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

VERIFICATION_TEMPLATE = "verification_code"
PASSWORD_RESET_TEMPLATE = "password_reset_code"

_ROLE_TRANSITIONS = {
    (UserRole.not_allocated, UserRole.admin),
    (UserRole.not_allocated, UserRole.member),
    (UserRole.member, UserRole.admin),
}

_STATUS_TRANSITIONS = {
    (AccountStatus.active, AccountStatus.deactivated),
    (AccountStatus.active, AccountStatus.suspended),
    (AccountStatus.deactivated, AccountStatus.active),
    (AccountStatus.suspended, AccountStatus.active),
}

_EMAIL = TypeAdapter(EmailStr)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountLifecycleManager:
    """Sole entry point for account state transitions.

    Every mutation follows the same shape: read the account, apply the
    change to that copy, write it back conditioned on the version that was
    read. A version conflict re-reads and re-applies the change, up to
    ``max_write_retries`` times, before surfacing
    :class:`~identity_core.errors.ConcurrencyError`. Domain events are
    published only after the write they describe has committed.
    """

    def __init__(
        self,
        store: UserStore,
        notifier: Notifier,
        event_sink: EventSink,
        *,
        hasher: CredentialHasher,
        codes: OneTimeCodeEngine,
        tokens: TokenIssuer,
        lockout: LockoutPolicy,
        settings: Settings | None = None,
        rate_limiter: RateLimiter | None = None,
        caller: BoundedCaller | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Store collaborators and the helpers used to evaluate each transition."""
        self._store = store
        self._notifier = notifier
        self._event_sink = event_sink
        self._hasher = hasher
        self._codes = codes
        self._tokens = tokens
        self._lockout = lockout
        self._settings = settings or get_settings()
        self._rate_limiter = rate_limiter
        self._caller = caller or BoundedCaller(self._settings.collaborator_workers)
        self._clock = clock

    # ------------------------------------------------------------------
    # registration & verification

    def register(self, request: RegistrationRequest | Mapping[str, Any]) -> RegistrationResult:
        """Create an unverified password account and dispatch its verification code.

        A notifier failure does not undo the registration; it is reported
        through ``RegistrationResult.delivery`` so the caller can offer a
        resend.
        """
        request = self._validate_registration(request)
        email = request.email.lower() if request.email else None
        phone = request.phone
        for contact in (email, phone):
            if contact and self._read("store.get_by_contact", self._store.get_by_contact, contact):
                raise ConflictError("contact already registered")

        now = self._clock()
        account_id = str(uuid.uuid4())
        credential = self._hasher.hash(request.password) if request.password else None
        account = Account(
            account_id=account_id,
            auth=PasswordAuth(
                channel=ContactChannel.email if email else ContactChannel.phone,
                credential=credential,
            ),
            created_at=now,
            updated_at=now,
            email=email,
            phone=phone,
            full_name=request.full_name,
            location=request.location,
            profile_picture_url=request.profile_picture_url,
            preferred_language=request.preferred_language,
            accepted_terms_version=request.accepted_terms_version,
        )
        issued = self._codes.issue(account_id, CodePurpose.verification, now)
        account.pending_code = issued.record

        stored = self._create(account)
        logger.info("account %s registered via %s", stored.account_id, stored.auth_provider)

        delivery = self._send_code(stored, issued.code, VERIFICATION_TEMPLATE)
        self._publish(
            UserCreated(
                account_id=stored.account_id,
                contact=ContactInfo(email=stored.email, phone=stored.phone),
                timestamp=now,
            )
        )
        return RegistrationResult(account=stored, delivery=delivery)

    def verify_code(self, account_id: str, submitted_code: str) -> CodeOutcome:
        """Validate a verification code, marking the account verified on success."""
        now = self._clock()

        def apply(account: Account) -> Tuple[bool, CodeOutcome]:
            check = self._codes.validate(
                account.account_id, submitted_code, account.pending_code, now, CodePurpose.verification
            )
            if check.outcome is not CodeOutcome.valid and check.record is account.pending_code:
                return False, check.outcome
            account.pending_code = check.record
            if check.outcome is CodeOutcome.valid:
                account.verification_state = VerificationState.verified
            account.updated_at = now
            return True, check.outcome

        stored, outcome = self._mutate(account_id, apply)
        if outcome is CodeOutcome.valid:
            logger.info("account %s verified", stored.account_id)
            self._publish(UserVerified(account_id=stored.account_id, timestamp=now))
        else:
            logger.info("verification for account %s failed: %s", account_id, outcome.value)
        return outcome

    def resend_verification_code(self, account_id: str) -> None:
        """Replace any pending code with a fresh verification code and deliver it."""
        self._check_rate("resend", account_id)
        now = self._clock()

        def apply(account: Account) -> Tuple[bool, str]:
            if account.is_verified:
                raise InvalidTransitionError("account is already verified")
            issued = self._codes.issue(account.account_id, CodePurpose.verification, now)
            account.pending_code = issued.record
            account.updated_at = now
            return True, issued.code

        stored, code = self._mutate(account_id, apply)
        if self._send_code(stored, code, VERIFICATION_TEMPLATE) is DeliveryStatus.failed:
            raise DeliveryFailedError("verification code could not be delivered")

    # ------------------------------------------------------------------
    # authentication

    def login(
        self,
        contact: str,
        password: str,
        *,
        ip: str | None = None,
        device_info: str | None = None,
    ) -> TokenPair:
        """Authenticate with a contact and password, returning a fresh token pair.

        Raises
        ------
        RateLimitedError
            Too many attempts against this contact in the current window.
        LockedError
            The account is locked, or this failure just locked it.
        InvalidCredentials
            Unknown contact, wrong password or unusable account.
        """
        contact = self._normalize_contact(contact)
        try:
            self._check_rate("login", contact)
        except RateLimitedError:
            metrics.LOGIN_ATTEMPTS.labels("rate_limited").inc()
            raise
        account = self._read("store.get_by_contact", self._store.get_by_contact, contact)
        now = self._clock()
        if account is None:
            self._hasher.verify_dummy(password)
            metrics.LOGIN_ATTEMPTS.labels("invalid").inc()
            raise InvalidCredentials()

        self._ensure_not_locked(account, now)
        credential = account.credential
        if account.status is not AccountStatus.active or credential is None:
            self._hasher.verify_dummy(password)
            logger.info("login refused for account %s (status=%s)", account.account_id, account.status.value)
            metrics.LOGIN_ATTEMPTS.labels("invalid").inc()
            raise InvalidCredentials()

        if not self._hasher.verify(password, credential):
            self._record_failure(account, credential, now)

        _, tokens = self._complete_login(account, now, ip=ip, device_info=device_info, password=password)
        return tokens

    def oauth_login_or_create(
        self,
        provider_name: str,
        provider_subject_id: str,
        email: str,
        *,
        full_name: str | None = None,
        ip: str | None = None,
        device_info: str | None = None,
    ) -> OAuthLoginResult:
        """Sign in with an identity already validated by an external provider.

        An unknown identity whose email belongs to an existing account raises
        :class:`~identity_core.errors.LinkingConflictError`; whether to reject
        or offer linking is the calling product's decision.
        """
        provider = provider_name.strip().lower()
        subject = provider_subject_id.strip()
        if not provider or not subject:
            raise ValidationError("provider name and subject id are required")
        try:
            email = str(_EMAIL.validate_python(email.strip())).lower()
        except PydanticValidationError as exc:
            raise ValidationError("invalid email address", errors=[e["msg"] for e in exc.errors()]) from exc

        account = self._read(
            "store.get_by_oauth_identity", self._store.get_by_oauth_identity, provider, subject
        )
        created = False
        now = self._clock()
        if account is None:
            existing = self._read("store.get_by_contact", self._store.get_by_contact, email)
            if existing is not None:
                logger.info("oauth %s identity collides with account %s", provider, existing.account_id)
                raise LinkingConflictError(existing.account_id, provider)
            account, created = self._create_oauth_account(provider, subject, email, full_name, now)

        self._ensure_not_locked(account, now)
        if account.status is not AccountStatus.active:
            metrics.LOGIN_ATTEMPTS.labels("invalid").inc()
            raise InvalidCredentials()
        stored, tokens = self._complete_login(account, now, ip=ip, device_info=device_info)
        return OAuthLoginResult(account=stored, tokens=tokens, created=created)

    def refresh_session(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token and return the replacement pair."""
        parsed = parse_refresh_handle(refresh_token)
        if parsed is None:
            raise InvalidCredentials()
        account_id, token_id, secret = parsed
        now = self._clock()

        def apply(account: Account):
            if account.status is not AccountStatus.active:
                raise InvalidCredentials()
            rotation = self._tokens.rotate_refresh_token(account, token_id, secret, now)
            changed = rotation.revoked_count > 0
            if changed:
                account.updated_at = now
            return changed, rotation

        try:
            _, rotation = self._mutate(account_id, apply)
        except AccountNotFoundError as exc:
            raise InvalidCredentials() from exc

        if rotation.outcome is RotationOutcome.rotated:
            return self._token_pair(rotation.access, rotation.refresh)
        if rotation.outcome is RotationOutcome.reused:
            metrics.REFRESH_TOKEN_REUSE.inc()
            raise TokenReuseError()
        if rotation.outcome is RotationOutcome.expired:
            raise SessionExpiredError()
        raise InvalidCredentials()

    def logout(self, refresh_token: str) -> bool:
        """Revoke the presented refresh token; returns ``False`` if nothing was revoked."""
        parsed = parse_refresh_handle(refresh_token)
        if parsed is None:
            return False
        account_id, token_id, secret = parsed
        now = self._clock()

        def apply(account: Account) -> Tuple[bool, bool]:
            if not self._tokens.verify_secret(account, token_id, secret):
                return False, False
            revoked = self._tokens.revoke(account, token_id)
            if revoked:
                account.updated_at = now
            return revoked, revoked

        try:
            _, revoked = self._mutate(account_id, apply)
        except AccountNotFoundError:
            return False
        return revoked

    def validate_access_token(self, token: str) -> AccessValidation:
        return self._tokens.validate_access_token(token, self._clock())

    # ------------------------------------------------------------------
    # password reset

    def request_password_reset(self, contact: str) -> None:
        """Send a password reset code; silent for unknown or ineligible contacts."""
        contact = self._normalize_contact(contact)
        self._check_rate("reset", contact)
        account = self._read("store.get_by_contact", self._store.get_by_contact, contact)
        if (
            account is None
            or account.status is not AccountStatus.active
            or not isinstance(account.auth, PasswordAuth)
        ):
            logger.debug("password reset requested for ineligible contact")
            return
        now = self._clock()

        def apply(fresh: Account) -> Tuple[bool, str]:
            issued = self._codes.issue(fresh.account_id, CodePurpose.password_reset, now)
            fresh.pending_code = issued.record
            fresh.updated_at = now
            return True, issued.code

        stored, code = self._mutate(account.account_id, apply, first=account)
        self._send_code(stored, code, PASSWORD_RESET_TEMPLATE)

    def reset_password(self, contact: str, code: str, new_password: str) -> CodeOutcome:
        """Replace the password using a reset code.

        On success the lock state is cleared and every refresh token is
        revoked, so sessions opened with the old password end.
        """
        self._check_password(new_password)
        contact = self._normalize_contact(contact)
        account = self._read("store.get_by_contact", self._store.get_by_contact, contact)
        if account is None or not isinstance(account.auth, PasswordAuth):
            return CodeOutcome.expired
        now = self._clock()
        hashed: list[PasswordCredential] = []

        def apply(fresh: Account) -> Tuple[bool, CodeOutcome]:
            check = self._codes.validate(
                fresh.account_id, code, fresh.pending_code, now, CodePurpose.password_reset
            )
            if check.outcome is not CodeOutcome.valid and check.record is fresh.pending_code:
                return False, check.outcome
            fresh.pending_code = check.record
            if check.outcome is CodeOutcome.valid:
                if not hashed:
                    hashed.append(self._hasher.hash(new_password))
                fresh.auth = replace(fresh.auth, credential=hashed[0])
                fresh.lock_state = self._lockout.on_success(fresh.lock_state)
                self._tokens.revoke_all(fresh)
            fresh.updated_at = now
            return True, check.outcome

        stored, outcome = self._mutate(account.account_id, apply, first=account)
        if outcome is CodeOutcome.valid:
            logger.info("password reset for account %s", stored.account_id)
            self._publish(PasswordReset(account_id=stored.account_id, timestamp=now))
        return outcome

    # ------------------------------------------------------------------
    # administrative transitions

    def elevate_role(
        self,
        account_id: str,
        new_role: UserRole | str,
        *,
        expected_version: Any = None,
    ) -> RoleChange:
        """Move the account's role forward.

        Parameters
        ----------
        account_id:
            Account to elevate.
        new_role:
            Target role; only ``not_allocated -> admin|member`` and
            ``member -> admin`` are accepted. Requesting the current role is a
            no-op.
        expected_version:
            When given, the write is a single compare-and-swap against this
            version and a mismatch raises
            :class:`~identity_core.errors.ConcurrencyError` without retrying.
        """
        try:
            target = UserRole(new_role)
        except ValueError as exc:
            raise ValidationError(f"unknown role {new_role!r}") from exc
        now = self._clock()

        def apply(account: Account) -> Tuple[bool, UserRole]:
            old = account.role
            if old is target:
                return False, old
            if (old, target) not in _ROLE_TRANSITIONS:
                raise InvalidTransitionError(f"cannot change role from {old.value} to {target.value}")
            account.role = target
            account.updated_at = now
            return True, old

        stored, old_role = self._mutate(account_id, apply, expected_version=expected_version)
        changed = old_role is not target
        if changed:
            logger.info("account %s role %s -> %s", account_id, old_role.value, target.value)
            self._publish(
                UserRoleChanged(account_id=account_id, old_role=old_role, new_role=target, timestamp=now)
            )
        return RoleChange(account=stored, old_role=old_role, new_role=target, changed=changed)

    def deactivate(self, account_id: str, reason: str | None = None) -> Account:
        return self._change_status(account_id, AccountStatus.deactivated, reason)

    def suspend(self, account_id: str, reason: str | None = None) -> Account:
        return self._change_status(account_id, AccountStatus.suspended, reason)

    def reactivate(self, account_id: str, reason: str | None = None) -> Account:
        return self._change_status(account_id, AccountStatus.active, reason)

    def get_account(self, account_id: str) -> Account | None:
        return self._read("store.get_by_id", self._store.get_by_id, account_id)

    # ------------------------------------------------------------------
    # internals

    def _change_status(self, account_id: str, target: AccountStatus, reason: str | None) -> Account:
        now = self._clock()

        def apply(account: Account) -> Tuple[bool, AccountStatus]:
            old = account.status
            if old is target:
                return False, old
            if (old, target) not in _STATUS_TRANSITIONS:
                raise InvalidTransitionError(f"cannot change status from {old.value} to {target.value}")
            account.status = target
            if target is not AccountStatus.active:
                self._tokens.revoke_all(account)
            account.updated_at = now
            return True, old

        stored, old_status = self._mutate(account_id, apply)
        if old_status is not target:
            logger.info("account %s status %s -> %s", account_id, old_status.value, target.value)
            self._publish(
                AccountStatusChanged(
                    account_id=account_id,
                    old_status=old_status,
                    new_status=target,
                    reason=reason,
                    timestamp=now,
                )
            )
        return stored

    def _record_failure(self, account: Account, credential: PasswordCredential, now: datetime) -> None:
        """Persist a failed password attempt and raise the matching error."""

        def apply(fresh: Account) -> Tuple[bool, Tuple[LockState, bool] | None]:
            if fresh.credential != credential:
                # password changed since it was checked; the failure is stale
                return False, None
            if self._lockout.evaluate(fresh.lock_state, now).is_currently_locked:
                return False, (fresh.lock_state, False)
            fresh.lock_state = self._lockout.on_failure(fresh.lock_state, now)
            fresh.updated_at = now
            return True, (fresh.lock_state, fresh.lock_state.is_locked)

        _, result = self._mutate(account.account_id, apply, first=account)
        metrics.LOGIN_ATTEMPTS.labels("invalid").inc()
        if result is None:
            raise InvalidCredentials()
        lock_state, newly_locked = result
        evaluation = self._lockout.evaluate(lock_state, now)
        if newly_locked:
            metrics.ACCOUNT_LOCKOUTS.inc()
            logger.warning(
                "account %s locked until %s after %d consecutive failures",
                account.account_id,
                lock_state.locked_until,
                lock_state.consecutive_failures,
            )
            self._publish(
                AccountLocked(account_id=account.account_id, until=lock_state.locked_until, timestamp=now)
            )
        if evaluation.is_currently_locked:
            raise LockedError(evaluation.remaining, lock_state.locked_until)
        raise InvalidCredentials()

    def _complete_login(
        self,
        account: Account,
        now: datetime,
        *,
        ip: str | None,
        device_info: str | None,
        password: str | None = None,
    ) -> Tuple[Account, TokenPair]:
        """Apply the success path: reset failures, stamp the login and issue tokens."""
        verified_credential = account.credential
        rehashed: PasswordCredential | None = None
        if password is not None and verified_credential is not None:
            if self._hasher.needs_rehash(verified_credential):
                rehashed = self._hasher.hash(password)

        def apply(fresh: Account) -> Tuple[bool, Tuple[AccessToken, IssuedRefreshToken]]:
            evaluation = self._lockout.evaluate(fresh.lock_state, now)
            if evaluation.is_currently_locked:
                raise LockedError(evaluation.remaining, fresh.lock_state.locked_until)
            if fresh.status is not AccountStatus.active:
                raise InvalidCredentials()
            credential_moved = password is not None and fresh.credential != verified_credential
            if credential_moved:
                # a concurrent login may have rehashed the same password
                if fresh.credential is None or not self._hasher.verify(password, fresh.credential):
                    raise InvalidCredentials()
            fresh.lock_state = self._lockout.on_success(fresh.lock_state)
            fresh.last_login_at = now
            fresh.last_login_ip = ip
            fresh.updated_at = now
            if rehashed is not None and not credential_moved and isinstance(fresh.auth, PasswordAuth):
                fresh.auth = replace(fresh.auth, credential=rehashed)
            refresh = self._tokens.issue_refresh_token(fresh, device_info, now)
            access = self._tokens.issue_access_token(fresh, now)
            return True, (access, refresh)

        stored, (access, refresh) = self._mutate(account.account_id, apply, first=account)
        metrics.LOGIN_ATTEMPTS.labels("success").inc()
        logger.info("account %s logged in", stored.account_id)
        return stored, self._token_pair(access, refresh)

    def _create_oauth_account(
        self,
        provider: str,
        subject: str,
        email: str,
        full_name: str | None,
        now: datetime,
    ) -> Tuple[Account, bool]:
        account = Account(
            account_id=str(uuid.uuid4()),
            auth=OAuthAuth(identity=OAuthIdentity(provider_name=provider, provider_subject_id=subject)),
            created_at=now,
            updated_at=now,
            email=email,
            full_name=full_name or "",
            verification_state=VerificationState.verified,
        )
        try:
            stored = self._create(account)
        except ConflictError:
            # a concurrent request may have created the same identity first
            existing = self._read(
                "store.get_by_oauth_identity", self._store.get_by_oauth_identity, provider, subject
            )
            if existing is None:
                raise
            return existing, False
        logger.info("account %s created via oauth %s", stored.account_id, provider)
        self._publish(
            UserCreated(account_id=stored.account_id, contact=ContactInfo(email=email), timestamp=now)
        )
        self._publish(UserVerified(account_id=stored.account_id, timestamp=now))
        return stored, True

    def _ensure_not_locked(self, account: Account, now: datetime) -> None:
        evaluation = self._lockout.evaluate(account.lock_state, now)
        if evaluation.is_currently_locked:
            metrics.LOGIN_ATTEMPTS.labels("locked").inc()
            raise LockedError(evaluation.remaining, account.lock_state.locked_until)

    def _mutate(
        self,
        account_id: str,
        apply: Callable[[Account], Tuple[bool, T]],
        *,
        first: Account | None = None,
        expected_version: Any = None,
    ) -> Tuple[Account, T]:
        """Read-modify-write ``account_id`` under optimistic concurrency.

        ``apply`` mutates the account it is given and returns
        ``(changed, value)``; unchanged accounts are not written.
        """
        attempts = 1 if expected_version is not None else self._settings.max_write_retries + 1
        account = first
        for attempt in range(attempts):
            if account is None:
                account = self._load(account_id)
            if expected_version is not None and account.version != expected_version:
                metrics.STORE_CONFLICTS.inc()
                raise ConcurrencyError("account was modified; re-read and retry")
            base_version = account.version
            changed, value = apply(account)
            if not changed:
                return account, value
            try:
                return self._update(account, base_version), value
            except VersionConflictError:
                metrics.STORE_CONFLICTS.inc()
                logger.info("version conflict on account %s (attempt %d)", account_id, attempt + 1)
                account = None
        logger.warning("giving up on account %s after %d conflicting writes", account_id, attempts)
        raise ConcurrencyError("account was modified concurrently; retry the operation")

    def _load(self, account_id: str) -> Account:
        account = self._read("store.get_by_id", self._store.get_by_id, account_id)
        if account is None:
            raise AccountNotFoundError(f"account {account_id} not found")
        return account

    def _read(self, name: str, fn: Callable[..., T], *args: Any) -> T:
        """Call a store read, retrying timeouts and transient failures a bounded number of times."""
        attempts = self._settings.max_write_retries + 1
        last_error: Exception | None = None
        for _ in range(attempts):
            try:
                return self._caller.call(name, self._settings.store_timeout_seconds, fn, *args)
            except (CollaboratorTimeout, StoreUnavailableError) as exc:
                last_error = exc
                logger.warning("%s failed transiently: %s", name, exc)
        raise StoreUnavailableError(f"{name} unavailable after {attempts} attempts") from last_error

    def _create(self, account: Account) -> Account:
        try:
            return self._caller.call(
                "store.create", self._settings.store_timeout_seconds, self._store.create, account
            )
        except (CollaboratorTimeout, StoreUnavailableError) as exc:
            raise UnknownOutcomeError("account creation may or may not have committed") from exc

    def _update(self, account: Account, expected_version: Any) -> Account:
        try:
            return self._caller.call(
                "store.update",
                self._settings.store_timeout_seconds,
                self._store.update,
                account,
                expected_version,
            )
        except (CollaboratorTimeout, StoreUnavailableError) as exc:
            raise UnknownOutcomeError("account update may or may not have committed") from exc

    def _send_code(self, account: Account, code: str, template_id: str) -> DeliveryStatus:
        contact_channel, destination = account.primary_contact
        channel = NotificationChannel.email if contact_channel is ContactChannel.email else NotificationChannel.sms
        payload = {
            "code": code,
            "expires_in_minutes": int(self._codes.ttl.total_seconds() // 60),
            "full_name": account.full_name,
            "language": account.preferred_language,
        }
        try:
            status = self._caller.call(
                "notifier.send",
                self._settings.notifier_timeout_seconds,
                self._notifier.send,
                channel,
                destination,
                template_id,
                payload,
            )
        except Exception as exc:
            logger.warning(
                "notifier failed sending %s to account %s: %s", template_id, account.account_id, exc
            )
            status = DeliveryStatus.failed
        if status is not DeliveryStatus.ok:
            metrics.NOTIFICATION_FAILURES.labels(channel.value).inc()
            logger.warning("delivery of %s over %s failed for account %s", template_id, channel.value, account.account_id)
            return DeliveryStatus.failed
        return DeliveryStatus.ok

    def _publish(self, event: DomainEvent) -> None:
        try:
            status = self._caller.call(
                "event_sink.publish",
                self._settings.event_timeout_seconds,
                self._event_sink.publish,
                event.topic,
                event.to_payload(),
            )
        except Exception as exc:
            logger.warning("publishing %s for account %s failed: %s", event.topic, event.account_id, exc)
            status = PublishStatus.unknown
        if status is not PublishStatus.ok:
            metrics.EVENT_PUBLISH_FAILURES.labels(event.topic).inc()

    def _token_pair(self, access: AccessToken, refresh: IssuedRefreshToken) -> TokenPair:
        return TokenPair(
            account_id=refresh.account_id,
            access_token=access.token,
            access_expires_in=access.expires_in,
            refresh_token=refresh.handle,
            refresh_expires_in=int(self._tokens.refresh_ttl.total_seconds()),
        )

    def _check_rate(self, action: str, subject: str) -> None:
        if self._rate_limiter is not None and not self._rate_limiter.allow(contact_rate_key(action, subject)):
            raise RateLimitedError()

    def _check_password(self, password: str) -> None:
        if len(password) < self._settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self._settings.password_min_length} characters"
            )

    def _validate_registration(self, request: RegistrationRequest | Mapping[str, Any]) -> RegistrationRequest:
        if not isinstance(request, RegistrationRequest):
            try:
                request = RegistrationRequest.model_validate(request)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "invalid registration request", errors=[e["msg"] for e in exc.errors()]
                ) from exc
        if request.password is not None:
            self._check_password(request.password)
        return request

    @staticmethod
    def _normalize_contact(contact: str) -> str:
        contact = contact.strip()
        return contact.lower() if "@" in contact else contact
