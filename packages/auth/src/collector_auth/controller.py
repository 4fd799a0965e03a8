"""Sign-in orchestration for the authentication gate.

``AuthSessionController`` composes the rate limiter, the identity provider
and the MFA orchestrator into the three sign-in outcomes (authenticated,
MFA required, failed) and owns the pending-session lifecycle in between.

State machine::

    IDLE -> AUTHENTICATING -> AUTHENTICATED | MFA_PENDING | FAILED
    MFA_PENDING -> AUTHENTICATED | IDLE

Front ends observe transitions through :meth:`AuthSessionController.subscribe`.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from .audit import (
    AuthAuditEvent,
    AuthEventType,
    login_blocked_event,
    login_failed_event,
    login_success_event,
    logout_event,
    mfa_event,
    user_created_event,
)
from .config import AuthGateSettings
from .exceptions import (
    AccountLockedError,
    AuthGateError,
    ErrorCategory,
    ValidationError,
    as_auth_gate_error,
)
from .mfa import MFAOrchestrator
from .models import (
    AuthState,
    AuthStateChange,
    MFAFactor,
    PendingSession,
    RateLimitStatus,
    SessionCredential,
    SignInOutcome,
    SignInResult,
    is_valid_email,
    normalize_identifier,
    utc_now,
)
from .observability import AuthMetrics, AuthTracing
from .password_policy import ensure_password_policy
from .ports import IAuthAuditStore, IIdentityProvider, ISecureKeystore
from .providers import GoTrueIdentityProvider
from .rate_limit import RateLimiter
from .storage import KeystoreLoginAttemptStore, SecureCredentialStore

logger = logging.getLogger(__name__)

StateListener = Callable[[AuthStateChange], Awaitable[None] | None]

MFA_REQUIRED_MESSAGE = "Enter the 6-digit code from your authenticator app."
INVALID_EMAIL_MESSAGE = "Please enter a valid email address."


class AuthSessionController:
    """Single entry point for sign-in, MFA completion and sign-out.

    Construct one instance at process start and pass it to whatever needs
    it. Callers must not run two ``sign_in`` calls for the same identifier
    at once (disable the submit action while a call is in flight).

    Example:
        ```python
        controller = AuthSessionController.create(
            AuthGateSettings.from_env(), keystore=EncryptedFileKeystore(path, key)
        )
        unsubscribe = controller.subscribe(lambda change: render(change.current))

        result = await controller.sign_in("user@x.com", password)
        if result.mfa_required:
            challenge = await controller.mfa.challenge_mfa(result.factor_id)
            verification = await controller.mfa.verify_mfa(
                result.factor_id, challenge.challenge_id, code
            )
            if verification.verified:
                await controller.complete_mfa_verification()
        ```
    """

    def __init__(
        self,
        provider: IIdentityProvider,
        rate_limiter: RateLimiter,
        mfa: MFAOrchestrator,
        store: SecureCredentialStore,
        settings: AuthGateSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.mfa = mfa
        self.store = store
        self.settings = settings or AuthGateSettings()
        self._clock = clock
        self._audit_store = audit_store
        self._provider_name: str = getattr(provider, "name", "unknown")

        self._state = AuthState.IDLE
        self._pending: PendingSession | None = None
        self._session: SessionCredential | None = None
        self._listeners: list[StateListener] = []
        mfa.on_code_rejected(self._on_mfa_code_rejected)

    @classmethod
    def create(
        cls,
        settings: AuthGateSettings,
        *,
        keystore: ISecureKeystore,
        provider: IIdentityProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
        audit_store: IAuthAuditStore | None = None,
    ) -> AuthSessionController:
        """Assemble a controller and its collaborators from settings.

        Args:
            settings: Gate settings.
            keystore: Secure keystore shared by every store.
            provider: Identity provider; a GoTrue client is built from the
                settings when omitted.
            clock: Source of the current UTC time.
            audit_store: Optional audit sink.
        """
        if provider is None:
            provider = GoTrueIdentityProvider.from_settings(settings)

        store = SecureCredentialStore(keystore, prefix=settings.storage_prefix)
        rate_limiter = RateLimiter(
            KeystoreLoginAttemptStore(keystore, prefix=settings.storage_prefix),
            config=settings.rate_limit,
            clock=clock,
            audit_store=audit_store,
        )
        mfa = MFAOrchestrator(
            provider, store, settings.mfa, clock=clock, audit_store=audit_store
        )
        return cls(
            provider,
            rate_limiter,
            mfa,
            store,
            settings,
            clock=clock,
            audit_store=audit_store,
        )

    # ═══════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def pending(self) -> PendingSession | None:
        return self._pending

    @property
    def session(self) -> SessionCredential | None:
        return self._session

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener.

        Listeners may be plain functions or coroutine functions; they
        receive an :class:`AuthStateChange` for every transition.

        Returns:
            A function that removes the listener (safe to call twice).
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _transition(self, state: AuthState, identifier: str | None = None) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug("Auth state %s -> %s", previous.value, state.value)

        change = AuthStateChange(
            previous=previous, current=state, identifier=identifier, timestamp=self._clock()
        )
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Auth state listener failed")

    async def _audit(self, event: AuthAuditEvent) -> None:
        AuthMetrics.record_event(event, provider=self._provider_name)
        if self._audit_store is not None:
            await self._audit_store.record(event)

    # ═══════════════════════════════════════════════════════════════
    # SIGN IN
    # ═══════════════════════════════════════════════════════════════

    async def sign_in(self, identifier: str, password: str) -> SignInResult:
        """Check a credential and decide between the three outcomes.

        1. A malformed email or a client-side lockout fails immediately,
           without a provider call and without attempt accounting.
        2. A rejected credential is recorded as a failed attempt, as is
           every second-factor code the provider rejects while the sign-in
           is pending.
        3. Network and unexpected provider errors fail without being
           counted.
        4. An account with a verified MFA factor is held in a pending
           session until :meth:`complete_mfa_verification`.
        5. Otherwise the session is persisted and the success recorded.

        Args:
            identifier: Account email.
            password: Account password.

        Returns:
            SignInResult; failures carry a structured error and a message
            safe to show to the user.
        """
        key = normalize_identifier(identifier or "")
        with AuthTracing.span(
            "sign_in", provider=self._provider_name, attributes={"auth.identifier": key}
        ) as span:
            result = await self._sign_in(key, password)
            AuthTracing.set_outcome(span, result.outcome.value)
        return result

    async def _sign_in(self, key: str, password: str) -> SignInResult:
        if self._pending is not None:
            await self.cancel_mfa_verification()

        if not key or not password:
            error = ValidationError(
                "identifier and password are required",
                user_message="Please enter your email and password.",
            )
            return await self._fail(key, error, error.user_message, None)
        if not is_valid_email(key):
            error = ValidationError(
                "identifier is not a valid email address",
                user_message=INVALID_EMAIL_MESSAGE,
            )
            return await self._fail(key, error, error.user_message, None)

        await self._transition(AuthState.AUTHENTICATING, key)

        status = await self.rate_limiter.check_login_rate_limit(key)
        if status.is_blocked:
            message = self.rate_limiter.format_rate_limit_message(status)
            logger.warning(
                "Sign-in blocked for %s for another %ds", key, status.retry_after_seconds
            )
            await self._audit(login_blocked_event(key, status.retry_after_seconds))
            error = AccountLockedError(message, retry_after_seconds=status.retry_after_seconds)
            return await self._fail(key, error, message, status)

        try:
            with AuthMetrics.operation("sign_in", provider=self._provider_name):
                credential = await self.provider.sign_in_with_password(key, password)
        except Exception as e:
            return await self._credential_failure(key, as_auth_gate_error(e), status)

        try:
            factors = await self._lookup_factors(key)
        except AuthGateError as error:
            logger.error(
                "MFA lookup failed for %s (%s); rejecting sign-in",
                key,
                error.category.value,
            )
            await self._sign_out_remote(credential, reason="failed MFA lookup")
            self.provider.set_session(None)
            return await self._fail(key, error, error.user_message, status)

        verified = [factor for factor in factors if factor.is_verified]
        if verified:
            factor_id = await self._preferred_factor(verified)
            self._pending = PendingSession(
                identifier=key,
                factor_id=factor_id,
                credential=credential,
                created_at=self._clock(),
            )
            logger.info("Credential accepted for %s; MFA required", key)
            await self._transition(AuthState.MFA_PENDING, key)
            return SignInResult(
                outcome=SignInOutcome.MFA_REQUIRED,
                factor_id=factor_id,
                message=MFA_REQUIRED_MESSAGE,
                rate_limit=status,
            )

        return await self._finalize(key, credential, mfa=False)

    async def _credential_failure(
        self, key: str, error: AuthGateError, status: RateLimitStatus
    ) -> SignInResult:
        if error.category is not ErrorCategory.AUTH:
            log = logger.error if error.category is ErrorCategory.UNKNOWN else logger.warning
            log("Sign-in for %s did not complete: %s", key, error.category.value)
            return await self._fail(key, error, error.user_message, status)

        status = await self.rate_limiter.record_login_attempt(key, success=False)
        warning = self.rate_limiter.format_rate_limit_message(status)
        message = " ".join(part for part in (error.user_message, warning) if part)
        logger.info("Credential rejected for %s", key)
        await self._audit(
            login_failed_event(key, error_code=error.category.value, error_message=str(error))
        )
        return await self._fail(key, error, message, status)

    async def _lookup_factors(self, key: str) -> list[MFAFactor]:
        attempts = self.settings.mfa_lookup_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.mfa.get_mfa_factors()
            except AuthGateError as error:
                if attempt == attempts:
                    raise
                logger.warning(
                    "MFA lookup for %s failed (%s), retrying (%d/%d)",
                    key,
                    error.category.value,
                    attempt,
                    attempts - 1,
                )
        raise AssertionError("unreachable")

    async def _preferred_factor(self, verified: list[MFAFactor]) -> str:
        flags = await self.store.load_flags()
        ids = [factor.factor_id for factor in verified]
        return flags.mfa_factor_id if flags.mfa_factor_id in ids else ids[0]

    async def _finalize(
        self, key: str, credential: SessionCredential, *, mfa: bool
    ) -> SignInResult:
        try:
            await self.store.save_session(credential)
        except Exception as e:
            error = as_auth_gate_error(e)
            logger.exception("Could not persist session for %s", key)
            await self._sign_out_remote(credential, reason="session persistence failure")
            self.provider.set_session(None)
            await self.store.clear_identity()
            return await self._fail(key, error, error.user_message, None)

        status = await self.rate_limiter.record_login_attempt(key, success=True)
        self._session = credential
        self.provider.set_session(credential)
        logger.info("Signed in %s", key)
        await self._audit(login_success_event(key, credential.user_id, mfa=mfa))
        await self._transition(AuthState.AUTHENTICATED, key)
        return SignInResult(
            outcome=SignInOutcome.AUTHENTICATED, session=credential, rate_limit=status
        )

    async def _fail(
        self,
        key: str,
        error: AuthGateError,
        message: str,
        status: RateLimitStatus | None,
    ) -> SignInResult:
        await self._transition(AuthState.FAILED, key or None)
        return SignInResult(
            outcome=SignInOutcome.FAILED, error=error, message=message, rate_limit=status
        )

    async def _sign_out_remote(self, credential: SessionCredential, *, reason: str) -> None:
        try:
            await self.provider.sign_out(credential)
        except Exception as e:
            logger.warning(
                "Remote sign-out after %s failed: %s",
                reason,
                as_auth_gate_error(e).category.value,
            )

    # ═══════════════════════════════════════════════════════════════
    # MFA COMPLETION
    # ═══════════════════════════════════════════════════════════════

    async def _on_mfa_code_rejected(self, factor_id: str) -> None:
        """Count a wrong second-factor code against the pending identifier.

        Reaching the lockout abandons the pending sign-in.
        """
        pending = self._pending
        if pending is None or pending.factor_id != factor_id:
            return
        status = await self.rate_limiter.record_login_attempt(pending.identifier, success=False)
        if status.is_blocked:
            logger.warning(
                "Too many wrong MFA codes for %s; abandoning sign-in", pending.identifier
            )
            await self.cancel_mfa_verification()

    async def complete_mfa_verification(self) -> SignInResult:
        """Finalize the pending sign-in after a successful ``verify_mfa``.

        Raises:
            ValidationError: No pending sign-in, or its factor has not been
                verified since the sign-in began.
        """
        pending = self._pending
        if pending is None:
            raise ValidationError("No sign-in is waiting for MFA verification")

        verified_at = self.mfa.verified_at(pending.factor_id)
        if verified_at is None or verified_at < pending.created_at:
            raise ValidationError(
                "The MFA code has not been verified for this sign-in",
                user_message="Enter the code from your authenticator app first.",
            )

        credential = self.mfa.consume_verified_session(pending.factor_id) or pending.credential
        self._pending = None
        self.mfa.clear_pending()
        return await self._finalize(pending.identifier, credential, mfa=True)

    async def cancel_mfa_verification(self) -> None:
        """Abandon the pending sign-in.

        Safe to call at any time and any number of times. Signs out any
        provisionally established remote session and, unless a finalized
        session exists, clears the persisted identity. The provider drops
        its held session even when the remote sign-out fails.
        """
        pending = self._pending
        self._pending = None
        upgraded = None
        if pending is not None:
            upgraded = self.mfa.consume_verified_session(pending.factor_id)
        self.mfa.clear_pending()

        if pending is not None:
            await self._sign_out_remote(pending.credential, reason="MFA cancellation")
            if upgraded is not None and upgraded.access_token != pending.credential.access_token:
                await self._sign_out_remote(upgraded, reason="MFA cancellation")
            self.provider.set_session(None)
            logger.info("MFA verification cancelled for %s", pending.identifier)
            await self._audit(
                mfa_event(
                    AuthEventType.MFA_CANCELLED,
                    pending.factor_id,
                    identifier=pending.identifier,
                )
            )

        if self._state is not AuthState.AUTHENTICATED:
            await self.store.clear_identity()
            await self._transition(
                AuthState.IDLE, pending.identifier if pending is not None else None
            )

    # ═══════════════════════════════════════════════════════════════
    # ACCOUNT LIFECYCLE
    # ═══════════════════════════════════════════════════════════════

    async def sign_out(self) -> None:
        """Sign out locally and remotely.

        Local state is always cleared. A remote failure is raised after
        the local cleanup.
        """
        if self._pending is not None:
            await self.cancel_mfa_verification()

        session = self._session or await self.store.load_session()
        error: AuthGateError | None = None
        if session is not None:
            try:
                await self.provider.sign_out(session)
            except Exception as e:
                error = as_auth_gate_error(e)
                logger.warning("Remote sign-out failed: %s", error.category.value)

        self._session = None
        self.provider.set_session(None)
        self.mfa.clear_pending()
        await self.store.clear_identity()
        await self._audit(
            logout_event(session.email if session else None, session.user_id if session else None)
        )
        await self._transition(AuthState.IDLE)
        if error is not None:
            raise error

    async def sign_up(self, identifier: str, password: str) -> SessionCredential | None:
        """Register a new account.

        Returns:
            The new session when the provider signs the user in right away,
            None when email confirmation is pending.

        Raises:
            PasswordPolicyError: Password does not meet the policy.
            ValidationError: Missing identifier or rejected by the provider.
        """
        key = normalize_identifier(identifier or "")
        if not key:
            raise ValidationError("identifier is required", user_message="Please enter your email.")
        if not is_valid_email(key):
            raise ValidationError(
                "identifier is not a valid email address", user_message=INVALID_EMAIL_MESSAGE
            )
        ensure_password_policy(password)

        try:
            session = await self.provider.sign_up(key, password)
        except AuthGateError:
            raise
        except Exception as e:
            raise as_auth_gate_error(e) from e

        await self._audit(user_created_event(key, session.user_id if session else None))
        if session is None:
            logger.info("Sign-up for %s awaiting email confirmation", key)
            return None

        await self.store.save_session(session)
        self._session = session
        logger.info("Signed up %s", key)
        await self._transition(AuthState.AUTHENTICATED, key)
        return session

    async def restore_session(self) -> SessionCredential | None:
        """Load a persisted session at startup.

        Expired sessions are discarded.
        """
        session = await self.store.load_session()
        if session is None:
            return None
        if session.expires_at is not None and session.expires_at <= self._clock():
            logger.info("Discarding expired stored session")
            await self.store.clear_identity()
            return None

        self._session = session
        self.provider.set_session(session)
        await self._transition(AuthState.AUTHENTICATED, session.email)
        return session

    async def notifications_enabled(self) -> bool:
        return (await self.store.load_flags()).notifications_enabled

    async def set_notifications_enabled(self, enabled: bool) -> None:
        flags = await self.store.load_flags()
        await self.store.save_flags(flags.model_copy(update={"notifications_enabled": enabled}))


__all__: list[str] = [
    "AuthSessionController",
    "StateListener",
    "MFA_REQUIRED_MESSAGE",
    "INVALID_EMAIL_MESSAGE",
]
