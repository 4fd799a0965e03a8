"""MFA enrollment, challenge and verification against the identity provider.

Code verification happens on the provider; the orchestrator enforces the
local protocol: at most one live challenge per factor, single-use challenges, stale
challenge ids rejected without side effects, and the local MFA flags kept
in sync with the provider's factor list.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from ..audit import AuthEventType, mfa_event
from ..config import LocalAuthFlags, MfaConfig
from ..exceptions import (
    AuthenticationError,
    AuthGateError,
    ValidationError,
    as_auth_gate_error,
)
from ..models import (
    FactorStatus,
    MFAChallenge,
    MfaChallengeResult,
    MfaEnrollment,
    MFAFactor,
    MfaState,
    MfaVerification,
    SessionCredential,
    utc_now,
)
from ..observability import AuthMetrics, AuthTracing
from ..ports import FactorVerification, IAuthAuditStore, IIdentityProvider
from ..storage import SecureCredentialStore, StorageKey

logger = logging.getLogger(__name__)

RejectedCodeHook = Callable[[str], Awaitable[None]]


class MFAOrchestrator:
    """Drives the enroll, challenge and verify protocol for one account.

    Issuing a challenge replaces the live one for the same factor (last
    writer wins); challenges for other factors are left alone.
    ``verify_mfa`` only accepts the live challenge id; anything else reports
    ``verified=False`` and changes nothing. A submitted code always consumes
    the challenge unless the provider could not be reached.

    Example:
        ```python
        mfa = MFAOrchestrator(provider, credential_store)

        enrollment = await mfa.start_mfa_enrollment()
        show_qr(enrollment.qr_payload)

        challenge = await mfa.challenge_mfa(enrollment.factor_id)
        result = await mfa.verify_mfa(
            enrollment.factor_id, challenge.challenge_id, code_from_user
        )
        if not result.verified:
            challenge = await mfa.challenge_mfa(enrollment.factor_id)
        ```
    """

    def __init__(
        self,
        provider: IIdentityProvider,
        store: SecureCredentialStore,
        config: MfaConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.config = config or MfaConfig()
        self._clock = clock
        self._audit_store = audit_store
        self._provider_name: str = getattr(provider, "name", "unknown")

        self._factors: dict[str, MFAFactor] = {}
        self._live_challenges: dict[str, MFAChallenge] = {}
        self._rejected_code_hooks: list[RejectedCodeHook] = []
        self._state = MfaState.NOT_ENROLLED
        self._verified_at: dict[str, datetime] = {}
        self._verified_sessions: dict[str, SessionCredential] = {}

    @property
    def state(self) -> MfaState:
        return self._state

    @property
    def live_challenges(self) -> dict[str, MFAChallenge]:
        """Unconsumed challenges keyed by factor id."""
        return dict(self._live_challenges)

    def on_code_rejected(self, hook: RejectedCodeHook) -> None:
        """Register ``hook(factor_id)``, awaited whenever the provider rejects a code."""
        self._rejected_code_hooks.append(hook)

    def _resting_state(self) -> MfaState:
        if any(factor.is_verified for factor in self._factors.values()):
            return MfaState.VERIFIED
        if self._factors:
            return MfaState.UNVERIFIED
        return MfaState.NOT_ENROLLED

    async def _audit(
        self, event_type: AuthEventType, factor_id: str | None, **kwargs: Any
    ) -> None:
        event = mfa_event(event_type, factor_id, **kwargs)
        AuthMetrics.record_event(event, provider=self._provider_name)
        if self._audit_store is not None:
            await self._audit_store.record(event)

    async def _update_flags(self, **changes: object) -> None:
        flags = await self.store.load_flags()
        await self.store.save_flags(flags.model_copy(update=changes))

    async def _resolve_factor_id(self, factor_id: str | None) -> str:
        resolved = factor_id or await self.store.get(StorageKey.MFA_FACTOR_ID)
        if not resolved:
            raise ValidationError(
                "factor_id is required: no MFA factor is enrolled",
                user_message="Set up two-factor authentication first.",
            )
        return resolved

    # ═══════════════════════════════════════════════════════════════
    # ENROLLMENT
    # ═══════════════════════════════════════════════════════════════

    async def start_mfa_enrollment(self) -> MfaEnrollment:
        """Ask the provider for a new TOTP factor.

        The factor stays UNVERIFIED until a challenge for it is verified.

        Returns:
            MfaEnrollment with the QR payload, manual-entry secret and
            factor id.
        """
        previous = self._state
        self._state = MfaState.ENROLLING
        try:
            with AuthMetrics.operation("mfa_enroll", provider=self._provider_name):
                enrollment = await self.provider.enroll_factor()
        except AuthGateError:
            self._state = previous
            raise
        except Exception as e:
            self._state = previous
            raise as_auth_gate_error(e) from e

        self._factors[enrollment.factor_id] = MFAFactor(
            factor_id=enrollment.factor_id,
            status=FactorStatus.UNVERIFIED,
            enrolled_at=self._clock(),
        )
        self._state = MfaState.UNVERIFIED
        logger.info("MFA factor %s enrolled (unverified)", enrollment.factor_id)
        await self._audit(AuthEventType.MFA_ENROLLED, enrollment.factor_id)
        return MfaEnrollment(
            qr_payload=enrollment.qr_payload,
            shared_secret=enrollment.shared_secret,
            factor_id=enrollment.factor_id,
        )

    # ═══════════════════════════════════════════════════════════════
    # CHALLENGE
    # ═══════════════════════════════════════════════════════════════

    async def challenge_mfa(self, factor_id: str | None = None) -> MfaChallengeResult:
        """Issue a new single-use challenge for a factor.

        A previously issued, unconsumed challenge for the same factor is
        invalidated.

        Args:
            factor_id: Factor to challenge; defaults to the stored factor id.

        Returns:
            MfaChallengeResult with the new challenge id.

        Raises:
            ValidationError: No factor id given or stored, or the factor is
                unknown to the provider.
            ProviderUnavailableError: Provider unreachable.
            UnexpectedResponseError: Unreadable provider response.
        """
        resolved = await self._resolve_factor_id(factor_id)
        if resolved not in self._factors:
            await self.get_mfa_factors()
            if resolved not in self._factors:
                raise ValidationError(f"Unknown MFA factor {resolved!r}")

        with AuthTracing.span(
            "mfa.challenge",
            provider=self._provider_name,
            attributes={"auth.factor_id": resolved},
        ):
            try:
                with AuthMetrics.operation("mfa_challenge", provider=self._provider_name):
                    challenge = await self.provider.challenge_factor(resolved)
            except AuthGateError:
                raise
            except Exception as e:
                raise as_auth_gate_error(e) from e

        now = self._clock()
        expires_at = challenge.expires_at or now + timedelta(
            seconds=self.config.challenge_ttl_seconds
        )
        self._live_challenges[resolved] = replace(
            challenge, factor_id=resolved, issued_at=now, expires_at=expires_at
        )
        self._state = MfaState.CHALLENGING
        logger.debug("Issued MFA challenge for factor %s", resolved)
        return MfaChallengeResult(challenge_id=challenge.challenge_id)

    # ═══════════════════════════════════════════════════════════════
    # VERIFICATION
    # ═══════════════════════════════════════════════════════════════

    def _is_well_formed(self, code: str) -> bool:
        return code.isdigit() and len(code) == self.config.code_length

    def _consume(self, factor_id: str) -> None:
        self._live_challenges.pop(factor_id, None)
        self._state = (
            MfaState.CHALLENGING if self._live_challenges else self._resting_state()
        )

    async def verify_mfa(
        self, factor_id: str, challenge_id: str, code: str
    ) -> MfaVerification:
        """Verify a code against the factor's live challenge.

        Wrong or malformed codes consume the challenge and report
        ``verified=False``; a fresh challenge is needed to retry. Codes the
        provider rejects are also passed to the :meth:`on_code_rejected`
        hooks. Stale challenge ids (superseded, consumed or expired) report
        ``verified=False`` and change nothing.

        Args:
            factor_id: Factor the challenge was issued for.
            challenge_id: Id returned by :meth:`challenge_mfa`.
            code: Code from the authenticator app.

        Returns:
            MfaVerification.

        Raises:
            ValidationError: Missing factor or challenge id.
            ProviderUnavailableError: Provider unreachable; the challenge
                stays live so the code can be resubmitted.
            UnexpectedResponseError: Unreadable provider response; the
                challenge stays live.
        """
        if not factor_id:
            raise ValidationError("factor_id is required")
        if not challenge_id:
            raise ValidationError("challenge_id is required")

        live = self._live_challenges.get(factor_id)
        if live is None or live.challenge_id != challenge_id or live.is_expired(self._clock()):
            logger.info("Rejected stale MFA challenge for factor %s", factor_id)
            return MfaVerification(verified=False)

        code = (code or "").strip()
        if not self._is_well_formed(code):
            self._consume(factor_id)
            await self._audit(
                AuthEventType.MFA_FAILED, factor_id, success=False, error_code="malformed_code"
            )
            return MfaVerification(verified=False)

        with AuthTracing.span(
            "mfa.verify",
            provider=self._provider_name,
            attributes={"auth.factor_id": factor_id},
        ) as span:
            try:
                with AuthMetrics.operation("mfa_verify", provider=self._provider_name):
                    result = await self.provider.verify_factor(factor_id, challenge_id, code)
            except AuthenticationError:
                result = FactorVerification(verified=False)
            except Exception as e:
                error = as_auth_gate_error(e)
                if not isinstance(error, AuthenticationError):
                    logger.warning(
                        "MFA verification for factor %s did not complete: %s",
                        factor_id,
                        error.category.value,
                    )
                    if error is e:
                        raise
                    raise error from e
                result = FactorVerification(verified=False)
            AuthTracing.set_outcome(span, "verified" if result.verified else "failed")

        self._consume(factor_id)
        if not result.verified:
            await self._audit(
                AuthEventType.MFA_FAILED, factor_id, success=False, error_code="invalid_code"
            )
            await self._notify_rejected(factor_id)
            return MfaVerification(verified=False)

        await self._mark_verified(factor_id, result.session)
        return MfaVerification(verified=True)

    async def _notify_rejected(self, factor_id: str) -> None:
        for hook in list(self._rejected_code_hooks):
            try:
                await hook(factor_id)
            except Exception:
                logger.exception("Rejected-code hook failed for factor %s", factor_id)

    async def _mark_verified(
        self, factor_id: str, session: SessionCredential | None
    ) -> None:
        factor = self._factors.get(factor_id) or MFAFactor(
            factor_id=factor_id, enrolled_at=self._clock()
        )
        self._factors[factor_id] = replace(factor, status=FactorStatus.VERIFIED)
        self._state = MfaState.CHALLENGING if self._live_challenges else MfaState.VERIFIED
        self._verified_at[factor_id] = self._clock()
        if session is not None:
            self._verified_sessions[factor_id] = session

        await self._update_flags(mfa_enabled=True, mfa_factor_id=factor_id)
        logger.info("MFA factor %s verified", factor_id)
        await self._audit(AuthEventType.MFA_VERIFIED, factor_id)

    def verified_at(self, factor_id: str) -> datetime | None:
        """When ``factor_id`` was last verified by this orchestrator."""
        return self._verified_at.get(factor_id)

    def consume_verified_session(self, factor_id: str) -> SessionCredential | None:
        """Take the upgraded session returned by the last successful verify."""
        return self._verified_sessions.pop(factor_id, None)

    def clear_pending(self) -> None:
        """Drop live challenges and verification results."""
        self._live_challenges.clear()
        self._verified_at.clear()
        self._verified_sessions.clear()
        self._state = self._resting_state()

    # ═══════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════

    async def get_mfa_factors(self) -> list[MFAFactor]:
        """List the account's factors from the provider.

        Refreshes the local factor cache and the persisted MFA flags.

        Raises:
            ProviderUnavailableError: Provider unreachable.
            UnexpectedResponseError: Unreadable provider response.
        """
        try:
            with AuthMetrics.operation("mfa_list_factors", provider=self._provider_name):
                factors = await self.provider.list_factors()
        except AuthGateError:
            raise
        except Exception as e:
            raise as_auth_gate_error(e) from e

        self._factors = {factor.factor_id: factor for factor in factors}
        if self._state is not MfaState.CHALLENGING:
            self._state = self._resting_state()

        verified = [factor for factor in factors if factor.is_verified]
        flags = await self.store.load_flags()
        if verified:
            factor_id = (
                flags.mfa_factor_id
                if flags.mfa_factor_id in {f.factor_id for f in verified}
                else verified[0].factor_id
            )
            synced = flags.model_copy(
                update={"mfa_enabled": True, "mfa_factor_id": factor_id}
            )
        else:
            synced = flags.model_copy(update={"mfa_enabled": False, "mfa_factor_id": None})
        if synced != flags:
            await self.store.save_flags(synced)
        return factors

    async def is_mfa_enabled(self) -> bool:
        """Whether the account has a verified factor.

        Reads the local flag first and asks the provider only when the flag
        is not set.
        """
        flags: LocalAuthFlags = await self.store.load_flags()
        if flags.mfa_enabled:
            return True
        factors = await self.get_mfa_factors()
        return any(factor.is_verified for factor in factors)

    async def unenroll_mfa(self, factor_id: str | None = None) -> None:
        """Remove a factor remotely and clear the local MFA flags.

        Args:
            factor_id: Factor to remove; defaults to the stored factor id.

        Raises:
            ValidationError: No factor id given or stored.
        """
        resolved = await self._resolve_factor_id(factor_id)
        try:
            await self.provider.unenroll_factor(resolved)
        except AuthGateError:
            raise
        except Exception as e:
            raise as_auth_gate_error(e) from e

        self._factors.pop(resolved, None)
        self._verified_at.pop(resolved, None)
        self._verified_sessions.pop(resolved, None)
        self._consume(resolved)

        flags = await self.store.load_flags()
        if flags.mfa_factor_id in (None, resolved):
            remaining = [f for f in self._factors.values() if f.is_verified]
            await self.store.save_flags(
                flags.model_copy(
                    update={
                        "mfa_enabled": bool(remaining),
                        "mfa_factor_id": remaining[0].factor_id if remaining else None,
                    }
                )
            )
        logger.info("MFA factor %s removed", resolved)
        await self._audit(AuthEventType.MFA_DISABLED, resolved)


__all__: list[str] = ["MFAOrchestrator"]
