"""Tests for the MFA enroll, challenge and verify protocol."""

from __future__ import annotations

import pytest
import pytest_asyncio

from collector_auth import (
    AuthEventType,
    ErrorCategory,
    LocalAuthFlags,
    MfaState,
    ProviderUnavailableError,
    StorageKey,
    ValidationError,
)


def wrong_code(code: str) -> str:
    return str((int(code) + 500_000) % 1_000_000).zfill(6)


@pytest_asyncio.fixture
async def signed_in(provider, password):
    return await provider.sign_in_with_password("user@x.com", password)


@pytest_asyncio.fixture
async def enrolled(mfa, signed_in):
    return await mfa.start_mfa_enrollment()


class TestEnrollment:
    """Starting enrollment."""

    @pytest.mark.asyncio
    async def test_enrollment_returns_payload(self, mfa, signed_in) -> None:
        enrollment = await mfa.start_mfa_enrollment()

        assert enrollment.factor_id
        assert enrollment.qr_payload.startswith("otpauth://totp/")
        assert enrollment.shared_secret
        assert mfa.state is MfaState.UNVERIFIED

    @pytest.mark.asyncio
    async def test_enrolled_factor_is_not_yet_enabled(
        self, mfa, enrolled, credential_store
    ) -> None:
        assert not await mfa.is_mfa_enabled()
        assert await credential_store.get(StorageKey.MFA_FACTOR_ID) is None

    @pytest.mark.asyncio
    async def test_enrollment_failure_is_structured(self, mfa, provider, signed_in) -> None:
        provider.fail_next("enroll_factor", ConnectionError("connection reset"))

        with pytest.raises(ProviderUnavailableError):
            await mfa.start_mfa_enrollment()
        assert mfa.state is MfaState.NOT_ENROLLED


class TestRoundTrip:
    """Enroll, challenge and verify with the correct code."""

    @pytest.mark.asyncio
    async def test_round_trip_enables_mfa(
        self, mfa, provider, enrolled, credential_store, audit_store
    ) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        result = await mfa.verify_mfa(
            enrolled.factor_id,
            challenge.challenge_id,
            provider.current_code(enrolled.factor_id),
        )

        assert result.verified
        assert await mfa.is_mfa_enabled()
        assert mfa.state is MfaState.VERIFIED
        assert await credential_store.get(StorageKey.MFA_FACTOR_ID) == enrolled.factor_id
        assert (await credential_store.load_flags()).mfa_enabled
        assert audit_store.count_by_type(AuthEventType.MFA_ENROLLED) == 1
        assert audit_store.count_by_type(AuthEventType.MFA_VERIFIED) == 1

    @pytest.mark.asyncio
    async def test_verification_exposes_upgraded_session(
        self, mfa, provider, enrolled, clock
    ) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        await mfa.verify_mfa(
            enrolled.factor_id,
            challenge.challenge_id,
            provider.current_code(enrolled.factor_id),
        )

        assert mfa.verified_at(enrolled.factor_id) == clock.now
        session = mfa.consume_verified_session(enrolled.factor_id)
        assert session is not None
        assert provider.is_active(session)
        assert mfa.consume_verified_session(enrolled.factor_id) is None

    @pytest.mark.asyncio
    async def test_challenge_defaults_to_stored_factor(self, mfa, provider, enrolled) -> None:
        first = await mfa.challenge_mfa(enrolled.factor_id)
        await mfa.verify_mfa(
            enrolled.factor_id, first.challenge_id, provider.current_code(enrolled.factor_id)
        )

        challenge = await mfa.challenge_mfa()

        assert challenge.challenge_id
        assert enrolled.factor_id in mfa.live_challenges


class TestChallenge:
    """Challenge issuance."""

    @pytest.mark.asyncio
    async def test_challenge_without_enrollment_is_validation_error(
        self, mfa, signed_in
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await mfa.challenge_mfa()

        assert exc_info.value.category is ErrorCategory.VALIDATION

    @pytest.mark.asyncio
    async def test_unknown_factor_is_refreshed_then_rejected(
        self, mfa, provider, signed_in
    ) -> None:
        with pytest.raises(ValidationError, match="Unknown MFA factor"):
            await mfa.challenge_mfa("no-such-factor")

        assert "list_factors" in provider.calls
        assert "challenge_factor" not in provider.calls

    @pytest.mark.asyncio
    async def test_factor_known_only_remotely_is_found(self, mfa, provider, signed_in) -> None:
        factor_id = provider.add_verified_factor("user@x.com")

        challenge = await mfa.challenge_mfa(factor_id)

        assert challenge.challenge_id
        assert mfa.state is MfaState.CHALLENGING

    @pytest.mark.asyncio
    async def test_new_challenge_supersedes_previous(self, mfa, provider, enrolled) -> None:
        first = await mfa.challenge_mfa(enrolled.factor_id)
        second = await mfa.challenge_mfa(enrolled.factor_id)
        code = provider.current_code(enrolled.factor_id)

        stale = await mfa.verify_mfa(enrolled.factor_id, first.challenge_id, code)
        assert not stale.verified
        assert not await mfa.is_mfa_enabled()

        fresh = await mfa.verify_mfa(enrolled.factor_id, second.challenge_id, code)
        assert fresh.verified

    @pytest.mark.asyncio
    async def test_challenges_are_per_factor(self, mfa, provider, enrolled) -> None:
        other = await mfa.start_mfa_enrollment()
        first = await mfa.challenge_mfa(enrolled.factor_id)
        second = await mfa.challenge_mfa(other.factor_id)

        result = await mfa.verify_mfa(
            enrolled.factor_id, first.challenge_id, provider.current_code(enrolled.factor_id)
        )

        assert result.verified
        assert list(mfa.live_challenges) == [other.factor_id]
        assert mfa.state is MfaState.CHALLENGING
        assert (
            await mfa.verify_mfa(
                other.factor_id, second.challenge_id, provider.current_code(other.factor_id)
            )
        ).verified


class TestVerification:
    """Verification edge cases."""

    @pytest.mark.asyncio
    async def test_wrong_code_consumes_challenge(self, mfa, provider, enrolled) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        code = provider.current_code(enrolled.factor_id)

        wrong = await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, wrong_code(code))
        retry = await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, code)

        assert not wrong.verified
        assert not retry.verified
        assert mfa.live_challenges == {}
        assert mfa.state is MfaState.UNVERIFIED

    @pytest.mark.asyncio
    async def test_resend_after_wrong_code(self, mfa, provider, enrolled) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        code = provider.current_code(enrolled.factor_id)
        await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, wrong_code(code))

        resend = await mfa.challenge_mfa(enrolled.factor_id)
        result = await mfa.verify_mfa(enrolled.factor_id, resend.challenge_id, code)

        assert result.verified

    @pytest.mark.asyncio
    async def test_malformed_code_is_rejected_locally(
        self, mfa, provider, enrolled, audit_store
    ) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)

        result = await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, "12ab")

        assert not result.verified
        assert "verify_factor" not in provider.calls
        assert mfa.live_challenges == {}
        assert audit_store.count_by_type(AuthEventType.MFA_FAILED) == 1

    @pytest.mark.asyncio
    async def test_expired_challenge_changes_nothing(
        self, mfa, provider, enrolled, clock
    ) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        clock.advance(301)

        result = await mfa.verify_mfa(
            enrolled.factor_id,
            challenge.challenge_id,
            provider.current_code(enrolled.factor_id),
        )

        assert not result.verified
        assert enrolled.factor_id in mfa.live_challenges
        assert mfa.state is MfaState.CHALLENGING
        assert "verify_factor" not in provider.calls
        assert not (await mfa.get_mfa_factors())[0].is_verified

    @pytest.mark.asyncio
    async def test_mismatched_factor_changes_nothing(self, mfa, provider, enrolled) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)

        result = await mfa.verify_mfa("other-factor", challenge.challenge_id, "123456")

        assert not result.verified
        assert enrolled.factor_id in mfa.live_challenges

    @pytest.mark.asyncio
    async def test_network_error_keeps_challenge_live(self, mfa, provider, enrolled) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        provider.fail_next("verify_factor", ProviderUnavailableError("down"))
        code = provider.current_code(enrolled.factor_id)

        with pytest.raises(ProviderUnavailableError):
            await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, code)

        result = await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, code)
        assert result.verified

    @pytest.mark.asyncio
    async def test_rejected_code_is_reported(self, mfa, provider, enrolled) -> None:
        rejected = []

        async def hook(factor_id):
            rejected.append(factor_id)

        mfa.on_code_rejected(hook)
        code = provider.current_code(enrolled.factor_id)
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, wrong_code(code))
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        await mfa.verify_mfa(enrolled.factor_id, challenge.challenge_id, "12ab")

        assert rejected == [enrolled.factor_id]

    @pytest.mark.asyncio
    async def test_missing_ids_are_validation_errors(self, mfa, enrolled) -> None:
        with pytest.raises(ValidationError):
            await mfa.verify_mfa(enrolled.factor_id, "", "123456")
        with pytest.raises(ValidationError):
            await mfa.verify_mfa("", "challenge", "123456")


class TestFactorQueries:
    """Factor listing, flags and removal."""

    @pytest.mark.asyncio
    async def test_get_factors_syncs_local_flags(
        self, mfa, provider, signed_in, credential_store
    ) -> None:
        factor_id = provider.add_verified_factor("user@x.com")

        factors = await mfa.get_mfa_factors()

        assert [f.factor_id for f in factors] == [factor_id]
        flags = await credential_store.load_flags()
        assert flags.mfa_enabled
        assert flags.mfa_factor_id == factor_id

    @pytest.mark.asyncio
    async def test_get_factors_clears_stale_flags(
        self, mfa, signed_in, credential_store
    ) -> None:
        await credential_store.save_flags(
            LocalAuthFlags(mfa_enabled=True, mfa_factor_id="gone")
        )

        await mfa.get_mfa_factors()

        flags = await credential_store.load_flags()
        assert not flags.mfa_enabled
        assert flags.mfa_factor_id is None

    @pytest.mark.asyncio
    async def test_is_enabled_reads_local_flag_first(
        self, mfa, provider, signed_in, credential_store
    ) -> None:
        await credential_store.save_flags(
            LocalAuthFlags(mfa_enabled=True, mfa_factor_id="factor-1")
        )

        assert await mfa.is_mfa_enabled()
        assert "list_factors" not in provider.calls

    @pytest.mark.asyncio
    async def test_unenroll_clears_flags(self, mfa, provider, enrolled, credential_store) -> None:
        challenge = await mfa.challenge_mfa(enrolled.factor_id)
        await mfa.verify_mfa(
            enrolled.factor_id,
            challenge.challenge_id,
            provider.current_code(enrolled.factor_id),
        )

        await mfa.unenroll_mfa()

        flags = await credential_store.load_flags()
        assert not flags.mfa_enabled
        assert flags.mfa_factor_id is None
        assert mfa.state is MfaState.NOT_ENROLLED
        assert await mfa.get_mfa_factors() == []

    @pytest.mark.asyncio
    async def test_unenroll_without_factor_is_validation_error(self, mfa, signed_in) -> None:
        with pytest.raises(ValidationError):
            await mfa.unenroll_mfa()
