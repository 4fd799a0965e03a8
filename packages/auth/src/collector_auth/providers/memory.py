"""In-memory identity provider for testing.

Passwords are hashed with bcrypt and TOTP codes are checked with pyotp, so
the protocol behaves like a real provider without any network.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import bcrypt
import pyotp

from ..exceptions import InvalidCredentialsError, ValidationError
from ..models import (
    FactorStatus,
    MFAChallenge,
    MFAFactor,
    SessionCredential,
    normalize_identifier,
    utc_now,
)
from ..ports import FactorEnrollment, FactorVerification, IIdentityProvider


@dataclass
class _Factor:
    factor_id: str
    secret: str
    status: FactorStatus = FactorStatus.UNVERIFIED
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class _Account:
    user_id: str
    email: str
    password_hash: bytes
    factors: dict[str, _Factor] = field(default_factory=dict)


class InMemoryIdentityProvider(IIdentityProvider):
    """In-memory implementation of IIdentityProvider.

    Intended for testing only. Failures can be injected per operation with
    :meth:`fail_next`.

    ⚠️ WARNING: Accounts and sessions are lost on restart.
    """

    name = "memory"

    def __init__(
        self,
        *,
        issuer: str = "Collector",
        clock: Callable[[], datetime] = utc_now,
        session_ttl_seconds: int = 3600,
        require_confirmation: bool = False,
        bcrypt_rounds: int = 4,
    ) -> None:
        self.issuer = issuer
        self.require_confirmation = require_confirmation
        self._clock = clock
        self._session_ttl = timedelta(seconds=session_ttl_seconds)
        self._bcrypt_rounds = bcrypt_rounds
        self._accounts: dict[str, _Account] = {}
        self._active_tokens: dict[str, str] = {}
        self._challenges: dict[str, str] = {}
        self._session: SessionCredential | None = None
        self._failures: dict[str, list[BaseException]] = {}
        self.calls: list[str] = []

    # --- test helpers -------------------------------------------------------

    def add_user(self, email: str, password: str) -> str:
        """Register an account directly; returns its user id."""
        user_id = str(uuid.uuid4())
        hashed = bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=self._bcrypt_rounds))
        key = normalize_identifier(email)
        self._accounts[key] = _Account(user_id=user_id, email=key, password_hash=hashed)
        return user_id

    def add_verified_factor(self, email: str) -> str:
        """Attach a verified TOTP factor to an account; returns its id."""
        account = self._accounts[normalize_identifier(email)]
        factor = _Factor(
            factor_id=str(uuid.uuid4()),
            secret=pyotp.random_base32(),
            status=FactorStatus.VERIFIED,
            created_at=self._clock(),
        )
        account.factors[factor.factor_id] = factor
        return factor.factor_id

    def current_code(self, factor_id: str) -> str:
        """The TOTP code an authenticator app would show right now."""
        return pyotp.TOTP(self._find_factor(factor_id).secret).now()

    def fail_next(self, operation: str, error: BaseException, *, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def is_active(self, session: SessionCredential) -> bool:
        return session.access_token in self._active_tokens

    @property
    def active_session_count(self) -> int:
        return len(self._active_tokens)

    # --- internals ----------------------------------------------------------

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _issue(self, account: _Account) -> SessionCredential:
        token = secrets.token_urlsafe(32)
        session = SessionCredential(
            access_token=token,
            user_id=account.user_id,
            refresh_token=secrets.token_urlsafe(32),
            expires_at=self._clock() + self._session_ttl,
            email=account.email,
        )
        self._active_tokens[token] = account.user_id
        self._session = session
        return session

    def _current_account(self) -> _Account:
        if self._session is None or self._session.access_token not in self._active_tokens:
            raise InvalidCredentialsError("No active session")
        user_id = self._active_tokens[self._session.access_token]
        for account in self._accounts.values():
            if account.user_id == user_id:
                return account
        raise InvalidCredentialsError("Unknown user")

    def _find_factor(self, factor_id: str) -> _Factor:
        for account in self._accounts.values():
            if factor_id in account.factors:
                return account.factors[factor_id]
        raise ValidationError(f"Unknown factor {factor_id!r}")

    # --- IIdentityProvider ----------------------------------------------------

    @property
    def session(self) -> SessionCredential | None:
        return self._session

    def set_session(self, session: SessionCredential | None) -> None:
        self._session = session

    async def sign_in_with_password(
        self, identifier: str, password: str
    ) -> SessionCredential:
        self._enter("sign_in_with_password")
        account = self._accounts.get(normalize_identifier(identifier))
        if account is None or not bcrypt.checkpw(password.encode(), account.password_hash):
            raise InvalidCredentialsError()
        return self._issue(account)

    async def sign_up(self, identifier: str, password: str) -> SessionCredential | None:
        self._enter("sign_up")
        key = normalize_identifier(identifier)
        if key in self._accounts:
            raise ValidationError(
                "User already registered", user_message="User already registered."
            )
        self.add_user(key, password)
        if self.require_confirmation:
            return None
        return self._issue(self._accounts[key])

    async def sign_out(self, session: SessionCredential | None = None) -> None:
        self._enter("sign_out")
        current = session or self._session
        if current is None:
            return
        self._active_tokens.pop(current.access_token, None)
        if self._session is not None and self._session.access_token == current.access_token:
            self._session = None

    async def enroll_factor(self) -> FactorEnrollment:
        self._enter("enroll_factor")
        account = self._current_account()
        secret = pyotp.random_base32()
        factor = _Factor(factor_id=str(uuid.uuid4()), secret=secret, created_at=self._clock())
        account.factors[factor.factor_id] = factor
        uri = pyotp.TOTP(secret).provisioning_uri(name=account.email, issuer_name=self.issuer)
        return FactorEnrollment(factor_id=factor.factor_id, qr_payload=uri, shared_secret=secret)

    async def challenge_factor(self, factor_id: str) -> MFAChallenge:
        self._enter("challenge_factor")
        account = self._current_account()
        if factor_id not in account.factors:
            raise ValidationError(f"Unknown factor {factor_id!r}")
        challenge_id = str(uuid.uuid4())
        self._challenges[challenge_id] = factor_id
        return MFAChallenge(challenge_id=challenge_id, factor_id=factor_id, issued_at=self._clock())

    async def verify_factor(
        self, factor_id: str, challenge_id: str, code: str
    ) -> FactorVerification:
        self._enter("verify_factor")
        account = self._current_account()
        if self._challenges.pop(challenge_id, None) != factor_id:
            return FactorVerification(verified=False)
        factor = account.factors.get(factor_id)
        if factor is None or not pyotp.TOTP(factor.secret).verify(code, valid_window=1):
            return FactorVerification(verified=False)
        factor.status = FactorStatus.VERIFIED
        # The upgraded session replaces the provisional one.
        assert self._session is not None
        self._active_tokens.pop(self._session.access_token, None)
        return FactorVerification(verified=True, session=self._issue(account))

    async def list_factors(self) -> list[MFAFactor]:
        self._enter("list_factors")
        account = self._current_account()
        return [
            MFAFactor(factor_id=f.factor_id, status=f.status, enrolled_at=f.created_at)
            for f in account.factors.values()
        ]

    async def unenroll_factor(self, factor_id: str) -> None:
        self._enter("unenroll_factor")
        account = self._current_account()
        if account.factors.pop(factor_id, None) is None:
            raise ValidationError(f"Unknown factor {factor_id!r}")


__all__: list[str] = ["InMemoryIdentityProvider"]
