"""Collector Auth Package

The authentication gate of the Collector app: client-side login rate
limiting with progressive backoff, TOTP multi-factor authentication against
the remote identity provider, encrypted credential storage and the sign-in
controller that ties them together.

Usage:
    ```python
    from collector_auth import (
        AuthGateSettings,
        AuthSessionController,
        EncryptedFileKeystore,
    )

    controller = AuthSessionController.create(
        AuthGateSettings.from_env(),
        keystore=EncryptedFileKeystore("auth.bin", key),
    )

    result = await controller.sign_in("user@x.com", password)
    if result.mfa_required:
        challenge = await controller.mfa.challenge_mfa(result.factor_id)
        ...
    elif not result.succeeded:
        print(result.message)
    ```

Submodules:
    - `rate_limit`: per-identifier lockouts with progressive backoff
    - `mfa`: enroll, challenge and verify orchestration
    - `storage`: secure keystores and the credential store
    - `providers`: GoTrue REST client and an in-memory provider
    - `audit`, `observability`: audit events, metrics and tracing
"""

from __future__ import annotations

# Audit
from .audit import AuthAuditEvent, AuthEventType, InMemoryAuthAuditStore

# Configuration
from .config import AuthGateSettings, LocalAuthFlags, MfaConfig, RateLimitConfig

# Controller
from .controller import INVALID_EMAIL_MESSAGE, AuthSessionController

# Exceptions
from .exceptions import (
    AccountLockedError,
    AuthenticationError,
    AuthGateError,
    ErrorCategory,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    PasswordPolicyError,
    ProviderUnavailableError,
    UnexpectedResponseError,
    ValidationError,
    categorize_error,
    user_message_for,
)

# MFA
from .mfa import MFAOrchestrator

# Models
from .models import (
    AuthState,
    AuthStateChange,
    FactorStatus,
    LoginAttemptRecord,
    MFAChallenge,
    MfaChallengeResult,
    MfaEnrollment,
    MFAFactor,
    MfaState,
    MfaVerification,
    PendingSession,
    RateLimitStatus,
    SessionCredential,
    SignInOutcome,
    SignInResult,
)

# Password policy
from .password_policy import PasswordCheck, validate_password

# Ports
from .ports import (
    FactorEnrollment,
    FactorVerification,
    IAuthAuditStore,
    IIdentityProvider,
    ILoginAttemptStore,
    ISecureKeystore,
)

# Providers
from .providers import GoTrueIdentityProvider, InMemoryIdentityProvider

# Rate limiting
from .rate_limit import RateLimiter, format_rate_limit_message

# Storage
from .storage import (
    EncryptedFileKeystore,
    InMemoryKeystore,
    InMemoryLoginAttemptStore,
    KeystoreLoginAttemptStore,
    SecureCredentialStore,
    StorageKey,
)

__all__: list[str] = [
    # Audit
    "AuthAuditEvent",
    "AuthEventType",
    "InMemoryAuthAuditStore",
    # Configuration
    "AuthGateSettings",
    "LocalAuthFlags",
    "MfaConfig",
    "RateLimitConfig",
    # Controller
    "AuthSessionController",
    "INVALID_EMAIL_MESSAGE",
    # Exceptions
    "AccountLockedError",
    "AuthenticationError",
    "AuthGateError",
    "ErrorCategory",
    "InvalidCredentialsError",
    "InvalidMfaCodeError",
    "PasswordPolicyError",
    "ProviderUnavailableError",
    "UnexpectedResponseError",
    "ValidationError",
    "categorize_error",
    "user_message_for",
    # MFA
    "MFAOrchestrator",
    # Models
    "AuthState",
    "AuthStateChange",
    "FactorStatus",
    "LoginAttemptRecord",
    "MFAChallenge",
    "MfaChallengeResult",
    "MfaEnrollment",
    "MFAFactor",
    "MfaState",
    "MfaVerification",
    "PendingSession",
    "RateLimitStatus",
    "SessionCredential",
    "SignInOutcome",
    "SignInResult",
    # Password policy
    "PasswordCheck",
    "validate_password",
    # Ports
    "FactorEnrollment",
    "FactorVerification",
    "IAuthAuditStore",
    "IIdentityProvider",
    "ILoginAttemptStore",
    "ISecureKeystore",
    # Providers
    "GoTrueIdentityProvider",
    "InMemoryIdentityProvider",
    # Rate limiting
    "RateLimiter",
    "format_rate_limit_message",
    # Storage
    "EncryptedFileKeystore",
    "InMemoryKeystore",
    "InMemoryLoginAttemptStore",
    "KeystoreLoginAttemptStore",
    "SecureCredentialStore",
    "StorageKey",
]
