"""Password policy for new accounts.

A valid password has at least 8 characters and contains an uppercase
letter, a lowercase letter, a digit and a special character. The strength
score (0-100) is informational and drives the strength meter in the UI.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .exceptions import PasswordPolicyError

MIN_LENGTH = 8

_SPECIAL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass(frozen=True)
class PasswordRequirements:
    length: bool = False
    uppercase: bool = False
    lowercase: bool = False
    number: bool = False
    special: bool = False

    @property
    def character_classes(self) -> int:
        return sum((self.uppercase, self.lowercase, self.number, self.special))


@dataclass(frozen=True)
class PasswordCheck:
    """Result of :func:`validate_password`.

    Attributes:
        is_valid: Whether every requirement is met.
        requirements: Which requirements are met.
        strength: Score from 0 (weak) to 100 (strong).
        problems: Missing requirements, phrased for "Password must contain ...".
    """

    is_valid: bool
    requirements: PasswordRequirements
    strength: int
    problems: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.is_valid:
            return ""
        return "Password must contain " + ", ".join(self.problems) + "."

    @property
    def label(self) -> str:
        return password_strength_label(self.strength)


def validate_password(password: str) -> PasswordCheck:
    """Check a password against the policy and score its strength."""
    requirements = PasswordRequirements(
        length=len(password) >= MIN_LENGTH,
        uppercase=re.search(r"[A-Z]", password) is not None,
        lowercase=re.search(r"[a-z]", password) is not None,
        number=re.search(r"[0-9]", password) is not None,
        special=_SPECIAL.search(password) is not None,
    )

    strength = 0
    for minimum, points in ((8, 25), (10, 10), (12, 10), (14, 5)):
        if len(password) >= minimum:
            strength += points
    strength += 10 if requirements.uppercase else 0
    strength += 10 if requirements.lowercase else 0
    strength += 10 if requirements.number else 0
    strength += 20 if requirements.special else 0
    if requirements.character_classes >= 3:
        strength += 10

    problems = [
        text
        for met, text in (
            (requirements.length, f"at least {MIN_LENGTH} characters"),
            (requirements.uppercase, "an uppercase letter"),
            (requirements.lowercase, "a lowercase letter"),
            (requirements.number, "a number"),
            (requirements.special, "a special character"),
        )
        if not met
    ]
    return PasswordCheck(
        is_valid=not problems,
        requirements=requirements,
        strength=min(strength, 100),
        problems=problems,
    )


def ensure_password_policy(password: str) -> PasswordCheck:
    """Validate a password, raising when it does not meet the policy.

    Raises:
        PasswordPolicyError: With the list of missing requirements.
    """
    check = validate_password(password)
    if not check.is_valid:
        raise PasswordPolicyError(check.problems)
    return check


def password_strength_label(strength: int) -> str:
    if strength < 30:
        return "Weak"
    if strength < 60:
        return "Moderate"
    if strength < 80:
        return "Good"
    return "Strong"


__all__: list[str] = [
    "MIN_LENGTH",
    "PasswordRequirements",
    "PasswordCheck",
    "validate_password",
    "ensure_password_policy",
    "password_strength_label",
]
