"""
core/validation.py -- Explicit input validation for the auth flows.

Each validator is a plain function returning a ValidationResult. Flows compose
them and raise ValidationFailed once, before any store access:

    result = combine(check_email(email), check_password_strength(password))
    if not result.ok:
        raise ValidationFailed(result.errors)

Pydantic models in api/models.py only enforce transport shape (types, length
caps). Policy (password strength, email syntax, name charset) lives here so the
same rules apply to the API, the CLI, and direct library callers.

Layer rule: core/ is the kernel. No imports from api/, auth/, or notify/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from email_validator import EmailNotValidError, validate_email

PASSWORD_MIN_LENGTH = 8
# bcrypt truncates input beyond 72 bytes; refuse rather than silently truncate.
PASSWORD_MAX_BYTES = 72

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>_\-+=\[\]\\/;'`~]")
_NAME_RE = re.compile(r"^[A-Za-z\s\-']{2,50}$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9]{32,64}$")
_MFA_CODE_RE = re.compile(r"^[A-Za-z0-9]{6,10}$")


@dataclass
class ValidationResult:
    """Outcome of one or more validators. ok is True when errors is empty."""

    errors: list[str] = field(default_factory=list)
    value: Optional[str] = None  # normalized value, when the validator produces one

    @property
    def ok(self) -> bool:
        return not self.errors


def combine(*results: ValidationResult) -> ValidationResult:
    """Merge several results into one, keeping error order."""
    merged = ValidationResult()
    for result in results:
        merged.errors.extend(result.errors)
    return merged


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address. Used for storage and lookup."""
    return email.strip().lower()


def check_email(email: str) -> ValidationResult:
    """Check email syntax (no DNS lookup) and return the normalized address in value."""
    normalized = normalize_email(email)
    try:
        validate_email(normalized, check_deliverability=False)
    except EmailNotValidError as exc:
        return ValidationResult(errors=[f"Invalid email: {exc}"])
    return ValidationResult(value=normalized)


def check_password_strength(password: str) -> ValidationResult:
    """Require length >= 8 and at least one upper, lower, digit, and special character."""
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.append(f"Password must be at most {PASSWORD_MAX_BYTES} bytes long.")
    if not _UPPER_RE.search(password):
        errors.append("Password must contain an uppercase letter.")
    if not _LOWER_RE.search(password):
        errors.append("Password must contain a lowercase letter.")
    if not _DIGIT_RE.search(password):
        errors.append("Password must contain a number.")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must contain a special character.")
    return ValidationResult(errors=errors)


def check_name(value: Optional[str], label: str) -> ValidationResult:
    """Optional person name: 2-50 letters, spaces, hyphens, apostrophes."""
    if value is None:
        return ValidationResult()
    value = value.strip()
    if not _NAME_RE.match(value):
        return ValidationResult(
            errors=[f"{label} must be 2-50 characters: letters, spaces, hyphens, and apostrophes only."]
        )
    return ValidationResult(value=value)


def check_token_format(token: str) -> ValidationResult:
    """Verification and reset tokens are 32-64 alphanumeric characters."""
    if not _TOKEN_RE.match(token):
        return ValidationResult(errors=["Token must be 32-64 letters and digits."])
    return ValidationResult(value=token)


def check_mfa_code(code: str) -> ValidationResult:
    """A 6-digit TOTP code or a 10-character backup code."""
    code = code.strip().replace("-", "")
    if not _MFA_CODE_RE.match(code):
        return ValidationResult(errors=["MFA code must be 6-10 letters and digits."])
    return ValidationResult(value=code)
