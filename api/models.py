"""
API request and response models for Passgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Transport models only enforce shape (types, length caps). Policy checks such
as password strength and name charset live in core/validation.py and run in
the auth flows, so the CLI and library callers get the same rules.

Success responses are wrapped as {"data": ...}; errors as {"error": {...}}.
"""

from typing import Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from auth.models import LoginResult, TokenPair, User

T = TypeVar("T")

# Caps are generous; they exist to bound request size, not to validate.
_EMAIL_MAX = 255
_PASSWORD_MAX = 128
_NAME_MAX = 50
_TOKEN_MAX = 128
_CODE_MAX = 16


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class Envelope(BaseModel, Generic[T]):
    """Top-level success envelope."""

    data: T


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Request models -- auth flows
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Email and names are trimmed by core.validation; the password is kept as sent."""

    email: str = Field(min_length=3, max_length=_EMAIL_MAX)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    first_name: Optional[str] = Field(default=None, max_length=_NAME_MAX)
    last_name: Optional[str] = Field(default=None, max_length=_NAME_MAX)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. mfa_code is optional."""

    email: str = Field(min_length=1, max_length=_EMAIL_MAX)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    mfa_code: Optional[str] = Field(default=None, min_length=6, max_length=_CODE_MAX)


class MfaVerifyRequest(BaseModel):
    ticket: str = Field(min_length=1, max_length=_TOKEN_MAX)
    code: str = Field(min_length=6, max_length=_CODE_MAX)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=_TOKEN_MAX)


class LogoutRequest(BaseModel):
    """Omit refresh_token or set everywhere=true to end every session."""

    refresh_token: Optional[str] = Field(default=None, max_length=_TOKEN_MAX)
    everywhere: bool = False


class TokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=_TOKEN_MAX)


class EmailRequest(BaseModel):
    email: str = Field(min_length=1, max_length=_EMAIL_MAX)


class PasswordResetRequest(BaseModel):
    token: str = Field(min_length=1, max_length=_TOKEN_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=_CODE_MAX)


class MfaDisableRequest(BaseModel):
    """password is required for accounts that have one (not OAuth-only)."""

    password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)
    code: str = Field(min_length=6, max_length=_CODE_MAX)


# ---------------------------------------------------------------------------
# Request models -- users
# ---------------------------------------------------------------------------


class ProfilePatch(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=_NAME_MAX)
    last_name: Optional[str] = Field(default=None, max_length=_NAME_MAX)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class AdminUserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. At least one field must be set."""

    roles: Optional[list[Literal["user", "admin"]]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
        )


class LoginResponse(BaseModel):
    """Either tokens (mfa_required=false) or an MFA ticket (mfa_required=true)."""

    mfa_required: bool
    tokens: Optional[TokenPairResponse] = None
    mfa_ticket: Optional[str] = None
    mfa_ticket_expires_in: Optional[int] = None

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        if result.mfa_required:
            return cls(
                mfa_required=True,
                mfa_ticket=result.mfa_ticket,
                mfa_ticket_expires_in=result.mfa_ticket_expires_in,
            )
        return cls(mfa_required=False, tokens=TokenPairResponse.from_pair(result.tokens))


class UserResponse(BaseModel):
    """Public view of a user. Never includes hashes, secrets, or token columns."""

    id: int
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    roles: list[str]
    is_active: bool
    is_email_verified: bool
    is_mfa_enabled: bool
    oauth_provider: Optional[str]
    created_at: str
    last_login_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            roles=list(user.roles),
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            is_mfa_enabled=user.is_mfa_enabled,
            oauth_provider=user.oauth_provider,
            created_at=user.created_at or "",
            last_login_at=user.last_login_at,
        )


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class BackupCodesResponse(BaseModel):
    """Plain backup codes. Shown exactly once; only hashes are stored."""

    backup_codes: list[str]


class RevokedResponse(BaseModel):
    revoked: int


class OAuthProviderInfo(BaseModel):
    name: str
    label: str
