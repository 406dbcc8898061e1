"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register                -- create local account, send verification email
  POST /api/v1/auth/login                   -- password login; tokens or MFA ticket
  POST /api/v1/auth/mfa/verify              -- complete login with ticket + code
  POST /api/v1/auth/refresh                 -- rotate refresh token
  POST /api/v1/auth/logout                  -- revoke one or all refresh tokens (requires auth)
  POST /api/v1/auth/verify-email            -- consume verification token
  POST /api/v1/auth/verify-email/resend     -- new verification token (requires auth)
  POST /api/v1/auth/password/reset-request  -- always 202, no enumeration
  POST /api/v1/auth/password/reset          -- set password with reset token
  POST /api/v1/auth/mfa/setup               -- new TOTP secret (requires auth)
  POST /api/v1/auth/mfa/enable              -- confirm secret, get backup codes (requires auth)
  POST /api/v1/auth/mfa/disable             -- turn MFA off (requires auth)
  GET  /api/v1/auth/providers               -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}        -- redirect to provider
  GET  /api/v1/auth/oauth/{provider}/callback -- exchange code, log in

Security:
  [H2] login, mfa/verify, register, and password/reset-request are rate-limited
       per client address (limits from Settings). The limiter rejects with 429
       before the handler runs, so the credential store is never touched.
  [C1] SessionOrchestrator.login() provides timing equalization.
  [M5] Cache-Control: no-store on every response that carries credentials.

Handlers are plain functions: they call the core and return models. Core
errors propagate to the AuthError handler in api/main.py.
"""

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_limit, password_reset_limit, register_limit
from api.models import (
    BackupCodesResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaSetupResponse,
    MfaVerifyRequest,
    OAuthProviderInfo,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    RevokedResponse,
    TokenPairResponse,
    TokenRequest,
    UserResponse,
)
from auth.dependencies import (
    get_current_user,
    get_mfa,
    get_orchestrator,
    get_recovery,
    get_token_service,
)
from auth.mfa import MfaChallenge
from auth.models import User
from auth.oauth import get_enabled_providers, get_oauth_identity
from auth.orchestrator import SessionOrchestrator
from auth.recovery import AccountRecovery
from auth.sessions import TokenService
from core.errors import InvalidCredentials, NotFound, ValidationFailed
from core.validation import check_mfa_code

# Auth policy:
# - register, login, mfa/verify, refresh, verify-email, password/*: public
# - providers, oauth/*:                                             public
# - logout, verify-email/resend, mfa/setup|enable|disable:          requires auth (get_current_user)
router = APIRouter()

_RESET_ACCEPTED = "If that email belongs to an active account, a reset link has been sent."


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    response.headers["Pragma"] = "no-cache"


def _mfa_code(code: str) -> str:
    """Reject malformed MFA codes with 422 before any attempt is counted."""
    result = check_mfa_code(code)
    if not result.ok:
        raise ValidationFailed(result.errors)
    return result.value


# ---------------------------------------------------------------------------
# Registration and password login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope[UserResponse], status_code=201)
@limiter.limit(register_limit)  # [H2] must sit BELOW @router so the registered endpoint is the limited wrapper
def register(
    request: Request,
    body: RegisterRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> Envelope[UserResponse]:
    """Create a local account. A verification email is sent to the address."""
    user = orchestrator.register(body.email, body.password, body.first_name, body.last_name)
    return Envelope(data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope[LoginResponse])
@limiter.limit(login_limit)  # [H2]
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> Envelope[LoginResponse]:
    """Authenticate with email and password.

    With MFA enabled and no mfa_code, the response carries mfa_required=true and
    a short-lived ticket for POST /auth/mfa/verify instead of tokens.
    """
    mfa_code = _mfa_code(body.mfa_code) if body.mfa_code is not None else None
    result = orchestrator.login(body.email, body.password, mfa_code)
    _no_store(response)
    return Envelope(data=LoginResponse.from_result(result))


@router.post("/auth/mfa/verify", response_model=Envelope[TokenPairResponse])
@limiter.limit(login_limit)  # [H2] same budget as login
def mfa_verify(
    request: Request,
    response: Response,
    body: MfaVerifyRequest,
    mfa: MfaChallenge = Depends(get_mfa),
) -> Envelope[TokenPairResponse]:
    pair = mfa.complete(body.ticket, _mfa_code(body.code))
    _no_store(response)
    return Envelope(data=TokenPairResponse.from_pair(pair))


@router.post("/auth/refresh", response_model=Envelope[TokenPairResponse])
def refresh(
    response: Response,
    body: RefreshRequest,
    tokens: TokenService = Depends(get_token_service),
) -> Envelope[TokenPairResponse]:
    """Rotate a refresh token. The presented token is consumed whether or not it was expired."""
    pair = tokens.refresh(body.refresh_token)
    _no_store(response)
    return Envelope(data=TokenPairResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope[RevokedResponse])
def logout(
    body: LogoutRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> Envelope[RevokedResponse]:
    """Revoke the given refresh token (ownership-checked), or all of them.

    Idempotent: logging out with an already revoked token returns revoked=0.
    The access token itself stays valid until it expires.
    """
    count = orchestrator.logout(current_user.id, body.refresh_token, body.everywhere)
    return Envelope(data=RevokedResponse(revoked=count))


# ---------------------------------------------------------------------------
# Email verification and password reset
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email", response_model=Envelope[UserResponse])
def verify_email(
    body: TokenRequest,
    recovery: AccountRecovery = Depends(get_recovery),
) -> Envelope[UserResponse]:
    user = recovery.verify_email(body.token)
    return Envelope(data=UserResponse.from_user(user))


@router.post("/auth/verify-email/resend", response_model=Envelope[MessageResponse], status_code=202)
def resend_verification(
    current_user: User = Depends(get_current_user),
    recovery: AccountRecovery = Depends(get_recovery),
) -> Envelope[MessageResponse]:
    recovery.request_verification(current_user.id)
    return Envelope(data=MessageResponse(message="If the address is unverified, a new link has been sent."))


@router.post("/auth/password/reset-request", response_model=Envelope[MessageResponse], status_code=202)
@limiter.limit(password_reset_limit)  # [H2]
def password_reset_request(
    request: Request,
    body: EmailRequest,
    recovery: AccountRecovery = Depends(get_recovery),
) -> Envelope[MessageResponse]:
    """Always 202 with the same body, whether or not the email is known."""
    recovery.request_password_reset(body.email)
    return Envelope(data=MessageResponse(message=_RESET_ACCEPTED))


@router.post("/auth/password/reset", response_model=Envelope[MessageResponse])
def password_reset(
    body: PasswordResetRequest,
    recovery: AccountRecovery = Depends(get_recovery),
) -> Envelope[MessageResponse]:
    """Set a new password. Every existing session is signed out."""
    recovery.reset_password(body.token, body.new_password)
    return Envelope(data=MessageResponse(message="Password has been reset. Please log in again."))


# ---------------------------------------------------------------------------
# MFA enrollment
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=Envelope[MfaSetupResponse])
def mfa_setup(
    response: Response,
    current_user: User = Depends(get_current_user),
    mfa: MfaChallenge = Depends(get_mfa),
) -> Envelope[MfaSetupResponse]:
    enrollment = mfa.setup(current_user.id)
    _no_store(response)
    return Envelope(data=MfaSetupResponse(secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri))


@router.post("/auth/mfa/enable", response_model=Envelope[BackupCodesResponse])
def mfa_enable(
    response: Response,
    body: MfaCodeRequest,
    current_user: User = Depends(get_current_user),
    mfa: MfaChallenge = Depends(get_mfa),
) -> Envelope[BackupCodesResponse]:
    codes = mfa.enable(current_user.id, _mfa_code(body.code))
    _no_store(response)
    return Envelope(data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope[MessageResponse])
def mfa_disable(
    body: MfaDisableRequest,
    current_user: User = Depends(get_current_user),
    mfa: MfaChallenge = Depends(get_mfa),
) -> Envelope[MessageResponse]:
    mfa.disable(current_user.id, body.password, _mfa_code(body.code))
    return Envelope(data=MessageResponse(message="MFA disabled."))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=Envelope[list[OAuthProviderInfo]])
def list_providers() -> Envelope[list[OAuthProviderInfo]]:
    """Return the list of OAuth providers enabled on this instance.

    Public endpoint -- clients call this to decide which sign-in buttons to show.
    """
    return Envelope(data=[OAuthProviderInfo(**p) for p in get_enabled_providers()])


def _require_provider(provider: str) -> None:
    """Reject provider names that are not configured.

    Prevents crafting a redirect through an arbitrary, unregistered client.
    """
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise NotFound(f"OAuth provider {provider!r} is not enabled.")


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page."""
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get(
    "/auth/oauth/{provider}/callback",
    response_model=Envelope[LoginResponse],
    name="oauth_callback",
)
async def oauth_callback(request: Request, response: Response, provider: str) -> Envelope[LoginResponse]:
    """Exchange the authorization code and log the user in.

    Flow:
      1. Exchange code for token (authlib checks the state stored in the session).
      2. Extract a verified identity -- ValueError if the email is unverified [H1].
      3. SessionOrchestrator.oauth_login(): match, link, or create the account.
    """
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        raise InvalidCredentials("OAuth authentication failed.") from exc
    try:
        identity = await get_oauth_identity(client, provider, token)
    except ValueError as exc:
        raise InvalidCredentials("The provider did not confirm a verified email address.") from exc

    orchestrator: SessionOrchestrator = get_orchestrator(request)
    result = await run_in_threadpool(
        orchestrator.oauth_login,
        provider,
        identity.email,
        identity.subject,
        identity.first_name,
        identity.last_name,
    )
    _no_store(response)
    return Envelope(data=LoginResponse.from_result(result))
