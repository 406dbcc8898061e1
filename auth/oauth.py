"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered; GET /api/v1/auth/providers lists them via
get_enabled_providers().

Security notes:
  [H1] Email verification is mandatory. get_oauth_identity() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email from GitHub could belong to an attacker who added a victim's
       address without confirming it, and SessionOrchestrator.oauth_login()
       links provider identities to existing accounts by email.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback -- never trust state from query params
  alone.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from authlib.integrations.starlette_client import OAuth

from core.config import Settings, get_settings

logger = logging.getLogger("passgate.auth.oauth")


@dataclass
class OAuthIdentity:
    """Provider-verified identity handed to SessionOrchestrator.oauth_login()."""

    email: str
    subject: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth(cfg: Settings) -> OAuth:
    """Register every provider whose credentials are configured."""
    registry = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if cfg.github_client_id and cfg.github_client_secret:
        registry.register(
            name="github",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if cfg.google_client_id and cfg.google_client_secret:
        registry.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # Generic OIDC -- Okta, Azure AD, Keycloak, Authentik, etc.
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        registry.register(
            name="oidc",
            client_id=cfg.oidc_client_id,
            client_secret=cfg.oidc_client_secret,
            server_metadata_url=cfg.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", cfg.oidc_display_name)
    return registry


oauth = build_oauth(get_settings())


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers(settings: Optional[Settings] = None) -> list[dict]:
    """Return metadata for every configured OAuth provider.

    A provider is included only when both its client ID and secret are set
    (and, for generic OIDC, the discovery URL).

    Returns list of {"name": str, "label": str} dicts.
    """
    cfg = settings or get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_identity(client, provider: str, token: dict) -> OAuthIdentity:
    """Extract a verified identity from a provider token response.

    [H1] SECURITY: Email verification is checked before returning. If the
    provider does not confirm verification, or returns no primary verified
    email, raises ValueError -- the caller must treat this as an
    authentication failure.

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "github", "google", or "oidc".
        token:    The token dict returned by authlib after code exchange.

    Raises:
        ValueError: If a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_identity(client, token)
    elif provider in ("google", "oidc"):
        return get_oidc_identity(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_identity(client, token: dict) -> OAuthIdentity:
    """GitHub does not include the email in the access token. Two API calls are
    required:
      1. GET /user -- numeric user ID (stable subject) and display name.
      2. GET /user/emails -- to find the primary verified email.

    [H1] Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    subject_id = str(profile["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    emails = emails_resp.json()

    email: str | None = None
    for entry in emails:
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    first, _, last = (profile.get("name") or "").strip().partition(" ")
    return OAuthIdentity(email=email, subject=subject_id, first_name=first or None, last_name=last or None)


def get_oidc_identity(token: dict, provider: str) -> OAuthIdentity:
    """Extract the identity from a Google/OIDC id_token.

    [H1] The email claim is only accepted when email_verified is True.
    Some OIDC providers omit email_verified entirely -- we treat that as
    unverified and raise ValueError.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")

    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return OAuthIdentity(
        email=email,
        subject=subject_id,
        first_name=userinfo.get("given_name"),
        last_name=userinfo.get("family_name"),
    )
