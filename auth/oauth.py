"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered; GET /api/v1/auth/providers reports exactly those.

Security notes:
  [H1] GitHub and Google logins require a provider-verified email.
       get_oauth_user_info() raises ValueError otherwise. Microsoft identity
       platform tokens carry no email_verified claim; the email (or
       preferred_username) claim is accepted as issued by the directory.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  github    -- Authorization code flow; static endpoints.
  google    -- Authorization code flow; OIDC discovery.
  microsoft -- Microsoft identity platform v2.0; OIDC discovery for the
               configured MICROSOFT_TENANT.

Layer rule: no imports from api/ or licensing/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("licensegate.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

_LABELS = {"github": "GitHub", "google": "Google", "microsoft": "Microsoft"}

# GitHub -- static endpoints (no OIDC discovery document)
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

# Microsoft -- OIDC discovery, per directory tenant
if _cfg.microsoft_client_id and _cfg.microsoft_client_secret:
    oauth.register(
        name="microsoft",
        client_id=_cfg.microsoft_client_id,
        client_secret=_cfg.microsoft_client_secret,
        server_metadata_url=(
            f"https://login.microsoftonline.com/{_cfg.microsoft_tenant}/v2.0/.well-known/openid-configuration"
        ),
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Microsoft OAuth provider registered (tenant: %s)", _cfg.microsoft_tenant)


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with client ID and secret configured."""
    cfg = get_settings()
    configured = {
        "github": cfg.github_client_id and cfg.github_client_secret,
        "google": cfg.google_client_id and cfg.google_client_secret,
        "microsoft": cfg.microsoft_client_id and cfg.microsoft_client_secret,
    }
    return [{"name": name, "label": _LABELS[name]} for name, ok in configured.items() if ok]


# ---------------------------------------------------------------------------
# Email / subject / display name extraction [H1]
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> tuple[str, str, str]:
    """Extract (email, subject_id, display_name) from a provider token response.

    Raises:
        ValueError: If a usable (and, where the provider reports it, verified)
            email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    elif provider == "google":
        return _get_oidc_user_info(token, provider, require_verified=True)
    elif provider == "microsoft":
        return _get_oidc_user_info(token, provider, require_verified=False)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> tuple[str, str, str]:
    """GitHub needs two calls: /user for the numeric id, /user/emails for the
    primary verified address [H1]."""
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    subject_id = str(profile["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    return email, subject_id, profile.get("name") or profile.get("login") or ""


def _get_oidc_user_info(token: dict, provider: str, require_verified: bool) -> tuple[str, str, str]:
    """Read email/sub/name from the parsed id_token claims (authlib puts them in token["userinfo"])."""
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if require_verified and not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email") or (None if require_verified else userinfo.get("preferred_username"))
    subject_id = userinfo.get("sub")

    if not email or "@" not in email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return email, subject_id, userinfo.get("name") or ""
