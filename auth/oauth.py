"""
auth/oauth.py -- OAuth/OIDC providers and the sign-in orchestration built on them.

Every provider implements OAuthProvider: build an authorization URL for a
state value, and exchange a callback code for an OAuthProfile. The HTTP side
uses authlib's httpx integration (AsyncOAuth2Client); nothing here keeps
tokens after the profile has been read.

Only providers with both client ID and secret configured are built --
build_providers() mirrors which buttons a login page should render.

Email verification:
  Providers report email_verified as True, False, or not at all (None). The
  profile carries that value through untouched; the linker decides what an
  unverified email may do. GitHub's flag comes from /user/emails, preferring
  the primary verified address.

State (CSRF):
  begin() returns a random state value. The transport layer stores it (cookie
  or server session) and passes it back to complete() as expected_state;
  complete() compares it in constant time before touching the provider.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; static OIDC endpoints.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Discovery:
  OIDC metadata is fetched asynchronously through the same authlib client, on
  first code exchange or ahead of time with OAuthLogin.discover() (call it at
  startup so begin() can build URLs without a network round trip).
"""

from __future__ import annotations

import hmac
import logging
import secrets
from abc import ABC, abstractmethod

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from auth.errors import AccountDisabled, OAuthLinkRefused, OAuthProviderError, UnknownProvider
from auth.linker import OAuthIdentityLinker
from auth.models import OAuthProfile, SessionContext, User
from auth.results import LinkRefused
from auth.sessions import SessionStore

logger = logging.getLogger("identity.auth.oauth")

_HTTP_TIMEOUT = 10.0

# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class OAuthProvider(ABC):
    """Capability interface for an external identity provider."""

    name: str = ""
    label: str = ""

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """URL the user agent is redirected to in order to sign in."""

    @abstractmethod
    async def exchange_code_for_profile(self, code: str) -> OAuthProfile:
        """Trade an authorization code for the user's profile.

        Raises OAuthProviderError on any provider or network failure.
        """

    async def discover(self) -> None:
        """Load remote provider configuration. Static providers have none."""


class _OAuth2Provider(OAuthProvider):
    """Authorization-code flow shared by every concrete provider."""

    scope: str = ""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    # Endpoints are properties so discovery-based providers can resolve them lazily.
    @property
    def authorize_endpoint(self) -> str:
        raise NotImplementedError

    @property
    def token_endpoint(self) -> str:
        raise NotImplementedError

    def authorization_url(self, state: str) -> str:
        return prepare_grant_uri(
            self.authorize_endpoint,
            client_id=self.client_id,
            response_type="code",
            redirect_uri=self.redirect_uri,
            scope=self.scope,
            state=state,
        )

    def _client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=self.scope,
            timeout=_HTTP_TIMEOUT,
        )

    async def exchange_code_for_profile(self, code: str) -> OAuthProfile:
        try:
            async with self._client() as client:
                await self._prepare(client)
                await client.fetch_token(self.token_endpoint, code=code)
                return await self._fetch_profile(client)
        except (OAuthError, httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("%s code exchange failed: %s", self.name, exc)
            raise OAuthProviderError() from exc

    async def _prepare(self, client: AsyncOAuth2Client) -> None:
        return None

    async def _fetch_profile(self, client: AsyncOAuth2Client) -> OAuthProfile:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class GitHubProvider(_OAuth2Provider):
    name = "github"
    label = "GitHub"
    scope = "read:user user:email"
    api_base_url = "https://api.github.com"

    @property
    def authorize_endpoint(self) -> str:
        return "https://github.com/login/oauth/authorize"

    @property
    def token_endpoint(self) -> str:
        return "https://github.com/login/oauth/access_token"

    async def _fetch_profile(self, client: AsyncOAuth2Client) -> OAuthProfile:
        """GitHub needs two calls: /user for the stable numeric ID, /user/emails for the address."""
        resp = await client.get(f"{self.api_base_url}/user")
        resp.raise_for_status()
        profile = resp.json()

        emails_resp = await client.get(f"{self.api_base_url}/user/emails")
        emails_resp.raise_for_status()
        email, verified = pick_github_email(emails_resp.json())
        if email is None:
            email, verified = profile.get("email"), None
        if not email:
            raise ValueError("GitHub returned no email address")

        return OAuthProfile(
            provider=self.name,
            external_id=str(profile["id"]),
            email=email,
            name=profile.get("name") or profile.get("login") or "",
            email_verified=verified,
        )


def pick_github_email(entries: list[dict]) -> tuple[str | None, bool | None]:
    """Choose an address from GitHub's /user/emails response.

    Preference: primary+verified, then any verified, then primary (unverified).
    """
    for predicate in (
        lambda e: e.get("primary") and e.get("verified"),
        lambda e: e.get("verified"),
        lambda e: e.get("primary"),
    ):
        for entry in entries:
            if predicate(entry) and entry.get("email"):
                return entry["email"], bool(entry.get("verified"))
    return None, None


# ---------------------------------------------------------------------------
# Google / generic OIDC
# ---------------------------------------------------------------------------


_REQUIRED_METADATA = ("authorization_endpoint", "token_endpoint", "userinfo_endpoint")


def _claim_verified(value) -> bool | None:
    # Some IdPs send the claim as a string.
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None


class OIDCProvider(_OAuth2Provider):
    """Generic OpenID Connect provider resolved through its discovery document.

    metadata may be passed in directly (tests, static configuration); otherwise
    it is fetched from discovery_url by discover() or the first code exchange,
    and cached. Building an authorization URL before that raises
    OAuthProviderError rather than blocking on the network.
    """

    name = "oidc"
    scope = "openid email profile"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        discovery_url: str = "",
        label: str = "SSO",
        metadata: dict | None = None,
    ) -> None:
        super().__init__(client_id, client_secret, redirect_uri)
        self.discovery_url = discovery_url
        self.label = label
        self._metadata = metadata

    @property
    def metadata(self) -> dict:
        if self._metadata is None:
            logger.warning("%s discovery document not loaded", self.name)
            raise OAuthProviderError()
        return self._metadata

    async def discover(self) -> None:
        if self._metadata is None:
            async with self._client() as client:
                await self._prepare(client)

    async def _prepare(self, client: AsyncOAuth2Client) -> None:
        if self._metadata is not None:
            return
        try:
            resp = await client.get(self.discovery_url)
            resp.raise_for_status()
            metadata = resp.json()
            missing = [k for k in _REQUIRED_METADATA if k not in metadata]
            if missing:
                raise ValueError(f"discovery document lacks {', '.join(missing)}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("%s discovery failed: %s", self.name, exc)
            raise OAuthProviderError() from exc
        self._metadata = metadata
        logger.info("Loaded OIDC discovery document for %s", self.name)

    @property
    def authorize_endpoint(self) -> str:
        return self.metadata["authorization_endpoint"]

    @property
    def token_endpoint(self) -> str:
        return self.metadata["token_endpoint"]

    async def _fetch_profile(self, client: AsyncOAuth2Client) -> OAuthProfile:
        resp = await client.get(self.metadata["userinfo_endpoint"])
        resp.raise_for_status()
        claims = resp.json()
        subject_id = claims.get("sub")
        email = claims.get("email")
        if not subject_id or not email:
            raise ValueError(f"{self.name}: missing email or sub claim in userinfo")
        return OAuthProfile(
            provider=self.name,
            external_id=str(subject_id),
            email=email,
            name=claims.get("name") or "",
            email_verified=_claim_verified(claims.get("email_verified")),
        )


GOOGLE_METADATA = {
    "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_endpoint": "https://oauth2.googleapis.com/token",
    "userinfo_endpoint": "https://openidconnect.googleapis.com/v1/userinfo",
}


class GoogleProvider(OIDCProvider):
    name = "google"

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str) -> None:
        super().__init__(client_id, client_secret, redirect_uri, label="Google", metadata=dict(GOOGLE_METADATA))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_providers(settings) -> dict[str, OAuthProvider]:
    """Instantiate every provider whose credentials are configured."""
    base = settings.oauth_redirect_base_url.rstrip("/")
    providers: dict[str, OAuthProvider] = {}

    if settings.github_client_id and settings.github_client_secret:
        providers["github"] = GitHubProvider(
            settings.github_client_id, settings.github_client_secret, f"{base}/github/callback"
        )
        logger.info("GitHub OAuth provider registered")

    if settings.google_client_id and settings.google_client_secret:
        providers["google"] = GoogleProvider(
            settings.google_client_id, settings.google_client_secret, f"{base}/google/callback"
        )
        logger.info("Google OAuth provider registered")

    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        providers["oidc"] = OIDCProvider(
            settings.oidc_client_id,
            settings.oidc_client_secret,
            f"{base}/oidc/callback",
            discovery_url=settings.oidc_discovery_url,
            label=settings.oidc_display_name,
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return providers


def enabled_providers(providers: dict[str, OAuthProvider]) -> list[dict]:
    """[{"name": ..., "label": ...}] for rendering sign-in buttons."""
    return [{"name": p.name, "label": p.label} for p in providers.values()]


# ---------------------------------------------------------------------------
# Sign-in orchestration
# ---------------------------------------------------------------------------


class OAuthLogin:
    """Drives an OAuth sign-in from redirect to session token.

    Usage:
        url, state = login.begin("github")          # store state, redirect to url
        user, token = await login.complete("github", code, ctx, state, stored_state)
    """

    def __init__(
        self,
        providers: dict[str, OAuthProvider],
        linker: OAuthIdentityLinker,
        sessions: SessionStore,
    ) -> None:
        self.providers = providers
        self.linker = linker
        self.sessions = sessions

    def provider(self, name: str) -> OAuthProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise UnknownProvider() from None

    async def discover(self) -> None:
        """Load every provider's remote configuration (OIDC discovery)."""
        for p in self.providers.values():
            await p.discover()

    def begin(self, provider: str) -> tuple[str, str]:
        state = secrets.token_urlsafe(32)
        return self.provider(provider).authorization_url(state), state

    async def fetch_profile(
        self,
        provider: str,
        code: str,
        state: str | None = None,
        expected_state: str | None = None,
    ) -> OAuthProfile:
        """Validate state (when given) and exchange code for the provider profile."""
        p = self.provider(provider)
        if expected_state is not None and not hmac.compare_digest(state or "", expected_state):
            logger.warning("OAuth state mismatch for provider %s", provider)
            raise OAuthProviderError()
        return await p.exchange_code_for_profile(code)

    async def complete(
        self,
        provider: str,
        code: str,
        context: SessionContext | None = None,
        state: str | None = None,
        expected_state: str | None = None,
    ) -> tuple[User, str]:
        """Finish the callback: resolve the local account and mint a session."""
        profile = await self.fetch_profile(provider, code, state, expected_state)
        result = self.linker.link(profile)
        if isinstance(result, LinkRefused):
            raise OAuthLinkRefused()
        user = result.user
        if user.is_deleted:
            raise AccountDisabled()
        self.linker.users.update_last_login(user.id)
        token = self.sessions.create_session(user.id, context)
        logger.info("OAuth sign-in via %s for user_id=%s (%s)", provider, user.id, result.action)
        return user, token
