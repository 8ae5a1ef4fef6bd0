from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import jwt
from cryptography.hazmat.primitives import serialization

from olakz_auth.config import FederatedLinkPolicy, Settings
from olakz_auth.logging import get_logger, hash_identifier
from olakz_auth.service.errors import (
    Conflict,
    InvalidProviderToken,
    ServiceUnavailable,
    ValidationError,
)
from olakz_auth.storage.errors import ConstraintViolation
from olakz_auth.storage.models import Account, FederatedIdentity

logger = get_logger(__name__)

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"
APPLE_RELAY_DOMAIN = "privaterelay.appleid.com"

PROVIDERS = ("google", "apple")

JWKSFetcher = Callable[[str], Awaitable[dict]]


class FederatedStore(Protocol):
    def get_account_by_identity(
        self, provider: str, subject: str
    ) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def create_account(self, email: str, **fields: Any) -> Account: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def link_identity(
        self, account_id: str, provider: str, subject: str
    ) -> FederatedIdentity: ...


@dataclass
class ProviderIdentity:
    """Claims extracted from a verified provider token."""

    provider: str
    subject: str
    email: Optional[str]
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None


async def _fetch_jwks(url: str) -> dict:
    async with httpx.AsyncClient(timeout=5.0) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class JWKSCache:
    """Provider signing keys, refreshed after ``ttl_seconds`` or on an unknown kid.

    Unknown-kid refetches are spaced at least ``min_refetch_seconds`` apart.
    """

    def __init__(
        self,
        url: str,
        *,
        ttl_seconds: int = 3600,
        min_refetch_seconds: int = 60,
        fetcher: JWKSFetcher = _fetch_jwks,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.min_refetch_seconds = min_refetch_seconds
        self._fetcher = fetcher
        self._clock = clock
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None

    def _is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at >= self.ttl_seconds

    async def _refresh(self) -> None:
        try:
            payload = await self._fetcher(self.url)
            key_set = jwt.PyJWKSet.from_dict(payload)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("jwks_fetch_failed", url=self.url, error=str(exc))
            raise ServiceUnavailable("identity provider keys are unavailable") from exc
        except (jwt.PyJWKError, jwt.PyJWKSetError) as exc:
            logger.error("jwks_parse_failed", url=self.url, error=str(exc))
            raise ServiceUnavailable("identity provider keys are unusable") from exc
        self._keys = {key.key_id: key for key in key_set.keys if key.key_id}
        self._fetched_at = self._clock()
        logger.info("jwks_refreshed", url=self.url, keys=len(self._keys))

    async def get_key(self, kid: str) -> Optional[jwt.PyJWK]:
        if self._is_stale():
            await self._refresh()
            return self._keys.get(kid)
        key = self._keys.get(kid)
        if key is not None:
            return key
        # Providers rotate keys; refetch on an unknown kid once the cooldown has passed
        if self._clock() - self._fetched_at < self.min_refetch_seconds:
            logger.info("jwks_refetch_throttled", url=self.url, kid=kid)
            return None
        await self._refresh()
        return self._keys.get(kid)


class FederatedIdentityVerifier:
    """Verifies Google and Apple identity tokens and reconciles them to accounts.

    When a first-time provider identity carries an email that already belongs to
    a local account, ``Settings.federated_link_policy`` decides the outcome:

    - ``verified_email``: link when the provider asserts the email is verified,
      otherwise raise ``Conflict``.
    - ``explicit``: never link by email; raise ``Conflict`` and let the account
      owner link through ``link_identity`` while signed in.
    """

    def __init__(
        self,
        store: FederatedStore,
        settings: Settings,
        *,
        google_keys: Optional[JWKSCache] = None,
        apple_keys: Optional[JWKSCache] = None,
        http_client_factory: Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient(
            timeout=10.0
        ),
    ) -> None:
        self.store = store
        self.settings = settings
        self.google_keys = google_keys or JWKSCache(
            GOOGLE_JWKS_URL,
            ttl_seconds=settings.jwks_cache_seconds,
            min_refetch_seconds=settings.jwks_min_refetch_seconds,
        )
        self.apple_keys = apple_keys or JWKSCache(
            APPLE_JWKS_URL,
            ttl_seconds=settings.jwks_cache_seconds,
            min_refetch_seconds=settings.jwks_min_refetch_seconds,
        )
        self._http_client_factory = http_client_factory

    async def _decode_provider_token(
        self,
        token: str,
        keys: JWKSCache,
        *,
        provider: str,
        audience: list[str],
    ) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise InvalidProviderToken(f"{provider} token is malformed") from exc
        if header.get("alg") != "RS256":
            raise InvalidProviderToken(f"{provider} token uses an unexpected algorithm")
        kid = header.get("kid")
        if not kid:
            raise InvalidProviderToken(f"{provider} token has no key id")
        key = await keys.get_key(kid)
        if key is None:
            logger.warning("provider_key_not_found", provider=provider, kid=kid)
            raise InvalidProviderToken(f"{provider} signing key not found")
        try:
            return jwt.decode(
                token,
                key.key,
                algorithms=["RS256"],
                audience=audience,
                options={"require": ["exp", "iat", "iss", "sub", "aud"]},
                leeway=self.settings.clock_skew_leeway_seconds,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidProviderToken(f"{provider} token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.info("provider_token_rejected", provider=provider, reason=str(exc))
            raise InvalidProviderToken(f"{provider} token is invalid") from exc

    async def verify_google_token(self, id_token: str) -> ProviderIdentity:
        if not self.settings.google_client_ids:
            raise ServiceUnavailable("Google sign-in is not configured")
        claims = await self._decode_provider_token(
            id_token,
            self.google_keys,
            provider="google",
            audience=list(self.settings.google_client_ids),
        )
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise InvalidProviderToken("google token issuer mismatch")
        email = claims.get("email")
        if not email:
            raise InvalidProviderToken("google token has no email")
        return ProviderIdentity(
            provider="google",
            subject=str(claims["sub"]),
            email=str(email).strip().lower(),
            email_verified=_as_bool(claims.get("email_verified")),
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
            picture=claims.get("picture"),
        )

    async def verify_apple_token(
        self,
        identity_token: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> ProviderIdentity:
        """Verify an Apple identity token.

        Apple omits the email after the first authorization; the private relay
        address ``<sub>@privaterelay.appleid.com`` stands in, unverified. Names
        only arrive in the client's first-authorization payload, so callers
        pass them through.
        """
        if not self.settings.apple_client_id:
            raise ServiceUnavailable("Apple sign-in is not configured")
        claims = await self._decode_provider_token(
            identity_token,
            self.apple_keys,
            provider="apple",
            audience=[self.settings.apple_client_id],
        )
        if claims.get("iss") != APPLE_ISSUER:
            raise InvalidProviderToken("apple token issuer mismatch")
        subject = str(claims["sub"])
        email = claims.get("email")
        if email:
            email_verified = _as_bool(claims.get("email_verified"))
        else:
            email = f"{subject}@{APPLE_RELAY_DOMAIN}"
            email_verified = False
        return ProviderIdentity(
            provider="apple",
            subject=subject,
            email=str(email).strip().lower(),
            email_verified=email_verified,
            first_name=first_name,
            last_name=last_name,
        )

    async def verify(self, provider: str, token: str) -> ProviderIdentity:
        if provider == "google":
            return await self.verify_google_token(token)
        if provider == "apple":
            return await self.verify_apple_token(token)
        raise ValidationError("unsupported identity provider", detail={"provider": provider})

    def resolve_account(
        self, provider: str, identity: ProviderIdentity
    ) -> tuple[Account, bool]:
        """Map a verified identity to an account; returns ``(account, created)``."""
        account = self.store.get_account_by_identity(provider, identity.subject)
        if account:
            return account, False

        existing = (
            self.store.get_account_by_email(identity.email) if identity.email else None
        )
        if existing:
            policy = FederatedLinkPolicy(self.settings.federated_link_policy)
            if policy is FederatedLinkPolicy.EXPLICIT:
                logger.info(
                    "federated_link_requires_explicit",
                    provider=provider,
                    account_id=existing.id,
                )
                raise Conflict(
                    "an account with this email already exists; sign in and link this provider",
                    detail={"field": "email", "link_required": True},
                )
            if not identity.email_verified:
                logger.info(
                    "federated_link_refused_unverified",
                    provider=provider,
                    account_id=existing.id,
                )
                raise Conflict(
                    "an account with this email already exists and the provider did not verify it",
                    detail={"field": "email", "link_required": True},
                )
            self._link(existing.id, provider, identity.subject)
            if not existing.email_verified:
                existing = self.store.mark_email_verified(existing.id) or existing
            logger.info(
                "federated_identity_linked_by_email",
                provider=provider,
                account_id=existing.id,
            )
            return existing, False

        try:
            account = self.store.create_account(
                identity.email,
                roles=[self.settings.default_role],
                active_role=self.settings.default_role,
                email_verified=identity.email_verified,
                first_name=identity.first_name,
                last_name=identity.last_name,
                avatar_url=identity.picture,
                provider=provider,
            )
        except ConstraintViolation as exc:
            raise Conflict("account already exists", detail=exc.detail) from exc
        self._link(account.id, provider, identity.subject)
        logger.info(
            "federated_account_created",
            provider=provider,
            account_id=account.id,
            email_hash=hash_identifier(identity.email or ""),
        )
        return account, True

    def link_identity(
        self, account: Account, provider: str, identity: ProviderIdentity
    ) -> FederatedIdentity:
        """Explicitly attach a provider identity to a signed-in account."""
        linked = self._link(account.id, provider, identity.subject)
        logger.info("federated_identity_linked", provider=provider, account_id=account.id)
        return linked

    def _link(self, account_id: str, provider: str, subject: str) -> FederatedIdentity:
        try:
            return self.store.link_identity(account_id, provider, subject)
        except ConstraintViolation as exc:
            raise Conflict(
                "this provider identity is linked to another account",
                detail=exc.detail,
            ) from exc

    def _google_web_client(self) -> tuple[str, str, str]:
        settings = self.settings
        if not (
            settings.google_client_ids
            and settings.google_client_secret
            and settings.google_redirect_uri
        ):
            raise ServiceUnavailable("Google redirect sign-in is not configured")
        return (
            settings.google_client_ids[0],
            settings.google_client_secret,
            settings.google_redirect_uri,
        )

    def google_auth_url(self, state: Optional[str] = None) -> str:
        """Consent-screen URL for the browser redirect flow."""
        client_id, _, redirect_uri = self._google_web_client()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "access_type": "online",
            "prompt": "select_account",
        }
        if state:
            params["state"] = state
        return str(httpx.URL(GOOGLE_AUTH_URL, params=params))

    async def exchange_google_code(self, code: str) -> str:
        """Exchange an authorization code for a Google ID token."""
        client_id, client_secret, redirect_uri = self._google_web_client()
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            async with self._http_client_factory() as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            logger.error("google_code_exchange_failed", error=str(exc))
            raise ServiceUnavailable("Google token endpoint is unavailable") from exc
        if response.status_code != 200:
            logger.warning(
                "google_code_exchange_rejected", status_code=response.status_code
            )
            raise InvalidProviderToken("failed to exchange Google authorization code")
        id_token = response.json().get("id_token")
        if not id_token:
            raise InvalidProviderToken("Google response did not include an ID token")
        return id_token

    def _apple_client_secret(self) -> str:
        settings = self.settings
        if not (
            settings.apple_client_id
            and settings.apple_team_id
            and settings.apple_key_id
            and settings.apple_private_key
        ):
            raise ServiceUnavailable("Apple code exchange is not configured")
        try:
            private_key = serialization.load_pem_private_key(
                settings.apple_private_key.encode(), password=None
            )
        except ValueError as exc:
            logger.error("apple_private_key_invalid", error=str(exc))
            raise ServiceUnavailable("Apple signing key is invalid") from exc
        now = int(time.time())
        return jwt.encode(
            {
                "iss": settings.apple_team_id,
                "iat": now,
                "exp": now + 3600,
                "aud": APPLE_ISSUER,
                "sub": settings.apple_client_id,
            },
            private_key,
            algorithm="ES256",
            headers={"kid": settings.apple_key_id},
        )

    async def exchange_apple_code(self, code: str) -> str:
        """Exchange an authorization code for an Apple identity token."""
        form = {
            "client_id": self.settings.apple_client_id,
            "client_secret": self._apple_client_secret(),
            "code": code,
            "grant_type": "authorization_code",
        }
        if self.settings.apple_redirect_uri:
            form["redirect_uri"] = self.settings.apple_redirect_uri
        try:
            async with self._http_client_factory() as client:
                response = await client.post(APPLE_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            logger.error("apple_code_exchange_failed", error=str(exc))
            raise ServiceUnavailable("Apple token endpoint is unavailable") from exc
        if response.status_code != 200:
            logger.warning(
                "apple_code_exchange_rejected", status_code=response.status_code
            )
            raise InvalidProviderToken("failed to exchange Apple authorization code")
        id_token = response.json().get("id_token")
        if not id_token:
            raise InvalidProviderToken("Apple response did not include an identity token")
        return id_token


__all__ = [
    "FederatedIdentityVerifier",
    "JWKSCache",
    "ProviderIdentity",
    "PROVIDERS",
]
