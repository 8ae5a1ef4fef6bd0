"""Tests for Google/Apple identity token verification and account linking.

Provider keys are generated locally and served through a stub JWKS fetcher.
"""

import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import RSAAlgorithm

from olakz_auth.config import FederatedLinkPolicy, Settings
from olakz_auth.service.errors import Conflict, InvalidProviderToken, ServiceUnavailable
from olakz_auth.service.federated import (
    APPLE_ISSUER,
    APPLE_TOKEN_URL,
    GOOGLE_AUTH_URL,
    GOOGLE_TOKEN_URL,
    FederatedIdentityVerifier,
    JWKSCache,
    ProviderIdentity,
)
from olakz_auth.storage.memory import MemoryStore

GOOGLE_AUDIENCE = "google-client-id.apps.googleusercontent.com"
APPLE_AUDIENCE = "com.olakz.ride"


class SigningKey:
    """RSA key pair exposed as a JWK for the stub key server."""

    def __init__(self, kid: str):
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def jwk(self) -> dict:
        data = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        data.update({"kid": self.kid, "alg": "RS256", "use": "sig"})
        return data

    def sign(self, claims: dict, **header) -> str:
        return jwt.encode(
            claims, self.private_key, algorithm="RS256", headers={"kid": self.kid, **header}
        )


class StubFetcher:
    """Serves successive JWKS documents and counts fetches."""

    def __init__(self, *key_sets):
        self._key_sets = list(key_sets)
        self.calls = 0

    async def __call__(self, url: str) -> dict:
        self.calls += 1
        keys = self._key_sets[min(self.calls, len(self._key_sets)) - 1]
        return {"keys": [key.jwk() for key in keys]}


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingFetcher:
    async def __call__(self, url: str) -> dict:
        raise httpx.ConnectError("connection refused")


def _claims(issuer: str, audience: str, subject: str = "provider-subject-1", **extra) -> dict:
    now = int(time.time())
    claims = {"iss": issuer, "aud": audience, "sub": subject, "iat": now, "exp": now + 600}
    claims.update(extra)
    return claims


def _settings(**overrides) -> Settings:
    values = dict(
        jwt_access_secret="access-secret-for-unit-tests-only-0123456789",
        jwt_refresh_secret="refresh-secret-for-unit-tests-only-0123456789",
        otp_secret="otp-secret-for-unit-tests",
        google_client_ids=[GOOGLE_AUDIENCE],
        apple_client_id=APPLE_AUDIENCE,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(scope="module")
def google_key():
    return SigningKey("google-kid-1")


@pytest.fixture(scope="module")
def apple_key():
    return SigningKey("apple-kid-1")


@pytest.fixture
def store():
    return MemoryStore()


def _verifier(store, google_key, apple_key, *, settings=None, google_fetcher=None, clock=None):
    settings = settings or _settings()
    return FederatedIdentityVerifier(
        store,
        settings,
        google_keys=JWKSCache(
            "google",
            fetcher=google_fetcher or StubFetcher([google_key]),
            clock=clock or ManualClock(),
        ),
        apple_keys=JWKSCache("apple", fetcher=StubFetcher([apple_key])),
    )


class TestGoogleTokens:
    """Google ID token verification."""

    async def test_valid_token_yields_identity(self, store, google_key, apple_key):
        """A correctly signed token maps to a provider identity."""
        verifier = _verifier(store, google_key, apple_key)
        token = google_key.sign(
            _claims(
                "https://accounts.google.com",
                GOOGLE_AUDIENCE,
                email="Rider@Example.com",
                email_verified=True,
                given_name="Ada",
                family_name="Obi",
            )
        )

        identity = await verifier.verify_google_token(token)

        assert identity.subject == "provider-subject-1"
        assert identity.email == "rider@example.com"
        assert identity.email_verified is True
        assert identity.first_name == "Ada"

    async def test_wrong_audience_is_rejected(self, store, google_key, apple_key):
        """Tokens minted for another client are refused."""
        verifier = _verifier(store, google_key, apple_key)
        token = google_key.sign(
            _claims("accounts.google.com", "someone-else", email="a@example.com")
        )

        with pytest.raises(InvalidProviderToken):
            await verifier.verify_google_token(token)

    async def test_expired_token_is_rejected(self, store, google_key, apple_key):
        """Expired provider tokens are refused."""
        verifier = _verifier(store, google_key, apple_key)
        claims = _claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com")
        claims["exp"] = int(time.time()) - 60
        token = google_key.sign(claims)

        with pytest.raises(InvalidProviderToken):
            await verifier.verify_google_token(token)

    async def test_foreign_issuer_is_rejected(self, store, google_key, apple_key):
        """Only Google's issuers are accepted."""
        verifier = _verifier(store, google_key, apple_key)
        token = google_key.sign(
            _claims("https://evil.example.com", GOOGLE_AUDIENCE, email="a@example.com")
        )

        with pytest.raises(InvalidProviderToken):
            await verifier.verify_google_token(token)

    async def test_symmetric_algorithm_is_rejected(self, store, google_key, apple_key):
        """HS256 tokens cannot impersonate the provider."""
        verifier = _verifier(store, google_key, apple_key)
        token = jwt.encode(
            _claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com"),
            "shared-secret-value-that-is-long-enough",
            algorithm="HS256",
            headers={"kid": google_key.kid},
        )

        with pytest.raises(InvalidProviderToken):
            await verifier.verify_google_token(token)

    async def test_unknown_kid_refetches_once(self, store, google_key, apple_key):
        """An unknown key id triggers one refetch once the cooldown has passed."""
        fetcher = StubFetcher([google_key])
        clock = ManualClock()
        verifier = _verifier(store, google_key, apple_key, google_fetcher=fetcher, clock=clock)
        stranger = SigningKey("unknown-kid")
        token = stranger.sign(
            _claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com")
        )
        good = google_key.sign(
            _claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com")
        )

        await verifier.verify_google_token(good)
        clock.advance(61)
        with pytest.raises(InvalidProviderToken):
            await verifier.verify_google_token(token)
        assert fetcher.calls == 2

    async def test_unknown_kids_within_cooldown_do_not_refetch(self, store, google_key, apple_key):
        """Repeated unknown key ids inside the cooldown are answered from cache."""
        fetcher = StubFetcher([google_key])
        clock = ManualClock()
        verifier = _verifier(store, google_key, apple_key, google_fetcher=fetcher, clock=clock)
        await verifier.verify_google_token(
            google_key.sign(_claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com"))
        )

        for index in range(5):
            forged = SigningKey(f"forged-kid-{index}").sign(
                _claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com")
            )
            clock.advance(10)
            with pytest.raises(InvalidProviderToken):
                await verifier.verify_google_token(forged)

        assert fetcher.calls == 1
        clock.advance(11)
        with pytest.raises(InvalidProviderToken):
            await verifier.verify_google_token(forged)
        assert fetcher.calls == 2

    async def test_rotated_key_is_picked_up(self, store, google_key, apple_key):
        """A kid published after the first fetch verifies after the refetch."""
        rotated = SigningKey("google-kid-2")
        fetcher = StubFetcher([google_key], [google_key, rotated])
        clock = ManualClock()
        verifier = _verifier(store, google_key, apple_key, google_fetcher=fetcher, clock=clock)

        await verifier.verify_google_token(
            google_key.sign(_claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com"))
        )
        clock.advance(61)
        identity = await verifier.verify_google_token(
            rotated.sign(_claims("accounts.google.com", GOOGLE_AUDIENCE, email="b@example.com"))
        )

        assert identity.email == "b@example.com"

    async def test_key_fetch_failure_is_service_unavailable(self, store, google_key, apple_key):
        """A provider outage is reported as unavailable, not as a bad token."""
        verifier = _verifier(store, google_key, apple_key, google_fetcher=FailingFetcher())
        token = google_key.sign(
            _claims("accounts.google.com", GOOGLE_AUDIENCE, email="a@example.com")
        )

        with pytest.raises(ServiceUnavailable):
            await verifier.verify_google_token(token)

    async def test_unconfigured_google_is_unavailable(self, store, google_key, apple_key):
        """Without client ids Google sign-in is disabled."""
        verifier = _verifier(
            store, google_key, apple_key, settings=_settings(google_client_ids=[])
        )

        with pytest.raises(ServiceUnavailable):
            await verifier.verify_google_token("anything")


def _web_settings(**overrides):
    return _settings(
        google_client_secret="google-web-secret",
        google_redirect_uri="https://auth.olakz.test/api/auth/google/callback",
        **overrides,
    )


class TestGoogleRedirectFlow:
    """Browser consent redirect and authorization code exchange."""

    def test_auth_url_targets_consent_screen(self, store, google_key, apple_key):
        verifier = _verifier(store, google_key, apple_key, settings=_web_settings())

        url = httpx.URL(verifier.google_auth_url(state="opaque-state"))

        assert str(url).startswith(GOOGLE_AUTH_URL)
        assert url.params["client_id"] == GOOGLE_AUDIENCE
        assert url.params["response_type"] == "code"
        assert url.params["redirect_uri"] == "https://auth.olakz.test/api/auth/google/callback"
        assert set(url.params["scope"].split()) == {"openid", "email", "profile"}
        assert url.params["state"] == "opaque-state"

    def test_auth_url_requires_web_credentials(self, store, google_key, apple_key):
        """Without a client secret the redirect flow is disabled."""
        verifier = _verifier(store, google_key, apple_key)

        with pytest.raises(ServiceUnavailable):
            verifier.google_auth_url()

    async def test_code_exchange_returns_id_token(self, store, google_key, apple_key):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"id_token": "google-id-token"})

        verifier = FederatedIdentityVerifier(
            store,
            _web_settings(),
            google_keys=JWKSCache("google", fetcher=StubFetcher([google_key])),
            apple_keys=JWKSCache("apple", fetcher=StubFetcher([apple_key])),
            http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        assert await verifier.exchange_google_code("auth-code") == "google-id-token"
        assert seen["url"] == GOOGLE_TOKEN_URL
        assert "code=auth-code" in seen["body"]
        assert "client_secret=google-web-secret" in seen["body"]

    async def test_rejected_code_exchange(self, store, google_key, apple_key):
        verifier = FederatedIdentityVerifier(
            store,
            _web_settings(),
            http_client_factory=lambda: httpx.AsyncClient(
                transport=httpx.MockTransport(
                    lambda request: httpx.Response(400, json={"error": "invalid_grant"})
                )
            ),
        )

        with pytest.raises(InvalidProviderToken):
            await verifier.exchange_google_code("bad-code")

    async def test_unreachable_token_endpoint(self, store, google_key, apple_key):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        verifier = FederatedIdentityVerifier(
            store,
            _web_settings(),
            http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(ServiceUnavailable):
            await verifier.exchange_google_code("auth-code")


class TestAppleTokens:
    """Apple identity token verification."""

    async def test_missing_email_falls_back_to_relay(self, store, google_key, apple_key):
        """Apple tokens without email use the unverified private relay address."""
        verifier = _verifier(store, google_key, apple_key)
        token = apple_key.sign(_claims(APPLE_ISSUER, APPLE_AUDIENCE, subject="000123.abc"))

        identity = await verifier.verify_apple_token(token, first_name="Ada")

        assert identity.email == "000123.abc@privaterelay.appleid.com"
        assert identity.email_verified is False
        assert identity.first_name == "Ada"

    async def test_string_email_verified_claim(self, store, google_key, apple_key):
        """Apple sends email_verified as a string."""
        verifier = _verifier(store, google_key, apple_key)
        token = apple_key.sign(
            _claims(APPLE_ISSUER, APPLE_AUDIENCE, email="ada@icloud.com", email_verified="true")
        )

        identity = await verifier.verify_apple_token(token)

        assert identity.email_verified is True

    async def test_google_token_is_not_an_apple_token(self, store, google_key, apple_key):
        """Keys and issuers are provider specific."""
        verifier = _verifier(store, google_key, apple_key)
        token = google_key.sign(
            _claims("accounts.google.com", APPLE_AUDIENCE, email="a@example.com")
        )

        with pytest.raises(InvalidProviderToken):
            await verifier.verify_apple_token(token)

    def test_client_secret_is_es256_signed(self, store, google_key, apple_key):
        """The code-exchange client secret is an ES256 JWT for Apple."""
        ec_key = ec.generate_private_key(ec.SECP256R1())
        pem = ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        verifier = _verifier(
            store,
            google_key,
            apple_key,
            settings=_settings(apple_team_id="TEAM123", apple_key_id="KEY456", apple_private_key=pem),
        )

        secret = verifier._apple_client_secret()

        assert jwt.get_unverified_header(secret)["kid"] == "KEY456"
        claims = jwt.decode(
            secret, ec_key.public_key(), algorithms=["ES256"], audience=APPLE_ISSUER
        )
        assert claims["iss"] == "TEAM123"
        assert claims["sub"] == APPLE_AUDIENCE

    async def test_code_exchange_returns_identity_token(self, store, google_key, apple_key):
        """The authorization code is exchanged at Apple's token endpoint."""
        ec_key = ec.generate_private_key(ec.SECP256R1())
        pem = ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"id_token": "apple-id-token"})

        verifier = FederatedIdentityVerifier(
            store,
            _settings(apple_team_id="TEAM123", apple_key_id="KEY456", apple_private_key=pem),
            google_keys=JWKSCache("google", fetcher=StubFetcher([google_key])),
            apple_keys=JWKSCache("apple", fetcher=StubFetcher([apple_key])),
            http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        assert await verifier.exchange_apple_code("auth-code") == "apple-id-token"
        assert seen["url"] == APPLE_TOKEN_URL
        assert "grant_type=authorization_code" in seen["body"]

    async def test_rejected_code_exchange(self, store, google_key, apple_key):
        """A non-200 answer from Apple is an invalid provider token."""
        ec_key = ec.generate_private_key(ec.SECP256R1())
        pem = ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        verifier = FederatedIdentityVerifier(
            store,
            _settings(apple_team_id="TEAM123", apple_key_id="KEY456", apple_private_key=pem),
            http_client_factory=lambda: httpx.AsyncClient(
                transport=httpx.MockTransport(
                    lambda request: httpx.Response(400, json={"error": "invalid_grant"})
                )
            ),
        )

        with pytest.raises(InvalidProviderToken):
            await verifier.exchange_apple_code("bad-code")


def _identity(email="rider@example.com", verified=True, subject="google-sub-1"):
    return ProviderIdentity(
        provider="google", subject=subject, email=email, email_verified=verified
    )


class TestAccountResolution:
    """Mapping provider identities onto accounts under each link policy."""

    def test_first_sign_in_creates_account(self, store, google_key, apple_key):
        """An unseen identity creates an account with the default role."""
        verifier = _verifier(store, google_key, apple_key)

        account, created = verifier.resolve_account("google", _identity())
        again, created_again = verifier.resolve_account("google", _identity())

        assert created is True
        assert created_again is False
        assert again.id == account.id
        assert account.roles == ["customer"]
        assert account.email_verified is True
        assert account.password_hash is None

    def test_verified_email_links_existing_account(self, store, google_key, apple_key):
        """Under verified_email a verified provider email links to the account."""
        existing = store.create_account("rider@example.com", password_hash="x")
        verifier = _verifier(store, google_key, apple_key)

        account, created = verifier.resolve_account("google", _identity())

        assert created is False
        assert account.id == existing.id
        assert account.email_verified is True
        assert store.get_account_by_identity("google", "google-sub-1").id == existing.id

    def test_unverified_email_is_not_linked(self, store, google_key, apple_key):
        """An unverified provider email never takes over an account."""
        store.create_account("rider@example.com", password_hash="x")
        verifier = _verifier(store, google_key, apple_key)

        with pytest.raises(Conflict) as excinfo:
            verifier.resolve_account("google", _identity(verified=False))

        assert excinfo.value.detail["link_required"] is True
        assert store.get_account_by_identity("google", "google-sub-1") is None

    def test_explicit_policy_requires_manual_link(self, store, google_key, apple_key):
        """Under explicit, email matches conflict until the owner links."""
        existing = store.create_account("rider@example.com", password_hash="x")
        verifier = _verifier(
            store,
            google_key,
            apple_key,
            settings=_settings(federated_link_policy=FederatedLinkPolicy.EXPLICIT),
        )

        with pytest.raises(Conflict):
            verifier.resolve_account("google", _identity())

        verifier.link_identity(existing, "google", _identity())
        account, created = verifier.resolve_account("google", _identity())
        assert account.id == existing.id
        assert created is False

    def test_identity_cannot_move_between_accounts(self, store, google_key, apple_key):
        """A provider identity belongs to at most one account."""
        verifier = _verifier(store, google_key, apple_key)
        owner, _ = verifier.resolve_account("google", _identity())
        other = store.create_account("other@example.com", password_hash="x")

        with pytest.raises(Conflict):
            verifier.link_identity(other, "google", _identity())

        assert store.get_account_by_identity("google", "google-sub-1").id == owner.id
