from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from olakz_auth.config import Settings
from olakz_auth.logging import get_logger
from olakz_auth.service.errors import (
    ExpiredToken,
    InvalidRefreshToken,
    InvalidSignature,
    MalformedToken,
    RoleNotAssigned,
    ServiceError,
)
from olakz_auth.storage.models import Account, RefreshTokenRecord, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

_REQUIRED_ACCESS_CLAIMS = ("sub", "email", "role", "iat", "exp", "jti")
_REQUIRED_REFRESH_CLAIMS = ("sub", "iat", "exp", "jti")


class TokenStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def save_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]: ...

    def consume_refresh_token(
        self, token_id: str
    ) -> Optional[RefreshTokenRecord]: ...

    def delete_refresh_tokens_for_account(self, account_id: str) -> int: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass
class AccessClaims:
    """Verified identity carried by an access token."""

    account_id: str
    email: str
    role: str
    jti: str
    issued_at: int
    expires_at: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class TokenEngine:
    """Issues, verifies and rotates access/refresh token pairs.

    Access and refresh tokens are HS256 JWTs signed with independent secrets so
    a refresh token can never be presented as an access token (and vice
    versa). Refresh tokens are single use: the server keeps a SHA-256 of each
    one keyed by its ``jti`` and rotation consumes that record with a
    conditional update before the replacement pair is issued.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._access_secret = settings.jwt_access_secret.encode()
        self._refresh_secret = settings.jwt_refresh_secret.encode()
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(secret, signing_input)}"

    def _decode_jwt(
        self,
        token: str,
        secret: bytes,
        *,
        token_type: str,
        required_claims: tuple[str, ...],
    ) -> dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedToken("token is not a JWT")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise MalformedToken("token header is not valid JSON")
        if not isinstance(header, dict):
            raise MalformedToken("token header is not an object")
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignature("unsupported token algorithm")

        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise MalformedToken("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedToken("token payload is not an object")
        if payload.get("token_type") != token_type:
            raise MalformedToken(f"expected a {token_type} token")
        missing = [claim for claim in required_claims if payload.get(claim) in (None, "")]
        if missing:
            raise MalformedToken(
                "token is missing required claims", detail={"missing": missing}
            )
        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedToken("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise MalformedToken("token audience mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (TypeError, ValueError):
            raise MalformedToken("token expiry is not numeric")
        if exp_ts <= (self._now() - self._leeway).timestamp():
            raise ExpiredToken("token has expired")
        return payload

    def issue_token_pair(self, account: Account, active_role: str) -> TokenPair:
        """Issue a fresh access/refresh pair carrying ``active_role``."""
        if active_role not in account.roles:
            raise RoleNotAssigned(
                f"role '{active_role}' is not assigned to this account",
                detail={"role": active_role, "assigned": list(account.roles)},
            )
        now = self._now()
        iat = int(now.timestamp())
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        refresh_jti = str(uuid.uuid4())
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "email": account.email,
            "role": active_role,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": iat,
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "token_type": REFRESH_TOKEN_TYPE,
            "jti": refresh_jti,
            "iat": iat,
            "exp": int(refresh_exp.timestamp()),
        }
        access_token = self._encode_jwt(access_payload, self._access_secret)
        refresh_token = self._encode_jwt(refresh_payload, self._refresh_secret)
        self.store.save_refresh_token(
            RefreshTokenRecord(
                id=refresh_jti,
                account_id=account.id,
                token_hash=hash_token(refresh_token),
                expires_at=refresh_exp,
                created_at=now,
            )
        )
        logger.info("token_pair_issued", account_id=account.id, role=active_role)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        """Validate an access token; raises ExpiredToken, InvalidSignature or MalformedToken."""
        payload = self._decode_jwt(
            token,
            self._access_secret,
            token_type=ACCESS_TOKEN_TYPE,
            required_claims=_REQUIRED_ACCESS_CLAIMS,
        )
        return AccessClaims(
            account_id=str(payload["sub"]),
            email=str(payload["email"]),
            role=str(payload["role"]),
            jti=str(payload["jti"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            raw=payload,
        )

    def refresh(self, refresh_token: str) -> tuple[Account, TokenPair]:
        """Rotate a refresh token: consume it, then issue a new pair.

        Every failure surfaces as ``InvalidRefreshToken``. Of two concurrent
        calls with the same token exactly one wins the conditional consume.
        """
        try:
            payload = self._decode_jwt(
                refresh_token,
                self._refresh_secret,
                token_type=REFRESH_TOKEN_TYPE,
                required_claims=_REQUIRED_REFRESH_CLAIMS,
            )
        except ServiceError as exc:
            logger.info("refresh_token_rejected", reason=exc.error_code)
            raise InvalidRefreshToken("refresh token is invalid or expired") from exc

        record = self.store.get_refresh_token_by_hash(hash_token(refresh_token))
        if not record or record.id != payload["jti"]:
            raise InvalidRefreshToken("refresh token is not recognized")
        if record.consumed:
            logger.warning(
                "refresh_token_reuse_detected",
                account_id=record.account_id,
                rotation_id=record.id,
            )
            raise InvalidRefreshToken("refresh token has already been used")
        if record.is_expired(self._now()):
            raise InvalidRefreshToken("refresh token has expired")

        account = self.store.get_account(record.account_id)
        if not account or not account.is_active:
            raise InvalidRefreshToken("account is not available")

        if self.store.consume_refresh_token(record.id) is None:
            logger.warning(
                "refresh_token_race_lost",
                account_id=record.account_id,
                rotation_id=record.id,
            )
            raise InvalidRefreshToken("refresh token has already been used")

        pair = self.issue_token_pair(account, account.active_role)
        logger.info("refresh_token_rotated", account_id=account.id, rotation_id=record.id)
        return account, pair

    def revoke(self, refresh_token: str) -> bool:
        """Consume a refresh token; unknown tokens are ignored."""
        if not refresh_token:
            return False
        record = self.store.get_refresh_token_by_hash(hash_token(refresh_token))
        if not record:
            return False
        revoked = self.store.consume_refresh_token(record.id) is not None
        if revoked:
            logger.info("refresh_token_revoked", account_id=record.account_id)
        return revoked

    def revoke_all(self, account_id: str) -> int:
        removed = self.store.delete_refresh_tokens_for_account(account_id)
        logger.info("refresh_tokens_revoked_all", account_id=account_id, count=removed)
        return removed

    def purge_expired(self) -> int:
        return self.store.purge_expired_refresh_tokens(self._now())


__all__ = [
    "AccessClaims",
    "TokenEngine",
    "TokenPair",
    "hash_token",
]
