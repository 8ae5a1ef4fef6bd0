from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

PROFILE_FIELDS = ("first_name", "last_name", "phone", "avatar_url")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["customer"])
    active_role: str = "customer"
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    provider: str = "emailpass"
    status: str = "active"
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def public_view(self) -> dict:
        """Profile fields safe to return to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "avatar_url": self.avatar_url,
            "roles": list(self.roles),
            "active_role": self.active_role,
            "email_verified": self.email_verified,
            "provider": self.provider,
            "status": self.status,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


@dataclass
class RefreshTokenRecord:
    """Server-side state for one issued refresh token.

    ``id`` equals the token's ``jti``; only the SHA-256 of the encoded token
    is stored.
    """

    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class OTPRecord:
    id: str
    account_id: str
    purpose: str
    code_hash: str
    expires_at: datetime
    consumed: bool = False
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        purpose: str,
        code_hash: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
    ) -> "OTPRecord":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            purpose=purpose,
            code_hash=code_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class FederatedIdentity:
    provider: str
    subject: str
    account_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    email: str
    success: bool
    ip_address: Optional[str] = None
    attempted_at: datetime = field(default_factory=utcnow)
