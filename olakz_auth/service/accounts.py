from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from olakz_auth.config import Settings
from olakz_auth.logging import get_logger, hash_identifier
from olakz_auth.service.email import EmailService
from olakz_auth.service.errors import (
    CodeInvalid,
    Conflict,
    NotFound,
    RateLimited,
    Unauthorized,
    ValidationError,
)
from olakz_auth.service.otp import PURPOSE_RESET_PASSWORD, PURPOSE_VERIFY_EMAIL, OTPEngine
from olakz_auth.service.tokens import TokenEngine, TokenPair
from olakz_auth.storage.errors import ConstraintViolation
from olakz_auth.storage.models import Account, utcnow

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
        active_role: Optional[str] = None,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        avatar_url: Optional[str] = None,
        provider: str = "emailpass",
        status: str = "active",
    ) -> Account: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def set_password_hash(
        self, account_id: str, password_hash: str
    ) -> Optional[Account]: ...

    def record_login(self, account_id: str) -> Optional[Account]: ...

    def update_profile(self, account_id: str, **fields) -> Optional[Account]: ...

    def record_login_attempt(
        self, email: str, success: bool, ip_address: Optional[str] = None
    ) -> None: ...

    def count_recent_failed_logins(self, email: str, since: datetime) -> int: ...


@dataclass
class DeliveryResult:
    account: Account
    email_sent: bool


class AccountService:
    """Email/password account flows built on the token and OTP engines."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        tokens: TokenEngine,
        otp: OTPEngine,
        email: EmailService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.otp = otp
        self.email = email
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable", account_id=account.id)
            return False

    async def _deliver_code(self, account: Account, purpose: str) -> bool:
        code = self.otp.generate(account, purpose)
        sent = await asyncio.to_thread(
            self.email.send_otp,
            account.email,
            code,
            purpose,
            first_name=account.first_name,
            ttl_minutes=self.settings.otp_ttl_minutes,
        )
        if not sent:
            # The code stays valid; the caller reports email_sent=False
            logger.error("otp_email_failed", account_id=account.id, purpose=purpose)
        return sent

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> DeliveryResult:
        try:
            account = self.store.create_account(
                email,
                password_hash=self.hash_password(password),
                roles=[self.settings.default_role],
                active_role=self.settings.default_role,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                provider="emailpass",
            )
        except ConstraintViolation as exc:
            raise Conflict(
                "An account with this email already exists. Please login instead.",
                detail=exc.detail,
            ) from exc
        logger.info("account_registered", account_id=account.id)
        sent = await self._deliver_code(account, PURPOSE_VERIFY_EMAIL)
        return DeliveryResult(account=account, email_sent=sent)

    def _require_account(self, email: str) -> Account:
        account = self.store.get_account_by_email(email)
        if not account:
            raise NotFound("User not found")
        return account

    async def verify_email(self, email: str, code: str) -> Account:
        account = self._require_account(email)
        if account.email_verified:
            raise ValidationError("Email is already verified")
        self.otp.verify_or_raise(account, PURPOSE_VERIFY_EMAIL, code)
        verified = self.store.mark_email_verified(account.id) or account
        logger.info("email_verified", account_id=account.id)
        welcomed = await asyncio.to_thread(
            self.email.send_welcome, verified.email, verified.first_name
        )
        if not welcomed:
            logger.warning("welcome_email_failed", account_id=account.id)
        return verified

    async def resend_verification(self, email: str) -> DeliveryResult:
        account = self._require_account(email)
        if account.email_verified:
            raise ValidationError("Email is already verified")
        sent = await self._deliver_code(account, PURPOSE_VERIFY_EMAIL)
        return DeliveryResult(account=account, email_sent=sent)

    def login(
        self, email: str, password: str, *, ip_address: Optional[str] = None
    ) -> tuple[Account, TokenPair]:
        """Password login with a failed-attempt lockout window."""
        window_start = self._clock() - timedelta(
            minutes=self.settings.login_block_minutes
        )
        failures = self.store.count_recent_failed_logins(email, window_start)
        if failures >= self.settings.login_failure_limit:
            logger.warning(
                "login_locked_out",
                email_hash=hash_identifier(email),
                failures=failures,
            )
            raise RateLimited(
                "Too many failed login attempts. Please try again later.",
                detail={"retry_after_minutes": self.settings.login_block_minutes},
            )

        account = self.store.get_account_by_email(email)
        if not account or not self.verify_password(account, password):
            self.store.record_login_attempt(email, False, ip_address)
            logger.info("login_failed", email_hash=hash_identifier(email))
            raise Unauthorized("Invalid email or password")
        if not account.email_verified:
            raise Unauthorized(
                "Please verify your email before logging in",
                detail={"email_verified": False},
            )
        if not account.is_active:
            raise Unauthorized(
                "Your account has been disabled. Please contact support."
            )

        self.store.record_login_attempt(email, True, ip_address)
        if self._pwd_hasher.check_needs_rehash(account.password_hash):
            self.store.set_password_hash(account.id, self.hash_password(password))
        account = self.store.record_login(account.id) or account
        pair = self.tokens.issue_token_pair(account, account.active_role)
        logger.info("login_succeeded", account_id=account.id, role=account.active_role)
        return account, pair

    def logout(self, refresh_token: str) -> None:
        self.tokens.revoke(refresh_token)

    async def forgot_password(self, email: str) -> None:
        """Send a reset code; unknown emails are indistinguishable from known ones."""
        account = self.store.get_account_by_email(email)
        if not account:
            logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return
        if not account.password_hash:
            raise ValidationError(
                "Password reset is not available for OAuth accounts"
            )
        await self._deliver_code(account, PURPOSE_RESET_PASSWORD)

    def reset_password(self, email: str, code: str, new_password: str) -> Account:
        account = self.store.get_account_by_email(email)
        if not account:
            # Same outcome as a wrong code so the endpoint cannot probe emails
            raise CodeInvalid("code is invalid")
        if not account.password_hash:
            raise ValidationError(
                "Password reset is not available for OAuth accounts"
            )
        self.otp.verify_or_raise(account, PURPOSE_RESET_PASSWORD, code)
        updated = self.store.set_password_hash(
            account.id, self.hash_password(new_password)
        )
        revoked = self.tokens.revoke_all(account.id)
        logger.info("password_reset", account_id=account.id, sessions_revoked=revoked)
        return updated or account

    def change_password(
        self, account: Account, current_password: str, new_password: str
    ) -> Account:
        """Replace the password of a signed-in account and end its other sessions."""
        if account.provider != "emailpass" or not account.password_hash:
            raise ValidationError(
                "Password change is not available for OAuth accounts"
            )
        if not self.verify_password(account, current_password):
            raise ValidationError("Current password is incorrect")
        updated = self.store.set_password_hash(
            account.id, self.hash_password(new_password)
        )
        if not updated:
            raise NotFound("User not found")
        revoked = self.tokens.revoke_all(account.id)
        logger.info("password_changed", account_id=account.id, sessions_revoked=revoked)
        return updated

    def update_profile(self, account: Account, **fields) -> Account:
        updated = self.store.update_profile(account.id, **fields)
        if not updated:
            raise NotFound("User not found")
        logger.info(
            "profile_updated", account_id=account.id, fields=sorted(fields)
        )
        return updated


__all__ = ["AccountService", "DeliveryResult"]
