from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from olakz_auth.config import Settings
from olakz_auth.logging import get_logger
from olakz_auth.service.errors import (
    CodeAlreadyUsed,
    CodeExpired,
    CodeInvalid,
    ServiceError,
    ValidationError,
)
from olakz_auth.storage.models import Account, OTPRecord, utcnow

logger = get_logger(__name__)

PURPOSE_VERIFY_EMAIL = "verify_email"
PURPOSE_RESET_PASSWORD = "reset_password"
OTP_PURPOSES = (PURPOSE_VERIFY_EMAIL, PURPOSE_RESET_PASSWORD)


class OTPStore(Protocol):
    def save_otp(self, record: OTPRecord) -> OTPRecord: ...

    def get_latest_otp(self, account_id: str, purpose: str) -> Optional[OTPRecord]: ...

    def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]: ...

    def consume_otp(self, otp_id: str, max_attempts: Optional[int] = None) -> bool: ...

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class OTPResult:
    """Outcome of a verification attempt; ``error`` is set when ``ok`` is False."""

    ok: bool
    error: Optional[ServiceError] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None


def _random_digits(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class OTPEngine:
    """Generates and verifies short-lived numeric codes.

    Only an HMAC of each code is stored, keyed with ``OTP_SECRET`` and bound to
    the account and purpose. Storing a new code consumes every earlier live code
    for the same ``(account, purpose)`` so at most one is ever active.
    """

    def __init__(
        self,
        store: OTPStore,
        settings: Settings,
        *,
        code_factory: Callable[[int], str] = _random_digits,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._code_factory = code_factory
        self._clock = clock
        self._secret = settings.otp_secret.encode()

    def _hash_code(self, account_id: str, purpose: str, code: str) -> str:
        message = f"{account_id}:{purpose}:{code}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in OTP_PURPOSES:
            raise ValidationError(
                "unknown code purpose", detail={"purpose": purpose}
            )

    def generate(self, account: Account, purpose: str) -> str:
        """Create, store (hashed) and return a new plaintext code."""
        self._check_purpose(purpose)
        code = self._code_factory(self.settings.otp_length)
        record = OTPRecord.new(
            account_id=account.id,
            purpose=purpose,
            code_hash=self._hash_code(account.id, purpose, code),
            ttl_minutes=self.settings.otp_ttl_minutes,
            now=self._clock(),
        )
        self.store.save_otp(record)
        logger.info("otp_generated", account_id=account.id, purpose=purpose)
        return code

    def resend(self, account: Account, purpose: str) -> str:
        # Throttling is the caller's concern; supersession still applies
        return self.generate(account, purpose)

    def verify(self, account: Account, purpose: str, code: str) -> OTPResult:
        self._check_purpose(purpose)
        record = self.store.get_latest_otp(account.id, purpose)
        if not record:
            return OTPResult(ok=False, error=CodeInvalid("code is invalid"))
        if record.consumed:
            return OTPResult(ok=False, error=CodeAlreadyUsed("code has already been used"))
        if record.is_expired(self._clock()):
            return OTPResult(ok=False, error=CodeExpired("code has expired"))
        max_attempts = self.settings.otp_max_attempts
        # The attempt is reserved before comparing; concurrent guesses share one budget
        attempts = self.store.reserve_otp_attempt(record.id, max_attempts)
        if attempts is None:
            current = self.store.get_latest_otp(account.id, purpose)
            if current and current.id == record.id and current.consumed:
                return OTPResult(
                    ok=False, error=CodeAlreadyUsed("code has already been used")
                )
            logger.warning(
                "otp_attempts_exhausted", account_id=account.id, purpose=purpose
            )
            return OTPResult(
                ok=False,
                error=CodeInvalid(
                    "too many incorrect attempts; request a new code",
                    detail={"attempts_remaining": 0},
                ),
            )

        submitted = self._hash_code(account.id, purpose, (code or "").strip())
        if not hmac.compare_digest(submitted, record.code_hash):
            remaining = max(0, max_attempts - attempts)
            logger.info(
                "otp_mismatch",
                account_id=account.id,
                purpose=purpose,
                attempts=attempts,
            )
            return OTPResult(
                ok=False,
                error=CodeInvalid(
                    "code is invalid", detail={"attempts_remaining": remaining}
                ),
            )

        if not self.store.consume_otp(record.id, max_attempts):
            return OTPResult(ok=False, error=CodeAlreadyUsed("code has already been used"))
        logger.info("otp_verified", account_id=account.id, purpose=purpose)
        return OTPResult(ok=True)

    def verify_or_raise(self, account: Account, purpose: str, code: str) -> None:
        result = self.verify(account, purpose, code)
        if not result.ok:
            raise result.error

    def purge_expired(self) -> int:
        return self.store.purge_expired_otps(self._clock())


__all__ = [
    "OTPEngine",
    "OTPResult",
    "OTP_PURPOSES",
    "PURPOSE_RESET_PASSWORD",
    "PURPOSE_VERIFY_EMAIL",
]
