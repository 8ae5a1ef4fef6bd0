from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from olakz_auth.logging import get_logger
from olakz_auth.storage.errors import ConstraintViolation
from olakz_auth.storage.models import (
    Account,
    FederatedIdentity,
    LoginAttempt,
    OTPRecord,
    PROFILE_FIELDS,
    RefreshTokenRecord,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every operation takes ``_data_lock``; the conditional consume methods are
    compare-and-set under that lock so concurrent callers observe exactly one
    winner. Returned objects are copies, so callers cannot mutate stored state
    without going through the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.identities: Dict[tuple[str, str], FederatedIdentity] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.otps: Dict[str, OTPRecord] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock so helpers can be called with the lock already held
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy_account(account: Optional[Account]) -> Optional[Account]:
        if account is None:
            return None
        return replace(account, roles=list(account.roles))

    # accounts
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
    ) -> Account:
        normalized = email.strip().lower()
        assigned = list(roles or ["customer"])
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                roles=assigned,
                active_role=active_role or assigned[0],
                email_verified=email_verified,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                avatar_url=avatar_url,
                provider=provider,
                status=status,
            )
            self.accounts[account.id] = account
            return self._copy_account(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._copy_account(self.accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            match = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return self._copy_account(match)

    def get_account_by_identity(
        self, provider: str, subject: str
    ) -> Optional[Account]:
        with self._data_lock:
            identity = self.identities.get((provider, subject))
            if not identity:
                return None
            return self._copy_account(self.accounts.get(identity.account_id))

    def update_roles(
        self, account_id: str, roles: Sequence[str], active_role: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.roles = list(roles)
            account.active_role = active_role
            account.updated_at = utcnow()
            return self._copy_account(account)

    def set_active_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if role not in account.roles:
                raise ConstraintViolation(
                    "active role must be assigned", {"field": "active_role"}
                )
            account.active_role = role
            account.updated_at = utcnow()
            return self._copy_account(account)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            account.updated_at = utcnow()
            return self._copy_account(account)

    def set_password_hash(
        self, account_id: str, password_hash: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.updated_at = utcnow()
            return self._copy_account(account)

    def record_login(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.last_login_at = utcnow()
            return self._copy_account(account)

    def update_profile(self, account_id: str, **fields) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            changes = {k: v for k, v in fields.items() if k in PROFILE_FIELDS}
            if changes:
                for name, value in changes.items():
                    setattr(account, name, value)
                account.updated_at = utcnow()
            return self._copy_account(account)

    def link_identity(
        self, account_id: str, provider: str, subject: str
    ) -> FederatedIdentity:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"field": "account_id"}
                )
            existing = self.identities.get((provider, subject))
            if existing:
                if existing.account_id != account_id:
                    raise ConstraintViolation(
                        "identity already linked", {"field": "identity"}
                    )
                return existing
            identity = FederatedIdentity(
                provider=provider, subject=subject, account_id=account_id
            )
            self.identities[(provider, subject)] = identity
            return identity

    def list_identities(self, account_id: str) -> List[FederatedIdentity]:
        with self._data_lock:
            return [i for i in self.identities.values() if i.account_id == account_id]

    # refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"field": "account_id"}
                )
            self.refresh_tokens[record.id] = replace(record)
            return record

    def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.token_hash == token_hash:
                    return replace(record)
            return None

    def consume_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        """Mark a record consumed if it is still live; ``None`` if another caller won."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.consumed:
                return None
            record.consumed = True
            record.consumed_at = utcnow()
            return replace(record)

    def delete_refresh_tokens_for_account(self, account_id: str) -> int:
        with self._data_lock:
            stale = [
                rid
                for rid, record in self.refresh_tokens.items()
                if record.account_id == account_id
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
            return len(stale)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [
                rid
                for rid, record in self.refresh_tokens.items()
                if record.expires_at <= cutoff
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
            return len(stale)

    # otp
    def save_otp(self, record: OTPRecord) -> OTPRecord:
        """Insert a code, consuming every earlier live code for the same pair."""
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"field": "account_id"}
                )
            for existing in self.otps.values():
                if (
                    existing.account_id == record.account_id
                    and existing.purpose == record.purpose
                    and not existing.consumed
                ):
                    existing.consumed = True
            self.otps[record.id] = replace(record)
            return record

    def get_latest_otp(self, account_id: str, purpose: str) -> Optional[OTPRecord]:
        with self._data_lock:
            latest: Optional[OTPRecord] = None
            # Insertion order breaks created_at ties in favor of the newer row
            for record in self.otps.values():
                if record.account_id != account_id or record.purpose != purpose:
                    continue
                if latest is None or record.created_at >= latest.created_at:
                    latest = record
            return replace(latest) if latest else None

    def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        """Count one attempt unless the code is consumed or out of attempts."""
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record or record.consumed or record.attempts >= max_attempts:
                return None
            record.attempts += 1
            return record.attempts

    def consume_otp(self, otp_id: str, max_attempts: Optional[int] = None) -> bool:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record or record.consumed:
                return False
            if max_attempts is not None and record.attempts > max_attempts:
                return False
            record.consumed = True
            return True

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [oid for oid, r in self.otps.items() if r.expires_at <= cutoff]
            for oid in stale:
                self.otps.pop(oid, None)
            return len(stale)

    # login attempts
    def record_login_attempt(
        self, email: str, success: bool, ip_address: Optional[str] = None
    ) -> None:
        with self._data_lock:
            self.login_attempts.append(
                LoginAttempt(
                    email=email.strip().lower(), success=success, ip_address=ip_address
                )
            )

    def count_recent_failed_logins(self, email: str, since: datetime) -> int:
        """Failures for ``email`` after ``since`` and after the latest success."""
        normalized = email.strip().lower()
        with self._data_lock:
            window = [
                a
                for a in self.login_attempts
                if a.email == normalized and a.attempted_at >= since
            ]
            last_success = max(
                (a.attempted_at for a in window if a.success), default=None
            )
            return sum(
                1
                for a in window
                if not a.success
                and (last_success is None or a.attempted_at > last_success)
            )
