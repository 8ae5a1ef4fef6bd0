from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from olakz_auth.logging import get_logger
from olakz_auth.storage.errors import ConstraintViolation
from olakz_auth.storage.models import (
    Account,
    FederatedIdentity,
    OTPRecord,
    PROFILE_FIELDS,
    RefreshTokenRecord,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        roles TEXT[] NOT NULL DEFAULT ARRAY['customer'],
        active_role TEXT NOT NULL DEFAULT 'customer',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        avatar_url TEXT,
        provider TEXT NOT NULL DEFAULT 'emailpass',
        status TEXT NOT NULL DEFAULT 'active',
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_roles_nonempty CHECK (cardinality(roles) > 0),
        CONSTRAINT account_active_role_assigned CHECK (active_role = ANY(roles))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS federated_identity (
        provider TEXT NOT NULL,
        subject TEXT NOT NULL,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        consumed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        ip_address TEXT,
        success BOOLEAN NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS otp_code_lookup_idx ON otp_code (account_id, purpose, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS login_attempt_email_idx ON login_attempt (email, attempted_at DESC)",
)

_REQUIRED_TABLES = (
    "account",
    "federated_identity",
    "refresh_token",
    "otp_code",
    "login_attempt",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for accounts, identities, refresh tokens and codes."""

    def __init__(self, dsn: str, *, pool: Any = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            roles=list(row.get("roles") or ["customer"]),
            active_role=row.get("active_role", "customer"),
            email_verified=bool(row.get("email_verified", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
            provider=row.get("provider", "emailpass"),
            status=row.get("status", "active"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            consumed=bool(row.get("consumed", False)),
            consumed_at=row.get("consumed_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OTPRecord:
        return OTPRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            purpose=row["purpose"],
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            consumed=bool(row.get("consumed", False)),
            attempts=int(row.get("attempts", 0)),
            created_at=row.get("created_at") or utcnow(),
        )

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
        assigned = list(roles or ["customer"])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, roles, active_role, email_verified,
                                         first_name, last_name, phone, avatar_url, provider, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email.strip().lower(),
                        password_hash,
                        assigned,
                        active_role or assigned[0],
                        email_verified,
                        first_name,
                        last_name,
                        phone,
                        avatar_url,
                        provider,
                        status,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_identity(
        self, provider: str, subject: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT a.* FROM federated_identity f JOIN account a ON a.id = f.account_id WHERE f.provider = %s AND f.subject = %s",
                (provider, subject),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_roles(
        self, account_id: str, roles: Sequence[str], active_role: str
    ) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE account SET roles = %s, active_role = %s, updated_at = now() WHERE id = %s RETURNING *",
                    (list(roles), active_role, account_id),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation(
                "active role must be assigned", {"field": "active_role"}
            )
        return self._account_from_row(row) if row else None

    def set_active_role(self, account_id: str, role: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE account SET active_role = %s, updated_at = now() WHERE id = %s RETURNING *",
                    (role, account_id),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation(
                "active role must be assigned", {"field": "active_role"}
            )
        return self._account_from_row(row) if row else None

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_password_hash(
        self, account_id: str, password_hash: str
    ) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
                (password_hash, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET last_login_at = now() WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_profile(self, account_id: str, **fields: Any) -> Optional[Account]:
        """Set the given profile columns; unknown names are ignored."""
        if not _is_uuid(account_id):
            return None
        changes = {k: v for k, v in fields.items() if k in PROFILE_FIELDS}
        if not changes:
            return self.get_account(account_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*changes.values(), account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def link_identity(
        self, account_id: str, provider: str, subject: str
    ) -> FederatedIdentity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO federated_identity (provider, subject, account_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, subject) DO NOTHING
                    RETURNING *
                    """,
                    (provider, subject, account_id),
                ).fetchone()
                if not row:
                    row = conn.execute(
                        "SELECT * FROM federated_identity WHERE provider = %s AND subject = %s",
                        (provider, subject),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "account_id"})
        if str(row["account_id"]) != account_id:
            raise ConstraintViolation("identity already linked", {"field": "identity"})
        return FederatedIdentity(
            provider=row["provider"],
            subject=row["subject"],
            account_id=str(row["account_id"]),
            created_at=row.get("created_at") or utcnow(),
        )

    def list_identities(self, account_id: str) -> List[FederatedIdentity]:
        if not _is_uuid(account_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM federated_identity WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [
            FederatedIdentity(
                provider=row["provider"],
                subject=row["subject"],
                account_id=str(row["account_id"]),
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]

    # refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, account_id, token_hash, expires_at, consumed, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.token_hash,
                        record.expires_at,
                        record.consumed,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "account_id"})
        return record

    def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def consume_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        """Conditionally consume; returns ``None`` when the row was already consumed."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET consumed = TRUE, consumed_at = now()
                WHERE id = %s AND consumed = FALSE
                RETURNING *
                """,
                (token_id,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_refresh_tokens_for_account(self, account_id: str) -> int:
        if not _is_uuid(account_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE account_id = %s", (account_id,)
            )
            return result.rowcount

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # otp
    def save_otp(self, record: OTPRecord) -> OTPRecord:
        """Supersede live codes for the pair and insert, in one transaction."""
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE otp_code SET consumed = TRUE WHERE account_id = %s AND purpose = %s AND consumed = FALSE",
                    (record.account_id, record.purpose),
                )
                conn.execute(
                    """
                    INSERT INTO otp_code (id, account_id, purpose, code_hash, expires_at, consumed, attempts, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.purpose,
                        record.code_hash,
                        record.expires_at,
                        record.consumed,
                        record.attempts,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "account_id"})
        return record

    def get_latest_otp(self, account_id: str, purpose: str) -> Optional[OTPRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_code WHERE account_id = %s AND purpose = %s ORDER BY created_at DESC, consumed ASC LIMIT 1",
                (account_id, purpose),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET attempts = attempts + 1
                WHERE id = %s AND consumed = FALSE AND attempts < %s
                RETURNING attempts
                """,
                (otp_id, max_attempts),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def consume_otp(self, otp_id: str, max_attempts: Optional[int] = None) -> bool:
        with self._connect() as conn:
            if max_attempts is None:
                row = conn.execute(
                    "UPDATE otp_code SET consumed = TRUE WHERE id = %s AND consumed = FALSE RETURNING id",
                    (otp_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE otp_code SET consumed = TRUE
                    WHERE id = %s AND consumed = FALSE AND attempts <= %s
                    RETURNING id
                    """,
                    (otp_id, max_attempts),
                ).fetchone()
        return row is not None

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_code WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # login attempts
    def record_login_attempt(
        self, email: str, success: bool, ip_address: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO login_attempt (email, ip_address, success) VALUES (%s, %s, %s)",
                (email.strip().lower(), ip_address, success),
            )

    def count_recent_failed_logins(self, email: str, since: datetime) -> int:
        normalized = email.strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS failures
                FROM login_attempt
                WHERE email = %s
                  AND success = FALSE
                  AND attempted_at >= %s
                  AND attempted_at > COALESCE(
                      (SELECT MAX(attempted_at) FROM login_attempt WHERE email = %s AND success = TRUE),
                      '-infinity'::timestamptz
                  )
                """,
                (normalized, since, normalized),
            ).fetchone()
        return int(row["failures"]) if row else 0
