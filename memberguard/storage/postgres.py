from __future__ import annotations

import hmac
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional

from cryptography.fernet import InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from memberguard.logging import get_logger
from memberguard.storage.common import (
    AccountMutator,
    ChainSealer,
    clamp_audit_entry,
    derive_cipher,
    normalize_email,
)
from memberguard.storage.errors import ConstraintViolation, StoreTimeout
from memberguard.storage.models import (
    Account,
    AuditLogEntry,
    PasswordHistoryEntry,
    PasswordResetToken,
)

# Serialises hash-chain appends across processes
_AUDIT_CHAIN_LOCK_KEY = 0x4D47_4155

_ACCOUNT_COLUMNS = (
    "id",
    "email",
    "normalized_email",
    "password_hash",
    "first_name",
    "last_name",
    "mobile_no",
    "billing_address",
    "shipping_address",
    "credit_card_encrypted",
    "current_session_id",
    "last_login_at",
    "last_password_changed_at",
    "password_expiry_at",
    "two_factor_enabled",
    "two_factor_secret",
    "failed_access_count",
    "lockout_end_at",
    "created_at",
)


class PostgresStore:
    """Postgres-backed account store.

    Per-account changes run in a single transaction holding the account row
    (``SELECT ... FOR UPDATE``) or as one conditional ``UPDATE`` statement, so
    concurrent requests for the same account never lose a write.
    """

    def __init__(
        self, dsn: str, *, encryption_key: str, statement_timeout: float = 5.0
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = derive_cipher(encryption_key)
        self.timeout = statement_timeout
        # The server aborts and rolls back any statement past the deadline
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=statement_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout * 1000)}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (errors.QueryCanceled, PoolTimeout) as exc:
            self.logger.warning(
                "postgres_call_timeout", error_type=type(exc).__name__, timeout=self.timeout
            )
            raise StoreTimeout(type(exc).__name__) from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the account tables exist before serving requests."""

        required_tables = [
            "member_account",
            "password_history",
            "recovery_code",
            "password_reset_token",
            "audit_log",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply the account schema before starting.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # secrets at rest
    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            return None

    def _row_to_account(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            normalized_email=row["normalized_email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            mobile_no=row.get("mobile_no") or "",
            billing_address=row.get("billing_address") or "",
            shipping_address=row.get("shipping_address") or "",
            credit_card_encrypted=row.get("credit_card_encrypted"),
            current_session_id=row.get("current_session_id"),
            last_login_at=row.get("last_login_at"),
            last_password_changed_at=row.get("last_password_changed_at"),
            password_expiry_at=row.get("password_expiry_at"),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=self._decrypt_secret(row.get("two_factor_secret")),
            failed_access_count=int(row.get("failed_access_count") or 0),
            lockout_end_at=row.get("lockout_end_at"),
            created_at=row["created_at"],
        )

    def _account_params(self, account: Account) -> tuple[Any, ...]:
        values = []
        for column in _ACCOUNT_COLUMNS:
            value = getattr(account, column)
            if column == "two_factor_secret":
                value = self._encrypt_secret(value)
            values.append(value)
        return tuple(values)

    def _write_account(self, conn, account: Account) -> None:
        assignments = ", ".join(f"{col} = %s" for col in _ACCOUNT_COLUMNS[1:])
        params = self._account_params(account)
        conn.execute(
            f"UPDATE member_account SET {assignments} WHERE id = %s",
            (*params[1:], account.id),
        )

    # accounts
    def create_account(self, account: Account) -> Account:
        account.normalized_email = normalize_email(account.normalized_email or account.email)
        columns = ", ".join(_ACCOUNT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_ACCOUNT_COLUMNS))
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        f"INSERT INTO member_account ({columns}) VALUES ({placeholders})",
                        self._account_params(account),
                    )
                    conn.execute(
                        """
                        INSERT INTO password_history (account_id, password_hash, created_at)
                        VALUES (%s, %s, %s)
                        """,
                        (account.id, account.password_hash, account.created_at),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM member_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, normalized_email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM member_account WHERE normalized_email = %s",
                (normalized_email,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account(self, account_id: str, mutator: AccountMutator) -> Account:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM member_account WHERE id = %s FOR UPDATE",
                    (account_id,),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "account not found", {"account_id": account_id}
                    )
                account = self._row_to_account(row)
                mutator(account)
                account.id = account_id
                self._write_account(conn, account)
        return account

    def register_failed_access(
        self,
        account_id: str,
        *,
        threshold: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE member_account
                SET failed_access_count = failed_access_count + 1,
                    lockout_end_at = CASE
                        WHEN failed_access_count + 1 >= %s THEN %s
                        ELSE lockout_end_at
                    END
                WHERE id = %s
                RETURNING *
                """,
                (threshold, now + lockout_duration, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return self._row_to_account(row)

    # passwords
    def set_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        expires_at: datetime,
        clear_lockout: bool = False,
        revoke_session: bool = False,
        precondition: Optional[AccountMutator] = None,
    ) -> Account:
        with self._connect() as conn:
            with conn.transaction():
                if precondition is not None:
                    current = conn.execute(
                        "SELECT * FROM member_account WHERE id = %s FOR UPDATE",
                        (account_id,),
                    ).fetchone()
                    if not current:
                        raise ConstraintViolation(
                            "account not found", {"account_id": account_id}
                        )
                    # Raising here rolls back before anything is written
                    precondition(self._row_to_account(current))
                row = conn.execute(
                    """
                    UPDATE member_account
                    SET password_hash = %s,
                        last_password_changed_at = %s,
                        password_expiry_at = %s,
                        failed_access_count = CASE WHEN %s THEN 0 ELSE failed_access_count END,
                        lockout_end_at = CASE WHEN %s THEN NULL ELSE lockout_end_at END,
                        current_session_id = CASE WHEN %s THEN NULL ELSE current_session_id END
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        password_hash,
                        changed_at,
                        expires_at,
                        clear_lockout,
                        clear_lockout,
                        revoke_session,
                        account_id,
                    ),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "account not found", {"account_id": account_id}
                    )
                conn.execute(
                    """
                    INSERT INTO password_history (account_id, password_hash, created_at)
                    VALUES (%s, %s, %s)
                    """,
                    (account_id, password_hash, changed_at),
                )
        return self._row_to_account(row)

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, password_hash, created_at
                FROM password_history
                WHERE account_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                id=str(row["id"]),
                account_id=str(row["account_id"]),
                password_hash=row["password_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # recovery codes
    @staticmethod
    def _write_recovery_codes(conn, account_id: str, code_hashes: List[str]) -> None:
        conn.execute("DELETE FROM recovery_code WHERE account_id = %s", (account_id,))
        for code_hash in code_hashes:
            conn.execute(
                "INSERT INTO recovery_code (account_id, code_hash, created_at) VALUES (%s, %s, now())",
                (account_id, code_hash),
            )

    def enable_two_factor(self, account_id: str, code_hashes: List[str]) -> Account:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE member_account SET two_factor_enabled = TRUE
                    WHERE id = %s
                    RETURNING *
                    """,
                    (account_id,),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "account not found", {"account_id": account_id}
                    )
                self._write_recovery_codes(conn, account_id, code_hashes)
        return self._row_to_account(row)

    def consume_recovery_code(
        self, account_id: str, code_hash: str, *, now: datetime
    ) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    """
                    SELECT id, code_hash FROM recovery_code
                    WHERE account_id = %s AND consumed_at IS NULL
                    FOR UPDATE
                    """,
                    (account_id,),
                ).fetchall()
                match_id = None
                for row in rows:
                    if hmac.compare_digest(row["code_hash"], code_hash):
                        match_id = row["id"]
                if match_id is None:
                    return False
                conn.execute(
                    "UPDATE recovery_code SET consumed_at = %s WHERE id = %s",
                    (now, match_id),
                )
        return True

    def count_recovery_codes(self, account_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS remaining FROM recovery_code WHERE account_id = %s AND consumed_at IS NULL",
                (account_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0

    # password reset tokens
    def save_reset_token(self, token: PasswordResetToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token_hash, account_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.token_hash, token.account_id, token.expires_at, token.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found", {"account_id": token.account_id}
            )

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            consumed_at=row.get("consumed_at"),
        )

    def consume_reset_token(self, token_hash: str, *, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token
                SET consumed_at = %s
                WHERE token_hash = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING account_id
                """,
                (now, token_hash, now),
            ).fetchone()
        return str(row["account_id"]) if row else None

    # audit log
    def append_audit_entry(
        self, entry: AuditLogEntry, seal: ChainSealer
    ) -> AuditLogEntry:
        entry = clamp_audit_entry(entry)
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("SELECT pg_advisory_xact_lock(%s)", (_AUDIT_CHAIN_LOCK_KEY,))
                last = conn.execute(
                    "SELECT hash_current FROM audit_log ORDER BY seq DESC LIMIT 1"
                ).fetchone()
                entry.hash_prev = last["hash_current"] if last else None
                entry.hash_current = seal(entry.hash_prev, entry)
                conn.execute(
                    """
                    INSERT INTO audit_log (
                        id, user_id, user_email, action, details, ip_address,
                        user_agent, timestamp, is_successful, hash_prev, hash_current
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        entry.user_id,
                        entry.user_email,
                        entry.action,
                        entry.details,
                        entry.ip_address,
                        entry.user_agent,
                        entry.timestamp,
                        entry.is_successful,
                        entry.hash_prev,
                        entry.hash_current,
                    ),
                )
        return entry

    def list_audit_entries(
        self, *, account_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        clauses = []
        params: list[Any] = []
        if account_id is not None:
            clauses.append("WHERE user_id = %s")
            params.append(account_id)
        query = f"SELECT * FROM audit_log {' '.join(clauses)} ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            AuditLogEntry(
                id=str(row["id"]),
                user_id=row["user_id"],
                user_email=row["user_email"],
                action=row["action"],
                details=row.get("details") or "",
                ip_address=row.get("ip_address") or "Unknown",
                user_agent=row.get("user_agent") or "",
                timestamp=row["timestamp"],
                is_successful=bool(row["is_successful"]),
                hash_prev=row.get("hash_prev"),
                hash_current=row.get("hash_current"),
            )
            for row in reversed(rows)
        ]
