from __future__ import annotations

import hmac
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from cryptography.fernet import InvalidToken

from memberguard.logging import get_logger
from memberguard.storage.common import (
    AccountMutator,
    ChainSealer,
    apply_failed_access,
    clamp_audit_entry,
    derive_cipher,
    normalize_email,
)
from memberguard.storage.errors import ConstraintViolation
from memberguard.storage.models import (
    Account,
    AuditLogEntry,
    PasswordHistoryEntry,
    PasswordResetToken,
    RecoveryCode,
)


class MemoryStore:
    """In-process account store persisted as JSON under ``fs_root/state``."""

    def __init__(
        self, fs_root: str = "/tmp/memberguard", *, encryption_key: str
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.recovery_codes: Dict[str, List[RecoveryCode]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so mutators may call back into read helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = derive_cipher(encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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

    def _export(self, account: Account) -> Account:
        """Detached copy with the 2FA secret decrypted."""
        return replace(account, two_factor_secret=self._decrypt_secret(account.two_factor_secret))

    def _require(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    # accounts
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            normalized = normalize_email(account.normalized_email or account.email)
            if any(a.normalized_email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(
                account,
                normalized_email=normalized,
                two_factor_secret=self._encrypt_secret(account.two_factor_secret),
            )
            self.accounts[stored.id] = stored
            self.password_history[stored.id] = [
                PasswordHistoryEntry(
                    account_id=stored.id,
                    password_hash=stored.password_hash,
                    created_at=stored.created_at,
                )
            ]
            self._persist_state()
            return self._export(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._export(account) if account else None

    def get_account_by_email(self, normalized_email: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.normalized_email == normalized_email:
                    return self._export(account)
            return None

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Hold the data lock; restore accounts, history and codes if the write fails."""

        with self._data_lock:
            accounts = dict(self.accounts)
            history = {k: list(v) for k, v in self.password_history.items()}
            codes = {k: list(v) for k, v in self.recovery_codes.items()}
            try:
                yield
                self._persist_state()
            except BaseException:
                self.accounts = accounts
                self.password_history = history
                self.recovery_codes = codes
                raise

    def _mutate(self, account_id: str, mutator: AccountMutator) -> Account:
        working = self._export(self._require(account_id))
        mutator(working)
        working.id = account_id
        self.accounts[account_id] = replace(
            working, two_factor_secret=self._encrypt_secret(working.two_factor_secret)
        )
        return replace(working)

    def update_account(self, account_id: str, mutator: AccountMutator) -> Account:
        with self._transaction():
            return self._mutate(account_id, mutator)

    def register_failed_access(
        self,
        account_id: str,
        *,
        threshold: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> Account:
        return self.update_account(
            account_id,
            lambda account: apply_failed_access(
                account,
                threshold=threshold,
                lockout_duration=lockout_duration,
                now=now,
            ),
        )

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
        def _apply(account: Account) -> None:
            if precondition is not None:
                precondition(account)
            account.password_hash = password_hash
            account.last_password_changed_at = changed_at
            account.password_expiry_at = expires_at
            if clear_lockout:
                account.failed_access_count = 0
                account.lockout_end_at = None
            if revoke_session:
                account.current_session_id = None

        with self._transaction():
            updated = self._mutate(account_id, _apply)
            self.password_history.setdefault(account_id, []).append(
                PasswordHistoryEntry(
                    account_id=account_id,
                    password_hash=password_hash,
                    created_at=changed_at,
                )
            )
            return updated

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            entries = sorted(
                self.password_history.get(account_id, []),
                key=lambda e: e.created_at,
                reverse=True,
            )
            return [replace(e) for e in entries[:limit]]

    # recovery codes
    def enable_two_factor(self, account_id: str, code_hashes: List[str]) -> Account:
        with self._transaction():
            stored = self._require(account_id)
            self.accounts[account_id] = replace(stored, two_factor_enabled=True)
            self.recovery_codes[account_id] = [
                RecoveryCode(account_id=account_id, code_hash=h) for h in code_hashes
            ]
            return self._export(self.accounts[account_id])

    def consume_recovery_code(
        self, account_id: str, code_hash: str, *, now: datetime
    ) -> bool:
        with self._data_lock:
            match: Optional[RecoveryCode] = None
            # Compare against every code so timing does not depend on position
            for code in self.recovery_codes.get(account_id, []):
                if code.consumed_at is None and hmac.compare_digest(
                    code.code_hash, code_hash
                ):
                    match = code
            if match is None:
                return False
            match.consumed_at = now
            self._persist_state()
            return True

    def count_recovery_codes(self, account_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for c in self.recovery_codes.get(account_id, []) if c.consumed_at is None
            )

    # password reset tokens
    def save_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            self._require(token.account_id)
            self.reset_tokens[token.token_hash] = token
            self._persist_state()

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            return replace(token) if token else None

    def consume_reset_token(self, token_hash: str, *, now: datetime) -> Optional[str]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            if not token or token.consumed_at is not None:
                return None
            if token.expires_at <= now:
                self.reset_tokens.pop(token_hash, None)
                self._persist_state()
                return None
            token.consumed_at = now
            self._persist_state()
            return token.account_id

    # audit log
    def append_audit_entry(
        self, entry: AuditLogEntry, seal: ChainSealer
    ) -> AuditLogEntry:
        with self._data_lock:
            entry = clamp_audit_entry(replace(entry))
            prev_hash = self.audit_log[-1].hash_current if self.audit_log else None
            entry.hash_prev = prev_hash
            entry.hash_current = seal(prev_hash, entry)
            self.audit_log.append(entry)
            self._persist_state()
            return replace(entry)

    def list_audit_entries(
        self, *, account_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                replace(e)
                for e in self.audit_log
                if account_id is None or e.user_id == account_id
            ]
            if limit is not None:
                entries = entries[-limit:]
            return entries

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "password_history": [
                self._serialize_history(e)
                for entries in self.password_history.values()
                for e in entries
            ],
            "recovery_codes": [
                self._serialize_recovery_code(c)
                for codes in self.recovery_codes.values()
                for c in codes
            ],
            "reset_tokens": [
                self._serialize_reset_token(t) for t in self.reset_tokens.values()
            ],
            "audit_log": [self._serialize_audit_entry(e) for e in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = self._deserialize_history(raw)
            self.password_history.setdefault(entry.account_id, []).append(entry)
        self.recovery_codes = {}
        for raw in data.get("recovery_codes", []):
            code = self._deserialize_recovery_code(raw)
            self.recovery_codes.setdefault(code.account_id, []).append(code)
        self.reset_tokens = {
            t["token_hash"]: self._deserialize_reset_token(t)
            for t in data.get("reset_tokens", [])
        }
        self.audit_log = [
            self._deserialize_audit_entry(e) for e in data.get("audit_log", [])
        ]
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "normalized_email": account.normalized_email,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "mobile_no": account.mobile_no,
            "billing_address": account.billing_address,
            "shipping_address": account.shipping_address,
            "credit_card_encrypted": account.credit_card_encrypted,
            "current_session_id": account.current_session_id,
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "last_password_changed_at": self._serialize_datetime(
                account.last_password_changed_at
            ),
            "password_expiry_at": self._serialize_datetime(account.password_expiry_at),
            "two_factor_enabled": account.two_factor_enabled,
            "two_factor_secret": account.two_factor_secret,
            "failed_access_count": account.failed_access_count,
            "lockout_end_at": self._serialize_datetime(account.lockout_end_at),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            normalized_email=data.get("normalized_email") or normalize_email(data["email"]),
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            mobile_no=data.get("mobile_no", ""),
            billing_address=data.get("billing_address", ""),
            shipping_address=data.get("shipping_address", ""),
            credit_card_encrypted=data.get("credit_card_encrypted"),
            current_session_id=data.get("current_session_id"),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_password_changed_at=self._deserialize_datetime(
                data.get("last_password_changed_at")
            ),
            password_expiry_at=self._deserialize_datetime(data.get("password_expiry_at")),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=data.get("two_factor_secret"),
            failed_access_count=int(data.get("failed_access_count", 0)),
            lockout_end_at=self._deserialize_datetime(data.get("lockout_end_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_history(self, entry: PasswordHistoryEntry) -> dict:
        return {
            "id": entry.id,
            "account_id": entry.account_id,
            "password_hash": entry.password_hash,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_history(self, data: dict) -> PasswordHistoryEntry:
        return PasswordHistoryEntry(
            id=data["id"],
            account_id=data["account_id"],
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_recovery_code(self, code: RecoveryCode) -> dict:
        return {
            "account_id": code.account_id,
            "code_hash": code.code_hash,
            "created_at": self._serialize_datetime(code.created_at),
            "consumed_at": self._serialize_datetime(code.consumed_at),
        }

    def _deserialize_recovery_code(self, data: dict) -> RecoveryCode:
        return RecoveryCode(
            account_id=data["account_id"],
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )

    def _serialize_reset_token(self, token: PasswordResetToken) -> dict:
        return {
            "token_hash": token.token_hash,
            "account_id": token.account_id,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "consumed_at": self._serialize_datetime(token.consumed_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            token_hash=data["token_hash"],
            account_id=data["account_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )

    def _serialize_audit_entry(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "user_email": entry.user_email,
            "action": entry.action,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "timestamp": self._serialize_datetime(entry.timestamp),
            "is_successful": entry.is_successful,
            "hash_prev": entry.hash_prev,
            "hash_current": entry.hash_current,
        }

    def _deserialize_audit_entry(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            user_id=data["user_id"],
            user_email=data["user_email"],
            action=data["action"],
            details=data.get("details", ""),
            ip_address=data.get("ip_address", "Unknown"),
            user_agent=data.get("user_agent", ""),
            timestamp=self._deserialize_datetime(data["timestamp"]),
            is_successful=bool(data["is_successful"]),
            hash_prev=data.get("hash_prev"),
            hash_current=data.get("hash_current"),
        )
