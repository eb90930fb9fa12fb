"""Common storage contracts and helpers shared between memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from cryptography.fernet import Fernet

from memberguard.storage.models import (
    ANONYMOUS,
    Account,
    AuditLogEntry,
    PasswordHistoryEntry,
    PasswordResetToken,
)

AccountMutator = Callable[[Account], None]
ChainSealer = Callable[[Optional[str], AuditLogEntry], str]

# Column limits for audit entries
AUDIT_EMAIL_MAX = 100
AUDIT_ACTION_MAX = 50
AUDIT_DETAILS_MAX = 500
AUDIT_IP_MAX = 45
AUDIT_USER_AGENT_MAX = 500

_PLUS_ALIAS = re.compile(r"\+.*?(?=@)")


def normalize_email(email: str) -> str:
    """Lower-case an address and drop any ``+alias`` from the local part.

    ``Reader+books@Example.com`` and ``reader@example.com`` identify the same
    account.
    """
    return _PLUS_ALIAS.sub("", email.strip()).lower()


def derive_cipher(key_material: str) -> Fernet:
    """Build a Fernet cipher from arbitrary key material."""

    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
    return Fernet(key)


def clamp_audit_entry(entry: AuditLogEntry) -> AuditLogEntry:
    entry.user_id = entry.user_id or ANONYMOUS
    entry.user_email = (entry.user_email or ANONYMOUS)[:AUDIT_EMAIL_MAX]
    entry.action = entry.action[:AUDIT_ACTION_MAX]
    entry.details = (entry.details or "")[:AUDIT_DETAILS_MAX]
    entry.ip_address = (entry.ip_address or "Unknown")[:AUDIT_IP_MAX]
    entry.user_agent = (entry.user_agent or "")[:AUDIT_USER_AGENT_MAX]
    return entry


def apply_failed_access(
    account: Account, *, threshold: int, lockout_duration: timedelta, now: datetime
) -> None:
    """Count one failed attempt, starting a lockout window at the threshold."""

    account.failed_access_count += 1
    if account.failed_access_count >= threshold:
        account.lockout_end_at = now + lockout_duration


class AccountStore(Protocol):
    """Persistence contract for accounts and their security records.

    Every method that changes an account applies its change atomically per
    account id.
    """

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, normalized_email: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, mutator: AccountMutator) -> Account: ...

    def register_failed_access(
        self,
        account_id: str,
        *,
        threshold: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> Account: ...

    # ``precondition`` sees the locked current account; raising aborts the write
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
    ) -> Account: ...

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...

    def enable_two_factor(self, account_id: str, code_hashes: List[str]) -> Account: ...

    def consume_recovery_code(
        self, account_id: str, code_hash: str, *, now: datetime
    ) -> bool: ...

    def count_recovery_codes(self, account_id: str) -> int: ...

    def save_reset_token(self, token: PasswordResetToken) -> None: ...

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def consume_reset_token(self, token_hash: str, *, now: datetime) -> Optional[str]: ...

    def append_audit_entry(
        self, entry: AuditLogEntry, seal: ChainSealer
    ) -> AuditLogEntry: ...

    def list_audit_entries(
        self, *, account_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[AuditLogEntry]: ...
