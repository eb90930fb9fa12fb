from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from memberguard.logging import get_logger
from memberguard.storage.common import AccountStore
from memberguard.storage.models import ANONYMOUS, AuditLogEntry, utcnow

logger = get_logger(__name__)

LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGOUT = "LOGOUT"
SESSION_INVALIDATED = "SESSION_INVALIDATED"
SESSION_INVALID = "SESSION_INVALID"
PASSWORD_CHANGE_ATTEMPT = "PASSWORD_CHANGE_ATTEMPT"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
PASSWORD_RESET_ATTEMPT = "PASSWORD_RESET_ATTEMPT"
PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
PASSWORD_RESET_EMAIL_SENT = "PASSWORD_RESET_EMAIL_SENT"
PASSWORD_RESET_EMAIL_FAILED = "PASSWORD_RESET_EMAIL_FAILED"
TWO_FACTOR_SETUP_FAILED = "2FA_SETUP_FAILED"
TWO_FACTOR_ENABLED = "2FA_ENABLED"
TWO_FACTOR_LOGIN_SUCCESS = "2FA_LOGIN_SUCCESS"
TWO_FACTOR_LOGIN_FAILED = "2FA_LOGIN_FAILED"
TWO_FACTOR_LOGIN_RECOVERY = "2FA_LOGIN_RECOVERY"
TWO_FACTOR_LOGIN_LOCKOUT = "2FA_LOGIN_LOCKOUT"
REGISTRATION_SUCCESS = "REGISTRATION_SUCCESS"
REGISTRATION_ATTEMPT = "REGISTRATION_ATTEMPT"
REDIRECT_2FA_SETUP = "REDIRECT_2FA_SETUP"
PAGE_ACCESS = "PAGE_ACCESS"
ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, as recorded on audit entries."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class AuditRecorder:
    """Append-only, hash-chained log of security decisions.

    Recording is best effort: a failed write is logged and dropped so the
    security action that triggered it still completes. Each entry carries an
    HMAC-SHA256 over the previous entry's hash and its own canonical payload,
    which lets :meth:`verify_chain` detect edited or removed rows.
    """

    def __init__(
        self,
        store: AccountStore,
        chain_key: str,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._key = hashlib.sha256(f"audit-chain:{chain_key}".encode()).digest()
        self._clock = clock

    @staticmethod
    def _timestamp(entry: AuditLogEntry) -> str:
        return entry.timestamp.astimezone(timezone.utc).isoformat()

    def _canonical_payload(self, entry: AuditLogEntry) -> str:
        return canonical_json(
            {
                "id": entry.id,
                "user_id": entry.user_id,
                "user_email": entry.user_email,
                "action": entry.action,
                "details": entry.details,
                "ip_address": entry.ip_address,
                "user_agent": entry.user_agent,
                "is_successful": entry.is_successful,
            }
        )

    def _compute_hash(self, prev_hash: Optional[str], entry: AuditLogEntry) -> str:
        content = f"{prev_hash or ''}|{self._canonical_payload(entry)}|{self._timestamp(entry)}"
        return hmac.new(self._key, content.encode("utf-8"), hashlib.sha256).hexdigest()

    def record(
        self,
        action: str,
        details: str,
        *,
        success: bool,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Optional[AuditLogEntry]:
        client = client or ClientInfo()
        entry = AuditLogEntry(
            action=action,
            details=details,
            is_successful=success,
            user_id=actor_id or ANONYMOUS,
            user_email=actor_email or ANONYMOUS,
            ip_address=client.ip_address or "Unknown",
            user_agent=client.user_agent or "",
            timestamp=self._clock(),
        )
        try:
            return self.store.append_audit_entry(entry, self._compute_hash)
        except Exception as exc:
            # Audit never blocks the action being audited
            logger.error(
                "audit_write_failed",
                action=action,
                actor_id=entry.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def entries(
        self, *, account_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_entries(account_id=account_id, limit=limit)

    def verify_chain(self) -> Dict[str, Any]:
        """Recompute every hash in order and report entries that do not match."""

        mismatches: List[str] = []
        expected_prev: Optional[str] = None
        checked = 0
        for entry in self.store.list_audit_entries():
            expected = self._compute_hash(expected_prev, entry)
            if entry.hash_prev != expected_prev or entry.hash_current != expected:
                mismatches.append(entry.id)
            expected_prev = entry.hash_current
            checked += 1
        if mismatches:
            logger.warning("audit_chain_broken", mismatches=len(mismatches))
        return {"ok": not mismatches, "checked": checked, "mismatches": mismatches}
