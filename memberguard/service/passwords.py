from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from memberguard.config import SecurityPolicy
from memberguard.logging import get_logger
from memberguard.service.errors import PolicyViolation, ceil_seconds
from memberguard.storage.common import AccountStore
from memberguard.storage.models import Account, utcnow

logger = get_logger(__name__)


def check_complexity(password: str, min_length: int = 12) -> List[str]:
    """Return the complexity rules ``password`` breaks (empty when it passes)."""

    problems = []
    if len(password) < min_length:
        problems.append(f"Password must be at least {min_length} characters long.")
    if not any(c.islower() for c in password):
        problems.append("Password must contain a lowercase letter.")
    if not any(c.isupper() for c in password):
        problems.append("Password must contain an uppercase letter.")
    if not any(c.isdigit() for c in password):
        problems.append("Password must contain a digit.")
    if not any(not c.isalnum() and not c.isspace() for c in password):
        problems.append("Password must contain a special character.")
    return problems


class PasswordPolicyEngine:
    """Hashing plus the minimum-age, reuse and expiry rules for passwords.

    Complexity is checked at request validation; this engine assumes the
    candidate already passed :func:`check_complexity`.
    """

    def __init__(
        self,
        store: AccountStore,
        policy: SecurityPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return self._clock()

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def check_min_age(self, account: Account) -> None:
        changed_at = account.last_password_changed_at
        if changed_at is None:
            return
        elapsed = max(self._now() - changed_at, timedelta(0))
        if elapsed < self.policy.min_password_age:
            remaining = self.policy.min_password_age - elapsed
            raise PolicyViolation(
                "You cannot change your password yet. Please wait "
                f"{ceil_seconds(remaining)} second(s).",
                reason="min_age",
                remaining=remaining,
            )

    def check_reuse(self, account: Account, candidate: str) -> None:
        history = self.store.list_password_history(
            account.id, self.policy.password_history_depth
        )
        # Verify every entry; no early exit on the first match
        matches = [self.verify_password(entry.password_hash, candidate) for entry in history]
        if any(matches):
            raise PolicyViolation(
                f"You cannot reuse your last {self.policy.password_history_depth} passwords. "
                "Please choose a different password.",
                reason="reuse",
            )

    def validate_new_password(self, account: Account, candidate: str) -> None:
        self.check_min_age(account)
        self.check_reuse(account, candidate)

    def apply_new_password(
        self,
        account: Account,
        candidate: str,
        *,
        clear_lockout: bool = False,
        revoke_session: bool = False,
        enforce_min_age: bool = False,
    ) -> Account:
        now = self._now()
        updated = self.store.set_password(
            account.id,
            self.hash_password(candidate),
            changed_at=now,
            expires_at=now + self.policy.max_password_age,
            clear_lockout=clear_lockout,
            revoke_session=revoke_session,
            precondition=self.check_min_age if enforce_min_age else None,
        )
        logger.info("password_updated", account_id=account.id)
        return updated

    def ensure_password_dates(self, account: Account) -> None:
        """Start the aging clock for an account that has never changed its password.

        Meant to run as a store mutator during login.
        """

        if account.last_password_changed_at is None:
            now = self._now()
            account.last_password_changed_at = now
            account.password_expiry_at = now + self.policy.max_password_age

    def is_expired(self, account: Account) -> bool:
        return bool(account.password_expiry_at and account.password_expiry_at < self._now())
