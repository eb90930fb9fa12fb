from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from memberguard.config import SecurityPolicy
from memberguard.logging import get_logger
from memberguard.service.errors import LockedOut
from memberguard.storage.common import AccountStore
from memberguard.storage.models import Account, utcnow

logger = get_logger(__name__)


class LockoutGuard:
    """Failed-attempt counting and lockout windows for password and 2FA checks.

    The counter is not cleared when a window lapses; only a successful
    sign-in or an explicit reset clears it.
    """

    def __init__(
        self,
        store: AccountStore,
        policy: SecurityPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def is_locked_out(self, account: Account) -> bool:
        return bool(account.lockout_end_at and account.lockout_end_at > self._now())

    def remaining_lockout(self, account: Account) -> timedelta:
        if not self.is_locked_out(account):
            return timedelta(0)
        return account.lockout_end_at - self._now()

    def ensure_not_locked(self, account: Account) -> None:
        if self.is_locked_out(account):
            raise LockedOut(self.remaining_lockout(account))

    def register_failure(self, account: Account) -> Account:
        updated = self.store.register_failed_access(
            account.id,
            threshold=self.policy.lockout_threshold,
            lockout_duration=self.policy.lockout_duration,
            now=self._now(),
        )
        if self.is_locked_out(updated):
            logger.warning(
                "account_locked_out",
                account_id=account.id,
                failed_attempts=updated.failed_access_count,
            )
        return updated

    @staticmethod
    def clear(account: Account) -> None:
        """Store mutator that zeroes the counter and ends any lockout."""

        account.failed_access_count = 0
        account.lockout_end_at = None

    def reset(self, account: Account) -> Account:
        return self.store.update_account(account.id, self.clear)
