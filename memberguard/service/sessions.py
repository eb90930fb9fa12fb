from __future__ import annotations

import hmac
import secrets
from datetime import datetime
from typing import Callable, Optional, Tuple

from memberguard.logging import get_logger
from memberguard.service import audit as actions
from memberguard.service.audit import AuditRecorder, ClientInfo
from memberguard.storage.common import AccountMutator, AccountStore
from memberguard.storage.models import Account, utcnow

logger = get_logger(__name__)


class SessionAuthority:
    """Single live session per account, held as ``current_session_id``.

    Issuing a session overwrites the stored token, so any earlier token stops
    validating at once. Two logins racing for one account resolve as
    last-writer-wins at the store.
    """

    def __init__(
        self,
        store: AccountStore,
        audit: AuditRecorder,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self._clock = clock

    @staticmethod
    def new_token() -> str:
        return secrets.token_urlsafe(32)

    def issue_session(
        self,
        account: Account,
        *,
        also: Optional[AccountMutator] = None,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[Account, str]:
        """Store a fresh token for ``account`` and return it.

        ``also`` runs inside the same atomic update, e.g. to clear the lockout
        counter on a successful sign-in.
        """

        token = self.new_token()
        now = self._clock()
        superseded: dict = {}

        def _apply(target: Account) -> None:
            superseded["token"] = target.current_session_id
            target.current_session_id = token
            target.last_login_at = now
            if also is not None:
                also(target)

        updated = self.store.update_account(account.id, _apply)
        if superseded.get("token"):
            logger.info("session_superseded", account_id=account.id)
            self.audit.record(
                actions.SESSION_INVALIDATED,
                "Previous session invalidated due to new login",
                success=True,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
        return updated, token

    @staticmethod
    def validate_session(account: Account, presented: Optional[str]) -> bool:
        current = account.current_session_id
        if not presented or not current:
            return False
        return hmac.compare_digest(current.encode(), presented.encode())

    def revoke_session(self, account: Account) -> Account:
        def _clear(target: Account) -> None:
            target.current_session_id = None

        return self.store.update_account(account.id, _clear)
