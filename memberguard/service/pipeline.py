"""Per-request policy checks run before any protected route.

Checks are small objects with a ``check(context)`` method. The pipeline calls
them in order and stops at the first one that asks for a redirect:

1. :class:`SessionCheck`: the presented session token must be the account's
   current one.
2. :class:`TwoFactorCheck`: 2FA must be enabled.
3. :class:`PasswordExpiryCheck`: the password must not be past its expiry.

Requests whose path contains an allow-listed fragment skip every check, as do
requests without an authenticated account.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

from memberguard.logging import get_logger
from memberguard.service import audit as actions
from memberguard.service.audit import AuditRecorder, ClientInfo
from memberguard.service.passwords import PasswordPolicyEngine
from memberguard.service.sessions import SessionAuthority
from memberguard.storage.models import Account

logger = get_logger(__name__)

ALLOW_LIST: Tuple[str, ...] = (
    "/login",
    "/logout",
    "/register",
    "/changepassword",
    "/setup2fa",
    "/verify2fa",
    "/show2farecoverycodes",
    "/error",
    "/checksession",
)

LOGIN_REDIRECT = "/login?sessionExpired=true"
SETUP_2FA_REDIRECT = "/setup2fa?mandatory=true"
CHANGE_PASSWORD_REDIRECT = "/changepassword?passwordExpired=true"


@dataclass(frozen=True)
class RequestContext:
    path: str
    account: Optional[Account]
    session_token: Optional[str]
    client: ClientInfo = ClientInfo()


@dataclass(frozen=True)
class PipelineOutcome:
    redirect: Optional[str] = None
    reason: Optional[str] = None
    sign_out: bool = False

    @property
    def proceed(self) -> bool:
        return self.redirect is None


CONTINUE = PipelineOutcome()


class PolicyCheck(Protocol):
    name: str

    def check(self, context: RequestContext) -> PipelineOutcome: ...


class SessionCheck:
    name = "session"

    def __init__(self, sessions: SessionAuthority, audit: AuditRecorder) -> None:
        self.sessions = sessions
        self.audit = audit

    def check(self, context: RequestContext) -> PipelineOutcome:
        account = context.account
        if self.sessions.validate_session(account, context.session_token):
            return CONTINUE
        self.audit.record(
            actions.SESSION_INVALID,
            "Session mismatch detected - user logged out",
            success=False,
            actor_id=account.id,
            actor_email=account.email,
            client=context.client,
        )
        return PipelineOutcome(
            redirect=LOGIN_REDIRECT, reason="session_expired", sign_out=True
        )


class TwoFactorCheck:
    name = "two_factor"

    def check(self, context: RequestContext) -> PipelineOutcome:
        if context.account.two_factor_enabled:
            return CONTINUE
        return PipelineOutcome(redirect=SETUP_2FA_REDIRECT, reason="two_factor_required")


class PasswordExpiryCheck:
    name = "password_expiry"

    def __init__(self, passwords: PasswordPolicyEngine) -> None:
        self.passwords = passwords

    def check(self, context: RequestContext) -> PipelineOutcome:
        if not self.passwords.is_expired(context.account):
            return CONTINUE
        return PipelineOutcome(redirect=CHANGE_PASSWORD_REDIRECT, reason="password_expired")


class PolicyPipeline:
    def __init__(
        self,
        checks: Sequence[PolicyCheck],
        *,
        allow_list: Sequence[str] = ALLOW_LIST,
    ) -> None:
        self.checks = tuple(checks)
        self.allow_list = tuple(fragment.lower() for fragment in allow_list)

    def is_exempt(self, path: str) -> bool:
        lowered = (path or "").lower()
        return any(fragment in lowered for fragment in self.allow_list)

    def evaluate(self, context: RequestContext) -> PipelineOutcome:
        if context.account is None or self.is_exempt(context.path):
            return CONTINUE
        for check in self.checks:
            outcome = check.check(context)
            if not outcome.proceed:
                logger.info(
                    "policy_redirect",
                    check=check.name,
                    reason=outcome.reason,
                    account_id=context.account.id,
                    path=context.path,
                )
                return outcome
        return CONTINUE
