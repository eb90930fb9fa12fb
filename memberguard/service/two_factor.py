from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import quote

from memberguard.config import SecurityPolicy
from memberguard.logging import get_logger
from memberguard.service.errors import AuthFailure, ForbiddenError, LockedOut
from memberguard.service.lockout import LockoutGuard
from memberguard.storage.common import AccountStore
from memberguard.storage.models import Account, utcnow

logger = get_logger(__name__)

_CODE_SEPARATORS = re.compile(r"[\s-]+")
_RECOVERY_ALPHABET = "abcdefghjkmnpqrstuvwxyz23456789"


class TwoFactorState(str, Enum):
    NOT_PROVISIONED = "not_provisioned"
    PROVISIONED = "provisioned"
    ENABLED = "enabled"


@dataclass(frozen=True)
class Provisioning:
    secret: str
    shared_key: str
    otpauth_uri: str


def normalize_code(code: Optional[str]) -> str:
    """Drop whitespace and hyphens so ``123 456`` and ``123-456`` both match."""
    return _CODE_SEPARATORS.sub("", code or "")


def format_shared_key(secret: str) -> str:
    """Lower-cased secret in groups of four for manual entry."""
    lowered = secret.lower()
    return " ".join(lowered[i : i + 4] for i in range(0, len(lowered), 4))


class TwoFactorEngine:
    """TOTP provisioning, verification and single-use recovery codes.

    An account moves NOT_PROVISIONED -> PROVISIONED when a secret is first
    generated and PROVISIONED -> ENABLED once a code from the authenticator
    has been verified. Recovery codes exist only in the ENABLED state.
    """

    def __init__(
        self,
        store: AccountStore,
        lockout: LockoutGuard,
        policy: SecurityPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.policy = policy
        self._clock = clock

    @staticmethod
    def state(account: Account) -> TwoFactorState:
        if account.two_factor_enabled:
            return TwoFactorState.ENABLED
        if account.two_factor_secret:
            return TwoFactorState.PROVISIONED
        return TwoFactorState.NOT_PROVISIONED

    # provisioning
    @staticmethod
    def _new_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    def otpauth_uri(self, account: Account, secret: str) -> str:
        issuer = quote(self.policy.totp_issuer, safe="")
        label = quote(account.email, safe="@")
        return (
            f"otpauth://totp/{issuer}:{label}?secret={secret}"
            f"&issuer={issuer}&digits={self.policy.totp_digits}"
        )

    def provision(self, account: Account) -> Provisioning:
        """Return the account's shared secret, generating one only if absent."""

        def _ensure_secret(target: Account) -> None:
            if not target.two_factor_secret:
                target.two_factor_secret = self._new_secret()

        if account.two_factor_secret:
            updated = account
        else:
            updated = self.store.update_account(account.id, _ensure_secret)
            logger.info("two_factor_provisioned", account_id=account.id)
        secret = updated.two_factor_secret
        return Provisioning(
            secret=secret,
            shared_key=format_shared_key(secret),
            otpauth_uri=self.otpauth_uri(updated, secret),
        )

    # TOTP
    def generate_code(self, secret: str, at: datetime) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(at.timestamp() // self.policy.totp_period_seconds).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.policy.totp_digits
        )
        return str(code_int).zfill(self.policy.totp_digits)

    def verify_code(self, secret: Optional[str], code: Optional[str]) -> bool:
        candidate = normalize_code(code)
        if not secret or len(candidate) != self.policy.totp_digits or not candidate.isdigit():
            return False
        now = self._clock().timestamp()
        matched = False
        window = self.policy.totp_window
        for offset in range(-window, window + 1):
            at = datetime.fromtimestamp(
                now + offset * self.policy.totp_period_seconds, tz=timezone.utc
            )
            generated = self.generate_code(secret, at)
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    # recovery codes
    @staticmethod
    def hash_recovery_code(code: str) -> str:
        return hashlib.sha256(normalize_code(code).lower().encode()).hexdigest()

    def _new_recovery_codes(self) -> List[str]:
        codes: List[str] = []
        while len(codes) < self.policy.recovery_code_count:
            raw = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(10))
            code = f"{raw[:5]}-{raw[5:]}"
            if code not in codes:
                codes.append(code)
        return codes

    def verify_and_enable(self, account: Account, code: str) -> List[str]:
        """Enable 2FA if ``code`` matches the provisioned secret.

        Returns a fresh set of recovery codes; earlier codes stop working.
        """

        if not account.two_factor_secret:
            raise ForbiddenError("Two-factor authentication has not been provisioned")
        if not self.verify_code(account.two_factor_secret, code):
            raise AuthFailure("Invalid verification code")

        codes = self._new_recovery_codes()
        # Flag and code set change in one store call
        self.store.enable_two_factor(
            account.id, [self.hash_recovery_code(c) for c in codes]
        )
        logger.info("two_factor_enabled", account_id=account.id)
        return codes

    def remaining_recovery_codes(self, account: Account) -> int:
        return self.store.count_recovery_codes(account.id)

    # sign-in
    def _fail(self, account: Account, message: str) -> None:
        updated = self.lockout.register_failure(account)
        if self.lockout.is_locked_out(updated):
            raise LockedOut(self.lockout.remaining_lockout(updated))
        raise AuthFailure(message)

    def sign_in_with_code(self, account: Account, code: str) -> None:
        self.lockout.ensure_not_locked(account)
        if not account.two_factor_enabled or not self.verify_code(
            account.two_factor_secret, code
        ):
            self._fail(account, "Invalid authenticator code")

    def sign_in_with_recovery_code(self, account: Account, code: str) -> None:
        self.lockout.ensure_not_locked(account)
        consumed = account.two_factor_enabled and self.store.consume_recovery_code(
            account.id, self.hash_recovery_code(code), now=self._clock()
        )
        if not consumed:
            self._fail(account, "Invalid recovery code")
        logger.info(
            "recovery_code_consumed",
            account_id=account.id,
            remaining=self.remaining_recovery_codes(account),
        )
