from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import html
import json
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from cryptography.fernet import InvalidToken

from memberguard.config import SecurityPolicy, Settings
from memberguard.logging import get_logger
from memberguard.service import audit as actions
from memberguard.service.audit import AuditRecorder, ClientInfo
from memberguard.service.captcha import CaptchaVerifier
from memberguard.service.email import EmailService
from memberguard.service.errors import (
    AuthFailure,
    ConflictError,
    LockedOut,
    NotFoundError,
    PolicyViolation,
    ServerError,
    ValidationError,
)
from memberguard.service.lockout import LockoutGuard
from memberguard.service.passwords import PasswordPolicyEngine
from memberguard.service.pipeline import SETUP_2FA_REDIRECT
from memberguard.service.sessions import SessionAuthority
from memberguard.service.two_factor import Provisioning, TwoFactorEngine
from memberguard.storage.common import AccountStore, derive_cipher, normalize_email
from memberguard.storage.errors import ConstraintViolation
from memberguard.storage.models import Account, PasswordResetToken, utcnow

logger = get_logger(__name__)

STAGE_PENDING_2FA = "pending_2fa"
STAGE_AUTHENTICATED = "authenticated"

VERIFY_2FA_REDIRECT = "/verify2fa"
HOME_REDIRECT = "/"

_POLICY_AUDIT_DETAILS = {
    "min_age": "Minimum password age not met",
    "reuse": "Password reuse detected",
}


@dataclass
class RegistrationForm:
    email: str
    password: str
    first_name: str = ""
    last_name: str = ""
    mobile_no: str = ""
    billing_address: str = ""
    shipping_address: str = ""
    credit_card: str = ""


@dataclass(frozen=True)
class Identity:
    account_id: str
    stage: str
    expires_at: datetime


@dataclass
class SignInOutcome:
    account: Account
    stage: str
    identity_token: str
    session_token: Optional[str] = None
    redirect: Optional[str] = None


def mask_card_number(card_number: Optional[str]) -> str:
    digits = "".join(c for c in (card_number or "") if c.isdigit())
    if len(digits) < 4:
        return ""
    return f"****-****-****-{digits[-4:]}"


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class MembershipService:
    """Registration, sign-in and credential lifecycle for member accounts.

    Composes the password, lockout, session and two-factor components and
    records each security decision in the audit log. The browser holds two
    values after sign-in: the raw session token and a signed identity token
    naming the account and how far sign-in has progressed.
    """

    PENDING_TWO_FACTOR_TTL = timedelta(minutes=5)

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        policy: SecurityPolicy,
        *,
        passwords: PasswordPolicyEngine,
        lockout: LockoutGuard,
        sessions: SessionAuthority,
        two_factor: TwoFactorEngine,
        audit: AuditRecorder,
        captcha: CaptchaVerifier,
        email: EmailService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy
        self.passwords = passwords
        self.lockout = lockout
        self.sessions = sessions
        self.two_factor = two_factor
        self.audit = audit
        self.captcha = captcha
        self.email = email
        self._clock = clock
        self._card_cipher = derive_cipher(settings.data_encryption_key)
        self._state_lock = threading.Lock()
        self._pending_recovery_codes: Dict[str, List[str]] = {}

    def _now(self) -> datetime:
        return self._clock()

    # identity tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.auth_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("identity_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("identity_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("identity_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.auth_issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    def issue_identity(self, account_id: str, stage: str) -> str:
        ttl = (
            self.PENDING_TWO_FACTOR_TTL
            if stage == STAGE_PENDING_2FA
            else self.policy.session_lifetime
        )
        now = self._now()
        return self._encode_jwt(
            {
                "iss": self.settings.auth_issuer,
                "sub": account_id,
                "stage": stage,
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
            }
        )

    def read_identity(self, token: Optional[str]) -> Optional[Identity]:
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or not payload.get("sub"):
            return None
        stage = payload.get("stage")
        if stage not in (STAGE_PENDING_2FA, STAGE_AUTHENTICATED):
            return None
        return Identity(
            account_id=str(payload["sub"]),
            stage=stage,
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    # helpers
    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise AuthFailure("Unable to load account")
        return account

    async def _check_captcha(
        self, action: str, email: str, token: Optional[str], client: ClientInfo
    ) -> None:
        if not self.captcha.is_configured:
            self.audit.record(
                action,
                "reCAPTCHA configuration error",
                success=False,
                actor_email=email,
                client=client,
            )
            raise ServerError("CAPTCHA verification is not configured")
        if not await self.captcha.verify(token, remote_ip=client.ip_address):
            self.audit.record(
                action,
                "reCAPTCHA validation failed",
                success=False,
                actor_email=email,
                client=client,
            )
            raise ValidationError("Please verify that you are not a robot.")

    def _complete_sign_in(self, account: Account, client: ClientInfo) -> SignInOutcome:
        def _on_sign_in(target: Account) -> None:
            LockoutGuard.clear(target)
            self.passwords.ensure_password_dates(target)

        updated, token = self.sessions.issue_session(account, also=_on_sign_in, client=client)
        return SignInOutcome(
            account=updated,
            stage=STAGE_AUTHENTICATED,
            identity_token=self.issue_identity(updated.id, STAGE_AUTHENTICATED),
            session_token=token,
            redirect=HOME_REDIRECT,
        )

    # registration
    async def register(
        self,
        form: RegistrationForm,
        captcha_token: Optional[str],
        client: Optional[ClientInfo] = None,
    ) -> Account:
        client = client or ClientInfo()
        email = form.email.strip()
        await self._check_captcha(actions.REGISTRATION_ATTEMPT, email, captcha_token, client)

        normalized = normalize_email(email)
        if self.store.get_account_by_email(normalized):
            self.audit.record(
                actions.REGISTRATION_ATTEMPT,
                "Duplicate email",
                success=False,
                actor_email=email,
                client=client,
            )
            raise ConflictError("Email is already registered.", detail={"field": "email"})

        card = form.credit_card.strip()
        account = Account.new(
            email,
            normalized,
            self.passwords.hash_password(form.password),
            first_name=html.escape(form.first_name.strip()),
            last_name=html.escape(form.last_name.strip()),
            mobile_no=html.escape(form.mobile_no.strip()),
            billing_address=html.escape(form.billing_address.strip()),
            shipping_address=html.escape(form.shipping_address.strip()),
        )
        account.credit_card_encrypted = (
            self._card_cipher.encrypt(card.encode()).decode() if card else None
        )
        account.created_at = self._now()
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            self.audit.record(
                actions.REGISTRATION_ATTEMPT,
                f"Registration failed: {exc.message}",
                success=False,
                actor_email=email,
                client=client,
            )
            raise ConflictError("Email is already registered.", detail={"field": "email"})

        logger.info("account_registered", account_id=created.id)
        self.audit.record(
            actions.REGISTRATION_SUCCESS,
            "User registered successfully",
            success=True,
            actor_id=created.id,
            actor_email=created.email,
            client=client,
        )
        return created

    # sign-in
    async def login(
        self,
        email: str,
        password: str,
        captcha_token: Optional[str],
        client: Optional[ClientInfo] = None,
    ) -> SignInOutcome:
        client = client or ClientInfo()
        email = email.strip()
        await self._check_captcha(actions.LOGIN_ATTEMPT, email, captcha_token, client)

        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account:
            self.audit.record(
                actions.LOGIN_ATTEMPT,
                "User not found",
                success=False,
                actor_email=normalized,
                client=client,
            )
            raise AuthFailure("Email or Password incorrect")

        if self.lockout.is_locked_out(account):
            self.audit.record(
                actions.LOGIN_ATTEMPT,
                "Account locked out",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise LockedOut(self.lockout.remaining_lockout(account))

        if not self.passwords.verify_password(account.password_hash, password):
            updated = self.lockout.register_failure(account)
            if self.lockout.is_locked_out(updated):
                self.audit.record(
                    actions.LOGIN_ATTEMPT,
                    "Account locked out after failed attempts",
                    success=False,
                    actor_id=account.id,
                    actor_email=account.email,
                    client=client,
                )
                raise LockedOut(self.lockout.remaining_lockout(updated))
            self.audit.record(
                actions.LOGIN_ATTEMPT,
                "Invalid credentials",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise AuthFailure("Email or Password incorrect")

        if account.two_factor_enabled:
            logger.info("login_two_factor_required", account_id=account.id)
            return SignInOutcome(
                account=account,
                stage=STAGE_PENDING_2FA,
                identity_token=self.issue_identity(account.id, STAGE_PENDING_2FA),
                redirect=VERIFY_2FA_REDIRECT,
            )

        outcome = self._complete_sign_in(account, client)
        self.audit.record(
            actions.LOGIN_SUCCESS,
            "User logged in successfully",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        self.audit.record(
            actions.REDIRECT_2FA_SETUP,
            "First login - redirecting to 2FA setup",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        outcome.redirect = SETUP_2FA_REDIRECT
        return outcome

    def verify_two_factor(
        self,
        account_id: str,
        code: str,
        *,
        use_recovery: bool = False,
        client: Optional[ClientInfo] = None,
    ) -> SignInOutcome:
        client = client or ClientInfo()
        account = self._require_account(account_id)
        if self.lockout.is_locked_out(account):
            self.audit.record(
                actions.TWO_FACTOR_LOGIN_LOCKOUT,
                "Account locked out",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise LockedOut(self.lockout.remaining_lockout(account))

        failure_detail = "Invalid recovery code" if use_recovery else "Invalid authenticator code"
        try:
            if use_recovery:
                self.two_factor.sign_in_with_recovery_code(account, code)
            else:
                self.two_factor.sign_in_with_code(account, code)
        except LockedOut:
            self.audit.record(
                actions.TWO_FACTOR_LOGIN_FAILED,
                failure_detail,
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            self.audit.record(
                actions.TWO_FACTOR_LOGIN_LOCKOUT,
                "Account locked out",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise
        except AuthFailure:
            self.audit.record(
                actions.TWO_FACTOR_LOGIN_FAILED,
                failure_detail,
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise

        if use_recovery:
            self.audit.record(
                actions.TWO_FACTOR_LOGIN_RECOVERY,
                "Logged in with recovery code",
                success=True,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
        else:
            self.audit.record(
                actions.TWO_FACTOR_LOGIN_SUCCESS,
                "Logged in with 2FA",
                success=True,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
        return self._complete_sign_in(account, client)

    # two-factor setup
    def begin_two_factor_setup(self, account: Account) -> Provisioning:
        return self.two_factor.provision(account)

    def complete_two_factor_setup(
        self, account: Account, code: str, client: Optional[ClientInfo] = None
    ) -> List[str]:
        client = client or ClientInfo()
        try:
            codes = self.two_factor.verify_and_enable(account, code)
        except AuthFailure:
            self.audit.record(
                actions.TWO_FACTOR_SETUP_FAILED,
                "Invalid verification code",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise
        with self._state_lock:
            self._pending_recovery_codes[account.id] = list(codes)
        self.audit.record(
            actions.TWO_FACTOR_ENABLED,
            "Two-factor authentication enabled",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        return codes

    def pop_pending_recovery_codes(self, account: Account) -> List[str]:
        """Return freshly issued recovery codes once, then forget them."""

        with self._state_lock:
            return self._pending_recovery_codes.pop(account.id, [])

    # passwords
    def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        client: Optional[ClientInfo] = None,
    ) -> Account:
        client = client or ClientInfo()
        if not self.passwords.verify_password(account.password_hash, current_password):
            self.audit.record(
                actions.PASSWORD_CHANGE_ATTEMPT,
                "Invalid current password",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise AuthFailure("Current password is incorrect")
        try:
            self.passwords.validate_new_password(account, new_password)
            # Minimum age is checked again against the stored account as part of the write
            updated = self.passwords.apply_new_password(
                account, new_password, enforce_min_age=True
            )
        except PolicyViolation as exc:
            self.audit.record(
                actions.PASSWORD_CHANGE_ATTEMPT,
                _POLICY_AUDIT_DETAILS.get(exc.reason, exc.message),
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise
        self.audit.record(
            actions.PASSWORD_CHANGED,
            "Password changed successfully",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        return updated

    async def request_password_reset(
        self, email: str, client: Optional[ClientInfo] = None
    ) -> Optional[str]:
        """Email a one-time reset link when the account exists and is not locked.

        The caller always reports success so the response does not reveal
        whether the address is registered. Returns the raw token, or ``None``
        when no token was issued.
        """

        client = client or ClientInfo()
        email = email.strip()
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            self.audit.record(
                actions.PASSWORD_RESET_REQUEST,
                "User not found",
                success=False,
                actor_email=email,
                client=client,
            )
            return None
        if self.lockout.is_locked_out(account):
            self.audit.record(
                actions.PASSWORD_RESET_REQUEST,
                "Account locked",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            return None

        raw_token = secrets.token_urlsafe(32)
        now = self._now()
        self.store.save_reset_token(
            PasswordResetToken(
                token_hash=hash_reset_token(raw_token),
                account_id=account.id,
                expires_at=now + self.policy.reset_token_ttl,
                created_at=now,
            )
        )
        valid_minutes = int(self.policy.reset_token_ttl.total_seconds() // 60)
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            account.email,
            raw_token,
            valid_minutes=valid_minutes,
        )
        if sent:
            self.audit.record(
                actions.PASSWORD_RESET_EMAIL_SENT,
                "Password reset email sent successfully",
                success=True,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
        else:
            self.audit.record(
                actions.PASSWORD_RESET_EMAIL_FAILED,
                "Failed to send email",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
        self.audit.record(
            actions.PASSWORD_RESET_REQUEST,
            "Password reset requested",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        return raw_token

    def reset_password(
        self, token: str, new_password: str, client: Optional[ClientInfo] = None
    ) -> Account:
        client = client or ClientInfo()
        now = self._now()
        token_hash = hash_reset_token(token or "")
        record = self.store.get_reset_token(token_hash)
        if not record or record.consumed_at is not None or record.expires_at <= now:
            self.audit.record(
                actions.PASSWORD_RESET_ATTEMPT,
                "Invalid or expired token",
                success=False,
                client=client,
            )
            raise ValidationError("Invalid or expired reset token")

        account = self.store.get_account(record.account_id)
        if not account:
            self.audit.record(
                actions.PASSWORD_RESET_ATTEMPT, "Invalid user ID", success=False, client=client
            )
            raise ValidationError("Invalid or expired reset token")

        try:
            self.passwords.check_reuse(account, new_password)
        except PolicyViolation:
            self.audit.record(
                actions.PASSWORD_RESET_ATTEMPT,
                "Password reuse detected",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise

        if self.store.consume_reset_token(token_hash, now=now) is None:
            # Redeemed concurrently
            self.audit.record(
                actions.PASSWORD_RESET_ATTEMPT,
                "Invalid token or password",
                success=False,
                actor_id=account.id,
                actor_email=account.email,
                client=client,
            )
            raise ValidationError("Invalid or expired reset token")

        updated = self.passwords.apply_new_password(
            account, new_password, clear_lockout=True, revoke_session=True
        )
        self.audit.record(
            actions.PASSWORD_RESET_SUCCESS,
            "Password reset successfully",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        return updated

    # sessions
    def logout(self, account: Account, client: Optional[ClientInfo] = None) -> None:
        self.sessions.revoke_session(account)
        self.audit.record(
            actions.LOGOUT,
            "User logged out successfully",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )

    def check_session(self, account_id: Optional[str], token: Optional[str]) -> bool:
        if not account_id or not token:
            return False
        account = self.store.get_account(account_id)
        return bool(account and self.sessions.validate_session(account, token))

    def profile(self, account: Account, client: Optional[ClientInfo] = None) -> Dict[str, Any]:
        card = ""
        if account.credit_card_encrypted:
            try:
                card = self._card_cipher.decrypt(account.credit_card_encrypted.encode()).decode()
            except InvalidToken:
                logger.warning("card_decrypt_failed", account_id=account.id)
        self.audit.record(
            actions.PAGE_ACCESS,
            "Accessed home page",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
            client=client,
        )
        return {
            "id": account.id,
            "email": account.email,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "mobile_no": account.mobile_no,
            "billing_address": account.billing_address,
            "shipping_address": account.shipping_address,
            "credit_card": mask_card_number(card),
            "two_factor_enabled": account.two_factor_enabled,
            "recovery_codes_remaining": self.two_factor.remaining_recovery_codes(account),
            "last_login_at": account.last_login_at,
            "password_expiry_at": account.password_expiry_at,
        }

    # administration
    def unlock_account(self, email: str) -> Account:
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            raise NotFoundError("account not found", detail={"email": email})
        updated = self.lockout.reset(account)
        logger.info("account_unlocked", account_id=account.id)
        self.audit.record(
            actions.ACCOUNT_UNLOCKED,
            "Lockout cleared by administrator",
            success=True,
            actor_id=account.id,
            actor_email=account.email,
        )
        return updated
