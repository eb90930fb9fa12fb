from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from memberguard.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RecoveryCodesResponse,
    RegisterRequest,
    SessionStatusResponse,
    SignInResponse,
    TwoFactorSetupRequest,
    TwoFactorSetupResponse,
    VerifyTwoFactorRequest,
)
from memberguard.config import get_settings
from memberguard.logging import get_logger
from memberguard.service.audit import ClientInfo
from memberguard.service.auth import (
    STAGE_AUTHENTICATED,
    STAGE_PENDING_2FA,
    Identity,
    MembershipService,
    RegistrationForm,
    SignInOutcome,
)
from memberguard.service.errors import AuthFailure, SessionInvalid
from memberguard.service.pipeline import LOGIN_REDIRECT
from memberguard.service.runtime import check_rate_limit, get_runtime
from memberguard.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "SessionId"
IDENTITY_COOKIE = "member_auth"
RECOVERY_CODES_REDIRECT = "/show2farecoverycodes"
RESET_DONE_REDIRECT = "/login"
USER_AGENT_HEADER_LIMIT = 2048


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def client_info(request: Request) -> ClientInfo:
    """Source address and user agent as recorded on audit entries."""

    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    if user_agent is not None:
        user_agent = user_agent[:USER_AGENT_HEADER_LIMIT]
    return ClientInfo(ip_address=ip_address, user_agent=user_agent)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
        )

    return info


async def _limit_auth_route(request: Request, route: str) -> None:
    runtime = get_runtime()
    ip_address = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime,
        f"{route}:{ip_address}",
        runtime.settings.auth_rate_limit_per_minute,
        60,
    )


def set_auth_cookies(
    response: Response,
    identity_token: str,
    session_token: Optional[str] = None,
    *,
    max_age: int,
) -> None:
    secure = get_settings().cookie_secure
    response.set_cookie(
        IDENTITY_COOKIE,
        identity_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        max_age=max_age,
        path="/",
    )
    if session_token:
        response.set_cookie(
            SESSION_COOKIE,
            session_token,
            httponly=True,
            secure=secure,
            samesite="strict",
            max_age=max_age,
            path="/",
        )


def clear_auth_cookies(response: Response) -> None:
    secure = get_settings().cookie_secure
    for name in (IDENTITY_COOKIE, SESSION_COOKIE):
        response.delete_cookie(
            name, path="/", secure=secure, httponly=True, samesite="strict"
        )


def _apply_sign_in(response: Response, membership: MembershipService, outcome: SignInOutcome) -> None:
    if outcome.stage == STAGE_PENDING_2FA:
        max_age = int(membership.PENDING_TWO_FACTOR_TTL.total_seconds())
    else:
        max_age = int(membership.policy.session_lifetime.total_seconds())
    set_auth_cookies(
        response, outcome.identity_token, outcome.session_token, max_age=max_age
    )


def _sign_in_response(membership: MembershipService, outcome: SignInOutcome) -> SignInResponse:
    expires_in = None
    if outcome.stage == STAGE_AUTHENTICATED:
        expires_in = int(membership.policy.session_lifetime.total_seconds())
    return SignInResponse(
        account_id=outcome.account.id,
        stage=outcome.stage,
        redirect=outcome.redirect,
        session_expires_in=expires_in,
    )


def _read_identity(request: Request) -> Optional[Identity]:
    return get_runtime().membership.read_identity(request.cookies.get(IDENTITY_COOKIE))


async def get_current_account(request: Request) -> Account:
    """Resolve the fully signed-in account behind the request cookies.

    Raises:
        AuthFailure: no valid identity cookie
        SessionInvalid: the session token is not the account's current one
    """
    runtime = get_runtime()
    identity = _read_identity(request)
    if not identity or identity.stage != STAGE_AUTHENTICATED:
        raise AuthFailure("authentication required")
    account = runtime.store.get_account(identity.account_id)
    if not account:
        raise AuthFailure("authentication required")
    if not runtime.sessions.validate_session(account, request.cookies.get(SESSION_COOKIE)):
        raise SessionInvalid("session expired", detail={"redirect": LOGIN_REDIRECT})
    return account


async def get_pending_identity(request: Request) -> Identity:
    identity = _read_identity(request)
    if not identity or identity.stage != STAGE_PENDING_2FA:
        raise AuthFailure("no two-factor sign-in in progress")
    return identity


def _account_response(data: dict) -> AccountResponse:
    return AccountResponse(**data)


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a member account.

    Raises:
        400: If the CAPTCHA check or a field validation fails
        409: If the email is already registered
        429: If rate limit exceeded for this client
    """
    await _limit_auth_route(request, "register")
    runtime = get_runtime()
    account = await runtime.membership.register(
        RegistrationForm(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            mobile_no=body.mobile_no,
            billing_address=body.billing_address,
            shipping_address=body.shipping_address,
            credit_card=body.credit_card,
        ),
        body.captcha_token,
        client_info(request),
    )
    return Envelope(
        status="ok",
        data={"account_id": account.id, "redirect": RESET_DONE_REDIRECT},
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts with 2FA enabled get a pending identity and must finish at
    ``/verify2fa``; the session token is only issued once sign-in completes.

    Raises:
        401: If credentials are invalid
        423: If the account is locked out
        429: If rate limit exceeded for this client
    """
    await _limit_auth_route(request, "login")
    runtime = get_runtime()
    outcome = await runtime.membership.login(
        body.email, body.password, body.captcha_token, client_info(request)
    )
    _apply_sign_in(response, runtime.membership, outcome)
    return Envelope(status="ok", data=_sign_in_response(runtime.membership, outcome))


@router.post("/verify2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: VerifyTwoFactorRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_pending_identity),
):
    await _limit_auth_route(request, "verify2fa")
    runtime = get_runtime()
    outcome = runtime.membership.verify_two_factor(
        identity.account_id,
        body.code,
        use_recovery=body.use_recovery_code,
        client=client_info(request),
    )
    _apply_sign_in(response, runtime.membership, outcome)
    return Envelope(status="ok", data=_sign_in_response(runtime.membership, outcome))


@router.get("/setup2fa", response_model=Envelope, tags=["2fa"])
async def get_two_factor_setup(account: Account = Depends(get_current_account)):
    """Return the shared key to enter into an authenticator app.

    Repeated calls return the same key until setup completes.
    """
    runtime = get_runtime()
    if account.two_factor_enabled:
        return Envelope(status="ok", data=TwoFactorSetupResponse(enabled=True))
    provisioning = runtime.membership.begin_two_factor_setup(account)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            enabled=False,
            shared_key=provisioning.shared_key,
            otpauth_uri=provisioning.otpauth_uri,
        ),
    )


@router.post("/setup2fa", response_model=Envelope, tags=["2fa"])
async def complete_two_factor_setup(
    body: TwoFactorSetupRequest,
    request: Request,
    account: Account = Depends(get_current_account),
):
    await _limit_auth_route(request, "setup2fa")
    runtime = get_runtime()
    runtime.membership.complete_two_factor_setup(account, body.code, client_info(request))
    return Envelope(
        status="ok", data={"enabled": True, "redirect": RECOVERY_CODES_REDIRECT}
    )


@router.get("/show2farecoverycodes", response_model=Envelope, tags=["2fa"])
async def show_recovery_codes(account: Account = Depends(get_current_account)):
    """Show freshly issued recovery codes exactly once."""
    runtime = get_runtime()
    codes = runtime.membership.pop_pending_recovery_codes(account)
    return Envelope(
        status="ok",
        data=RecoveryCodesResponse(
            recovery_codes=codes,
            remaining=runtime.two_factor.remaining_recovery_codes(account),
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Sign out. Cookies are cleared even when the session is already gone."""
    runtime = get_runtime()
    identity = _read_identity(request)
    if identity:
        account = runtime.store.get_account(identity.account_id)
        if account and runtime.sessions.validate_session(
            account, request.cookies.get(SESSION_COOKIE)
        ):
            runtime.membership.logout(account, client_info(request))
    clear_auth_cookies(response)
    return Envelope(status="ok", data={"redirect": RESET_DONE_REDIRECT})


@router.post("/changepassword", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    account: Account = Depends(get_current_account),
):
    """Replace the password of the signed-in account.

    Raises:
        400: If the new password is too young to change or was used recently
        401: If the current password is wrong
    """
    await _limit_auth_route(request, "changepassword")
    runtime = get_runtime()
    updated = runtime.membership.change_password(
        account, body.current_password, body.new_password, client_info(request)
    )
    return Envelope(
        status="ok",
        data={
            "password_expiry_at": updated.password_expiry_at,
            "redirect": "/",
        },
    )


@router.post("/forgotpassword", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request):
    await _limit_auth_route(request, "forgotpassword")
    runtime = get_runtime()
    await runtime.membership.request_password_reset(body.email, client_info(request))
    # Same answer whether or not the address is registered
    return Envelope(
        status="ok",
        data={
            "message": "If an account exists for that email, a reset link has been sent."
        },
    )


@router.post("/resetpassword", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    await _limit_auth_route(request, "resetpassword")
    runtime = get_runtime()
    runtime.membership.reset_password(body.token, body.new_password, client_info(request))
    clear_auth_cookies(response)
    return Envelope(status="ok", data={"redirect": RESET_DONE_REDIRECT})


@router.get("/checksession", response_model=Envelope, tags=["auth"])
async def check_session(request: Request):
    """Report whether the caller still holds the account's current session."""
    runtime = get_runtime()
    identity = _read_identity(request)
    valid = bool(
        identity
        and identity.stage == STAGE_AUTHENTICATED
        and runtime.membership.check_session(
            identity.account_id, request.cookies.get(SESSION_COOKIE)
        )
    )
    return Envelope(
        status="ok",
        data=SessionStatusResponse(
            valid=valid, redirect=None if valid else LOGIN_REDIRECT
        ),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_profile(request: Request, account: Account = Depends(get_current_account)):
    runtime = get_runtime()
    data = runtime.membership.profile(account, client_info(request))
    return Envelope(status="ok", data=_account_response(data))
