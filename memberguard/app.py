from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request

from memberguard import __version__
from memberguard.api.error_handling import _error_response, register_exception_handlers
from memberguard.api.routes import (
    IDENTITY_COOKIE,
    SESSION_COOKIE,
    clear_auth_cookies,
    client_info,
    router,
    set_auth_cookies,
)
from memberguard.logging import get_logger, set_correlation_id
from memberguard.service.auth import STAGE_AUTHENTICATED
from memberguard.service.errors import ServiceError
from memberguard.service.pipeline import RequestContext
from memberguard.storage.models import utcnow

logger = get_logger(__name__)

# Redirect reasons that mean the caller is no longer signed in
_SIGNED_OUT_REASONS = {"session_expired"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its resources on shutdown."""
    from memberguard.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        runtime = get_runtime()
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="BookwormsOnline Membership", version=__version__, lifespan=lifespan)


def _has_auth_cookie(response) -> bool:
    for header in response.headers.getlist("set-cookie"):
        if header.startswith(f"{IDENTITY_COOKIE}=") or header.startswith(f"{SESSION_COOKIE}="):
            return True
    return False


@app.middleware("http")
async def enforce_account_policies(request: Request, call_next):
    """Run the per-request policy pipeline for signed-in callers.

    Failing checks answer with the redirect target instead of calling the
    route. Passing requests get both auth cookies re-issued, which slides the
    session lifetime forward on every request.
    """
    from memberguard.service.runtime import get_runtime

    runtime = get_runtime()
    identity = runtime.membership.read_identity(request.cookies.get(IDENTITY_COOKIE))
    if not identity or identity.stage != STAGE_AUTHENTICATED:
        return await call_next(request)

    session_token = request.cookies.get(SESSION_COOKIE)
    try:
        account = await asyncio.to_thread(runtime.store.get_account, identity.account_id)
        outcome = await asyncio.to_thread(
            runtime.pipeline.evaluate,
            RequestContext(
                path=request.url.path,
                account=account,
                session_token=session_token,
                client=client_info(request),
            ),
        )
    except ServiceError as exc:
        logger.error(
            "policy_pipeline_failed",
            path=request.url.path,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    if not outcome.proceed:
        signed_out = outcome.sign_out or outcome.reason in _SIGNED_OUT_REASONS
        response = _error_response(
            401 if signed_out else 403,
            "session expired" if signed_out else "action required before continuing",
            {"redirect": outcome.redirect, "reason": outcome.reason},
            code="session_expired" if signed_out else "forbidden",
            headers={"Location": outcome.redirect},
        )
        if outcome.sign_out:
            clear_auth_cookies(response)
        return response

    still_signed_in = account is not None and runtime.sessions.validate_session(
        account, session_token
    )
    response = await call_next(request)
    if still_signed_in and not _has_auth_cookie(response):
        set_auth_cookies(
            response,
            runtime.membership.issue_identity(account.id, STAGE_AUTHENTICATED),
            session_token,
            max_age=int(runtime.policy.session_lifetime.total_seconds()),
        )
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Responses carry account data; keep them out of shared caches
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the X-Request-ID header when the client sends one and
    is echoed back on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, Redis and filesystem health plus the running version."""
    from memberguard.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    backing = runtime.store.inner
    if hasattr(backing, "_connect"):
        def _db_probe() -> None:
            with backing._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_root = getattr(backing, "fs_root", None)
    if fs_root:
        fs_path = Path(fs_root)

        def _fs_probe() -> None:
            if not fs_path.exists() or not fs_path.is_dir():
                raise FileNotFoundError(fs_path)
            health_file = fs_path / ".health_check"
            health_file.write_text(utcnow().isoformat())
            health_file.read_text()
            health_file.unlink(missing_ok=True)

        fs_ok = await _run_bounded("filesystem", _fs_probe)
        checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
        overall_healthy = overall_healthy and fs_ok
    else:
        checks["filesystem"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }
