from __future__ import annotations

from typing import Optional

import httpx

from memberguard.config import Settings
from memberguard.logging import get_logger

logger = get_logger(__name__)


class CaptchaVerifier:
    """Checks a reCAPTCHA response token against the siteverify endpoint.

    Any transport problem, timeout included, counts as a failed check.
    """

    def __init__(self, settings: Settings) -> None:
        self.secret = settings.recaptcha_secret
        self.verify_url = settings.recaptcha_verify_url
        self.timeout = settings.recaptcha_timeout_seconds
        self.bypass = settings.captcha_bypass

    @property
    def is_configured(self) -> bool:
        return bool(self.secret) or self.bypass

    async def verify(self, token: Optional[str], *, remote_ip: Optional[str] = None) -> bool:
        if not token:
            return False
        if self.bypass:
            logger.debug("captcha_bypassed")
            return True
        if not self.secret:
            logger.error("captcha_not_configured")
            return False

        data = {"secret": self.secret, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                response = await client.post(self.verify_url, data=data)
                response.raise_for_status()
                try:
                    result = response.json()
                except ValueError as exc:
                    logger.error("captcha_response_parse_error", error=str(exc))
                    return False
        except httpx.TimeoutException:
            logger.warning("captcha_verify_timeout", timeout=self.timeout)
            return False
        except httpx.HTTPStatusError as e:
            logger.error(
                "captcha_verify_http_error",
                status_code=e.response.status_code,
                error=str(e),
            )
            return False
        except httpx.HTTPError as e:
            logger.error("captcha_verify_error", error_type=type(e).__name__, error=str(e))
            return False

        success = bool(isinstance(result, dict) and result.get("success"))
        if not success:
            logger.info(
                "captcha_rejected",
                error_codes=result.get("error-codes") if isinstance(result, dict) else None,
            )
        return success
