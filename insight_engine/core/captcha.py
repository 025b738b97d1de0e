"""
Google reCAPTCHA verification for job intake.
Skipped entirely when ENVIRONMENT=development.
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class CaptchaConfigurationError(RuntimeError):
    """RECAPTCHA_SECRET_KEY is missing outside development."""


class CaptchaVerificationError(PermissionError):
    """The token was rejected (or could not be checked)."""


class CaptchaVerifier:
    def __init__(
        self,
        secret: str,
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        skip: bool = False,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret = secret
        self.verify_url = verify_url
        self.skip = skip
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "CaptchaVerifier":
        return cls(
            secret=settings.RECAPTCHA_SECRET_KEY,
            verify_url=settings.RECAPTCHA_VERIFY_URL,
            skip=settings.is_development,
        )

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> None:
        if self.skip:
            logger.info("Development mode: Skipping CAPTCHA verification")
            return
        if not self.secret:
            raise CaptchaConfigurationError("reCAPTCHA secret key not configured.")

        data = {"secret": self.secret, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.verify_url, data=data)
                response.raise_for_status()
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"CAPTCHA verification request failed: {e}")
            raise CaptchaVerificationError("CAPTCHA verification failed.") from e

        if not result.get("success"):
            logger.info(f"CAPTCHA rejected: {result.get('error-codes', [])}")
            raise CaptchaVerificationError("CAPTCHA verification failed.")
