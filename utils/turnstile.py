"""
Cloudflare Turnstile verification utility
"""
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from core.config import logger
from utils.metrics import record_turnstile_verification

SITEVERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


@dataclass
class TurnstileResult:
    success: bool
    hostname: Optional[str] = None
    error: Optional[str] = None


async def verify_turnstile_token(
    token: str,
    secret_key: str,
    remote_ip: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TurnstileResult:
    """
    Verify a Turnstile token with Cloudflare's siteverify API.

    Args:
        token: The Turnstile response token from the client widget
        secret_key: The site's Turnstile secret key
        remote_ip: Optional IP address of the visitor
        transport: Optional httpx transport (tests)

    Returns:
        TurnstileResult; never raises. Vendor error codes are carried in `error`.
    """
    started = time.perf_counter()
    result = await _siteverify(token, secret_key, remote_ip, transport)
    record_turnstile_verification(result.success, time.perf_counter() - started)
    return result


async def _siteverify(
    token: str,
    secret_key: str,
    remote_ip: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport],
) -> TurnstileResult:
    body = {"secret": secret_key, "response": token}
    if remote_ip:
        body["remoteip"] = remote_ip

    try:
        logger.debug("[turnstile] Verifying token")
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            response = await client.post(SITEVERIFY_URL, json=body)

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"[turnstile] Verification request failed: {response.status_code} {response.text}")
            return TurnstileResult(
                success=False,
                error=f"API returned error: {response.status_code} {response.reason_phrase}",
            )

        data = response.json()
        hostname = data.get("hostname")
        if data.get("success"):
            logger.info(f"[turnstile] Token verified for hostname={hostname}")
            return TurnstileResult(success=True, hostname=hostname)

        error_codes = data.get("error-codes") or []
        logger.warning(f"[turnstile] Verification failed: {error_codes} hostname={hostname}")
        return TurnstileResult(
            success=False,
            hostname=hostname,
            error=", ".join(error_codes) or "Verification failed",
        )

    except Exception as ex:
        logger.exception(f"[turnstile] Verification error: {ex}")
        return TurnstileResult(success=False, error=str(ex) or "Unknown error")
