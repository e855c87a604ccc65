"""
Signup pipeline: validate -> verify token -> check duplicate -> append -> notify.

Handlers never raise; every outcome comes back as a HandlerResult envelope
that the routers serialize as-is.
"""
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import Settings, get_settings, logger
from models.signup import (
    BulkSignupPayload,
    ExtendedSignupPayload,
    SignupPayload,
    SignupRecord,
    validate_payload,
)
from utils import background, discord, turnstile
from utils.metrics import record_signup
from utils.sheets import get_sheets_service


@dataclass
class HandlerResult:
    success: bool
    status_code: int
    message: Optional[str] = None
    error: Optional[str] = None
    details: Optional[List[str]] = None
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "statusCode": self.status_code}
        for key in ("message", "error", "details", "data"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        return body


@dataclass
class BulkResult:
    success: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "errors": list(self.errors),
        }


@dataclass
class SignupContext:
    """Everything a handler talks to; tests swap any piece for a double."""
    settings: Settings
    sheets: Any
    send_signup_notification: Callable[..., Awaitable[None]] = discord.send_signup_notification
    send_error_notification: Callable[..., Awaitable[None]] = discord.send_error_notification
    verify_turnstile_token: Callable[..., Awaitable[turnstile.TurnstileResult]] = turnstile.verify_turnstile_token


def create_default_context(settings: Optional[Settings] = None) -> SignupContext:
    settings = settings or get_settings()
    return SignupContext(settings=settings, sheets=get_sheets_service(settings))


def validation_failed(details: List[str]) -> HandlerResult:
    return HandlerResult(False, 400, error="Validation failed", details=details)


def internal_error() -> HandlerResult:
    return HandlerResult(False, 500, error="Internal server error")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(metadata) if metadata else None


def _notify_error(ctx: SignupContext, message: str, ex: Exception) -> None:
    background.spawn(
        ctx.send_error_notification(message, {"error": str(ex)}, ctx.settings.discord_webhook_url),
        name="discord-error-notification",
    )


async def _check_turnstile(
    token: Optional[str], ctx: SignupContext, remote_ip: Optional[str] = None
) -> Optional[HandlerResult]:
    """Returns a 400 result when verification fails, None when it passes or is not configured."""
    secret = ctx.settings.turnstile_secret_key
    if not secret:
        return None
    if not token:
        return HandlerResult(
            False, 400, error="Turnstile verification failed", details=["turnstileToken: Token is required"]
        )
    result = await ctx.verify_turnstile_token(token, secret, remote_ip)
    if not result.success:
        return HandlerResult(
            False,
            400,
            error="Turnstile verification failed",
            details=[f"turnstileToken: {result.error or 'Invalid or expired token'}"],
        )
    return None


async def _process_signup(
    payload: SignupPayload, ctx: SignupContext, label: str, remote_ip: Optional[str] = None
) -> HandlerResult:
    check = await _check_turnstile(payload.turnstile_token, ctx, remote_ip)
    if check is not None:
        return check

    sheet_tab = payload.sheet_tab or ctx.settings.default_sheet_tab
    if await ctx.sheets.email_exists(payload.email, sheet_tab):
        return HandlerResult(False, 409, error="Email already registered")

    extended = isinstance(payload, ExtendedSignupPayload)
    record = SignupRecord(
        email=payload.email,
        timestamp=_now_iso(),
        sheet_tab=sheet_tab,
        name=payload.name if extended else None,
        source=payload.source if extended else None,
        tags=list(payload.tags) if extended else [],
        metadata=_serialize_metadata(payload.metadata),
    )
    await ctx.sheets.append_signup(record)

    background.spawn(
        ctx.send_signup_notification(
            record.email,
            record.sheet_tab,
            ctx.settings.discord_webhook_url,
            name=record.name,
            source=record.source,
            tags=record.tags or None,
        ),
        name="discord-signup-notification",
    )
    logger.info(f"[signup] {label} processed for {record.email} in '{record.sheet_tab}'")
    return HandlerResult(True, 200, message="Successfully signed up!")


async def _run_signup(
    data: Any, ctx: SignupContext, model, endpoint: str, label: str, remote_ip: Optional[str] = None
) -> HandlerResult:
    started = time.perf_counter()
    payload, details = validate_payload(model, data)
    if payload is None:
        result = validation_failed(details)
    else:
        try:
            result = await _process_signup(payload, ctx, label, remote_ip)
        except Exception as ex:
            logger.exception(f"[signup] {label} failed: {ex}")
            _notify_error(ctx, f"{label} processing failed", ex)
            result = internal_error()
    record_signup(endpoint, result.success, time.perf_counter() - started)
    return result


async def handle_signup(data: Any, ctx: SignupContext, remote_ip: Optional[str] = None) -> HandlerResult:
    return await _run_signup(data, ctx, SignupPayload, "signup", "Signup", remote_ip)


async def handle_extended_signup(data: Any, ctx: SignupContext, remote_ip: Optional[str] = None) -> HandlerResult:
    return await _run_signup(data, ctx, ExtendedSignupPayload, "signup_extended", "Extended signup", remote_ip)


async def handle_bulk_signup(data: Any, ctx: SignupContext) -> HandlerResult:
    """
    Process up to 100 signups one after another. A failing item is counted
    and reported in `errors`; it never fails the batch.
    """
    started = time.perf_counter()
    payload, details = validate_payload(BulkSignupPayload, data)
    if payload is None:
        record_signup("signup_bulk", False, time.perf_counter() - started)
        return validation_failed(details)

    results = BulkResult()
    for signup in payload.signups:
        sheet_tab = signup.sheet_tab or ctx.settings.default_sheet_tab
        try:
            if await ctx.sheets.email_exists(signup.email, sheet_tab):
                results.duplicates += 1
                continue
            await ctx.sheets.append_signup(
                SignupRecord(
                    email=signup.email,
                    timestamp=_now_iso(),
                    sheet_tab=sheet_tab,
                    metadata=_serialize_metadata(signup.metadata),
                )
            )
            results.success += 1
        except Exception as ex:
            results.failed += 1
            results.errors.append(f"{signup.email}: {ex}")

    logger.info(
        f"[signup] Bulk processed total={len(payload.signups)} success={results.success} "
        f"duplicates={results.duplicates} failed={results.failed}"
    )
    record_signup("signup_bulk", True, time.perf_counter() - started)
    return HandlerResult(True, 200, message=f"Processed {results.success} signups", data=results.to_dict())


async def handle_get_stats(sheet_tab: Optional[str], ctx: SignupContext) -> HandlerResult:
    try:
        stats = await ctx.sheets.get_signup_stats(sheet_tab or None)
        return HandlerResult(True, 200, data=stats)
    except Exception as ex:
        logger.error(f"[signup] Failed to get stats: {ex}")
        return HandlerResult(False, 500, error="Failed to retrieve statistics")


def handle_health_check() -> HandlerResult:
    return HandlerResult(True, 200, data={"status": "ok", "timestamp": _now_iso()})
