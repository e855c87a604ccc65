from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, Response

from core.pipeline import (
    HandlerResult,
    SignupContext,
    handle_bulk_signup,
    handle_extended_signup,
    handle_get_stats,
    handle_health_check,
    handle_signup,
)
from models.signup import BulkSignupPayload, ExtendedSignupPayload, SignupPayload
from utils.metrics import render_metrics
from utils.rate_limit import get_client_ip


def _respond(result: HandlerResult) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=result.status_code)


def _client_ip(request: Request) -> str:
    return get_client_ip(request.headers, request.client.host if request.client else None)


def create_signup_router(ctx: SignupContext) -> APIRouter:
    """
    Build the /api router around a SignupContext.
    Endpoints behind a disabled feature flag are not registered, so they 404.
    """
    settings = ctx.settings
    router = APIRouter(prefix="/api", tags=["signup"])  # e.g. POST /api/signup

    @router.get("/health")
    async def health():
        result = handle_health_check()
        return JSONResponse(result.data, status_code=result.status_code)

    @router.get("/config")
    async def public_config():
        # Public settings only; secrets never leave the server
        return {
            "turnstileSiteKey": settings.turnstile_site_key,
            "turnstileEnabled": bool(settings.turnstile_site_key),
            "defaultSheetTab": settings.default_sheet_tab,
        }

    if settings.enable_metrics:
        @router.get("/metrics")
        async def metrics():
            body, content_type = render_metrics()
            return Response(content=body, media_type=content_type)

    @router.get("/stats")
    async def stats(sheet_tab: Optional[str] = Query(default=None, alias="sheetTab")):
        result = await handle_get_stats(sheet_tab, ctx)
        if result.status_code == 200:
            body = {"success": result.success, "data": result.data}
        else:
            body = {"success": result.success, "error": result.error}
        return JSONResponse(body, status_code=result.status_code)

    @router.post("/signup")
    async def signup(payload: SignupPayload, request: Request):
        return _respond(await handle_signup(payload, ctx, _client_ip(request)))

    if settings.enable_extended_signup:
        @router.post("/signup/extended")
        async def signup_extended(payload: ExtendedSignupPayload, request: Request):
            return _respond(await handle_extended_signup(payload, ctx, _client_ip(request)))

    if settings.enable_bulk_signup:
        @router.post("/signup/bulk")
        async def signup_bulk(payload: BulkSignupPayload):
            return _respond(await handle_bulk_signup(payload, ctx))

    return router
