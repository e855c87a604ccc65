from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import re
import time
from typing import Iterable, Optional

from core.config import Settings, get_settings, logger  # type: ignore
from core.pipeline import SignupContext, create_default_context
from models.signup import format_validation_errors
from routers import embed, signup
from utils import background
from utils.metrics import record_http_request
from utils.rate_limit import SignupRateLimiter, get_client_ip

# http(s)://host[:port] only; anything else could smuggle directives into the CSP
_ORIGIN_RE = re.compile(
    r"^https?://[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*(?::\d{1,5})?$"
)
TURNSTILE_ORIGIN = "https://challenges.cloudflare.com"


def is_valid_origin(origin: str) -> bool:
    if origin in ("*", "'self'", "'none'"):
        return True
    return bool(_ORIGIN_RE.match(origin))


def build_csp(allowed_origins: Iterable[str]) -> str:
    ancestors = " ".join(o for o in allowed_origins if is_valid_origin(o) and o != "*")
    return "; ".join([
        f"frame-ancestors 'self' {ancestors}".rstrip(),
        "default-src 'self'",
        f"script-src 'self' 'unsafe-inline' {TURNSTILE_ORIGIN}",
        "style-src 'self' 'unsafe-inline'",
        f"frame-src {TURNSTILE_ORIGIN}",
    ])


def _error_body(status_code: int, error: str, details: Optional[list] = None) -> dict:
    body = {"success": False, "statusCode": status_code, "error": error}
    if details is not None:
        body["details"] = details
    return body


def create_app(context: Optional[SignupContext] = None) -> FastAPI:
    ctx = context or create_default_context()
    settings: Settings = ctx.settings

    app = FastAPI(title="Signup Sheets API")

    # ---- Unhandled errors ----
    # Registered first so it runs inside the CORS, header and logging layers
    @app.middleware("http")
    async def catch_unhandled(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception(f"[http] Unhandled error on {request.method} {request.url.path}: {exc}")
            return JSONResponse(_error_body(500, "Internal server error"), status_code=500)

    # ---- Rate limiting ----
    if settings.enable_rate_limiting:
        limiter = SignupRateLimiter(settings)

        @app.middleware("http")
        async def rate_limit(request: Request, call_next):
            if request.method == "OPTIONS":
                return await call_next(request)
            ip = get_client_ip(request.headers, request.client.host if request.client else None)
            decision = limiter.check(ip)
            if not decision.allowed:
                logger.warning(f"[rate_limit] {ip} exceeded {decision.limit} requests per {limiter.window_ms}ms")
                body = _error_body(429, "Too many requests. Please try again later.")
                body["retryAfter"] = decision.retry_after
                return JSONResponse(body, status_code=429, headers=decision.headers())
            response = await call_next(request)
            response.headers.update(decision.headers())
            return response

    # ---- Security headers ----
    csp = build_csp(settings.allowed_origins)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        # Embedding in iframes is allowed; frame-ancestors in the CSP decides where
        if "X-Frame-Options" in response.headers:
            del response.headers["X-Frame-Options"]
        response.headers["Content-Security-Policy"] = csp
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # ---- Request logging + metrics ----
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        ip = get_client_ip(request.headers, request.client.host if request.client else None)
        logger.info(
            f"[http] Incoming request {request.method} {request.url.path} ip={ip} "
            f"ua={request.headers.get('user-agent')} origin={request.headers.get('origin')} "
            f"referer={request.headers.get('referer')}"
        )
        response = await call_next(request)
        duration = time.perf_counter() - started
        route = request.scope.get("route")
        record_http_request(request.method, getattr(route, "path", None) or "unmatched", response.status_code, duration)
        logger.info(
            f"[http] Request completed {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    # ---- CORS setup ----
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=86400,
    )

    # ---- Error envelopes ----
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = format_validation_errors(list(exc.errors()))
        return JSONResponse(_error_body(400, "Validation failed", details), status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(
            _error_body(exc.status_code, error),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    # ---- Include routers ----
    app.include_router(signup.create_signup_router(ctx))
    app.include_router(embed.create_embed_router(settings))

    @app.on_event("startup")
    async def _log_startup():
        logger.info(
            f"Signup API ready: env={settings.environment} sheet={settings.google_sheet_id} "
            f"default_tab={settings.default_sheet_tab} "
            f"turnstile={'on' if settings.turnstile_secret_key else 'off'} "
            f"discord={'on' if settings.discord_webhook_url else 'off'} "
            f"rate_limit={'on' if settings.enable_rate_limiting else 'off'}"
        )

    @app.on_event("shutdown")
    async def _drain_notifications():
        # Let in-flight notifications finish before the loop goes away
        await background.drain()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("main:app", host=_settings.host, port=_settings.port)
