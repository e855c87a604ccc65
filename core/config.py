import os
import re
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass

# Logging
LOG_LEVEL = (os.getenv("LOG_LEVEL", "info") or "info").strip().upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("signups")

# Templates dir helper
TEMPLATES_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "templates"))

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ConfigurationError(RuntimeError):
    """Raised when required environment variables are missing or malformed."""


@dataclass(frozen=True)
class Settings:
    google_sheet_id: str
    google_credentials_email: str
    google_private_key: str = field(repr=False)
    port: int = 3000
    host: str = "0.0.0.0"
    default_sheet_tab: str = "Sheet1"

    # Cloudflare Turnstile
    turnstile_secret_key: Optional[str] = field(default=None, repr=False)
    turnstile_site_key: Optional[str] = None

    # Discord; the webhook URL embeds its token
    discord_webhook_url: Optional[str] = field(default=None, repr=False)

    allowed_origins: Tuple[str, ...] = ("*",)
    environment: str = "development"
    log_level: str = "info"

    # Feature flags
    enable_extended_signup: bool = True
    enable_bulk_signup: bool = True
    enable_metrics: bool = True
    enable_hsts: bool = True

    # Rate limiting
    enable_rate_limiting: bool = True
    rate_limit_window_ms: int = 60000
    rate_limit_max_requests: int = 100
    redis_url: Optional[str] = field(default=None, repr=False)


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip()


def _optional(name: str) -> Optional[str]:
    return _env(name) or None


def _flag(name: str, default: str = "true") -> bool:
    return _env(name, default).lower() == "true"


def _positive_int(name: str, default: str, errors: list, upper: Optional[int] = None) -> int:
    raw = _env(name, default) or default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value <= 0 or (upper is not None and value > upper):
        if upper is not None:
            errors.append(f"{name} must be a valid number between 1 and {upper}")
        else:
            errors.append(f"{name} must be a positive number")
    return value


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    Every problem is collected first so a misconfigured deployment sees all
    of them in one ConfigurationError.
    """
    errors: list[str] = []

    port = _positive_int("PORT", "3000", errors, upper=65535)
    window_ms = _positive_int("RATE_LIMIT_WINDOW_MS", "60000", errors)
    max_requests = _positive_int("RATE_LIMIT_MAX_REQUESTS", "100", errors)

    sheet_id = _env("GOOGLE_SHEET_ID")
    if not sheet_id:
        errors.append("GOOGLE_SHEET_ID is required")
    credentials_email = _env("GOOGLE_CREDENTIALS_EMAIL")
    if not credentials_email:
        errors.append("GOOGLE_CREDENTIALS_EMAIL is required")
    elif not _EMAIL_RE.match(credentials_email):
        errors.append("GOOGLE_CREDENTIALS_EMAIL must be a valid email address")
    # Keys pasted into .env files usually carry literal "\n" sequences
    private_key = _env("GOOGLE_PRIVATE_KEY").replace("\\n", "\n")
    if not private_key:
        errors.append("GOOGLE_PRIVATE_KEY is required")

    if errors:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

    origins = tuple(o.strip() for o in _env("ALLOWED_ORIGINS", "*").split(",") if o.strip())

    return Settings(
        port=port,
        host=_env("HOST", "0.0.0.0") or "0.0.0.0",
        google_sheet_id=sheet_id,
        google_credentials_email=credentials_email,
        google_private_key=private_key,
        default_sheet_tab=_env("DEFAULT_SHEET_TAB", "Sheet1") or "Sheet1",
        turnstile_secret_key=_optional("CLOUDFLARE_TURNSTILE_SECRET_KEY"),
        turnstile_site_key=_optional("CLOUDFLARE_TURNSTILE_SITE_KEY"),
        discord_webhook_url=_optional("DISCORD_WEBHOOK_URL"),
        allowed_origins=origins or ("*",),
        environment=_env("ENVIRONMENT", "development") or "development",
        log_level=_env("LOG_LEVEL", "info").lower() or "info",
        enable_extended_signup=_flag("ENABLE_EXTENDED_SIGNUP"),
        enable_bulk_signup=_flag("ENABLE_BULK_SIGNUP"),
        enable_metrics=_flag("ENABLE_METRICS"),
        enable_hsts=_flag("ENABLE_HSTS"),
        enable_rate_limiting=_flag("ENABLE_RATE_LIMITING"),
        rate_limit_window_ms=window_ms,
        rate_limit_max_requests=max_requests,
        redis_url=_optional("REDIS_URL"),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Load settings on first call and return the cached instance thereafter."""
    global _settings
    if _settings is None:
        _settings = load_settings()
        logger.setLevel(getattr(logging, _settings.log_level.upper(), logging.INFO))
    return _settings


def clear_settings_cache() -> None:
    """Drop cached settings. Tests call this after changing the environment."""
    global _settings
    _settings = None
