from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, Response
from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import TEMPLATES_DIR, Settings

_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_signup_form(settings: Settings) -> str:
    return _jinja_env.get_template("signup_form.html").render(
        allowed_origins=list(settings.allowed_origins),
        default_sheet_tab=settings.default_sheet_tab,
        turnstile_site_key=settings.turnstile_site_key,
    )


def render_embed_script(api_base_url: str, default_sheet_tab: str = "Sheet1") -> str:
    return _jinja_env.get_template("embed.js").render(
        api_base_url=api_base_url.rstrip("/"),
        default_sheet_tab=default_sheet_tab,
    )


def create_embed_router(settings: Settings) -> APIRouter:
    """HTML form for iframes at / and the embeddable widget at /embed.js"""
    router = APIRouter(tags=["embed"])

    @router.get("/")
    async def signup_form():
        return HTMLResponse(content=render_signup_form(settings), media_type="text/html; charset=utf-8")

    @router.get("/embed.js")
    async def embed_script(request: Request):
        script = render_embed_script(str(request.base_url), settings.default_sheet_tab)
        return Response(content=script, media_type="application/javascript; charset=utf-8")

    return router
