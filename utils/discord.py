"""
Discord webhook notifications for new signups and pipeline errors.
Failures are logged and never raised to the caller.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from core.config import logger

BOT_USERNAME = "Signup Bot"
COLOR_SUCCESS = 5763719  # green
COLOR_ERROR = 15548997  # red


async def send_discord_notification(
    payload: Dict[str, Any],
    webhook_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    if not webhook_url:
        logger.debug("[discord] Webhook URL not configured, skipping notification")
        return

    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            resp = await client.post(webhook_url, json=payload)
        if resp.status_code >= 300:
            logger.error(f"[discord] Webhook returned {resp.status_code}: {resp.text}")
            return
        logger.info("[discord] Notification sent")
    except Exception as ex:
        logger.error(f"[discord] Failed to send notification: {ex}")


async def send_signup_notification(
    email: str,
    sheet_tab: str,
    webhook_url: Optional[str] = None,
    name: Optional[str] = None,
    source: Optional[str] = None,
    tags: Optional[List[str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    fields = [
        {"name": "Email", "value": email, "inline": True},
        {"name": "Sheet Tab", "value": sheet_tab, "inline": True},
    ]
    if name:
        fields.append({"name": "Name", "value": name, "inline": True})
    if source:
        fields.append({"name": "Source", "value": source, "inline": True})
    if tags:
        fields.append({"name": "Tags", "value": ", ".join(tags), "inline": False})

    embed = {
        "title": "🎉 New Signup!",
        "description": "A new user has signed up",
        "color": COLOR_SUCCESS,
        "fields": fields,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    await send_discord_notification({"username": BOT_USERNAME, "embeds": [embed]}, webhook_url, transport=transport)


async def send_error_notification(
    message: str,
    context: Optional[Dict[str, Any]] = None,
    webhook_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    embed: Dict[str, Any] = {
        "title": "❌ Signup Error",
        "description": message,
        "color": COLOR_ERROR,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if context:
        embed["fields"] = [{"name": k, "value": str(v), "inline": True} for k, v in context.items()]
    await send_discord_notification({"username": BOT_USERNAME, "embeds": [embed]}, webhook_url, transport=transport)
