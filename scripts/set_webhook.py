"""
Register the bot webhook with Telegram.

Usage (from the repository root):
    WEBHOOK_BASE_URL=https://ride-bot.example.com python -m scripts.set_webhook

Uses TELEGRAM_BOT_TOKEN, TELEGRAM_WEBHOOK_SECRET_TOKEN and TELEGRAM_API_BASE_URL
from the application settings, so the secret Telegram sends back in
X-Telegram-Bot-Api-Secret-Token is the one the webhook verifies.
"""
from __future__ import annotations

import os

import httpx

from app.core.config import settings
from app.core.logging import get_logger, setup_logging

logger = get_logger(__name__)

WEBHOOK_PATH = "/api/telegram/webhook"
# הבוט מטפל רק בהודעות ובלחיצות כפתור
ALLOWED_UPDATES = ["message", "callback_query"]


def build_payload(public_base_url: str, secret_token: str = "") -> dict:
    payload = {
        "url": f"{public_base_url.rstrip('/')}{WEBHOOK_PATH}",
        "allowed_updates": ALLOWED_UPDATES,
        "drop_pending_updates": False,
    }
    if secret_token:
        payload["secret_token"] = secret_token
    return payload


def set_webhook(
    client: httpx.Client,
    bot_token: str,
    public_base_url: str,
    secret_token: str = "",
    api_base_url: str = "https://api.telegram.org",
) -> dict:
    """Call setWebhook and return Telegram's result; raises RuntimeError on failure"""
    if not bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured")

    url = f"{api_base_url.rstrip('/')}/bot{bot_token}/setWebhook"
    resp = client.post(url, json=build_payload(public_base_url, secret_token))

    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code != 200 or not body.get("ok"):
        raise RuntimeError(
            f"setWebhook failed with status {resp.status_code}: "
            f"{body.get('description') or (resp.text or '')[:500]}"
        )
    return body


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="ride-bot-setup")

    public_base_url = os.environ.get("WEBHOOK_BASE_URL", "")
    if not public_base_url:
        raise SystemExit("WEBHOOK_BASE_URL is required")
    if not settings.TELEGRAM_WEBHOOK_SECRET_TOKEN:
        logger.warning("Registering webhook without a secret token; updates will not be authenticated")

    with httpx.Client(timeout=settings.GATEWAY_TIMEOUT_SECONDS) as client:
        set_webhook(
            client,
            settings.TELEGRAM_BOT_TOKEN or "",
            public_base_url,
            settings.TELEGRAM_WEBHOOK_SECRET_TOKEN,
            settings.TELEGRAM_API_BASE_URL,
        )

    logger.info("Webhook registered", extra_data={"url": build_payload(public_base_url)["url"]})


if __name__ == "__main__":
    main()
