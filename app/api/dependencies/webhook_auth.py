"""
Incoming Telegram webhook verification.

When ``setWebhook`` is called with a ``secret_token``, Telegram sends it
back in ``X-Telegram-Bot-Api-Secret-Token`` on every update. Requests whose
header does not match ``TELEGRAM_WEBHOOK_SECRET_TOKEN`` are rejected.
"""
import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def verify_telegram_webhook_token(
    x_telegram_bot_api_secret_token: str | None = Header(None),
) -> None:
    """
    - No secret configured: verification is skipped (settings warn about it on load).
    - Missing or mismatching header: 403 Forbidden.
    """
    expected = settings.TELEGRAM_WEBHOOK_SECRET_TOKEN
    if not expected:
        return

    provided = x_telegram_bot_api_secret_token or ""
    # השוואה בזמן קבוע
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(
            "Rejected Telegram webhook request",
            extra_data={"reason": "missing_token" if not provided else "invalid_token"},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook secret token",
        )
