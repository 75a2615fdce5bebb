from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional
from zoneinfo import ZoneInfo

import httpx

logger = logging.getLogger("aika.sheets")

LOG_SOURCE = "aika-backend"
_JST = ZoneInfo("Asia/Tokyo")


def _now_jst() -> str:
    return datetime.now(tz=_JST).strftime("%Y/%m/%d %H:%M:%S")


async def log_interaction(
    url: Optional[str],
    *,
    user_id: str,
    interaction_type: str,
    user_content: str,
    ai_response: str,
    timestamp: Optional[str] = None,
    timeout_s: float = 5.0,
) -> None:
    """Best-effort POST of one interaction to the spreadsheet webhook."""
    if not url:
        logger.warning("sheet_log_skipped reason=missing_LOG_WEBHOOK_URL")
        return

    payload = {
        "userId": user_id,
        "interactionType": interaction_type,
        "userContent": user_content,
        "aiResponse": ai_response,
        "timestamp": timestamp or _now_jst(),
        "source": LOG_SOURCE,
    }
    try:
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True) as client:
            res = await client.post(url, json=payload)
        if res.status_code >= 400:
            logger.warning("sheet_log_failed status=%s body=%s", res.status_code, res.text[:500])
            return
        logger.info("sheet_log_sent user=%s type=%s", user_id, interaction_type)
    except Exception as exc:
        logger.warning("sheet_log_failed err=%s", getattr(exc, "message", str(exc)))
