from __future__ import annotations

import logging
from typing import Optional

from linebot.v3.messaging import (
    AsyncApiClient,
    AsyncMessagingApi,
    AsyncMessagingApiBlob,
    Configuration,
    PushMessageRequest,
    ReplyMessageRequest,
    TextMessage,
)
from linebot.v3.webhook import SignatureValidator

logger = logging.getLogger("aika.line")

DEFAULT_TIMEOUT_S = 10.0

# LINE rejects text messages longer than this.
MAX_TEXT_LENGTH = 5000


def _text_message(text: str) -> TextMessage:
    return TextMessage(text=text[:MAX_TEXT_LENGTH])


def _api_client(access_token: str) -> AsyncApiClient:
    return AsyncApiClient(Configuration(access_token=access_token))


def verify_signature(
    body: bytes,
    signature: Optional[str],
    *,
    channel_secret: Optional[str],
    allow_unsigned: bool = False,
) -> bool:
    if not channel_secret:
        if allow_unsigned:
            logger.warning("line_webhook_unsigned_accepted reason=missing_LINE_CHANNEL_SECRET")
            return True
        logger.error("line_webhook_rejected reason=missing_LINE_CHANNEL_SECRET")
        return False
    if not signature:
        return False
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return SignatureValidator(channel_secret).validate(text, signature)


async def push_message(user_id: str, text: str, *, access_token: Optional[str], timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
    if not access_token:
        logger.warning("line_push_skipped reason=missing_LINE_CHANNEL_ACCESS_TOKEN user=%s", user_id)
        return
    try:
        async with _api_client(access_token) as api_client:
            await AsyncMessagingApi(api_client).push_message(
                PushMessageRequest(to=user_id, messages=[_text_message(text)]),
                _request_timeout=timeout_s,
            )
        logger.info("line_push_sent user=%s", user_id)
    except Exception as exc:
        logger.warning("line_push_failed user=%s err=%s", user_id, getattr(exc, "message", str(exc)))


async def reply_message(reply_token: str, text: str, *, access_token: Optional[str], timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
    if not access_token:
        logger.warning("line_reply_skipped reason=missing_LINE_CHANNEL_ACCESS_TOKEN")
        return
    async with _api_client(access_token) as api_client:
        await AsyncMessagingApi(api_client).reply_message(
            ReplyMessageRequest(reply_token=reply_token, messages=[_text_message(text)]),
            _request_timeout=timeout_s,
        )


async def download_content(message_id: str, *, access_token: Optional[str], timeout_s: float = 30.0) -> bytes:
    if not access_token:
        raise RuntimeError("LINE_CHANNEL_ACCESS_TOKEN is not set")
    async with _api_client(access_token) as api_client:
        content = await AsyncMessagingApiBlob(api_client).get_message_content(message_id, _request_timeout=timeout_s)
    return bytes(content)
