from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from aika.deps import Services, get_services
from aika.services.analysis import DEFAULT_MEDIA_PROMPT, DEFAULT_TEXT_PROMPT, MediaKind, MediaPayload, analyze_media
from aika.services.dify import rewrite_in_persona
from aika.services.line import download_content, reply_message, verify_signature
from aika.services.sheets import log_interaction
from aika.settings import ADMISSION_DENIED_MESSAGE, APOLOGY_MESSAGE, PERSONA_DEGRADED_NOTE

router = APIRouter()

logger = logging.getLogger("aika.webhook")

_SUPPORTED_MESSAGE_TYPES = {"text", "image", "video"}
_TASK_LABELS = {"text": "メッセージ", "image": "お食事", "video": "トレーニング"}
DEFAULT_LINE_USER = "LINE_USER"


@router.post("/webhook")
async def line_webhook(
    request: Request,
    x_line_signature: Optional[str] = Header(default=None, alias="X-Line-Signature"),
    services: Services = Depends(get_services),
):
    body = await request.body()
    settings = services.settings
    if not verify_signature(
        body,
        x_line_signature,
        channel_secret=settings.line_channel_secret,
        allow_unsigned=settings.line_allow_unsigned_webhooks,
    ):
        raise HTTPException(status_code=401, detail={"error": "Invalid signature"})

    try:
        data = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"error": "Malformed webhook body"}) from exc

    events = data.get("events") if isinstance(data, dict) else None
    handled = 0
    for event in events if isinstance(events, list) else []:
        if isinstance(event, dict) and event.get("type") == "message":
            if await _handle_message_event(event, services):
                handled += 1

    return {"success": True, "handled": handled}


async def _safe_reply(reply_token: Optional[str], text: str, services: Services) -> None:
    if not reply_token:
        return
    try:
        await reply_message(reply_token, text, access_token=services.settings.line_channel_access_token)
    except Exception as exc:
        logger.warning("line_reply_failed err=%s", getattr(exc, "message", str(exc)))


def _write_temp_video(blob: bytes, message_id: str) -> str:
    fd, path = tempfile.mkstemp(prefix=f"video_{message_id}_", suffix=".mp4")
    with os.fdopen(fd, "wb") as f:
        f.write(blob)
    return path


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


async def _analyze_event_message(message: dict[str, Any], services: Services) -> str:
    settings = services.settings
    message_type = message.get("type")
    if message_type == "text":
        prompt = f"{DEFAULT_TEXT_PROMPT}\nメッセージ: {message.get('text') or ''}"
        return await analyze_media(MediaPayload(kind=MediaKind.TEXT), prompt, settings=settings)

    message_id = str(message.get("id") or "")
    blob = await download_content(message_id, access_token=settings.line_channel_access_token)
    if message_type == "image":
        payload = MediaPayload(kind=MediaKind.IMAGE, mime_type="image/jpeg", data=blob)
        return await analyze_media(payload, DEFAULT_MEDIA_PROMPT, settings=settings)

    temp_path = await asyncio.to_thread(_write_temp_video, blob, message_id)
    try:
        payload = MediaPayload(kind=MediaKind.VIDEO, mime_type="video/mp4", file_path=temp_path)
        return await analyze_media(payload, DEFAULT_MEDIA_PROMPT, settings=settings)
    finally:
        await asyncio.to_thread(_remove_quietly, temp_path)


async def _handle_message_event(event: dict[str, Any], services: Services) -> bool:
    message = event.get("message") if isinstance(event.get("message"), dict) else {}
    message_type = str(message.get("type") or "")
    if message_type not in _SUPPORTED_MESSAGE_TYPES:
        return False

    reply_token = event.get("replyToken")
    source = event.get("source") if isinstance(event.get("source"), dict) else {}
    user_id = str(source.get("userId") or "").strip() or DEFAULT_LINE_USER
    user_text = str(message.get("text") or "") if message_type == "text" else ""
    user_content = user_text or f"MediaID: {message.get('id')}"

    try:
        if not await services.gate.check_limit():
            await _safe_reply(reply_token, ADMISSION_DENIED_MESSAGE, services)
            return False

        raw_analysis = await _analyze_event_message(message, services)

        user = await services.ledger.get_or_create_user(user_id)
        context = await services.memory.context(user_id)
        answer = await rewrite_in_persona(
            {
                "analysis_result": raw_analysis,
                "task_type": message_type,
                "user_context": "LINEトーク画面からの投稿",
                "user_name": user.name,
                "user_text": user_text,
                "history": context,
            },
            f"LINEトークでの{_TASK_LABELS[message_type]}に、AIKAとして元気に返答してください。",
            user_id,
            settings=services.settings,
            fallback=f"{raw_analysis}\n\n{PERSONA_DEGRADED_NOTE}",
        )

        await services.memory.record(user_id, user_content, "user")
        await services.memory.record(user_id, answer, "assistant")
        await services.gate.record_usage(message_type)

        asyncio.create_task(
            log_interaction(
                services.settings.log_webhook_url,
                user_id=user_id,
                interaction_type=f"{message_type} (LINE)",
                user_content=user_content,
                ai_response=answer,
            )
        )

        if reply_token:
            await reply_message(reply_token, answer, access_token=services.settings.line_channel_access_token)
        return True
    except Exception:
        logger.exception("line_message_event_failed user=%s type=%s", user_id, message_type)
        await _safe_reply(reply_token, APOLOGY_MESSAGE, services)
        return False
