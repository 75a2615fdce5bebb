from __future__ import annotations

import asyncio
from enum import Enum
import logging
from typing import Optional

from google import genai
from pydantic import BaseModel, ConfigDict, model_validator

from aika.services import gemini
from aika.settings import DEFAULT_FALLBACK_MESSAGES, Settings

logger = logging.getLogger("aika.analysis")

DEFAULT_MEDIA_PROMPT = "専門的な観点（フォームや食材）から、客観的な事実と改善点を1つだけ簡潔に。"
DEFAULT_TEXT_PROMPT = "ユーザーからのメッセージを分析し、意図や重要なキーワードを抽出してください。"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    TEXT = "text"


class MediaPayload(BaseModel):
    """What to analyze: inline bytes, a local file to stage, or nothing (text only)."""

    model_config = ConfigDict(extra="forbid")

    kind: MediaKind
    mime_type: Optional[str] = None
    data: Optional[bytes] = None
    file_path: Optional[str] = None

    @model_validator(mode="after")
    def _check_source(self) -> "MediaPayload":
        if self.data is not None and self.file_path:
            raise ValueError("pass either data or file_path, not both")
        if self.kind is MediaKind.TEXT and (self.data is not None or self.file_path):
            raise ValueError("text analysis takes no media")
        if self.kind is not MediaKind.TEXT and self.data is None and not self.file_path:
            raise ValueError(f"{self.kind.value} analysis needs data or file_path")
        return self


def fallback_for(kind: MediaKind, settings: Optional[Settings] = None) -> str:
    messages = settings.fallback_messages if settings else DEFAULT_FALLBACK_MESSAGES
    return messages.get(kind.value) or DEFAULT_FALLBACK_MESSAGES[kind.value]


async def analyze_media(payload: MediaPayload, prompt: str, *, settings: Settings) -> str:
    """Run the analysis under a hard deadline; never raises.

    When the deadline passes the provider call is cancelled (its HTTP request
    is aborted) and the persona fallback for the media kind is returned. Any
    provider error yields the same fallback.
    """
    fallback = fallback_for(payload.kind, settings)
    try:
        text = await asyncio.wait_for(_analyze(payload, prompt, settings=settings), timeout=settings.analysis_timeout_s)
    except asyncio.TimeoutError:
        logger.warning(
            "analysis_timeout kind=%s timeout_s=%s; using fallback",
            payload.kind.value,
            settings.analysis_timeout_s,
        )
        return fallback
    except Exception as exc:
        logger.warning("analysis_failed kind=%s err=%r; using fallback", payload.kind.value, exc)
        return fallback

    if not isinstance(text, str) or not text.strip():
        logger.warning("analysis_empty kind=%s; using fallback", payload.kind.value)
        return fallback
    return text.strip()


async def _analyze(payload: MediaPayload, prompt: str, *, settings: Settings) -> str:
    if not settings.gemini_api_key:
        raise gemini.GeminiError("GEMINI_API_KEY is not set")

    client = gemini.get_client(settings.gemini_api_key, settings.gemini_base_url)
    if payload.kind is MediaKind.VIDEO and payload.file_path:
        return await _analyze_staged(client, payload, prompt, settings=settings)

    mime_type = payload.mime_type
    if payload.data is not None and not mime_type:
        mime_type = "image/jpeg" if payload.kind is MediaKind.IMAGE else "video/mp4"
    return await gemini.generate_content(
        client,
        model=settings.gemini_model,
        prompt=prompt,
        inline_data=payload.data,
        mime_type=mime_type,
    )


async def _analyze_staged(
    client: genai.Client,
    payload: MediaPayload,
    prompt: str,
    *,
    settings: Settings,
) -> str:
    file_path = str(payload.file_path)
    mime_type = payload.mime_type or gemini.video_mime_type(file_path)
    staged = await gemini.upload_file(client, file_path=file_path, mime_type=mime_type)
    try:
        ready = await gemini.wait_until_active(
            client,
            file_obj=staged,
            poll_interval_s=settings.gemini_poll_interval_s,
            max_attempts=settings.gemini_poll_max_attempts,
        )
        return await gemini.generate_content(
            client,
            model=settings.gemini_model,
            prompt=prompt,
            file_uri=str(ready.uri or ""),
            mime_type=str(ready.mime_type or mime_type),
        )
    finally:
        await _release_staged(client, str(staged.name), settings=settings)


async def _release_staged(client: genai.Client, name: str, *, settings: Settings) -> None:
    # Runs on success, failure and cancellation; must not replace the primary outcome.
    try:
        await asyncio.wait_for(
            gemini.delete_file(client, name=name),
            timeout=settings.staged_cleanup_timeout_s,
        )
        logger.info("gemini_file_deleted name=%s", name)
    except Exception as exc:
        logger.warning("gemini_file_delete_failed name=%s err=%r", name, exc)
