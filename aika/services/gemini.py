from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
from pathlib import Path
import time
from typing import Any, Optional

from google import genai
from google.genai import types

logger = logging.getLogger("aika.gemini")

_VIDEO_MIME_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "mpeg": "video/mpeg",
    "mpg": "video/mpeg",
    "avi": "video/x-msvideo",
    "wmv": "video/x-ms-wmv",
    "webm": "video/webm",
    "flv": "video/x-flv",
}


class GeminiError(RuntimeError):
    pass


class StagedFileFailed(GeminiError):
    pass


def video_mime_type(path_or_ext: str) -> str:
    ext = Path(path_or_ext).suffix or path_or_ext
    return _VIDEO_MIME_TYPES.get(ext.lower().lstrip("."), "video/mp4")


@lru_cache(maxsize=8)
def get_client(api_key: str, base_url: Optional[str] = None) -> genai.Client:
    http_options = types.HttpOptions(base_url=base_url) if base_url else None
    return genai.Client(api_key=api_key, http_options=http_options)


def file_state(file_obj: Any) -> str:
    state = getattr(file_obj, "state", None)
    return str(getattr(state, "name", state) or "").upper()


def response_text(response: Any) -> str:
    text = (getattr(response, "text", None) or "").strip()
    if not text:
        feedback = getattr(response, "prompt_feedback", None)
        raise GeminiError(f"Gemini returned an empty response (feedback={feedback})")
    return text


async def generate_content(
    client: genai.Client,
    *,
    model: str,
    prompt: str,
    inline_data: Optional[bytes] = None,
    file_uri: Optional[str] = None,
    mime_type: Optional[str] = None,
) -> str:
    parts: list[types.Part] = []
    if inline_data is not None:
        parts.append(types.Part.from_bytes(data=inline_data, mime_type=mime_type or "application/octet-stream"))
    if file_uri:
        parts.append(types.Part.from_uri(file_uri=file_uri, mime_type=mime_type or "video/mp4"))
    parts.append(types.Part.from_text(text=prompt))

    response = await client.aio.models.generate_content(
        model=model,
        contents=[types.Content(role="user", parts=parts)],
    )
    return response_text(response)


async def upload_file(
    client: genai.Client,
    *,
    file_path: str,
    mime_type: str,
    display_name: Optional[str] = None,
) -> types.File:
    """Stage a local file with the Files API and return its file resource."""
    staged = await client.aio.files.upload(
        file=file_path,
        config=types.UploadFileConfig(
            mime_type=mime_type,
            display_name=display_name or f"AIKA_Video_{int(time.time() * 1000)}",
        ),
    )
    if not getattr(staged, "name", None):
        raise GeminiError("Gemini upload returned no file name")
    logger.info("gemini_file_uploaded name=%s state=%s", staged.name, file_state(staged))
    return staged


async def get_file(client: genai.Client, *, name: str) -> types.File:
    return await client.aio.files.get(name=name)


async def delete_file(client: genai.Client, *, name: str) -> None:
    await client.aio.files.delete(name=name)


async def wait_until_active(
    client: genai.Client,
    *,
    file_obj: types.File,
    poll_interval_s: float,
    max_attempts: int,
) -> types.File:
    current = file_obj
    attempts = 0
    while file_state(current) in {"", "PROCESSING"}:
        if attempts >= max_attempts:
            raise GeminiError(f"Timed out waiting for staged file {file_obj.name}")
        await asyncio.sleep(poll_interval_s)
        current = await get_file(client, name=str(file_obj.name))
        attempts += 1

    state = file_state(current)
    if state == "FAILED":
        raise StagedFileFailed(f"Staged file {current.name} failed processing; check codec/format")
    if state != "ACTIVE":
        raise GeminiError(f"Unexpected staged file state: {state}")
    return current
