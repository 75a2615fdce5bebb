from __future__ import annotations

import asyncio
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import tempfile
from typing import Any, Iterator, Optional

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from aika.deps import Services, get_services
from aika.services.analysis import DEFAULT_MEDIA_PROMPT, MediaKind, MediaPayload, analyze_media
from aika.services.dify import rewrite_in_persona
from aika.services.line import push_message
from aika.services.sheets import log_interaction
from aika.services.uploads import presign_upload, resolve_key_path, verify_upload
from aika.settings import ADMISSION_DENIED_MESSAGE, APOLOGY_MESSAGE, Settings
from aika.store.ledger_store import normalize_uid

router = APIRouter()

logger = logging.getLogger("aika.v1")

_VIDEO_EXTENSIONS = {".mp4", ".mov", ".mpeg", ".mpg", ".avi", ".wmv", ".webm", ".flv", ".m4v"}
_RETRY_HINT = "時間をおいて再度お試しください。"


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _require_user_id(raw: Any) -> str:
    try:
        return normalize_uid(_as_str(raw))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail={"error": str(exc), "message": "userId が不正です"}) from exc


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("request_stage_failed stage=%s", name)
        raise HTTPException(status_code=500, detail={"error": str(exc), "stage": name}) from exc


async def _require_admission(services: Services) -> None:
    with _stage("admission"):
        allowed = await services.gate.check_limit()
    if not allowed:
        raise HTTPException(status_code=429, detail={"message": ADMISSION_DENIED_MESSAGE})


def _fire_and_forget_log(services: Services, **kwargs: Any) -> None:
    asyncio.create_task(log_interaction(services.settings.log_webhook_url, **kwargs))


@router.post("/notes")
async def submit_note(
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    content = _as_str(body.get("content"))
    raw_user_id = body.get("userId") or body.get("user_id")
    if not content or not _as_str(raw_user_id):
        raise HTTPException(
            status_code=400,
            detail={"error": "Missing content or userId", "message": "内容とユーザーIDを入力してください"},
        )
    user_id = _require_user_id(raw_user_id)
    await _require_admission(services)

    settings = services.settings
    with _stage("user"):
        user = await services.ledger.get_or_create_user(user_id, _as_str(body.get("userName")))
    with _stage("context"):
        context = await services.memory.context(user_id)

    task_type = "image_analysis" if "食事" in content else "normal_chat"
    answer = await rewrite_in_persona(
        {"analysis_result": content, "task_type": task_type, "user_name": user.name},
        f"あなたはトレーナー「AIKA」。会話履歴:\n{context}\n\n相談内容: {content}",
        user_id,
        settings=settings,
        fallback=APOLOGY_MESSAGE,
    )

    with _stage("persist"):
        await services.ledger.save_note(user_id, content, answer)
        await services.memory.record(user_id, content, "user")
        await services.memory.record(user_id, answer, "assistant")
    with _stage("points"):
        updated = await services.ledger.add_points(user_id, settings.note_points)
        if updated is None:
            raise RuntimeError(f"user {user_id} disappeared before points were added")

    await push_message(user_id, answer, access_token=settings.line_channel_access_token)
    with _stage("usage"):
        await services.gate.record_usage("note")
    _fire_and_forget_log(
        services,
        user_id=user_id,
        interaction_type="note",
        user_content=content,
        ai_response=answer,
    )

    return {
        "success": True,
        "message": "Note processed",
        "answer": answer,
        "user": updated.model_dump(mode="json"),
    }


def _infer_kind(raw_kind: str, mime_type: str, name: str) -> MediaKind:
    kind = raw_kind.lower()
    if kind in {"image", "video"}:
        return MediaKind(kind)
    if mime_type.startswith("video/"):
        return MediaKind.VIDEO
    if mime_type.startswith("image/"):
        return MediaKind.IMAGE
    return MediaKind.VIDEO if Path(name).suffix.lower() in _VIDEO_EXTENSIONS else MediaKind.IMAGE


async def _download_media(url: str, *, timeout_s: float) -> bytes:
    try:
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True) as client:
            res = await client.get(url)
    except httpx.TimeoutException as exc:
        logger.warning("media_download_timeout url=%s", url)
        raise HTTPException(
            status_code=504,
            detail={"error": "Media download timed out", "message": f"ファイルの取得がタイムアウトしました。{_RETRY_HINT}"},
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning("media_download_failed url=%s err=%s", url, exc)
        raise HTTPException(
            status_code=502,
            detail={"error": "Media download failed", "message": f"ファイルの取得に失敗しました。{_RETRY_HINT}"},
        ) from exc

    if res.status_code >= 400:
        raise HTTPException(
            status_code=502,
            detail={
                "error": "Media download failed",
                "status": res.status_code,
                "message": f"ファイルの取得に失敗しました。{_RETRY_HINT}",
            },
        )
    return res.content


def _write_temp_file(blob: bytes, suffix: str) -> str:
    fd, path = tempfile.mkstemp(prefix="aika_", suffix=suffix)
    with os.fdopen(fd, "wb") as f:
        f.write(blob)
    return path


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("temp_file_cleanup_failed path=%s err=%s", path, exc)


@router.post("/analyze")
async def analyze(
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    settings = services.settings
    file_key = _as_str(body.get("fileKey") or body.get("file_key"))
    file_url = _as_str(body.get("fileUrl") or body.get("file_url"))
    raw_user_id = body.get("userId") or body.get("user_id")
    if not _as_str(raw_user_id) or not (file_key or file_url):
        raise HTTPException(
            status_code=400,
            detail={"error": "Missing userId or fileKey", "message": "ユーザーIDと解析するファイルを指定してください"},
        )
    user_id = _require_user_id(raw_user_id)

    source_name = file_key or file_url.split("?", 1)[0]
    mime_type = _as_str(body.get("mimeType") or body.get("contentType"))
    kind = _infer_kind(_as_str(body.get("mediaKind")), mime_type, source_name)
    prompt = _as_str(body.get("prompt")) or DEFAULT_MEDIA_PROMPT

    local_path: Optional[Path] = None
    if file_key:
        try:
            local_path = resolve_key_path(settings.upload_dir, file_key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail={"error": str(exc)}) from exc
        if not local_path.is_file():
            raise HTTPException(status_code=404, detail={"error": "Upload not found", "message": "ファイルが見つかりません"})

    await _require_admission(services)

    with _stage("user"):
        user = await services.ledger.get_or_create_user(user_id, _as_str(body.get("userName")))

    temp_path: Optional[str] = None
    try:
        if kind is MediaKind.VIDEO:
            if local_path is None:
                blob = await _download_media(file_url, timeout_s=settings.media_download_timeout_s)
                temp_path = await asyncio.to_thread(_write_temp_file, blob, Path(source_name).suffix or ".mp4")
                video_path = temp_path
            else:
                video_path = str(local_path)
            payload = MediaPayload(kind=kind, mime_type=mime_type or None, file_path=video_path)
        else:
            if local_path is None:
                blob = await _download_media(file_url, timeout_s=settings.media_download_timeout_s)
            else:
                blob = await asyncio.to_thread(local_path.read_bytes)
            payload = MediaPayload(kind=kind, mime_type=mime_type or None, data=blob)

        raw_analysis = await analyze_media(payload, prompt, settings=settings)
    finally:
        if temp_path:
            await asyncio.to_thread(_remove_quietly, temp_path)

    answer = await rewrite_in_persona(
        {"analysis_result": raw_analysis, "task_type": f"{kind.value}_analysis", "user_name": user.name},
        "解析結果に基づき返答してください",
        user_id,
        settings=settings,
        fallback=raw_analysis,
    )

    user_content = f"[{kind.value}] {source_name}"
    with _stage("persist"):
        await services.ledger.save_note(user_id, user_content, answer)
        await services.memory.record(user_id, user_content, "user")
        await services.memory.record(user_id, answer, "assistant")

    await push_message(user_id, answer, access_token=settings.line_channel_access_token)
    with _stage("usage"):
        await services.gate.record_usage(kind.value)
    _fire_and_forget_log(
        services,
        user_id=user_id,
        interaction_type=f"{kind.value} (upload)",
        user_content=user_content,
        ai_response=answer,
    )

    return {
        "success": True,
        "result": {
            "summary": "AIKAからの分析結果",
            "details": answer,
            "raw_analysis": raw_analysis,
        },
    }


@router.get("/users/{user_id}")
async def get_user(user_id: str, services: Services = Depends(get_services)):
    uid = _require_user_id(user_id)
    with _stage("user"):
        user = await services.ledger.get_user(uid)
    if user is None:
        raise HTTPException(status_code=404, detail={"error": "User not found"})
    return user.model_dump(mode="json")


def _require_upload_secret(settings: Settings) -> str:
    if not settings.upload_signing_secret:
        logger.error("uploads_rejected reason=missing_UPLOAD_SIGNING_SECRET")
        raise HTTPException(
            status_code=503,
            detail={"error": "Uploads are not configured", "message": "現在アップロードを受け付けていません"},
        )
    return settings.upload_signing_secret


@router.post("/upload-request")
async def upload_request(
    request: Request,
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    file_name = _as_str(body.get("fileName") or body.get("file_name"))
    if not file_name:
        raise HTTPException(status_code=400, detail={"error": "fileName is required.", "message": "ファイル名を指定してください"})

    settings = services.settings
    secret = _require_upload_secret(settings)
    try:
        presigned = presign_upload(
            base_url=str(request.base_url),
            category=_as_str(body.get("category")) or None,
            file_name=file_name,
            secret=secret,
            ttl_s=settings.upload_url_ttl_s,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"error": str(exc)}) from exc

    logger.info("upload_presigned key=%s content_type=%s", presigned.file_key, _as_str(body.get("contentType")))
    return {
        "uploadUrl": presigned.upload_url,
        "fileKey": presigned.file_key,
        "expiresAt": presigned.expires_at,
    }


def _write_upload(path: Path, blob: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(blob)


@router.put("/mock-upload")
async def mock_upload(
    request: Request,
    key: str = Query(...),
    expires: int = Query(...),
    sig: str = Query(...),
    services: Services = Depends(get_services),
):
    settings = services.settings
    secret = _require_upload_secret(settings)
    if not verify_upload(key, expires, sig, secret=secret):
        raise HTTPException(status_code=403, detail={"error": "Invalid or expired upload URL"})
    try:
        path = resolve_key_path(settings.upload_dir, key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"error": str(exc)}) from exc

    blob = await request.body()
    with _stage("upload"):
        await asyncio.to_thread(_write_upload, path, blob)
    logger.info("upload_stored key=%s bytes=%s", key, len(blob))
    return {"success": True, "fileKey": key, "size": len(blob)}
