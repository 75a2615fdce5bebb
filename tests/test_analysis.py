from __future__ import annotations

import asyncio
from pathlib import Path
import sys
import time
from types import SimpleNamespace
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from google.genai import types

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from aika.services import gemini
from aika.services.analysis import MediaKind, MediaPayload, analyze_media, fallback_for
from aika.settings import DEFAULT_FALLBACK_MESSAGES, Settings


def _settings(**overrides) -> Settings:
    values = {
        "gemini_api_key": "test-key",
        "analysis_timeout_s": 0.5,
        "gemini_poll_interval_s": 0.0,
        "gemini_poll_max_attempts": 3,
        "staged_cleanup_timeout_s": 0.5,
    }
    values.update(overrides)
    return Settings(**values)


IMAGE = MediaPayload(kind=MediaKind.IMAGE, mime_type="image/jpeg", data=b"\xff\xd8jpeg")
VIDEO_INLINE = MediaPayload(kind=MediaKind.VIDEO, mime_type="video/mp4", data=b"mp4")
VIDEO_STAGED = MediaPayload(kind=MediaKind.VIDEO, file_path="/tmp/clip.mov")
TEXT = MediaPayload(kind=MediaKind.TEXT)


class TestAnalyzeMedia(unittest.IsolatedAsyncioTestCase):
    async def test_success_returns_provider_text(self) -> None:
        with patch("aika.services.gemini.generate_content", new=AsyncMock(return_value="  ガードが下がっています  ")) as gen:
            result = await analyze_media(IMAGE, "analyze", settings=_settings())
        self.assertEqual(result, "ガードが下がっています")
        kwargs = gen.await_args.kwargs
        self.assertEqual(kwargs["inline_data"], IMAGE.data)
        self.assertEqual(kwargs["mime_type"], "image/jpeg")

    async def test_missing_api_key_uses_fallback(self) -> None:
        with patch("aika.services.gemini.generate_content", new=AsyncMock(return_value="unused")) as gen:
            result = await analyze_media(TEXT, "analyze", settings=_settings(gemini_api_key=None))
        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["text"])
        gen.assert_not_awaited()

    async def test_timeout_returns_kind_fallback_and_cancels_call(self) -> None:
        cancelled = asyncio.Event()

        async def _slow(*args, **kwargs):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return "too late"

        started = time.monotonic()
        with patch("aika.services.gemini.generate_content", side_effect=_slow):
            result = await analyze_media(IMAGE, "analyze", settings=_settings(analysis_timeout_s=0.05))
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["image"])
        self.assertTrue(cancelled.is_set())

    async def test_provider_error_returns_fallback(self) -> None:
        with patch("aika.services.gemini.generate_content", new=AsyncMock(side_effect=RuntimeError("quota"))):
            result = await analyze_media(VIDEO_INLINE, "analyze", settings=_settings())
        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["video"])

    async def test_empty_text_returns_fallback(self) -> None:
        with patch("aika.services.gemini.generate_content", new=AsyncMock(return_value="   ")):
            result = await analyze_media(TEXT, "analyze", settings=_settings())
        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["text"])

    async def test_fallbacks_differ_by_kind(self) -> None:
        messages = {fallback_for(kind) for kind in MediaKind}
        self.assertEqual(len(messages), 3)
        custom = _settings(fallback_messages={"image": "img", "video": "vid", "text": "txt"})
        self.assertEqual(fallback_for(MediaKind.VIDEO, custom), "vid")


class TestStagedVideo(unittest.IsolatedAsyncioTestCase):
    def _patches(self, *, get_states, generate=None, delete=None):
        upload = AsyncMock(return_value=SimpleNamespace(name="files/abc", state="PROCESSING", uri=None, mime_type=None))
        states = iter(get_states)
        get = AsyncMock(
            side_effect=lambda *args, **kw: SimpleNamespace(
                name="files/abc", state=next(states), uri="https://files/abc", mime_type="video/quicktime"
            )
        )
        generate = generate or AsyncMock(return_value="フォーム良好")
        delete = delete or AsyncMock(return_value=None)
        return upload, get, generate, delete

    async def test_polls_until_active_then_deletes(self) -> None:
        upload, get, generate, delete = self._patches(get_states=["PROCESSING", "ACTIVE"])
        with patch("aika.services.gemini.upload_file", new=upload), patch(
            "aika.services.gemini.get_file", new=get
        ), patch("aika.services.gemini.generate_content", new=generate), patch(
            "aika.services.gemini.delete_file", new=delete
        ):
            result = await analyze_media(VIDEO_STAGED, "analyze", settings=_settings())

        self.assertEqual(result, "フォーム良好")
        self.assertEqual(upload.await_args.kwargs["mime_type"], "video/quicktime")
        self.assertEqual(get.await_count, 2)
        self.assertEqual(generate.await_args.kwargs["file_uri"], "https://files/abc")
        delete.assert_awaited_once()
        self.assertEqual(delete.await_args.kwargs["name"], "files/abc")

    async def test_failed_processing_falls_back_and_deletes(self) -> None:
        upload, get, generate, delete = self._patches(get_states=["FAILED"])
        with patch("aika.services.gemini.upload_file", new=upload), patch(
            "aika.services.gemini.get_file", new=get
        ), patch("aika.services.gemini.generate_content", new=generate), patch(
            "aika.services.gemini.delete_file", new=delete
        ):
            result = await analyze_media(VIDEO_STAGED, "analyze", settings=_settings())

        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["video"])
        generate.assert_not_awaited()
        delete.assert_awaited_once()

    async def test_poll_exhaustion_falls_back_and_deletes(self) -> None:
        upload, get, generate, delete = self._patches(get_states=["PROCESSING"] * 10)
        with patch("aika.services.gemini.upload_file", new=upload), patch(
            "aika.services.gemini.get_file", new=get
        ), patch("aika.services.gemini.generate_content", new=generate), patch(
            "aika.services.gemini.delete_file", new=delete
        ):
            result = await analyze_media(VIDEO_STAGED, "analyze", settings=_settings(gemini_poll_max_attempts=2))

        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["video"])
        self.assertEqual(get.await_count, 2)
        delete.assert_awaited_once()

    async def test_timeout_during_generation_still_deletes(self) -> None:
        async def _slow(*args, **kwargs):
            await asyncio.sleep(5)
            return "too late"

        upload, get, _, delete = self._patches(get_states=["ACTIVE"])
        with patch("aika.services.gemini.upload_file", new=upload), patch(
            "aika.services.gemini.get_file", new=get
        ), patch("aika.services.gemini.generate_content", side_effect=_slow), patch(
            "aika.services.gemini.delete_file", new=delete
        ):
            result = await analyze_media(VIDEO_STAGED, "analyze", settings=_settings(analysis_timeout_s=0.1))

        self.assertEqual(result, DEFAULT_FALLBACK_MESSAGES["video"])
        delete.assert_awaited_once()

    async def test_delete_failure_does_not_mask_result(self) -> None:
        upload, get, generate, _ = self._patches(get_states=["ACTIVE"])
        delete = AsyncMock(side_effect=RuntimeError("delete failed"))
        with patch("aika.services.gemini.upload_file", new=upload), patch(
            "aika.services.gemini.get_file", new=get
        ), patch("aika.services.gemini.generate_content", new=generate), patch(
            "aika.services.gemini.delete_file", new=delete
        ):
            result = await analyze_media(VIDEO_STAGED, "analyze", settings=_settings())

        self.assertEqual(result, "フォーム良好")
        delete.assert_awaited_once()


class TestMediaPayload(unittest.TestCase):
    def test_rejects_ambiguous_sources(self) -> None:
        with self.assertRaises(ValueError):
            MediaPayload(kind=MediaKind.VIDEO, data=b"x", file_path="/tmp/x.mp4")
        with self.assertRaises(ValueError):
            MediaPayload(kind=MediaKind.IMAGE)
        with self.assertRaises(ValueError):
            MediaPayload(kind=MediaKind.TEXT, data=b"x")


class TestGeminiHelpers(unittest.TestCase):
    def test_video_mime_type(self) -> None:
        self.assertEqual(gemini.video_mime_type("clip.MOV"), "video/quicktime")
        self.assertEqual(gemini.video_mime_type(".webm"), "video/webm")
        self.assertEqual(gemini.video_mime_type("clip.unknown"), "video/mp4")

    def test_response_text(self) -> None:
        self.assertEqual(gemini.response_text(SimpleNamespace(text="  ab  ")), "ab")
        with self.assertRaises(gemini.GeminiError):
            gemini.response_text(SimpleNamespace(text=None, prompt_feedback="blocked"))
        with self.assertRaises(gemini.GeminiError):
            gemini.response_text(SimpleNamespace(text="   "))

    def test_file_state_accepts_enum_and_string(self) -> None:
        self.assertEqual(gemini.file_state(SimpleNamespace(state=types.FileState.ACTIVE)), "ACTIVE")
        self.assertEqual(gemini.file_state(SimpleNamespace(state="processing")), "PROCESSING")
        self.assertEqual(gemini.file_state(SimpleNamespace(state=None)), "")


class TestGeminiCalls(unittest.IsolatedAsyncioTestCase):
    async def test_generate_content_sends_inline_media_then_prompt(self) -> None:
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(return_value=SimpleNamespace(text=" 良いフォーム "))

        text = await gemini.generate_content(
            client, model="gemini-2.0-flash", prompt="analyze", inline_data=b"jpeg", mime_type="image/jpeg"
        )

        self.assertEqual(text, "良いフォーム")
        kwargs = client.aio.models.generate_content.await_args.kwargs
        self.assertEqual(kwargs["model"], "gemini-2.0-flash")
        parts = kwargs["contents"][0].parts
        self.assertEqual(parts[0].inline_data.mime_type, "image/jpeg")
        self.assertEqual(parts[0].inline_data.data, b"jpeg")
        self.assertEqual(parts[1].text, "analyze")

    async def test_wait_until_active_polls_files_api(self) -> None:
        client = MagicMock()
        client.aio.files.get = AsyncMock(
            side_effect=[
                SimpleNamespace(name="files/v1", state="PROCESSING"),
                SimpleNamespace(name="files/v1", state="ACTIVE", uri="https://files/v1"),
            ]
        )

        ready = await gemini.wait_until_active(
            client,
            file_obj=SimpleNamespace(name="files/v1", state="PROCESSING"),
            poll_interval_s=0.0,
            max_attempts=5,
        )

        self.assertEqual(ready.uri, "https://files/v1")
        self.assertEqual(client.aio.files.get.await_count, 2)
        self.assertEqual(client.aio.files.get.await_args.kwargs, {"name": "files/v1"})
