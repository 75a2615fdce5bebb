from __future__ import annotations

import json
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from aika.services.titles import DEFAULT_TITLE_TIERS, TitleTier, parse_title_tiers

DEFAULT_FALLBACK_MESSAGES = {
    "image": "写真ありがとう！しっかり見たわよ🔥 今日のポイントはバランスを意識すること。次の一枚も楽しみにしてるわね！",
    "video": "動画ありがとう！フォーム、ちゃんとチェックしたわ💪 まずは基本の構えを丁寧に。次の練習も見せてね！",
    "text": "メッセージありがとう！ちゃんと受け取ったわよ✨ 今日もコツコツ積み重ねていきましょう！",
}

APOLOGY_MESSAGE = "ごめんね、うまくお返事できなかったみたい…💦\nもう一度送ってみてくれるかな？"
PERSONA_DEGRADED_NOTE = "（※通信状況により、AIKAからの特別メッセージが届きにくいみたい。でも内容はしっかり確認したわよ！🔥）"
ADMISSION_DENIED_MESSAGE = "本日の受付は終了しました"

# Only used when ENVIRONMENT is a development value and UPLOAD_SIGNING_SECRET is unset.
DEV_UPLOAD_SIGNING_SECRET = "aika-dev-upload-secret"


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    environment: str = "production"
    cors_origins: Optional[str] = None

    redis_url: Optional[str] = None
    redis_key_prefix: str = "aika"

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: Optional[str] = None
    analysis_timeout_s: float = 25.0
    gemini_poll_interval_s: float = 5.0
    gemini_poll_max_attempts: int = 30
    staged_cleanup_timeout_s: float = 5.0

    dify_api_key: Optional[str] = None
    dify_api_url: str = "https://api.dify.ai/v1"
    dify_timeout_s: float = 30.0

    line_channel_access_token: Optional[str] = None
    line_channel_secret: Optional[str] = None
    line_allow_unsigned_webhooks: bool = False

    log_webhook_url: Optional[str] = None

    daily_usage_cap: int = 1000
    admission_timezone: str = "Asia/Tokyo"

    title_tiers: list[TitleTier] = Field(default_factory=lambda: list(DEFAULT_TITLE_TIERS))
    note_points: int = 5
    conversation_window: int = 5
    conversation_retention: int = 0

    upload_dir: str = "/tmp/aika-uploads"
    upload_signing_secret: Optional[str] = None
    upload_url_ttl_s: int = 900
    media_download_timeout_s: float = 30.0

    fallback_messages: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FALLBACK_MESSAGES))

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() in {"dev", "development", "local"}


def load_settings() -> Settings:
    environment = (os.getenv("ENVIRONMENT") or "production").strip() or "production"
    is_dev = environment.lower() in {"dev", "development", "local"}

    raw_tiers = (os.getenv("TITLE_TIERS") or "").strip()
    tiers = parse_title_tiers(raw_tiers) if raw_tiers else list(DEFAULT_TITLE_TIERS)

    raw_fallbacks = (os.getenv("FALLBACK_MESSAGES") or "").strip()
    fallback_messages = parse_fallback_messages(raw_fallbacks) if raw_fallbacks else dict(DEFAULT_FALLBACK_MESSAGES)

    return Settings(
        environment=environment,
        cors_origins=_env_str("CORS_ORIGINS"),
        redis_url=_env_str("REDIS_URL"),
        redis_key_prefix=_env_str("REDIS_KEY_PREFIX") or "aika",
        gemini_api_key=_env_str("GEMINI_API_KEY") or _env_str("GOOGLE_API_KEY"),
        gemini_model=_env_str("GEMINI_MODEL") or "gemini-2.0-flash",
        gemini_base_url=_env_str("GEMINI_BASE_URL"),
        analysis_timeout_s=_env_float("ANALYSIS_TIMEOUT_S", 25.0),
        gemini_poll_interval_s=_env_float("GEMINI_POLL_INTERVAL_S", 5.0),
        gemini_poll_max_attempts=_env_int("GEMINI_POLL_MAX_ATTEMPTS", 30),
        staged_cleanup_timeout_s=_env_float("STAGED_CLEANUP_TIMEOUT_S", 5.0),
        dify_api_key=_env_str("DIFY_API_KEY"),
        dify_api_url=(_env_str("DIFY_API_URL") or "https://api.dify.ai/v1").rstrip("/"),
        dify_timeout_s=_env_float("DIFY_TIMEOUT_S", 30.0),
        line_channel_access_token=_env_str("LINE_CHANNEL_ACCESS_TOKEN"),
        line_channel_secret=_env_str("LINE_CHANNEL_SECRET"),
        line_allow_unsigned_webhooks=_env_bool("LINE_ALLOW_UNSIGNED_WEBHOOKS", is_dev),
        log_webhook_url=_env_str("LOG_WEBHOOK_URL"),
        daily_usage_cap=_env_int("DAILY_USAGE_CAP", 1000),
        admission_timezone=_env_str("ADMISSION_TIMEZONE") or "Asia/Tokyo",
        title_tiers=tiers,
        note_points=_env_int("NOTE_POINTS", 5),
        conversation_window=_env_int("CONVERSATION_WINDOW", 5),
        conversation_retention=_env_int("CONVERSATION_RETENTION", 0),
        upload_dir=_env_str("UPLOAD_DIR") or "/tmp/aika-uploads",
        upload_signing_secret=_env_str("UPLOAD_SIGNING_SECRET") or (DEV_UPLOAD_SIGNING_SECRET if is_dev else None),
        upload_url_ttl_s=_env_int("UPLOAD_URL_TTL_S", 900),
        media_download_timeout_s=_env_float("MEDIA_DOWNLOAD_TIMEOUT_S", 30.0),
        fallback_messages=fallback_messages,
    )


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name) or "").strip() or None


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y"}


def parse_fallback_messages(raw: str) -> dict[str, str]:
    """Parse a JSON object of per-kind fallback copy, merged over the defaults."""
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ValueError("FALLBACK_MESSAGES must be a JSON object") from exc
    if not isinstance(data, dict):
        raise ValueError("FALLBACK_MESSAGES must be a JSON object")

    messages = dict(DEFAULT_FALLBACK_MESSAGES)
    for kind, text in data.items():
        if kind not in DEFAULT_FALLBACK_MESSAGES:
            raise ValueError(f"unknown fallback kind: {kind!r}")
        if not isinstance(text, str) or not text.strip():
            raise ValueError(f"fallback message for {kind!r} must be a non-empty string")
        messages[kind] = text.strip()
    return messages
