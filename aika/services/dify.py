from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from aika.settings import Settings

logger = logging.getLogger("aika.dify")

DEFAULT_QUERY = "解析結果に基づき返答してください"


async def send_to_dify(
    inputs: Mapping[str, Any],
    user_id: str,
    query: str = DEFAULT_QUERY,
    *,
    api_key: str,
    base_url: str,
    timeout_s: float,
) -> dict[str, Any]:
    url = f"{base_url.rstrip('/')}/chat-messages"
    payload = {
        "inputs": dict(inputs),
        "query": query,
        "response_mode": "blocking",
        "user": user_id,
        "conversation_id": "",
    }

    async with httpx.AsyncClient(timeout=timeout_s) as client:
        res = await client.post(url, headers={"Authorization": f"Bearer {api_key}"}, json=payload)

    try:
        data = res.json()
    except Exception:
        data = {"raw": res.text}

    if res.status_code >= 400:
        if res.status_code in {400, 404}:
            logger.error("dify_model_or_connection_error status=%s body=%s", res.status_code, res.text[:500])
        raise httpx.HTTPStatusError("Dify returned error", request=res.request, response=res)

    return data if isinstance(data, dict) else {"data": data}


def _answer_from(data: Mapping[str, Any]) -> str:
    for key in ("answer", "message"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValueError("Dify response had no answer")


async def rewrite_in_persona(
    inputs: Mapping[str, Any],
    query: str,
    user_id: str,
    *,
    settings: Settings,
    fallback: str,
) -> str:
    """Turn analysis text into AIKA's voice; returns ``fallback`` on any failure."""
    if not settings.dify_api_key:
        logger.warning("dify_not_configured; returning fallback")
        return f"（Dify連携未設定）\n{fallback}"

    try:
        data = await send_to_dify(
            inputs,
            user_id,
            query,
            api_key=settings.dify_api_key,
            base_url=settings.dify_api_url,
            timeout_s=settings.dify_timeout_s,
        )
        return _answer_from(data)
    except Exception as exc:
        logger.warning("dify_rewrite_failed user=%s err=%r; using fallback", user_id, exc)
        return fallback
