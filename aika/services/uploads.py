from __future__ import annotations

import hashlib
import hmac
from pathlib import Path
import re
import time
from typing import Optional
from urllib.parse import urlencode

from pydantic import BaseModel

_UNSAFE_CHARS_RE = re.compile(r"[^\w.\-]+", re.UNICODE)
_CATEGORY_RE = re.compile(r"^[A-Za-z0-9_-]{1,40}$")


class PresignedUpload(BaseModel):
    upload_url: str
    file_key: str
    expires_at: int


def safe_file_name(file_name: str) -> str:
    base = Path(file_name.replace("\\", "/")).name.strip()
    cleaned = _UNSAFE_CHARS_RE.sub("_", base).strip("._")
    return cleaned[:120] or "upload"


def build_file_key(category: Optional[str], file_name: str, *, now_ms: Optional[int] = None) -> str:
    cat = (category or "uploads").strip()
    if not _CATEGORY_RE.match(cat):
        raise ValueError("invalid category")
    ts = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{cat}/{ts}_{safe_file_name(file_name)}"


def sign(key: str, expires_at: int, secret: str) -> str:
    msg = f"{key}\n{expires_at}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def presign_upload(
    *,
    base_url: str,
    category: Optional[str],
    file_name: str,
    secret: str,
    ttl_s: int,
    now: Optional[float] = None,
) -> PresignedUpload:
    now_s = time.time() if now is None else now
    key = build_file_key(category, file_name, now_ms=int(now_s * 1000))
    expires_at = int(now_s) + ttl_s
    query = urlencode({"key": key, "expires": expires_at, "sig": sign(key, expires_at, secret)})
    return PresignedUpload(
        upload_url=f"{base_url.rstrip('/')}/v1/mock-upload?{query}",
        file_key=key,
        expires_at=expires_at,
    )


def verify_upload(key: str, expires_at: int, signature: str, *, secret: str, now: Optional[float] = None) -> bool:
    now_s = time.time() if now is None else now
    if expires_at < now_s:
        return False
    return hmac.compare_digest(sign(key, expires_at, secret), signature)


def resolve_key_path(upload_dir: str, key: str) -> Path:
    """Map a file key to a path under ``upload_dir``; rejects keys escaping it."""
    root = Path(upload_dir).expanduser().resolve()
    target = (root / key).resolve()
    if root != target and root not in target.parents:
        raise ValueError("file key escapes upload directory")
    return target
