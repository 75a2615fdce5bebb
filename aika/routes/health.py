from __future__ import annotations

import os

from fastapi import APIRouter, Depends

from aika.deps import Services, get_services

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in (
        "RENDER_GIT_COMMIT",
        "RAILWAY_GIT_COMMIT_SHA",
        "GITHUB_SHA",
        "COMMIT_SHA",
        "GIT_SHA",
    ):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz(services: Services = Depends(get_services)):
    return {
        "ok": True,
        "service": "aika-backend",
        "commit_sha": _get_commit_sha(),
        "environment": services.settings.environment,
        "store_backend": services.store.backend_kind,
    }
