from __future__ import annotations

from fastapi import APIRouter

from app.api.v1 import videos, workflows

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(videos.router)
api_router.include_router(workflows.router)
