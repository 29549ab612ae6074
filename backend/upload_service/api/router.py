from __future__ import annotations

from fastapi import APIRouter

from upload_service.api.endpoints import uploads


api_router = APIRouter()

api_router.include_router(uploads.router, prefix="/upload", tags=["uploads"])
