from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from upload_service.core.config import get_settings
from upload_service.schemas.uploads import UploadMessageOut, UploadOut
from upload_service.services.uploads import (
    UploadAborted,
    UploadFailure,
    UploadIngestor,
    UploadRejected,
    UploadSuccess,
)


logger = logging.getLogger(__name__)

router = APIRouter()


async def _request_body(request: Request) -> AsyncIterator[bytes]:
    try:
        async for chunk in request.stream():
            yield chunk
    except ClientDisconnect as e:
        raise UploadAborted("Client disconnected during upload") from e


@router.post(
    "",
    response_model=UploadOut,
    responses={400: {"model": UploadMessageOut}, 500: {"model": UploadMessageOut}},
)
async def upload_file(request: Request) -> JSONResponse:
    settings = get_settings()
    ingestor = UploadIngestor(settings.upload_dir, clear_before_upload=settings.upload_clear_before_write)

    result = await ingestor.ingest(request.headers.get("content-type"), _request_body(request))
    match result:
        case UploadSuccess(file_name=file_name):
            return JSONResponse(status_code=200, content=UploadOut(file_name=file_name).model_dump(by_alias=True))
        case UploadRejected(reason=reason):
            return JSONResponse(status_code=400, content=UploadMessageOut(message=reason).model_dump())
        case UploadFailure(error=error):
            logger.error("Upload request failed: %s", error)
            message = f"Internal server error: {error}" if error else "Internal server error"
            return JSONResponse(status_code=500, content=UploadMessageOut(message=message).model_dump())
