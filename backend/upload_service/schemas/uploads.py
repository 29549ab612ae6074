from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UploadMessageOut(BaseModel):
    message: str


class UploadOut(UploadMessageOut):
    model_config = ConfigDict(populate_by_name=True)

    message: str = "File uploaded successfully"
    file_name: str = Field(..., alias="fileName", description="Stored file name under UPLOAD_DIR")
