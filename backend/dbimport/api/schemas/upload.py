"""Upload payloads."""

from pydantic import BaseModel, Field


class UploadResult(BaseModel):
    file_name: str
    extension: str
    size: int
    headers: list[str]
    total_records: int = Field(..., description="Data rows, header excluded")
    run_id: str


class SupportedFormats(BaseModel):
    extensions: list[str]
    max_upload_size: int
