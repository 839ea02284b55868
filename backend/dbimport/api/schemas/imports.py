"""Batch trigger and run status payloads."""

from typing import Any

from pydantic import BaseModel, Field


class BatchRequest(BaseModel):
    batch_index: int = Field(..., ge=0)


class BatchMessage(BaseModel):
    type: str = Field(..., description="info|error")
    row: int
    message: str


class BatchResponse(BaseModel):
    batch_index: int
    processed: int
    inserted: int
    updated: int
    skipped: int
    failed: int
    completed: bool
    messages: list[BatchMessage]
    totals: dict[str, Any] | None = Field(
        None, description="Cumulative run statistics, present once completed"
    )
    log_id: int | None = None


class StartResponse(BaseModel):
    start_time: float
    total_records: int


class RunStatus(BaseModel):
    is_running: bool
    progress: float = Field(..., description="Percent of total_records processed")
    total_records: int
    stats: dict[str, Any]


class AsyncRunResponse(BaseModel):
    task_id: str
    status: str = "queued"
