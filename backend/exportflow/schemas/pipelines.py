from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PipelineRunCreate(BaseModel):
    table_id: str = Field(..., min_length=1, max_length=255)
    window_start: datetime
    window_end: datetime

    @field_validator("window_start", "window_end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def window_is_ordered(self):
        if self.window_start >= self.window_end:
            raise ValueError("window_start must be before window_end")
        return self


class FailedFileRead(BaseModel):
    file_id: str
    location: str
    status: Optional[str] = None
    retry_count: int = 0
    error_message: Optional[str] = None


class PipelineResultRead(BaseModel):
    status: str
    files_processed: int
    failed_file_ids: list[str] = Field(default_factory=list)
    job_id: Optional[str] = None
    table_id: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    run_id: Optional[int] = None
    failed_files: list[FailedFileRead] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    elapsed_seconds: float = 0.0


class ExportJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    table_id: str
    window_start: datetime
    window_end: datetime
    status: str
    output_location: Optional[str] = None
    expected_file_count: Optional[int] = None
    failure_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    file_counts: dict[str, int] = Field(default_factory=dict)
    is_complete: bool = False


class FileRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    file_id: str
    job_id: str
    location: str
    status: str
    retry_count: int
    error_message: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    archived_at: Optional[datetime] = None


class FileRecordPage(BaseModel):
    items: list[FileRecordRead]
    next_cursor: Optional[int] = None


class PipelineRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trigger: str
    table_id: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    job_id: Optional[str] = None
    stage: str
    files_processed: int = 0
    failed_file_ids: Optional[list[str]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WindowPlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    table_id: str
    window_start: datetime
    window_end: datetime
    action: str
    reason: str
    job_id: Optional[str] = None


class NextWindowResponse(BaseModel):
    plan: Optional[WindowPlanRead] = None
    detail: Optional[str] = None
