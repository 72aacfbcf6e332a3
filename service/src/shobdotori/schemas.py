from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

DialectStatus = Literal["in_progress", "completed"]


class HealthResponse(BaseModel):
    status: str = "ok"


class SentenceView(BaseModel):
    id: int
    text: str


class ProgressView(BaseModel):
    recorded: int
    total: int
    percentage: float
    status: DialectStatus
    remaining: int
    last_recorded_at: datetime | None = None


class DialectView(BaseModel):
    code: str
    name: str
    label: str
    status: DialectStatus
    recorded: int
    total: int
    percentage: float


class DialectsResponse(BaseModel):
    success: bool = True
    dialects: list[DialectView]


class NextIndexResponse(BaseModel):
    success: bool = True
    dialect: str
    next_index: int
    recorded_sentences: int
    total_sentences: int
    completion_percentage: float


class NextSentenceResponse(BaseModel):
    success: bool = True
    message: str | None = None
    sentence: SentenceView | None = None
    progress: ProgressView


class UploadedRecordingView(BaseModel):
    id: int
    filename: str
    dialect_code: str
    sentence_id: int
    recording_index: int


class StoredFileView(BaseModel):
    id: str
    link: str | None = None
    size: int | None = None


class UploadResponse(BaseModel):
    success: bool = True
    message: str = "Recording uploaded and saved successfully"
    recording: UploadedRecordingView
    storage: StoredFileView
    progress: ProgressView


class RecordingView(BaseModel):
    id: int
    filename: str
    sentence_id: int
    sentence_text: str
    recording_index: int
    storage_id: str
    storage_link: str | None = None
    recorded_at: datetime


class DialectDetailView(BaseModel):
    code: str
    name: str
    label: str
    status: DialectStatus
    total_sentences: int
    recorded_sentences: int
    completion_percentage: float
    last_recorded_at: datetime | None = None
    remaining_sentences: int


class DialectProgressResponse(BaseModel):
    success: bool = True
    dialect: DialectDetailView
    recent_recordings: list[RecordingView]


class ProgressSummaryView(BaseModel):
    total_dialects: int
    completed_dialects: int
    in_progress_dialects: int
    total_recordings: int
    max_possible_recordings: int
    overall_progress: float


class OverallProgressResponse(BaseModel):
    success: bool = True
    summary: ProgressSummaryView
    dialects: list[DialectView]


class PaginationView(BaseModel):
    current: int
    pages: int
    total: int
    has_next: bool
    has_prev: bool


class RecordingsResponse(BaseModel):
    success: bool = True
    dialect: dict[str, str]
    recordings: list[RecordingView]
    pagination: PaginationView


class DialectStatsView(BaseModel):
    dialect_code: str
    dialect_name: str
    recording_count: int
    latest_recording: datetime | None = None


class StatsResponse(BaseModel):
    success: bool = True
    total_recordings: int
    earliest_recording: datetime | None = None
    latest_recording: datetime | None = None
    by_dialect: list[DialectStatsView]
    max_possible: int
    completion_rate: float


class FilesResponse(BaseModel):
    success: bool = True
    dialect: str | None = None
    folder: str | None = None
    files: list[dict[str, Any]] = Field(default_factory=list)
    folders: list[dict[str, Any]] = Field(default_factory=list)
    total: int


class DeleteDialectRequest(BaseModel):
    dialect_name: str = Field(alias="dialectName")


class DeleteDialectSummary(BaseModel):
    dialect_code: str
    dialect_name: str
    deleted_recordings: int
    deleted_files: int
    failed_files: int
    folder_deleted: bool = False
    errors: list[str] = Field(default_factory=list)


class DeleteDialectResponse(BaseModel):
    success: bool = True
    message: str
    summary: DeleteDialectSummary
    progress: ProgressView


class ReconcileReportView(BaseModel):
    dialect_code: str
    replayed: list[int]
    cleared: list[int]
    status_fixed: bool


class ReconcileResponse(BaseModel):
    success: bool = True
    repaired: int
    reports: list[ReconcileReportView]


class PingResponse(BaseModel):
    status: str
    timestamp: datetime
    database: dict[str, int]
    storage: dict[str, Any]
