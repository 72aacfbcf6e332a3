from __future__ import annotations

import logging
import math
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Union

from fastapi import FastAPI, File, Form, HTTPException, UploadFile

from shobdotori.config import Settings
from shobdotori.errors import (
    AlreadyRecordedError,
    InvalidInputError,
    NotFoundError,
    StorageError,
    TrackerError,
    TranscodeError,
)
from shobdotori.models import DialectProgress, RecordingEntry, StorageRef, utc_now
from shobdotori.progress_store import ProgressStore
from shobdotori.schemas import (
    DeleteDialectRequest,
    DeleteDialectResponse,
    DeleteDialectSummary,
    DialectDetailView,
    DialectProgressResponse,
    DialectStatsView,
    DialectsResponse,
    DialectView,
    FilesResponse,
    HealthResponse,
    NextIndexResponse,
    NextSentenceResponse,
    OverallProgressResponse,
    PaginationView,
    PingResponse,
    ProgressSummaryView,
    ProgressView,
    ReconcileReportView,
    ReconcileResponse,
    RecordingsResponse,
    RecordingView,
    SentenceView,
    StatsResponse,
    StoredFileView,
    UploadedRecordingView,
    UploadResponse,
)
from shobdotori.storage import build_storage, folder_name_for, generate_filename, pending_filename
from shobdotori.tracker import DialectTracker, normalize_dialect_code
from shobdotori.transcode import convert_to_wav

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "All sentences recorded for this dialect"
RECENT_RECORDINGS_LIMIT = 10


def _load_settings() -> Settings:
    overrides: dict[str, Any] = {}
    policy = os.getenv("SHOBDOTORI_SELECTION_POLICY")
    if policy in ("sequential", "random"):
        overrides["selection_policy"] = policy
    db_path = os.getenv("SHOBDOTORI_DB_PATH")
    if db_path:
        overrides["db_path"] = Path(db_path).expanduser()
    storage_dir = os.getenv("SHOBDOTORI_STORAGE_DIR")
    if storage_dir:
        overrides["local_storage_dir"] = Path(storage_dir).expanduser()
    max_file_size = os.getenv("MAX_FILE_SIZE")
    if max_file_size and max_file_size.isdigit() and int(max_file_size) > 0:
        overrides["max_upload_bytes"] = int(max_file_size)
    ffmpeg_binary = os.getenv("FFMPEG_BINARY")
    if ffmpeg_binary:
        overrides["ffmpeg_binary"] = ffmpeg_binary

    backend = os.getenv("SHOBDOTORI_STORAGE_BACKEND", "drive")
    try:
        return Settings(storage_backend=backend, **overrides)
    except ValueError:
        logger.warning("storage_backend_fallback requested=%s fallback=local", backend, exc_info=True)
        return Settings(storage_backend="local", **overrides)


settings = _load_settings()
progress_store = ProgressStore(settings.db_path)
tracker = DialectTracker(progress_store, policy=settings.selection_policy)
storage = build_storage(settings)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if settings.reconcile_on_startup:
        reports = tracker.reconcile()
        repaired = sum(1 for report in reports if report.changed)
        logger.info("startup_reconcile dialects=%s repaired=%s", len(reports), repaired)
    yield


def _http_error(exc: TrackerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AlreadyRecordedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _require_dialect(raw: str | None) -> str:
    if not raw or not raw.strip():
        raise HTTPException(status_code=400, detail="Dialect parameter is required")
    try:
        return normalize_dialect_code(raw)
    except InvalidInputError as exc:
        raise _http_error(exc) from exc


def _progress_view(progress: DialectProgress) -> ProgressView:
    return ProgressView(
        recorded=progress.recorded,
        total=progress.total,
        percentage=progress.percentage,
        status=progress.status,
        remaining=progress.remaining,
        last_recorded_at=progress.last_recorded_at,
    )


def _recording_view(entry: RecordingEntry) -> RecordingView:
    return RecordingView(
        id=entry.id,
        filename=entry.filename,
        sentence_id=entry.sentence_id,
        sentence_text=entry.sentence_text,
        recording_index=entry.sequence_index,
        storage_id=entry.storage_id,
        storage_link=entry.storage_link,
        recorded_at=entry.recorded_at,
    )


def _parse_int_field(raw: str, field: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"{field} must be an integer") from exc


def _discard_stored_file(ref: StorageRef) -> None:
    try:
        storage.delete(ref.storage_id)
    except StorageError:
        logger.warning("orphan_file_cleanup_failed storage_id=%s", ref.storage_id, exc_info=True)


app = FastAPI(lifespan=lifespan)


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/api/ping", response_model=PingResponse)
def ping() -> PingResponse:
    try:
        storage_status = storage.ping()
        status = "ok"
    except StorageError as exc:
        logger.warning("storage_ping_failed", exc_info=True)
        storage_status = {"accessible": False, "error": str(exc)}
        status = "degraded"
    return PingResponse(
        status=status,
        timestamp=utc_now(),
        database=tracker.store.counts(),
        storage=storage_status,
    )


@app.get("/api/dialects", response_model=DialectsResponse)
def list_dialects() -> DialectsResponse:
    return DialectsResponse(
        dialects=[
            DialectView(
                code=summary.code,
                name=summary.name,
                label=summary.label,
                status=summary.status,
                recorded=summary.recorded,
                total=summary.total,
                percentage=summary.percentage,
            )
            for summary in tracker.list_dialects()
        ]
    )


@app.get("/api/next-index", response_model=NextIndexResponse)
def next_index(dialect: str | None = None) -> NextIndexResponse:
    code = _require_dialect(dialect)
    try:
        progress = tracker.get_dialect(code)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return NextIndexResponse(
        dialect=progress.code,
        next_index=progress.next_index,
        recorded_sentences=progress.recorded,
        total_sentences=progress.total,
        completion_percentage=progress.percentage,
    )


@app.get("/api/next-sentence", response_model=NextSentenceResponse)
def next_sentence(dialect: str | None = None) -> NextSentenceResponse:
    code = _require_dialect(dialect)
    try:
        sentence = tracker.select_next(code)
        progress = tracker.get_dialect(code)
    except TrackerError as exc:
        raise _http_error(exc) from exc

    if sentence is None:
        return NextSentenceResponse(
            message=COMPLETED_MESSAGE,
            sentence=None,
            progress=_progress_view(progress),
        )
    return NextSentenceResponse(
        sentence=SentenceView(id=sentence.id, text=sentence.text),
        progress=_progress_view(progress),
    )


@app.post("/api/upload", response_model=UploadResponse)
def upload_recording(
    file: UploadFile | None = File(default=None),
    dialect: str | None = Form(default=None),
    sentence_id: str | None = Form(default=None),
    gender: str | None = Form(default=None),
    index: str | None = Form(default=None),
    sentence_text: str | None = Form(default=None),
) -> UploadResponse:
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if not dialect or not dialect.strip() or not sentence_id or not sentence_id.strip():
        raise HTTPException(status_code=400, detail="Dialect and sentence_id are required")
    cleaned_gender = (gender or "").strip().lower()
    if cleaned_gender not in settings.allowed_genders:
        raise HTTPException(
            status_code=400,
            detail=f"Gender is required and must be one of: {', '.join(settings.allowed_genders)}",
        )

    code = _require_dialect(dialect)
    numeric_sentence_id = _parse_int_field(sentence_id, "sentence_id")

    try:
        progress = tracker.get_dialect(code)
        sentence = tracker.get_sentence(numeric_sentence_id)
        if tracker.is_sentence_recorded(code, numeric_sentence_id):
            raise AlreadyRecordedError(code, numeric_sentence_id)
    except TrackerError as exc:
        raise _http_error(exc) from exc

    original_name = (file.filename or "").lower()
    suffix = Path(original_name).suffix
    if suffix not in settings.allowed_extensions:
        raise HTTPException(
            status_code=400,
            detail=f"File type not supported. Allowed: {', '.join(settings.allowed_extensions)}",
        )

    expected_index = progress.next_index
    if index is not None and index.strip():
        client_index = _parse_int_field(index, "index")
        if client_index != expected_index:
            logger.warning(
                "client_index_rejected dialect=%s sentence=%s client=%s expected=%s",
                code,
                numeric_sentence_id,
                client_index,
                expected_index,
            )
            raise HTTPException(
                status_code=422,
                detail=f"index {client_index} does not match next index {expected_index}",
            )
    if sentence_text is not None and sentence_text.strip() != sentence.text:
        logger.info("client_sentence_text_ignored dialect=%s sentence=%s", code, numeric_sentence_id)

    data = file.file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"file exceeds max size {settings.max_upload_bytes} bytes",
        )
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    # The sequence index is only known after the commit, so the file is staged
    # under a unique name first and renamed once the ledger entry exists.
    staged_name = pending_filename(code, cleaned_gender)
    try:
        audio = convert_to_wav(
            data,
            suffix,
            ffmpeg_binary=settings.ffmpeg_binary,
            timeout_seconds=settings.transcode_timeout_seconds,
        )
        stored = storage.upload(audio, staged_name, code)
    except (TranscodeError, StorageError) as exc:
        logger.warning("upload_pipeline_failed dialect=%s filename=%s", code, staged_name, exc_info=True)
        raise HTTPException(status_code=502, detail=f"Upload failed: {exc}") from exc

    try:
        updated = tracker.commit_recording(
            code,
            numeric_sentence_id,
            stored,
            expected_index=expected_index,
        )
        entry = tracker.get_recording(code, numeric_sentence_id)
    except TrackerError as exc:
        _discard_stored_file(stored)
        raise _http_error(exc) from exc

    final_name = generate_filename(code, entry.sequence_index, cleaned_gender)
    try:
        renamed = storage.rename(stored.storage_id, final_name)
    except StorageError:
        logger.warning(
            "recording_rename_failed dialect=%s storage_id=%s target=%s",
            code,
            stored.storage_id,
            final_name,
            exc_info=True,
        )
    else:
        stored = renamed
        try:
            entry = tracker.relocate_recording(code, numeric_sentence_id, renamed)
        except TrackerError:
            logger.error(
                "recording_relocate_failed dialect=%s sentence=%s storage_id=%s",
                code,
                numeric_sentence_id,
                renamed.storage_id,
                exc_info=True,
            )

    return UploadResponse(
        recording=UploadedRecordingView(
            id=entry.id,
            filename=entry.filename,
            dialect_code=code,
            sentence_id=entry.sentence_id,
            recording_index=entry.sequence_index,
        ),
        storage=StoredFileView(id=stored.storage_id, link=stored.link, size=stored.size),
        progress=_progress_view(updated),
    )


@app.get("/api/progress", response_model=Union[DialectProgressResponse, OverallProgressResponse])
def progress_overview(dialect: str | None = None) -> DialectProgressResponse | OverallProgressResponse:
    if dialect:
        code = _require_dialect(dialect)
        try:
            progress = tracker.get_dialect(code)
            recent = tracker.recent_recordings(code, limit=RECENT_RECORDINGS_LIMIT)
        except TrackerError as exc:
            raise _http_error(exc) from exc
        return DialectProgressResponse(
            dialect=DialectDetailView(
                code=progress.code,
                name=progress.name,
                label=progress.label,
                status=progress.status,
                total_sentences=progress.total,
                recorded_sentences=progress.recorded,
                completion_percentage=progress.percentage,
                last_recorded_at=progress.last_recorded_at,
                remaining_sentences=progress.remaining,
            ),
            recent_recordings=[_recording_view(entry) for entry in recent],
        )

    summaries = tracker.list_dialects()
    stats = tracker.get_stats()
    return OverallProgressResponse(
        summary=ProgressSummaryView(
            total_dialects=stats["total_dialects"],
            completed_dialects=stats["completed_dialects"],
            in_progress_dialects=stats["in_progress_dialects"],
            total_recordings=stats["total_recordings"],
            max_possible_recordings=stats["max_possible_recordings"],
            overall_progress=stats["overall_percentage"],
        ),
        dialects=[
            DialectView(
                code=summary.code,
                name=summary.name,
                label=summary.label,
                status=summary.status,
                recorded=summary.recorded,
                total=summary.total,
                percentage=summary.percentage,
            )
            for summary in summaries
        ],
    )


@app.get("/api/recordings", response_model=RecordingsResponse)
def list_recordings(dialect: str | None = None, page: int = 1, limit: int = 20) -> RecordingsResponse:
    code = _require_dialect(dialect)
    try:
        progress = tracker.get_dialect(code)
        entries, total = tracker.list_recordings(code, page=page, limit=limit)
    except TrackerError as exc:
        raise _http_error(exc) from exc

    return RecordingsResponse(
        dialect={"code": progress.code, "name": progress.name},
        recordings=[_recording_view(entry) for entry in entries],
        pagination=PaginationView(
            current=page,
            pages=math.ceil(total / limit),
            total=total,
            has_next=page * limit < total,
            has_prev=page > 1,
        ),
    )


@app.get("/api/stats", response_model=StatsResponse)
def stats() -> StatsResponse:
    summary = tracker.get_stats()
    return StatsResponse(
        total_recordings=summary["total_recordings"],
        earliest_recording=summary["earliest_recording"],
        latest_recording=summary["latest_recording"],
        by_dialect=[DialectStatsView(**item) for item in summary["by_dialect"]],
        max_possible=summary["max_possible_recordings"],
        completion_rate=summary["overall_percentage"],
    )


@app.get("/api/files", response_model=FilesResponse)
def list_files(dialect: str | None = None) -> FilesResponse:
    try:
        if dialect:
            code = _require_dialect(dialect)
            files = storage.list_files(code)
            return FilesResponse(
                dialect=code,
                folder=folder_name_for(code, settings.folder_names),
                files=files,
                total=len(files),
            )
        folders = storage.list_folders()
        return FilesResponse(folders=folders, total=len(folders))
    except StorageError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to list files: {exc}") from exc


@app.delete("/api/dialect", response_model=DeleteDialectResponse)
def delete_dialect(payload: DeleteDialectRequest) -> DeleteDialectResponse:
    if not payload.dialect_name.strip():
        raise HTTPException(status_code=400, detail="dialectName is required")
    code = _require_dialect(payload.dialect_name)

    try:
        tracker.get_dialect(code)
        entries = tracker.all_recordings(code)
    except TrackerError as exc:
        raise _http_error(exc) from exc

    deleted_files = 0
    errors: list[str] = []
    for entry in entries:
        try:
            storage.delete(entry.storage_id)
            deleted_files += 1
        except StorageError as exc:
            logger.warning(
                "storage_delete_failed dialect=%s filename=%s storage_id=%s",
                code,
                entry.filename,
                entry.storage_id,
                exc_info=True,
            )
            errors.append(f"Failed to delete {entry.filename}: {exc}")

    try:
        progress = tracker.reset_dialect(code)
    except TrackerError as exc:
        raise _http_error(exc) from exc

    folder_deleted = False
    try:
        folder_deleted = storage.delete_folder_if_empty(code)
    except StorageError as exc:
        logger.warning("storage_folder_delete_failed dialect=%s", code, exc_info=True)
        errors.append(f"Failed to delete folder: {exc}")

    return DeleteDialectResponse(
        message=f"Successfully deleted all data for dialect: {code}",
        summary=DeleteDialectSummary(
            dialect_code=code,
            dialect_name=folder_name_for(code, settings.folder_names),
            deleted_recordings=len(entries),
            deleted_files=deleted_files,
            failed_files=len(entries) - deleted_files,
            folder_deleted=folder_deleted,
            errors=errors,
        ),
        progress=_progress_view(progress),
    )


@app.post("/api/reconcile", response_model=ReconcileResponse)
def reconcile(dialect: str | None = None) -> ReconcileResponse:
    code = _require_dialect(dialect) if dialect else None
    try:
        reports = tracker.reconcile(code)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return ReconcileResponse(
        repaired=sum(1 for report in reports if report.changed),
        reports=[
            ReconcileReportView(
                dialect_code=report.dialect_code,
                replayed=report.replayed,
                cleared=report.cleared,
                status_fixed=report.status_fixed,
            )
            for report in reports
        ],
    )
