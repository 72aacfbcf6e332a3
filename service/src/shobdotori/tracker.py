from __future__ import annotations

import logging
import random
from typing import Any

from shobdotori.errors import InvalidInputError
from shobdotori.models import (
    DialectProgress,
    DialectSummary,
    ProgressReport,
    ReconcileReport,
    RecordingEntry,
    Sentence,
    StorageRef,
    sanitize_dialect,
)
from shobdotori.progress_store import ProgressStore
from shobdotori.selector import DEFAULT_POLICY, build_selector

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


def normalize_dialect_code(raw_code: str | None) -> str:
    code = sanitize_dialect(raw_code or "")
    if not code:
        raise InvalidInputError("dialect code is required")
    return code


def _validate_sentence_id(sentence_id: Any) -> int:
    if isinstance(sentence_id, bool) or not isinstance(sentence_id, int):
        raise InvalidInputError(f"sentence id must be an integer, got {sentence_id!r}")
    if sentence_id < 1:
        raise InvalidInputError(f"sentence id must be >= 1, got {sentence_id}")
    return sentence_id


class DialectTracker:
    """Operations over per-dialect recording progress.

    Selection never reserves a sentence: two sessions may be served the same
    one, and only ``commit_recording`` decides which of them wins.
    """

    def __init__(
        self,
        store: ProgressStore,
        *,
        policy: str = DEFAULT_POLICY,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._select = build_selector(policy, rng=rng)

    @property
    def policy(self) -> str:
        return self._policy

    @property
    def store(self) -> ProgressStore:
        return self._store

    def init_dialect(self, code: str, name: str, label: str | None = None) -> DialectProgress:
        normalized = normalize_dialect_code(code)
        cleaned_name = (name or "").strip()
        if not cleaned_name:
            raise InvalidInputError("dialect name is required")
        cleaned_label = (label or "").strip() or cleaned_name
        return self._store.init_dialect(normalized, cleaned_name, cleaned_label)

    def list_dialects(self) -> list[DialectSummary]:
        return self._store.list_dialect_summaries()

    def get_dialect(self, code: str) -> DialectProgress:
        return self._store.get_dialect(normalize_dialect_code(code))

    def get_progress(self, code: str) -> ProgressReport:
        progress = self.get_dialect(code)
        return ProgressReport(
            recorded=progress.recorded,
            total=progress.total,
            percentage=progress.percentage,
            status=progress.status,
            last_recorded_at=progress.last_recorded_at,
            remaining=progress.remaining,
        )

    def select_next(self, code: str) -> Sentence | None:
        progress = self.get_dialect(code)
        sentence_id = self._select(progress.unrecorded_ids)
        if sentence_id is None:
            logger.debug("select_next_complete dialect=%s total=%s", progress.code, progress.total)
            return None
        return self._store.get_sentence(sentence_id)

    def get_sentence(self, sentence_id: int) -> Sentence:
        return self._store.get_sentence(_validate_sentence_id(sentence_id))

    def is_sentence_recorded(self, code: str, sentence_id: int) -> bool:
        return self._store.is_sentence_recorded(
            normalize_dialect_code(code),
            _validate_sentence_id(sentence_id),
        )

    def commit_recording(
        self,
        code: str,
        sentence_id: int,
        storage_ref: StorageRef,
        *,
        expected_index: int | None = None,
    ) -> DialectProgress:
        if not storage_ref.storage_id or not storage_ref.filename:
            raise InvalidInputError("storage reference must carry an id and a filename")
        return self._store.commit_recording(
            normalize_dialect_code(code),
            _validate_sentence_id(sentence_id),
            storage_ref,
            expected_index=expected_index,
        )

    def relocate_recording(self, code: str, sentence_id: int, storage_ref: StorageRef) -> RecordingEntry:
        if not storage_ref.storage_id or not storage_ref.filename:
            raise InvalidInputError("storage reference must carry an id and a filename")
        return self._store.relocate_recording(
            normalize_dialect_code(code),
            _validate_sentence_id(sentence_id),
            storage_ref,
        )

    def reset_dialect(self, code: str) -> DialectProgress:
        return self._store.reset_dialect(normalize_dialect_code(code))

    def reconcile(self, code: str | None = None) -> list[ReconcileReport]:
        normalized = normalize_dialect_code(code) if code is not None else None
        return self._store.reconcile(normalized)

    def list_recordings(
        self,
        code: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[RecordingEntry], int]:
        normalized = normalize_dialect_code(code)
        if page < 1:
            raise InvalidInputError("page must be >= 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        # Raises NotFoundError for unknown dialects instead of returning an empty page.
        self._store.get_dialect(normalized)
        return self._store.list_recordings(normalized, offset=(page - 1) * limit, limit=limit)

    def get_recording(self, code: str, sentence_id: int) -> RecordingEntry:
        return self._store.get_recording(normalize_dialect_code(code), _validate_sentence_id(sentence_id))

    def all_recordings(self, code: str) -> list[RecordingEntry]:
        entries, _ = self._store.list_recordings(normalize_dialect_code(code))
        return entries

    def recent_recordings(self, code: str, limit: int = 10) -> list[RecordingEntry]:
        entries, _ = self._store.list_recordings(normalize_dialect_code(code), limit=limit)
        return entries

    def get_stats(self) -> dict[str, Any]:
        return self._store.get_stats()
