from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

DialectStatus = Literal["in_progress", "completed"]

_DIALECT_CODE_RE = re.compile(r"[^a-z0-9_-]")


def sanitize_dialect(raw: str) -> str:
    return _DIALECT_CODE_RE.sub("", raw.strip().lower())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def completion_percentage(recorded: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(recorded / total * 100.0, 2)


@dataclass(frozen=True)
class Sentence:
    id: int
    text: str


@dataclass(frozen=True)
class StorageRef:
    """Handle returned by the storage collaborator for one stored file."""

    storage_id: str
    filename: str
    link: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class RecordingEntry:
    id: int
    dialect_code: str
    sentence_id: int
    sentence_text: str
    sequence_index: int
    filename: str
    storage_id: str
    storage_link: str | None
    recorded_at: datetime


@dataclass
class DialectProgress:
    code: str
    name: str
    label: str
    status: DialectStatus = "in_progress"
    recorded_ids: set[int] = field(default_factory=set)
    unrecorded_ids: set[int] = field(default_factory=set)
    recording_refs: list[int] = field(default_factory=list)
    last_recorded_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.recorded_ids) + len(self.unrecorded_ids)

    @property
    def recorded(self) -> int:
        return len(self.recorded_ids)

    @property
    def remaining(self) -> int:
        return len(self.unrecorded_ids)

    @property
    def percentage(self) -> float:
        return completion_percentage(self.recorded, self.total)

    @property
    def next_index(self) -> int:
        return self.recorded + 1


@dataclass(frozen=True)
class DialectSummary:
    code: str
    name: str
    label: str
    status: DialectStatus
    recorded: int
    total: int
    percentage: float
    last_recorded_at: datetime | None = None


@dataclass(frozen=True)
class ProgressReport:
    recorded: int
    total: int
    percentage: float
    status: DialectStatus
    last_recorded_at: datetime | None
    remaining: int


@dataclass
class ReconcileReport:
    dialect_code: str
    replayed: list[int] = field(default_factory=list)
    cleared: list[int] = field(default_factory=list)
    status_fixed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.replayed or self.cleared or self.status_fixed)
