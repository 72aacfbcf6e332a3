from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from shobdotori.errors import AlreadyRecordedError, InvalidInputError, NotFoundError
from shobdotori.models import (
    DialectProgress,
    DialectSummary,
    ReconcileReport,
    RecordingEntry,
    Sentence,
    StorageRef,
    completion_percentage,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_SECONDS = 30.0


class ProgressStore:
    """SQLite persistence for the sentence catalog, dialect progress and the recording ledger.

    Every mutating method runs in a single ``BEGIN IMMEDIATE`` transaction, so
    concurrent writers (threads or separate server processes sharing the file)
    are serialised by the database lock rather than by anything in-process.
    A dialect's sentence set lives in ``dialect_sentences``; a row is recorded
    exactly when its ``recording_id`` is set.
    """

    def __init__(self, db_path: Path, busy_timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._reading() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sentences (
                    sentence_id INTEGER PRIMARY KEY CHECK(sentence_id >= 1),
                    text TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS dialects (
                    code TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    label TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'in_progress'
                        CHECK(status IN ('in_progress', 'completed')),
                    last_recorded_at TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS dialect_sentences (
                    dialect_code TEXT NOT NULL REFERENCES dialects(code) ON DELETE CASCADE,
                    sentence_id INTEGER NOT NULL,
                    recording_id INTEGER,
                    PRIMARY KEY (dialect_code, sentence_id)
                );

                CREATE TABLE IF NOT EXISTS recordings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dialect_code TEXT NOT NULL REFERENCES dialects(code) ON DELETE CASCADE,
                    sentence_id INTEGER NOT NULL,
                    sentence_text TEXT NOT NULL,
                    sequence_index INTEGER NOT NULL CHECK(sequence_index >= 1),
                    filename TEXT NOT NULL,
                    storage_id TEXT NOT NULL,
                    storage_link TEXT,
                    recorded_at TEXT NOT NULL,
                    UNIQUE(dialect_code, sentence_id),
                    UNIQUE(dialect_code, sequence_index)
                );

                CREATE INDEX IF NOT EXISTS idx_recordings_recorded_at ON recordings(recorded_at);
                CREATE INDEX IF NOT EXISTS idx_recordings_storage_id ON recordings(storage_id);
                """
            )

    # Sentence catalog

    def seed_sentences(self, sentences: Iterable[Sentence]) -> int:
        rows: dict[int, str] = {}
        for sentence in sentences:
            if sentence.id < 1:
                raise InvalidInputError(f"sentence id must be >= 1, got {sentence.id}")
            if sentence.id in rows:
                raise InvalidInputError(f"duplicate sentence id {sentence.id}")
            text = sentence.text.strip()
            if not text:
                raise InvalidInputError(f"sentence {sentence.id} has empty text")
            rows[sentence.id] = text

        with self._transaction() as conn:
            dialect_count = conn.execute("SELECT COUNT(*) AS n FROM dialects").fetchone()["n"]
            if dialect_count:
                raise InvalidInputError("sentence catalog is fixed while dialects exist; purge first")
            conn.execute("DELETE FROM sentences")
            conn.executemany(
                "INSERT INTO sentences(sentence_id, text) VALUES (?, ?)",
                sorted(rows.items()),
            )
        logger.info("sentences_seeded count=%s", len(rows))
        return len(rows)

    def list_sentence_ids(self) -> list[int]:
        with self._reading() as conn:
            rows = conn.execute("SELECT sentence_id FROM sentences ORDER BY sentence_id").fetchall()
        return [int(row["sentence_id"]) for row in rows]

    def get_sentence(self, sentence_id: int) -> Sentence:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT sentence_id, text FROM sentences WHERE sentence_id = ?",
                (int(sentence_id),),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"sentence {sentence_id} not found")
        return Sentence(id=int(row["sentence_id"]), text=str(row["text"]))

    # Dialect progress

    def _load_dialect(self, conn: sqlite3.Connection, code: str) -> DialectProgress:
        row = conn.execute(
            "SELECT code, name, label, status, last_recorded_at FROM dialects WHERE code = ?",
            (code,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"dialect {code} not found")

        sentence_rows = conn.execute(
            """
            SELECT ds.sentence_id AS sentence_id, ds.recording_id AS recording_id
            FROM dialect_sentences ds
            LEFT JOIN recordings r ON r.id = ds.recording_id
            WHERE ds.dialect_code = ?
            ORDER BY r.sequence_index IS NULL, r.sequence_index, ds.recording_id, ds.sentence_id
            """,
            (code,),
        ).fetchall()

        recorded_ids: set[int] = set()
        unrecorded_ids: set[int] = set()
        recording_refs: list[int] = []
        for sentence_row in sentence_rows:
            sentence_id = int(sentence_row["sentence_id"])
            if sentence_row["recording_id"] is None:
                unrecorded_ids.add(sentence_id)
            else:
                recorded_ids.add(sentence_id)
                recording_refs.append(int(sentence_row["recording_id"]))

        return DialectProgress(
            code=str(row["code"]),
            name=str(row["name"]),
            label=str(row["label"]),
            status=row["status"],
            recorded_ids=recorded_ids,
            unrecorded_ids=unrecorded_ids,
            recording_refs=recording_refs,
            last_recorded_at=parse_timestamp(row["last_recorded_at"]),
        )

    def _refresh_status(self, conn: sqlite3.Connection, code: str) -> None:
        conn.execute(
            """
            UPDATE dialects
            SET status = CASE
                WHEN EXISTS (
                    SELECT 1 FROM dialect_sentences
                    WHERE dialect_code = :code AND recording_id IS NULL
                ) THEN 'in_progress'
                ELSE 'completed'
            END
            WHERE code = :code
            """,
            {"code": code},
        )

    def _fill_sentence_rows(self, conn: sqlite3.Connection, code: str) -> None:
        conn.execute(
            """
            INSERT INTO dialect_sentences(dialect_code, sentence_id, recording_id)
            SELECT ?, sentence_id, NULL FROM sentences
            """,
            (code,),
        )

    def get_dialect(self, code: str) -> DialectProgress:
        with self._reading() as conn:
            return self._load_dialect(conn, code)

    def has_dialect(self, code: str) -> bool:
        with self._reading() as conn:
            row = conn.execute("SELECT 1 FROM dialects WHERE code = ?", (code,)).fetchone()
        return row is not None

    def init_dialect(self, code: str, name: str, label: str) -> DialectProgress:
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO dialects(code, name, label, status) VALUES (?, ?, ?, 'in_progress')",
                (code, name, label),
            )
            created = cursor.rowcount == 1
            if created:
                self._fill_sentence_rows(conn, code)
                self._refresh_status(conn, code)
            progress = self._load_dialect(conn, code)

        if created:
            logger.info("dialect_initialized dialect=%s total=%s", code, progress.total)
        return progress

    def list_dialect_summaries(self) -> list[DialectSummary]:
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT
                    d.code AS code,
                    d.name AS name,
                    d.label AS label,
                    d.status AS status,
                    d.last_recorded_at AS last_recorded_at,
                    COUNT(ds.sentence_id) AS total,
                    COUNT(ds.recording_id) AS recorded
                FROM dialects d
                LEFT JOIN dialect_sentences ds ON ds.dialect_code = d.code
                GROUP BY d.code
                ORDER BY d.code
                """
            ).fetchall()

        return [
            DialectSummary(
                code=str(row["code"]),
                name=str(row["name"]),
                label=str(row["label"]),
                status=row["status"],
                recorded=int(row["recorded"]),
                total=int(row["total"]),
                percentage=completion_percentage(int(row["recorded"]), int(row["total"])),
                last_recorded_at=parse_timestamp(row["last_recorded_at"]),
            )
            for row in rows
        ]

    def commit_recording(
        self,
        code: str,
        sentence_id: int,
        storage_ref: StorageRef,
        *,
        expected_index: int | None = None,
        recorded_at: datetime | None = None,
    ) -> DialectProgress:
        timestamp = format_timestamp(recorded_at or utc_now())

        with self._transaction() as conn:
            dialect_row = conn.execute("SELECT code FROM dialects WHERE code = ?", (code,)).fetchone()
            if dialect_row is None:
                raise NotFoundError(f"dialect {code} not found")

            member = conn.execute(
                "SELECT recording_id FROM dialect_sentences WHERE dialect_code = ? AND sentence_id = ?",
                (code, sentence_id),
            ).fetchone()
            if member is None:
                raise InvalidInputError(f"sentence {sentence_id} is not part of dialect {code}")
            if member["recording_id"] is not None:
                raise AlreadyRecordedError(code, sentence_id)

            sentence_row = conn.execute(
                "SELECT text FROM sentences WHERE sentence_id = ?",
                (sentence_id,),
            ).fetchone()
            if sentence_row is None:
                raise NotFoundError(f"sentence {sentence_id} not found")

            sequence_index = int(
                conn.execute(
                    "SELECT COALESCE(MAX(sequence_index), 0) + 1 AS n FROM recordings WHERE dialect_code = ?",
                    (code,),
                ).fetchone()["n"]
            )
            if expected_index is not None and expected_index != sequence_index:
                logger.warning(
                    "sequence_index_mismatch dialect=%s sentence=%s expected=%s derived=%s",
                    code,
                    sentence_id,
                    expected_index,
                    sequence_index,
                )

            try:
                cursor = conn.execute(
                    """
                    INSERT INTO recordings(
                        dialect_code, sentence_id, sentence_text, sequence_index,
                        filename, storage_id, storage_link, recorded_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        code,
                        sentence_id,
                        str(sentence_row["text"]),
                        sequence_index,
                        storage_ref.filename,
                        storage_ref.storage_id,
                        storage_ref.link,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyRecordedError(code, sentence_id) from exc
            recording_id = int(cursor.lastrowid)

            moved = conn.execute(
                """
                UPDATE dialect_sentences
                SET recording_id = ?
                WHERE dialect_code = ? AND sentence_id = ? AND recording_id IS NULL
                """,
                (recording_id, code, sentence_id),
            )
            if moved.rowcount != 1:
                raise AlreadyRecordedError(code, sentence_id)

            conn.execute(
                "UPDATE dialects SET last_recorded_at = ? WHERE code = ?",
                (timestamp, code),
            )
            self._refresh_status(conn, code)
            progress = self._load_dialect(conn, code)

        logger.info(
            "recording_committed dialect=%s sentence=%s index=%s progress=%s/%s",
            code,
            sentence_id,
            sequence_index,
            progress.recorded,
            progress.total,
        )
        return progress

    def relocate_recording(self, code: str, sentence_id: int, storage_ref: StorageRef) -> RecordingEntry:
        """Point an existing ledger entry at the file's new storage location."""
        with self._transaction() as conn:
            updated = conn.execute(
                """
                UPDATE recordings
                SET filename = ?, storage_id = ?, storage_link = ?
                WHERE dialect_code = ? AND sentence_id = ?
                """,
                (storage_ref.filename, storage_ref.storage_id, storage_ref.link, code, sentence_id),
            )
            if updated.rowcount != 1:
                raise NotFoundError(f"no recording of sentence {sentence_id} for dialect {code}")
            row = conn.execute(
                "SELECT * FROM recordings WHERE dialect_code = ? AND sentence_id = ?",
                (code, sentence_id),
            ).fetchone()

        logger.info(
            "recording_relocated dialect=%s sentence=%s filename=%s",
            code,
            sentence_id,
            storage_ref.filename,
        )
        return self._entry_from_row(row)

    def is_sentence_recorded(self, code: str, sentence_id: int) -> bool:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT recording_id FROM dialect_sentences WHERE dialect_code = ? AND sentence_id = ?",
                (code, sentence_id),
            ).fetchone()
        return row is not None and row["recording_id"] is not None

    def reset_dialect(self, code: str) -> DialectProgress:
        with self._transaction() as conn:
            dialect_row = conn.execute("SELECT code FROM dialects WHERE code = ?", (code,)).fetchone()
            if dialect_row is None:
                raise NotFoundError(f"dialect {code} not found")

            deleted = conn.execute("DELETE FROM recordings WHERE dialect_code = ?", (code,)).rowcount
            conn.execute("DELETE FROM dialect_sentences WHERE dialect_code = ?", (code,))
            self._fill_sentence_rows(conn, code)
            conn.execute("UPDATE dialects SET last_recorded_at = NULL WHERE code = ?", (code,))
            self._refresh_status(conn, code)
            progress = self._load_dialect(conn, code)

        logger.info("dialect_reset dialect=%s deleted_recordings=%s total=%s", code, deleted, progress.total)
        return progress

    # Recording ledger

    def _entry_from_row(self, row: sqlite3.Row) -> RecordingEntry:
        return RecordingEntry(
            id=int(row["id"]),
            dialect_code=str(row["dialect_code"]),
            sentence_id=int(row["sentence_id"]),
            sentence_text=str(row["sentence_text"]),
            sequence_index=int(row["sequence_index"]),
            filename=str(row["filename"]),
            storage_id=str(row["storage_id"]),
            storage_link=row["storage_link"],
            recorded_at=parse_timestamp(row["recorded_at"]),  # type: ignore[arg-type]
        )

    def list_recordings(
        self,
        code: str,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[RecordingEntry], int]:
        with self._reading() as conn:
            total = int(
                conn.execute(
                    "SELECT COUNT(*) AS n FROM recordings WHERE dialect_code = ?",
                    (code,),
                ).fetchone()["n"]
            )
            rows = conn.execute(
                """
                SELECT id, dialect_code, sentence_id, sentence_text, sequence_index,
                       filename, storage_id, storage_link, recorded_at
                FROM recordings
                WHERE dialect_code = ?
                ORDER BY recorded_at DESC, sequence_index DESC
                LIMIT ? OFFSET ?
                """,
                (code, -1 if limit is None else max(0, int(limit)), max(0, int(offset))),
            ).fetchall()
        return [self._entry_from_row(row) for row in rows], total

    def get_recording(self, code: str, sentence_id: int) -> RecordingEntry:
        with self._reading() as conn:
            row = conn.execute(
                """
                SELECT id, dialect_code, sentence_id, sentence_text, sequence_index,
                       filename, storage_id, storage_link, recorded_at
                FROM recordings
                WHERE dialect_code = ? AND sentence_id = ?
                """,
                (code, sentence_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"no recording of sentence {sentence_id} for dialect {code}")
        return self._entry_from_row(row)

    def get_stats(self) -> dict[str, Any]:
        with self._reading() as conn:
            overall = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_recordings,
                    MIN(recorded_at) AS earliest_recording,
                    MAX(recorded_at) AS latest_recording
                FROM recordings
                """
            ).fetchone()
            by_dialect = conn.execute(
                """
                SELECT
                    r.dialect_code AS dialect_code,
                    d.name AS dialect_name,
                    COUNT(*) AS recording_count,
                    MAX(r.recorded_at) AS latest_recording
                FROM recordings r
                JOIN dialects d ON d.code = r.dialect_code
                GROUP BY r.dialect_code, d.name
                ORDER BY recording_count DESC, r.dialect_code
                """
            ).fetchall()
            max_possible = int(
                conn.execute("SELECT COUNT(*) AS n FROM dialect_sentences").fetchone()["n"]
            )
            status_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_dialects,
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed_dialects
                FROM dialects
                """
            ).fetchone()

        total_recordings = int(overall["total_recordings"]) if overall else 0
        total_dialects = int(status_row["total_dialects"]) if status_row else 0
        completed_dialects = int(status_row["completed_dialects"]) if status_row else 0
        return {
            "total_recordings": total_recordings,
            "earliest_recording": parse_timestamp(overall["earliest_recording"]) if overall else None,
            "latest_recording": parse_timestamp(overall["latest_recording"]) if overall else None,
            "total_dialects": total_dialects,
            "completed_dialects": completed_dialects,
            "in_progress_dialects": total_dialects - completed_dialects,
            "max_possible_recordings": max_possible,
            "overall_percentage": completion_percentage(total_recordings, max_possible),
            "by_dialect": [
                {
                    "dialect_code": str(row["dialect_code"]),
                    "dialect_name": str(row["dialect_name"]),
                    "recording_count": int(row["recording_count"]),
                    "latest_recording": parse_timestamp(row["latest_recording"]),
                }
                for row in by_dialect
            ],
        }

    def counts(self) -> dict[str, int]:
        with self._reading() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM sentences) AS sentences,
                    (SELECT COUNT(*) FROM dialects) AS dialects,
                    (SELECT COUNT(*) FROM recordings) AS recordings
                """
            ).fetchone()
        return {
            "sentences": int(row["sentences"]),
            "dialects": int(row["dialects"]),
            "recordings": int(row["recordings"]),
        }

    def purge_all(self) -> dict[str, int]:
        with self._transaction() as conn:
            recordings = conn.execute("DELETE FROM recordings").rowcount
            conn.execute("DELETE FROM dialect_sentences")
            dialects = conn.execute("DELETE FROM dialects").rowcount
            sentences = conn.execute("DELETE FROM sentences").rowcount
        logger.info(
            "store_purged recordings=%s dialects=%s sentences=%s",
            recordings,
            dialects,
            sentences,
        )
        return {"recordings": recordings, "dialects": dialects, "sentences": sentences}

    # Reconciliation

    def _reconcile_one(self, conn: sqlite3.Connection, code: str) -> ReconcileReport:
        report = ReconcileReport(dialect_code=code)

        pending = conn.execute(
            """
            SELECT r.id AS recording_id, r.sentence_id AS sentence_id
            FROM recordings r
            JOIN dialect_sentences ds
                ON ds.dialect_code = r.dialect_code
                AND ds.sentence_id = r.sentence_id
            WHERE r.dialect_code = ?
                AND (ds.recording_id IS NULL OR ds.recording_id != r.id)
            ORDER BY r.sequence_index
            """,
            (code,),
        ).fetchall()
        for row in pending:
            conn.execute(
                "UPDATE dialect_sentences SET recording_id = ? WHERE dialect_code = ? AND sentence_id = ?",
                (int(row["recording_id"]), code, int(row["sentence_id"])),
            )
            report.replayed.append(int(row["sentence_id"]))

        stray = conn.execute(
            """
            SELECT r.sentence_id AS sentence_id
            FROM recordings r
            LEFT JOIN dialect_sentences ds
                ON ds.dialect_code = r.dialect_code
                AND ds.sentence_id = r.sentence_id
            WHERE r.dialect_code = ? AND ds.sentence_id IS NULL
            """,
            (code,),
        ).fetchall()
        for row in stray:
            logger.warning(
                "reconcile_stray_recording dialect=%s sentence=%s",
                code,
                int(row["sentence_id"]),
            )

        dangling = conn.execute(
            """
            SELECT ds.sentence_id AS sentence_id
            FROM dialect_sentences ds
            LEFT JOIN recordings r ON r.id = ds.recording_id
            WHERE ds.dialect_code = ? AND ds.recording_id IS NOT NULL AND r.id IS NULL
            ORDER BY ds.sentence_id
            """,
            (code,),
        ).fetchall()
        for row in dangling:
            conn.execute(
                "UPDATE dialect_sentences SET recording_id = NULL WHERE dialect_code = ? AND sentence_id = ?",
                (code, int(row["sentence_id"])),
            )
            report.cleared.append(int(row["sentence_id"]))

        before = conn.execute("SELECT status FROM dialects WHERE code = ?", (code,)).fetchone()["status"]
        self._refresh_status(conn, code)
        after = conn.execute("SELECT status FROM dialects WHERE code = ?", (code,)).fetchone()["status"]
        report.status_fixed = before != after

        if report.replayed or report.cleared:
            latest = conn.execute(
                "SELECT MAX(recorded_at) AS latest FROM recordings WHERE dialect_code = ?",
                (code,),
            ).fetchone()["latest"]
            conn.execute("UPDATE dialects SET last_recorded_at = ? WHERE code = ?", (latest, code))
        return report

    def reconcile(self, code: str | None = None) -> list[ReconcileReport]:
        with self._reading() as conn:
            if code is None:
                codes = [str(row["code"]) for row in conn.execute("SELECT code FROM dialects ORDER BY code")]
            else:
                if conn.execute("SELECT 1 FROM dialects WHERE code = ?", (code,)).fetchone() is None:
                    raise NotFoundError(f"dialect {code} not found")
                codes = [code]

        reports: list[ReconcileReport] = []
        for dialect_code in codes:
            with self._transaction() as conn:
                report = self._reconcile_one(conn, dialect_code)
            if report.changed:
                logger.warning(
                    "reconcile_repaired dialect=%s replayed=%s cleared=%s status_fixed=%s",
                    dialect_code,
                    report.replayed,
                    report.cleared,
                    report.status_fixed,
                )
            reports.append(report)
        return reports
