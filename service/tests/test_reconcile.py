from __future__ import annotations

import sqlite3

import pytest

from conftest import assert_progress_invariants
from shobdotori.errors import NotFoundError
from shobdotori.models import StorageRef
from shobdotori.progress_store import ProgressStore

FULL_IDS = {1, 2, 3, 4, 5}


def _ref(name: str) -> StorageRef:
    return StorageRef(storage_id=f"id-{name}", filename=f"{name}.wav")


def _execute(store: ProgressStore, sql: str, params: tuple = ()) -> None:
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def test_clean_store_needs_no_repair(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 1, _ref("one"))

    reports = seeded_store.reconcile()

    assert len(reports) == 1
    assert not reports[0].changed


def test_replays_ledger_entry_missing_from_progress(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 2, _ref("two"))
    # Ledger row survived but the progress update did not.
    _execute(
        seeded_store,
        "UPDATE dialect_sentences SET recording_id = NULL WHERE dialect_code = 'dhaka' AND sentence_id = 2",
    )
    assert seeded_store.get_dialect("dhaka").recorded_ids == set()

    (report,) = seeded_store.reconcile("dhaka")

    assert report.replayed == [2]
    assert report.cleared == []
    progress = seeded_store.get_dialect("dhaka")
    assert progress.recorded_ids == {2}
    assert progress.recording_refs == [seeded_store.get_recording("dhaka", 2).id]
    assert_progress_invariants(progress, FULL_IDS)


def test_clears_progress_pointing_at_missing_recording(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 1, _ref("one"))
    seeded_store.commit_recording("dhaka", 4, _ref("four"))
    _execute(seeded_store, "DELETE FROM recordings WHERE dialect_code = 'dhaka' AND sentence_id = 4")

    (report,) = seeded_store.reconcile("dhaka")

    assert report.cleared == [4]
    progress = seeded_store.get_dialect("dhaka")
    assert progress.recorded_ids == {1}
    assert 4 in progress.unrecorded_ids
    assert_progress_invariants(progress, FULL_IDS)


def test_fixes_stale_completed_status(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    for sentence_id in sorted(FULL_IDS):
        seeded_store.commit_recording("dhaka", sentence_id, _ref(str(sentence_id)))
    _execute(seeded_store, "UPDATE dialects SET status = 'in_progress' WHERE code = 'dhaka'")

    (report,) = seeded_store.reconcile("dhaka")

    assert report.status_fixed
    assert seeded_store.get_dialect("dhaka").status == "completed"


def test_reconcile_is_idempotent(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.init_dialect("sylhet", "Sylhet", "North-East")
    seeded_store.commit_recording("dhaka", 3, _ref("three"))
    _execute(seeded_store, "UPDATE dialect_sentences SET recording_id = NULL WHERE dialect_code = 'dhaka'")

    first = seeded_store.reconcile()
    snapshot = seeded_store.get_dialect("dhaka")
    second = seeded_store.reconcile()

    assert [report.changed for report in first] == [True, False]
    assert not any(report.changed for report in second)
    assert seeded_store.get_dialect("dhaka") == snapshot


def test_reconcile_unknown_dialect_raises(seeded_store: ProgressStore) -> None:
    with pytest.raises(NotFoundError):
        seeded_store.reconcile("nowhere")
