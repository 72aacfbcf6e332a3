from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from conftest import SENTENCE_TEXTS, assert_progress_invariants, seed_catalog
from shobdotori.errors import AlreadyRecordedError, InvalidInputError, NotFoundError
from shobdotori.models import Sentence, StorageRef
from shobdotori.progress_store import ProgressStore

FULL_IDS = {1, 2, 3, 4, 5}


def _ref(name: str) -> StorageRef:
    return StorageRef(storage_id=f"drive-{name}", filename=f"{name}.wav", link=f"https://example.test/{name}")


def test_seed_sentences_rejects_duplicates_and_empty_text(store: ProgressStore) -> None:
    with pytest.raises(InvalidInputError, match="duplicate"):
        store.seed_sentences([Sentence(1, "a"), Sentence(1, "b")])
    with pytest.raises(InvalidInputError, match="empty text"):
        store.seed_sentences([Sentence(1, "   ")])
    with pytest.raises(InvalidInputError, match=">= 1"):
        store.seed_sentences([Sentence(0, "zero")])

    assert store.list_sentence_ids() == []


def test_catalog_is_locked_once_dialects_exist(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")

    with pytest.raises(InvalidInputError, match="purge first"):
        seed_catalog(seeded_store, count=3)

    assert seeded_store.list_sentence_ids() == [1, 2, 3, 4, 5]


def test_get_sentence_returns_text_or_raises(seeded_store: ProgressStore) -> None:
    sentence = seeded_store.get_sentence(2)
    assert sentence.text == SENTENCE_TEXTS[2]

    with pytest.raises(NotFoundError):
        seeded_store.get_sentence(99)


def test_init_dialect_starts_with_every_sentence_unrecorded(seeded_store: ProgressStore) -> None:
    progress = seeded_store.init_dialect("dhaka", "Dhaka", "Central")

    assert progress.unrecorded_ids == FULL_IDS
    assert progress.recorded_ids == set()
    assert progress.recording_refs == []
    assert progress.status == "in_progress"
    assert progress.last_recorded_at is None
    assert_progress_invariants(progress, FULL_IDS)


def test_init_dialect_is_idempotent(seeded_store: ProgressStore) -> None:
    first = seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 1, _ref("one"))

    second = seeded_store.init_dialect("dhaka", "Renamed", "Other")

    assert second.name == "Dhaka"
    assert second.label == "Central"
    assert second.recorded_ids == {1}
    assert first.total == second.total
    assert seeded_store.counts()["dialects"] == 1


def test_dialect_over_empty_catalog_is_completed(store: ProgressStore) -> None:
    progress = store.init_dialect("sylhet", "Sylhet", "North-East")

    assert progress.total == 0
    assert progress.status == "completed"
    assert progress.percentage == 0.0


def test_commit_moves_sentence_and_appends_ledger_entry(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")

    progress = seeded_store.commit_recording("dhaka", 3, _ref("three"))

    assert progress.recorded_ids == {3}
    assert progress.unrecorded_ids == {1, 2, 4, 5}
    assert progress.status == "in_progress"
    assert progress.last_recorded_at is not None
    assert len(progress.recording_refs) == 1
    assert_progress_invariants(progress, FULL_IDS)

    entry = seeded_store.get_recording("dhaka", 3)
    assert entry.id == progress.recording_refs[0]
    assert entry.sequence_index == 1
    assert entry.sentence_text == SENTENCE_TEXTS[3]
    assert entry.storage_id == "drive-three"
    assert entry.storage_link == "https://example.test/three"


def test_commit_rejects_second_recording_of_same_sentence(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 2, _ref("first"))

    with pytest.raises(AlreadyRecordedError):
        seeded_store.commit_recording("dhaka", 2, _ref("second"))

    progress = seeded_store.get_dialect("dhaka")
    assert progress.recorded_ids == {2}
    assert len(progress.recording_refs) == 1
    entries, total = seeded_store.list_recordings("dhaka")
    assert total == 1
    assert entries[0].storage_id == "drive-first"


def test_commit_validates_dialect_and_sentence(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")

    with pytest.raises(NotFoundError):
        seeded_store.commit_recording("khulna", 1, _ref("x"))
    with pytest.raises(InvalidInputError, match="not part of dialect"):
        seeded_store.commit_recording("dhaka", 42, _ref("x"))

    assert seeded_store.counts()["recordings"] == 0


def test_same_sentence_can_be_recorded_once_per_dialect(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.init_dialect("sylhet", "Sylhet", "North-East")

    seeded_store.commit_recording("dhaka", 1, _ref("dhaka-1"))
    seeded_store.commit_recording("sylhet", 1, _ref("sylhet-1"))

    assert seeded_store.get_dialect("dhaka").recorded_ids == {1}
    assert seeded_store.get_dialect("sylhet").recorded_ids == {1}


def test_sequence_index_is_server_derived(seeded_store: ProgressStore, caplog) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 5, _ref("a"), expected_index=1)

    with caplog.at_level("WARNING", logger="shobdotori.progress_store"):
        seeded_store.commit_recording("dhaka", 4, _ref("b"), expected_index=7)

    assert seeded_store.get_recording("dhaka", 4).sequence_index == 2
    assert "sequence_index_mismatch" in caplog.text


def test_recording_refs_follow_recording_order(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    for sentence_id in (4, 1, 3):
        seeded_store.commit_recording("dhaka", sentence_id, _ref(f"s{sentence_id}"))

    progress = seeded_store.get_dialect("dhaka")
    expected = [seeded_store.get_recording("dhaka", sid).id for sid in (4, 1, 3)]
    assert progress.recording_refs == expected


def test_completing_every_sentence_marks_dialect_completed(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    for sentence_id in sorted(FULL_IDS):
        progress = seeded_store.commit_recording("dhaka", sentence_id, _ref(f"s{sentence_id}"))
        assert_progress_invariants(progress, FULL_IDS)

    assert progress.status == "completed"
    assert progress.unrecorded_ids == set()
    assert progress.percentage == 100.0


def test_ledger_keeps_sentence_text_snapshot(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 1, _ref("one"))

    with sqlite3.connect(seeded_store.db_path) as conn:
        conn.execute("UPDATE sentences SET text = 'corrected' WHERE sentence_id = 1")

    assert seeded_store.get_sentence(1).text == "corrected"
    assert seeded_store.get_recording("dhaka", 1).sentence_text == SENTENCE_TEXTS[1]


def test_reset_restores_initial_state(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.init_dialect("sylhet", "Sylhet", "North-East")
    seeded_store.commit_recording("dhaka", 1, _ref("d1"))
    seeded_store.commit_recording("dhaka", 2, _ref("d2"))
    seeded_store.commit_recording("sylhet", 1, _ref("s1"))

    progress = seeded_store.reset_dialect("dhaka")

    assert progress.recorded == 0
    assert progress.total == 5
    assert progress.status == "in_progress"
    assert progress.last_recorded_at is None
    assert progress.recording_refs == []
    assert seeded_store.list_recordings("dhaka") == ([], 0)
    assert seeded_store.get_dialect("sylhet").recorded_ids == {1}

    # Sequence numbering restarts after a wipe.
    seeded_store.commit_recording("dhaka", 5, _ref("again"))
    assert seeded_store.get_recording("dhaka", 5).sequence_index == 1


def test_reset_unknown_dialect_raises(seeded_store: ProgressStore) -> None:
    with pytest.raises(NotFoundError):
        seeded_store.reset_dialect("nowhere")


def test_list_recordings_is_newest_first_and_paginated(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    for sentence_id in (1, 2, 3):
        seeded_store.commit_recording("dhaka", sentence_id, _ref(f"s{sentence_id}"))

    first_page, total = seeded_store.list_recordings("dhaka", offset=0, limit=2)
    second_page, _ = seeded_store.list_recordings("dhaka", offset=2, limit=2)

    assert total == 3
    assert [entry.sequence_index for entry in first_page] == [3, 2]
    assert [entry.sequence_index for entry in second_page] == [1]


def test_stats_and_summaries(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.init_dialect("barisal", "Barisal", "South")
    seeded_store.commit_recording("dhaka", 1, _ref("d1"))
    seeded_store.commit_recording("dhaka", 2, _ref("d2"))

    summaries = seeded_store.list_dialect_summaries()
    assert [summary.code for summary in summaries] == ["barisal", "dhaka"]
    assert summaries[1].recorded == 2
    assert summaries[1].total == 5
    assert summaries[1].percentage == 40.0

    stats = seeded_store.get_stats()
    assert stats["total_recordings"] == 2
    assert stats["max_possible_recordings"] == 10
    assert stats["overall_percentage"] == 20.0
    assert stats["total_dialects"] == 2
    assert stats["completed_dialects"] == 0
    assert stats["by_dialect"][0]["dialect_code"] == "dhaka"
    assert stats["by_dialect"][0]["recording_count"] == 2


def test_purge_all_reports_counts(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 1, _ref("d1"))

    deleted = seeded_store.purge_all()

    assert deleted == {"recordings": 1, "dialects": 1, "sentences": 5}
    assert seeded_store.counts() == {"sentences": 0, "dialects": 0, "recordings": 0}


def test_store_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "progress.db"
    first = ProgressStore(db_path)
    seed_catalog(first)
    first.init_dialect("dhaka", "Dhaka", "Central")
    first.commit_recording("dhaka", 1, _ref("d1"))

    reopened = ProgressStore(db_path)

    assert reopened.get_dialect("dhaka").recorded_ids == {1}


def test_relocate_recording_updates_storage_location(seeded_store: ProgressStore) -> None:
    seeded_store.init_dialect("dhaka", "Dhaka", "Central")
    seeded_store.commit_recording("dhaka", 2, _ref("pending"))

    entry = seeded_store.relocate_recording(
        "dhaka",
        2,
        StorageRef(storage_id="Dhaka/male_dhaka_1.wav", filename="male_dhaka_1.wav", link="file:///x"),
    )

    assert entry.filename == "male_dhaka_1.wav"
    assert entry.storage_id == "Dhaka/male_dhaka_1.wav"
    assert entry.sequence_index == 1
    assert seeded_store.get_recording("dhaka", 2) == entry

    with pytest.raises(NotFoundError):
        seeded_store.relocate_recording("dhaka", 3, _ref("missing"))
