from __future__ import annotations

import os
import tempfile
from pathlib import Path

os.environ["SHOBDOTORI_RUNTIME_DIR"] = tempfile.mkdtemp(prefix="shobdotori-tests-")
os.environ["SHOBDOTORI_STORAGE_BACKEND"] = "local"

import pytest
from fastapi.testclient import TestClient

from shobdotori.config import DEFAULT_FOLDER_NAMES
from shobdotori.main import app
from shobdotori.models import Sentence
from shobdotori.progress_store import ProgressStore
from shobdotori.storage import LocalStorage
from shobdotori.tracker import DialectTracker

SENTENCE_TEXTS = {
    1: "আমি ভাত খাই।",
    2: "তুমি কোথায় যাও?",
    3: "আজ আকাশ মেঘলা।",
    4: "নদীর পাড়ে একটি গ্রাম।",
    5: "বাজারে অনেক ভিড়।",
}


def seed_catalog(store: ProgressStore, count: int = 5) -> None:
    store.seed_sentences(
        Sentence(id=sentence_id, text=SENTENCE_TEXTS.get(sentence_id, f"sentence {sentence_id}"))
        for sentence_id in range(1, count + 1)
    )


@pytest.fixture
def store(tmp_path: Path) -> ProgressStore:
    return ProgressStore(tmp_path / "shobdotori.db")


@pytest.fixture
def seeded_store(store: ProgressStore) -> ProgressStore:
    seed_catalog(store)
    return store


@pytest.fixture
def tracker(seeded_store: ProgressStore) -> DialectTracker:
    return DialectTracker(seeded_store)


@pytest.fixture
def local_storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "recordings", DEFAULT_FOLDER_NAMES)


@pytest.fixture
def client(monkeypatch, tracker: DialectTracker, local_storage: LocalStorage) -> TestClient:
    monkeypatch.setattr("shobdotori.main.tracker", tracker)
    monkeypatch.setattr("shobdotori.main.storage", local_storage)
    return TestClient(app)


def assert_progress_invariants(progress, full_ids: set[int]) -> None:
    assert progress.recorded_ids.isdisjoint(progress.unrecorded_ids)
    assert progress.recorded_ids | progress.unrecorded_ids == full_ids
    assert (progress.status == "completed") == (not progress.unrecorded_ids)
    assert len(progress.recording_refs) == len(progress.recorded_ids)
    assert len(set(progress.recording_refs)) == len(progress.recording_refs)
