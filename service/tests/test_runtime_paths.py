from __future__ import annotations

from pathlib import Path

from shobdotori.runtime_paths import resolve_runtime_dir


def test_runtime_dir_prefers_explicit_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SHOBDOTORI_RUNTIME_DIR", str(tmp_path / "runtime"))
    monkeypatch.setenv("XDG_DATA_HOME", "/srv/data")

    assert resolve_runtime_dir() == (tmp_path / "runtime").resolve()


def test_runtime_dir_uses_xdg_data_home(monkeypatch) -> None:
    monkeypatch.delenv("SHOBDOTORI_RUNTIME_DIR", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", "/srv/data")

    assert resolve_runtime_dir() == Path("/srv/data") / "shobdotori"


def test_runtime_dir_falls_back_to_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("SHOBDOTORI_RUNTIME_DIR", raising=False)
    monkeypatch.delenv("XDG_DATA_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))

    assert resolve_runtime_dir() == tmp_path / ".local" / "share" / "shobdotori"
