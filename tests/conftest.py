"""Shared test fixtures."""

from __future__ import annotations

import pytest

from diskpack.settings import Settings


@pytest.fixture
def isolate_settings(tmp_path, monkeypatch):
    """Point the settings singleton at a temp file."""
    settings_file = tmp_path / "diskpack_config" / "settings.json"
    monkeypatch.setattr(Settings, "_instance", Settings(settings_file))
    return settings_file


@pytest.fixture
def sample_root(tmp_path):
    """A root with ``a`` (500 bytes spread over nested files) and an empty ``b``."""
    root = tmp_path / "root"
    (root / "a" / "nested").mkdir(parents=True)
    (root / "a" / "one.bin").write_bytes(b"x" * 200)
    (root / "a" / "nested" / "two.bin").write_bytes(b"y" * 300)
    (root / "b").mkdir()
    (root / "loose.txt").write_bytes(b"not a folder")
    return root

