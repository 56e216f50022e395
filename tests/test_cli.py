"""Tests for the command-line interface."""

from __future__ import annotations

import json
import zipfile

import pytest
from click.testing import CliRunner

from diskpack.cli import main

pytestmark = pytest.mark.usefixtures("isolate_settings")


@pytest.fixture
def runner():
    return CliRunner()


class TestScanCommand:
    def test_json_sorted_by_size(self, runner, sample_root):
        result = runner.invoke(main, ["scan", str(sample_root), "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data == [
            {"path": str(sample_root / "a"), "total_bytes": 500},
            {"path": str(sample_root / "b"), "total_bytes": 0},
        ]

    def test_table_output(self, runner, sample_root):
        result = runner.invoke(main, ["scan", str(sample_root)])

        assert result.exit_code == 0, result.output
        assert "Scan complete: found 2 folders" in result.output
        assert result.output.index(str(sample_root / "a")) < result.output.rindex(str(sample_root / "b"))

    def test_missing_root_exits_nonzero(self, runner, tmp_path):
        result = runner.invoke(main, ["scan", str(tmp_path / "missing"), "--json"])

        assert result.exit_code == 1
        assert '"status": "failed"' in result.output

    def test_follow_symlinks_from_settings(self, runner, sample_root):
        (sample_root / "c").symlink_to(sample_root / "a", target_is_directory=True)
        runner.invoke(main, ["config", "set", "scanner.follow_symlinks", "true"])

        result = runner.invoke(main, ["scan", str(sample_root), "--json"])

        assert result.exit_code == 0, result.output
        names = {entry["path"].rsplit("/", 1)[-1] for entry in json.loads(result.output)}
        assert names == {"a", "b", "c"}

    def test_invalid_workers_setting_falls_back(self, runner, sample_root):
        runner.invoke(main, ["config", "set", "scanner.max_workers", '"four"'])

        result = runner.invoke(main, ["scan", str(sample_root), "--json"])

        assert result.exit_code == 0, result.output
        assert '"total_bytes": 500' in result.output


class TestArchiveCommand:
    def test_creates_archive(self, runner, tmp_path):
        (tmp_path / "dir").mkdir()
        (tmp_path / "dir" / "inner.txt").write_bytes(b"2" * 20)
        (tmp_path / "file1.txt").write_bytes(b"1" * 10)
        dest = tmp_path / "out.zip"

        result = runner.invoke(
            main, ["archive", str(dest), str(tmp_path / "file1.txt"), str(tmp_path / "dir")]
        )

        assert result.exit_code == 0, result.output
        assert "[ 50%]" in result.output
        assert "[100%]" in result.output
        assert "Compression complete" in result.output
        with zipfile.ZipFile(dest) as zf:
            assert zf.namelist() == ["file1.txt", "dir/inner.txt"]

    def test_json_output(self, runner, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        dest = tmp_path / "out.zip"

        result = runner.invoke(main, ["archive", str(dest), str(tmp_path / "a.txt"), "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == "completed"
        assert data["destination"] == str(dest)
        assert [p["percent"] for p in data["progress"]] == [100]

    def test_existing_destination_needs_confirmation(self, runner, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        dest = tmp_path / "out.zip"
        dest.write_bytes(b"keep me")

        result = runner.invoke(main, ["archive", str(dest), str(tmp_path / "a.txt")], input="n\n")

        assert result.exit_code != 0
        assert dest.read_bytes() == b"keep me"

    def test_yes_overwrites(self, runner, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        dest = tmp_path / "out.zip"
        dest.write_bytes(b"stale")

        result = runner.invoke(main, ["archive", str(dest), str(tmp_path / "a.txt"), "--yes"])

        assert result.exit_code == 0, result.output
        assert zipfile.is_zipfile(dest)

    def test_missing_item_fails(self, runner, tmp_path):
        result = runner.invoke(main, ["archive", str(tmp_path / "out.zip"), str(tmp_path / "gone"), "--json"])

        assert result.exit_code == 1
        assert "gone" in json.loads(result.output.strip().splitlines()[-1])["error"]

    def test_invalid_level_setting_falls_back(self, runner, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        dest = tmp_path / "out.zip"
        runner.invoke(main, ["config", "set", "archiver.compress_level", "42"])

        result = runner.invoke(main, ["archive", "-y", str(dest), str(tmp_path / "a.txt")])

        assert result.exit_code == 0, result.output
        with zipfile.ZipFile(dest) as zf:
            assert zf.namelist() == ["a.txt"]

    def test_items_required(self, runner, tmp_path):
        result = runner.invoke(main, ["archive", str(tmp_path / "out.zip")])
        assert result.exit_code == 2


class TestConfigCommand:
    def test_set_and_get(self, runner):
        assert runner.invoke(main, ["config", "set", "archiver.compress_level", "6"]).exit_code == 0

        result = runner.invoke(main, ["config", "get", "archiver.compress_level"])
        assert result.output.strip() == "6"

    def test_show(self, runner, isolate_settings):
        result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 0
        assert str(isolate_settings) in result.output
        assert '"follow_symlinks": false' in result.output
