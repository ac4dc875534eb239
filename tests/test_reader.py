"""
Unit tests for log discovery and line decoding.
"""

import os

import pytest

from token_cost_report.core.errors import FatalConfigError
from token_cost_report.ingest.reader import decode_line, find_log_files, read_log_lines


class TestFindLogFiles:
    """Test directory scanning."""

    def test_finds_nested_jsonl_files(self, tmp_path):
        (tmp_path / "proj-a").mkdir()
        (tmp_path / "proj-b" / "sub").mkdir(parents=True)
        (tmp_path / "proj-a" / "1.jsonl").write_text("", encoding="utf-8")
        (tmp_path / "proj-b" / "sub" / "2.jsonl").write_text("", encoding="utf-8")
        (tmp_path / "proj-b" / "notes.txt").write_text("", encoding="utf-8")

        files = find_log_files(tmp_path)

        assert files == [tmp_path / "proj-a" / "1.jsonl", tmp_path / "proj-b" / "sub" / "2.jsonl"]

    def test_empty_directory(self, tmp_path):
        assert find_log_files(tmp_path) == []

    def test_missing_root_is_fatal(self, tmp_path):
        with pytest.raises(FatalConfigError, match="not found") as exc_info:
            find_log_files(tmp_path / "missing")
        assert exc_info.value.path == str(tmp_path / "missing")

    def test_file_root_is_fatal(self, tmp_path):
        root = tmp_path / "file.jsonl"
        root.write_text("", encoding="utf-8")
        with pytest.raises(FatalConfigError, match="not a directory"):
            find_log_files(root)

    @pytest.mark.skipif(os.name == "nt" or (hasattr(os, "geteuid") and os.geteuid() == 0),
                        reason="permission bits are not enforced")
    def test_unreadable_root_is_fatal(self, tmp_path):
        root = tmp_path / "locked"
        root.mkdir()
        root.chmod(0)
        try:
            with pytest.raises(FatalConfigError, match="not readable"):
                find_log_files(root)
        finally:
            root.chmod(0o755)


class TestReadLogLines:
    """Test line iteration."""

    def test_skips_blank_lines_and_keeps_numbers(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text('{"a": 1}\n\n   \n{"b": 2}\n', encoding="utf-8")
        assert list(read_log_lines(path)) == [(1, '{"a": 1}'), (4, '{"b": 2}')]

    def test_invalid_utf8_is_replaced(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_bytes(b'\xff\xfe garbage\n{"ok": true}\n')
        lines = list(read_log_lines(path))
        assert len(lines) == 2
        assert lines[1] == (2, '{"ok": true}')


class TestDecodeLine:
    """Test JSON decoding of one line."""

    def test_object(self):
        assert decode_line('{"timestamp": "x"}') == {"timestamp": "x"}

    def test_malformed(self):
        assert decode_line("{not json") is None

    def test_non_object(self):
        assert decode_line("[1, 2]") is None
        assert decode_line("42") is None
