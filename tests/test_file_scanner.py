"""Tests for the file scanner and content hashing utilities."""

import tempfile
from pathlib import Path

from reef.utils.file_scanner import SKIP_DIRS, list_files
from reef.utils.hashing import compute_file_hash, hash_file, is_binary


def test_list_files_is_sorted_and_relative():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "SOUL.md").write_text("soul")
        (root / "docs").mkdir()
        (root / "docs" / "guide.md").write_text("guide")
        (root / "AGENTS.md").write_text("agents")

        assert list_files(root) == ["AGENTS.md", "SOUL.md", "docs/guide.md"]


def test_list_files_skips_excluded_dirs_and_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "SOUL.md").write_text("soul")
        (root / "node_modules").mkdir()
        (root / "node_modules" / "lib.js").write_text("pass")
        (root / ".git").mkdir()
        (root / ".git" / "HEAD").write_text("ref")
        (root / ".env").write_text("TOKEN=x")
        (root / ".DS_Store").write_bytes(b"\x00")

        assert list_files(root) == ["SOUL.md"]


def test_list_files_missing_dir():
    assert list_files(Path("/nonexistent/source/dir")) == []


def test_skip_dirs_contains_expected():
    assert ".git" in SKIP_DIRS
    assert "node_modules" in SKIP_DIRS
    assert "__pycache__" in SKIP_DIRS


def test_compute_file_hash_is_sha256_hex():
    assert compute_file_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_hash_file_matches_bytes():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "a.bin"
        path.write_bytes(b"\x00\x01data")
        assert hash_file(path) == compute_file_hash(b"\x00\x01data")


def test_is_binary_checks_first_8k():
    assert is_binary(b"abc\x00def")
    assert not is_binary(b"plain text")
    assert not is_binary(b"a" * 8192 + b"\x00")
