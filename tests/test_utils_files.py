"""Tests for file and digest helpers."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from semindex.utils.files import canonical_path, prefix_bounds, sha256_bytes, sha256_text


def test_sha256_helpers_agree() -> None:
    assert sha256_bytes(b"hello") == hashlib.sha256(b"hello").hexdigest()
    assert sha256_text("hello") == sha256_bytes(b"hello")


def test_canonical_path_resolves_symlinks(tmp_path: Path) -> None:
    target = tmp_path / "real"
    target.mkdir()
    link = tmp_path / "link"
    link.symlink_to(target)

    assert canonical_path(link) == target.resolve()
    assert canonical_path(str(link / ".." / "real")) == target.resolve()


def test_canonical_path_is_absolute(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert canonical_path("sub").is_absolute()


class TestPrefixBounds:
    def in_range(self, root: str, path: str) -> bool:
        low, high = prefix_bounds(Path(root))
        return low <= path < high

    def test_descendants_in_range(self) -> None:
        assert self.in_range("/src/proj", "/src/proj/a.rs")
        assert self.in_range("/src/proj", "/src/proj/deep/nested/b.md")

    def test_root_itself_and_siblings_excluded(self) -> None:
        assert not self.in_range("/src/proj", "/src/proj")
        assert not self.in_range("/src/proj", "/src/proj2/a.rs")
        assert not self.in_range("/src/proj", "/src/proj-old/a.rs")
        assert not self.in_range("/src/proj", "/src/pro/a.rs")

    def test_trailing_separator_ignored(self) -> None:
        assert prefix_bounds(Path("/src/proj")) == prefix_bounds(Path("/src/proj" + os.sep))
