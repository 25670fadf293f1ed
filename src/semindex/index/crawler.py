"""
Crawler - lazy, restartable directory walk.

Directories are listed on worker threads so the event loop keeps serving other
jobs. Symlinked directories are followed, but each canonical directory is
visited once per pass, which keeps symlink cycles from looping forever.
Unreadable entries are logged through ``handle_error`` and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Mapping, Optional, Set, Tuple

from semindex.config import AppConfig
from semindex.errors import ErrorAction, handle_error
from semindex.parsing.classifier import ContentClassifier, Strategy
from semindex.utils.files import sha256_bytes

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CrawledFile:
    """A file found by the crawler, hashed and classified."""

    path: Path
    content: bytes
    sha256: str
    mtime: float
    size: int
    strategy: Strategy
    is_known: bool


class Crawler:
    def __init__(
        self,
        classifier: ContentClassifier,
        config: AppConfig | None = None,
    ) -> None:
        self.classifier = classifier
        self.config = config or AppConfig()

    async def crawl(
        self,
        root: Path,
        known_hashes: Optional[Mapping[Path, str]] = None,
    ) -> AsyncIterator[CrawledFile]:
        """
        Yield every eligible file under ``root``.

        ``is_known`` is set when ``known_hashes`` already maps the path to the
        same content hash, meaning the file needs no re-extraction.
        """
        known_hashes = known_hashes or {}
        visited: Set[str] = set()
        pending: List[Path] = [root]

        while pending:
            directory = pending.pop()
            try:
                canonical = await asyncio.to_thread(os.path.realpath, directory)
            except OSError as exc:
                handle_error(exc, directory, "crawl")
                continue
            if canonical in visited:
                logger.debug("Skipping already visited directory %s", directory)
                continue
            visited.add(canonical)

            subdirs, files = await asyncio.to_thread(self._list_directory, directory)
            # Reverse so the stack pops subdirectories in sorted order.
            pending.extend(reversed(subdirs))

            for path, strategy in files:
                crawled = await asyncio.to_thread(self._read_file, path, strategy, known_hashes)
                if crawled is not None:
                    yield crawled

    def _list_directory(self, directory: Path) -> Tuple[List[Path], List[Tuple[Path, Strategy]]]:
        subdirs: List[Path] = []
        files: List[Tuple[Path, Strategy]] = []
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            handle_error(exc, directory, "scan_directory")
            return subdirs, files

        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir():
                    if entry.name not in self.config.skip_dirs:
                        subdirs.append(Path(entry.path))
                elif entry.is_file():
                    strategy = self.classifier.classify(Path(entry.name))
                    if strategy is not None:
                        files.append((Path(entry.path), strategy))
                elif entry.is_symlink():
                    handle_error(FileNotFoundError(entry.path), Path(entry.path), "scan_entry")
            except OSError as exc:
                handle_error(exc, Path(entry.path), "scan_entry")
        return subdirs, files

    def _read_file(
        self,
        path: Path,
        strategy: Strategy,
        known_hashes: Mapping[Path, str],
    ) -> CrawledFile | None:
        try:
            stat = path.stat()
            if stat.st_size > self.config.max_file_bytes:
                logger.info("Skipping %s: %d bytes exceeds limit", path, stat.st_size)
                return None
            content = path.read_bytes()
            content.decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            if handle_error(exc, path, "read_file") is ErrorAction.SKIP:
                return None
            raise

        sha256 = sha256_bytes(content)
        return CrawledFile(
            path=path,
            content=content,
            sha256=sha256,
            mtime=stat.st_mtime,
            size=stat.st_size,
            strategy=strategy,
            is_known=known_hashes.get(path) == sha256,
        )
