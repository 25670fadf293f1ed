"""Directory indexing pipeline: crawl → extract → embed → store."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Set

from semindex.embedding.pipeline import EmbeddingPipeline, EmbedOutcome
from semindex.errors import JobError
from semindex.index.crawler import CrawledFile, Crawler
from semindex.index.jobs import DirectoryJob
from semindex.index.storage import SQLiteVectorStore
from semindex.models import ChunkDraft, EmbeddedChunk, FileRecord
from semindex.parsing.extractor import extract, render_document
from semindex.utils.files import sha256_text

LOGGER = logging.getLogger(__name__)


def chunk_id(model: str, path: Path, start_byte: int, end_byte: int) -> str:
    """Stable chunk identity; independent of content so upserts are idempotent."""
    key = f"{model}\0{path}\0{start_byte}\0{end_byte}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def build_drafts(crawled: CrawledFile, model: str) -> List[ChunkDraft]:
    """Extract ``crawled`` into chunk drafts carrying ids and content hashes."""
    drafts = []
    for span in extract(crawled.path, crawled.content, crawled.strategy):
        document = render_document(crawled.path, span, crawled.strategy)
        drafts.append(
            ChunkDraft(
                id=chunk_id(model, crawled.path, span.start_byte, span.end_byte),
                path=crawled.path,
                start_byte=span.start_byte,
                end_byte=span.end_byte,
                text=span.text,
                document=document,
                sha256=sha256_text(document),
            )
        )
    return drafts


@dataclass(slots=True)
class _FileProgress:
    record: FileRecord
    remaining: int
    failed: bool = False


@dataclass(slots=True)
class IndexStats:
    files_seen: int = 0
    files_unchanged: int = 0
    files_extracted: int = 0
    chunks_reused: int = 0
    chunks_submitted: int = 0
    chunks_removed: int = 0
    failed_ids: Set[str] = field(default_factory=set)


class Indexer:
    """Runs one indexing pass for a directory job."""

    def __init__(
        self,
        crawler: Crawler,
        pipeline: EmbeddingPipeline,
        store: SQLiteVectorStore,
    ) -> None:
        self.crawler = crawler
        self.pipeline = pipeline
        self.store = store

    async def run(self, job: DirectoryJob) -> IndexStats:
        root = job.root
        if not await asyncio.to_thread(root.is_dir):
            raise JobError(f"Not a directory: {root}")

        model = self.pipeline.model_id
        stats = IndexStats()
        valid_ids: Set[str] = set()
        seen_paths: Set[Path] = set()
        progress: Dict[Path, _FileProgress] = {}

        async def on_result(outcome: EmbedOutcome) -> None:
            draft = outcome.draft
            file_progress = progress[draft.path]
            stored = False
            try:
                if outcome.ok:
                    await asyncio.to_thread(self.store.upsert, outcome.chunk)
                    stored = True
                else:
                    await asyncio.to_thread(self.store.discard_pending, draft.id)
            except sqlite3.Error as exc:
                LOGGER.warning("Failed to store chunk %s of %s: %s", draft.id, draft.path, exc)

            if stored:
                job.chunk_embedded()
            else:
                job.chunk_failed()
                stats.failed_ids.add(draft.id)
                file_progress.failed = True

            file_progress.remaining -= 1
            if file_progress.remaining == 0:
                await self._settle(file_progress)

        known_hashes = await asyncio.to_thread(self.store.file_hashes, root)

        async with self.pipeline.session(on_result) as session:
            async for crawled in self.crawler.crawl(root, known_hashes):
                stats.files_seen += 1
                seen_paths.add(crawled.path)

                if crawled.is_known:
                    # Unchanged content still needs vectors from the current model.
                    known_ids = await asyncio.to_thread(
                        self.store.chunk_ids_for_file, crawled.path, model
                    )
                    if known_ids or not crawled.content:
                        stats.files_unchanged += 1
                        valid_ids |= known_ids
                        continue

                stats.files_extracted += 1
                drafts = await asyncio.to_thread(build_drafts, crawled, model)
                valid_ids.update(draft.id for draft in drafts)

                embedded = await asyncio.to_thread(
                    self.store.embedded_hashes, [draft.id for draft in drafts]
                )
                pending = [draft for draft in drafts if embedded.get(draft.id) != draft.sha256]
                if pending:
                    pending = await self._reuse_moved(pending, model)
                stats.chunks_reused += len(drafts) - len(pending)

                record = FileRecord(crawled.path, crawled.sha256, crawled.mtime, crawled.size)
                if not pending:
                    await asyncio.to_thread(self.store.upsert_file, record)
                    continue

                progress[crawled.path] = _FileProgress(record=record, remaining=len(pending))
                await asyncio.to_thread(self.store.add_pending, pending, model)
                job.add_outstanding(len(pending))
                stats.chunks_submitted += len(pending)
                for draft in pending:
                    await session.submit(draft)

        stats.chunks_removed = await asyncio.to_thread(
            self.store.delete_stale, root, valid_ids - stats.failed_ids, seen_paths
        )
        LOGGER.info(
            "Indexed %s: %d files (%d unchanged), %d chunks embedded, %d reused, "
            "%d failed, %d stale removed",
            root,
            stats.files_seen,
            stats.files_unchanged,
            stats.chunks_submitted - len(stats.failed_ids),
            stats.chunks_reused,
            len(stats.failed_ids),
            stats.chunks_removed,
        )
        return stats

    async def _reuse_moved(self, drafts: List[ChunkDraft], model: str) -> List[ChunkDraft]:
        """Store drafts whose content already has a vector; return the rest."""
        vectors = await asyncio.to_thread(
            self.store.embeddings_by_hash, [draft.sha256 for draft in drafts], model
        )
        remaining = []
        for draft in drafts:
            vector = vectors.get(draft.sha256)
            if vector is None:
                remaining.append(draft)
                continue
            await asyncio.to_thread(self.store.upsert, EmbeddedChunk(draft, vector, model))
        return remaining

    async def _settle(self, file_progress: _FileProgress) -> None:
        """Record a file whose chunks are all accounted for.

        Files with a failed chunk stay unrecorded so the next pass retries them.
        """
        if file_progress.failed:
            await asyncio.to_thread(self.store.forget_file, file_progress.record.path)
        else:
            await asyncio.to_thread(self.store.upsert_file, file_progress.record)
