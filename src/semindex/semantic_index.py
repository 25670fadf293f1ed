"""Library entry point tying the indexing pipeline together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List

from semindex.config import AppConfig
from semindex.embedding.base import EmbeddingProvider
from semindex.embedding.pipeline import EmbeddingPipeline
from semindex.index.crawler import Crawler
from semindex.index.indexer import Indexer
from semindex.index.jobs import DirectoryJob, JobHandle, JobTracker
from semindex.index.search import Searcher
from semindex.index.storage import SQLiteVectorStore
from semindex.models import JobStatus, SearchResult
from semindex.parsing.classifier import ContentClassifier
from semindex.utils.files import canonical_path

LOGGER = logging.getLogger(__name__)


class SemanticIndex:
    """Index directories and search them by meaning.

    Usage:
        index = await SemanticIndex.new(Path("~/.semindex"))
        job = await index.index_directory(Path("~/code/project"))
        await job.wait()
        results = await index.search_directory(Path("~/code/project"), 5, "parse config")
    """

    def __init__(
        self,
        data_directory: Path | None = None,
        *,
        provider: EmbeddingProvider | None = None,
        config: AppConfig | None = None,
        classifier: ContentClassifier | None = None,
    ) -> None:
        if config is None:
            config = AppConfig.from_env(data_dir=data_directory)
        elif data_directory is not None:
            config.data_dir = Path(data_directory).expanduser()
        self.config = config

        if provider is None:
            from semindex.embedding.encoder import SentenceTransformerProvider

            provider = SentenceTransformerProvider.from_name(config.model_name)
        self.provider = provider

        config.data_dir.mkdir(parents=True, exist_ok=True)
        self.store = SQLiteVectorStore(config.resolve_db_path())
        self.pipeline = EmbeddingPipeline.from_config(provider, config)
        self.crawler = Crawler(classifier or ContentClassifier(), config)
        self.indexer = Indexer(self.crawler, self.pipeline, self.store)
        self.jobs = JobTracker(on_transition=self._persist_status)
        self.searcher = Searcher(self.pipeline, self.store, self._is_searchable)
        self._restore_jobs()

    @classmethod
    async def new(cls, data_directory: Path, **kwargs) -> "SemanticIndex":
        """Open (or create) an index without blocking the event loop."""
        return await asyncio.to_thread(cls, data_directory, **kwargs)

    def _restore_jobs(self) -> None:
        records = []
        for status, completed_once in self.store.load_jobs():
            status.outstanding = self.store.pending_count(status.root)
            records.append((status, completed_once))
        self.jobs.restore(records)
        if records:
            LOGGER.debug("Restored %d directory job record(s)", len(records))

    async def _persist_status(self, status: JobStatus) -> None:
        await asyncio.to_thread(self.store.save_job, status)

    async def _is_searchable(self, root: Path) -> bool:
        if self.jobs.has_completed(root):
            return True
        if self.jobs.get(root) is None:
            return False
        # A pass that never completed still leaves searchable chunks behind.
        return await asyncio.to_thread(self.store.count_chunks, root) > 0

    async def _run_job(self, job: DirectoryJob) -> None:
        await self.indexer.run(job)

    async def index_directory(self, path: Path | str) -> JobHandle:
        """Start (or join) indexing of ``path``; returns immediately."""
        root = await asyncio.to_thread(canonical_path, path)
        return self.jobs.admit(root, self._run_job)

    async def search_directory(self, path: Path | str, n: int, query: str) -> List[SearchResult]:
        root = await asyncio.to_thread(canonical_path, path)
        return await self.searcher.search(root, query, n)

    def indexing_status(self, path: Path | str) -> JobStatus:
        return self.jobs.status(canonical_path(path))

    async def prune_missing(self) -> int:
        return await asyncio.to_thread(self.store.remove_missing_files)

    async def aclose(self) -> None:
        await self.jobs.cancel_all()
        self.store.close()

    def close(self) -> None:
        self.store.close()
