"""
Embedding Pipeline - bounded queue feeding a pool of embedding workers.

Producers ``submit`` chunk drafts into a bounded ``asyncio.Queue``; when the
queue is full ``submit`` suspends, which throttles crawling and extraction to
the pace of the embedding provider. Each worker drains up to ``batch_size``
drafts, calls the provider with a per-call timeout and reports one
``EmbedOutcome`` per draft through the session callback.

Failure handling per call:
    - transient errors and timeouts are retried with exponential backoff, up to
      ``max_attempts``; after that every draft in the batch fails
    - a permanent rejection of a multi-draft batch is retried draft by draft so
      only the offending input fails
    - any other provider exception fails the batch as permanent
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import numpy as np

from semindex.config import AppConfig
from semindex.embedding.base import EmbeddingProvider
from semindex.errors import EmbeddingError, PermanentEmbeddingError, TransientEmbeddingError
from semindex.models import ChunkDraft, EmbeddedChunk

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbedOutcome:
    """Result of embedding a single draft."""

    draft: ChunkDraft
    chunk: Optional[EmbeddedChunk] = None
    error: Optional[EmbeddingError] = None

    @property
    def ok(self) -> bool:
        return self.chunk is not None

    @classmethod
    def succeeded(cls, chunk: EmbeddedChunk) -> "EmbedOutcome":
        return cls(draft=chunk.draft, chunk=chunk)

    @classmethod
    def failed(cls, draft: ChunkDraft, error: EmbeddingError) -> "EmbedOutcome":
        return cls(draft=draft, error=error)


ResultCallback = Callable[[EmbedOutcome], Awaitable[None]]


class EmbeddingPipeline:
    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        workers: int = 4,
        queue_size: int = 256,
        batch_size: int = 16,
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.workers = workers
        self.queue_size = queue_size
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_config(cls, provider: EmbeddingProvider, config: AppConfig) -> "EmbeddingPipeline":
        return cls(
            provider,
            workers=config.embed_workers,
            queue_size=config.queue_size,
            batch_size=config.batch_size,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            timeout=config.embed_timeout,
        )

    @property
    def model_id(self) -> str:
        return self.provider.model_id

    def session(self, on_result: ResultCallback) -> "EmbeddingSession":
        """Open a worker pool; use as ``async with pipeline.session(cb) as s``."""
        return EmbeddingSession(self, on_result)

    async def embed_batch(self, drafts: Sequence[ChunkDraft]) -> List[EmbedOutcome]:
        """Embed ``drafts`` and return their outcomes in submission order."""
        outcomes: Dict[int, EmbedOutcome] = {}

        async def collect(outcome: EmbedOutcome) -> None:
            outcomes[id(outcome.draft)] = outcome

        async with self.session(collect) as session:
            for draft in drafts:
                await session.submit(draft)
        return [outcomes[id(draft)] for draft in drafts]

    async def embed_query(self, text: str) -> np.ndarray:
        """Single provider call for a query string, with the same retry policy."""
        attempt = 0
        while True:
            attempt += 1
            try:
                vector = await asyncio.wait_for(self.provider.embed(text), self.timeout)
                return np.asarray(vector, dtype="float32")
            except (TransientEmbeddingError, asyncio.TimeoutError) as exc:
                if attempt >= self.max_attempts:
                    raise TransientEmbeddingError(
                        f"query embedding failed after {attempt} attempts: {exc!r}"
                    ) from exc
                await self._sleep(self._backoff(attempt))

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    async def _embed_with_retry(self, drafts: List[ChunkDraft]) -> List[EmbedOutcome]:
        texts = [draft.document for draft in drafts]
        attempt = 0
        while True:
            attempt += 1
            try:
                vectors = await asyncio.wait_for(self.provider.embed_batch(texts), self.timeout)
                if len(vectors) != len(drafts):
                    raise PermanentEmbeddingError(
                        f"provider returned {len(vectors)} vectors for {len(drafts)} inputs"
                    )
                return [
                    EmbedOutcome.succeeded(
                        EmbeddedChunk(
                            draft=draft,
                            vector=np.asarray(vector, dtype="float32"),
                            model=self.model_id,
                        )
                    )
                    for draft, vector in zip(drafts, vectors)
                ]
            except (TransientEmbeddingError, asyncio.TimeoutError) as exc:
                if attempt >= self.max_attempts:
                    error = TransientEmbeddingError(
                        f"gave up after {attempt} attempts: {exc!r}"
                    )
                    logger.warning("Embedding %d chunk(s) failed: %s", len(drafts), error)
                    return [EmbedOutcome.failed(draft, error) for draft in drafts]
                delay = self._backoff(attempt)
                logger.debug("Transient embedding error (%r), retrying in %.2fs", exc, delay)
                await self._sleep(delay)
            except PermanentEmbeddingError as exc:
                if len(drafts) > 1:
                    logger.debug("Batch of %d rejected, retrying individually", len(drafts))
                    outcomes: List[EmbedOutcome] = []
                    for draft in drafts:
                        outcomes.extend(await self._embed_with_retry([draft]))
                    return outcomes
                logger.warning(
                    "Embedding rejected for %s [%d:%d]: %s",
                    drafts[0].path,
                    drafts[0].start_byte,
                    drafts[0].end_byte,
                    exc,
                )
                return [EmbedOutcome.failed(drafts[0], exc)]
            except Exception as exc:
                logger.exception(
                    "Embedding provider raised unexpectedly for %d chunk(s)", len(drafts)
                )
                error = PermanentEmbeddingError(f"provider error: {exc!r}")
                return [EmbedOutcome.failed(draft, error) for draft in drafts]


class EmbeddingSession:
    """One producer-facing run of the worker pool."""

    def __init__(self, pipeline: EmbeddingPipeline, on_result: ResultCallback) -> None:
        self._pipeline = pipeline
        self._on_result = on_result
        self._queue: asyncio.Queue[ChunkDraft] = asyncio.Queue(maxsize=pipeline.queue_size)
        self._workers: List[asyncio.Task] = []

    async def __aenter__(self) -> "EmbeddingSession":
        self._workers = [
            asyncio.create_task(self._worker(), name=f"embed-worker-{i}")
            for i in range(self._pipeline.workers)
        ]
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self._drain()
        finally:
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)

    async def submit(self, draft: ChunkDraft) -> None:
        """Queue ``draft``; suspends while the queue is full."""
        self._raise_if_worker_died()
        await self._queue.put(draft)

    async def _drain(self) -> None:
        join = asyncio.create_task(self._queue.join())
        try:
            await asyncio.wait([join, *self._workers], return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not join.done():
                join.cancel()
        self._raise_if_worker_died()

    def _raise_if_worker_died(self) -> None:
        for worker in self._workers:
            if worker.done() and not worker.cancelled() and worker.exception() is not None:
                raise worker.exception()

    async def _worker(self) -> None:
        queue = self._queue
        while True:
            batch = [await queue.get()]
            while len(batch) < self._pipeline.batch_size:
                try:
                    batch.append(queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                for outcome in await self._pipeline._embed_with_retry(batch):
                    await self._on_result(outcome)
            finally:
                for _ in batch:
                    queue.task_done()
