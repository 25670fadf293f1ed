"""Tests for the embedding pipeline."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Sequence

import numpy as np
import pytest

from semindex.embedding.pipeline import EmbeddingPipeline, EmbedOutcome
from semindex.errors import PermanentEmbeddingError, TransientEmbeddingError
from semindex.models import ChunkDraft

from conftest import FakeProvider, no_sleep, vector_for


def make_draft(index: int, document: str | None = None) -> ChunkDraft:
    text = f"fn f{index}() {{}}"
    return ChunkDraft(
        id=f"chunk-{index}",
        path=Path(f"/src/f{index}.rs"),
        start_byte=0,
        end_byte=len(text),
        text=text,
        document=document or text,
        sha256=f"sha-{index}",
    )


def make_pipeline(provider, **kwargs) -> EmbeddingPipeline:
    options = dict(workers=2, queue_size=4, batch_size=2, max_attempts=3, sleep=no_sleep)
    options.update(kwargs)
    return EmbeddingPipeline(provider, **options)


class SlowProvider(FakeProvider):
    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        self.calls += 1
        await asyncio.sleep(1)
        return [vector_for(text) for text in texts]


class ShortProvider(FakeProvider):
    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        self.calls += 1
        return [vector_for(text) for text in texts][:-1]


class BrokenProvider(FakeProvider):
    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        self.calls += 1
        raise KeyError("tokenizer")


class TestEmbedBatch:
    @pytest.mark.asyncio
    async def test_outcomes_in_submission_order(self) -> None:
        provider = FakeProvider()
        drafts = [make_draft(i) for i in range(7)]

        outcomes = await make_pipeline(provider).embed_batch(drafts)

        assert [outcome.draft for outcome in outcomes] == drafts
        assert all(outcome.ok for outcome in outcomes)
        for draft, outcome in zip(drafts, outcomes):
            assert outcome.chunk.model == "fake-model"
            assert outcome.chunk.vector.dtype == np.float32
            np.testing.assert_allclose(outcome.chunk.vector, vector_for(draft.document))

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(self) -> None:
        provider = FakeProvider()
        await make_pipeline(provider, workers=1, batch_size=3).embed_batch(
            [make_draft(i) for i in range(6)]
        )
        assert provider.calls >= 2
        assert len(provider.texts) == 6

    @pytest.mark.asyncio
    async def test_empty_input(self) -> None:
        provider = FakeProvider()
        assert await make_pipeline(provider).embed_batch([]) == []
        assert provider.calls == 0


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self) -> None:
        provider = FakeProvider(transient_failures=2)
        delays: list[float] = []

        async def record(delay: float) -> None:
            delays.append(delay)

        pipeline = make_pipeline(
            provider, workers=1, batch_size=1, max_attempts=4, backoff_base=0.5, sleep=record
        )
        (outcome,) = await pipeline.embed_batch([make_draft(0)])

        assert outcome.ok
        assert provider.calls == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        provider = FakeProvider(transient_failures=10)

        (outcome,) = await make_pipeline(provider, max_attempts=3).embed_batch([make_draft(0)])

        assert not outcome.ok
        assert isinstance(outcome.error, TransientEmbeddingError)
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(self) -> None:
        provider = SlowProvider()
        pipeline = make_pipeline(provider, max_attempts=2, timeout=0.05)

        (outcome,) = await pipeline.embed_batch([make_draft(0)])

        assert isinstance(outcome.error, TransientEmbeddingError)
        assert provider.calls == 2

    def test_backoff_is_capped(self) -> None:
        pipeline = make_pipeline(FakeProvider(), backoff_base=1.0, backoff_max=5.0)
        assert [pipeline._backoff(attempt) for attempt in range(1, 6)] == [1, 2, 4, 5, 5]


class TestPermanentFailure:
    @pytest.mark.asyncio
    async def test_rejected_chunk_fails_alone(self) -> None:
        provider = FakeProvider(reject=["poison"])
        drafts = [make_draft(0), make_draft(1, "poison pill"), make_draft(2)]

        outcomes = await make_pipeline(provider, workers=1, batch_size=3).embed_batch(drafts)

        assert [outcome.ok for outcome in outcomes] == [True, False, True]
        assert isinstance(outcomes[1].error, PermanentEmbeddingError)

    @pytest.mark.asyncio
    async def test_vector_count_mismatch_is_permanent(self) -> None:
        (outcome,) = await make_pipeline(ShortProvider()).embed_batch([make_draft(0)])
        assert isinstance(outcome.error, PermanentEmbeddingError)

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_fails_batch(self) -> None:
        provider = BrokenProvider()
        drafts = [make_draft(0), make_draft(1)]

        outcomes = await make_pipeline(provider, workers=1, batch_size=2).embed_batch(drafts)

        assert [outcome.ok for outcome in outcomes] == [False, False]
        assert all(isinstance(outcome.error, PermanentEmbeddingError) for outcome in outcomes)
        assert "tokenizer" in str(outcomes[0].error)
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_keeps_workers_alive(self) -> None:
        results: list[EmbedOutcome] = []

        async def on_result(outcome: EmbedOutcome) -> None:
            results.append(outcome)

        async with make_pipeline(BrokenProvider(), workers=1, batch_size=1).session(
            on_result
        ) as session:
            for i in range(3):
                await session.submit(make_draft(i))

        assert len(results) == 3
        assert not any(outcome.ok for outcome in results)


class TestSession:
    @pytest.mark.asyncio
    async def test_submit_blocks_when_queue_full(self) -> None:
        provider = FakeProvider()
        provider.gate = asyncio.Event()
        results: list[EmbedOutcome] = []

        async def on_result(outcome: EmbedOutcome) -> None:
            results.append(outcome)

        pipeline = make_pipeline(provider, workers=1, queue_size=1, batch_size=1)

        async with pipeline.session(on_result) as session:

            async def produce() -> None:
                for i in range(3):
                    await session.submit(make_draft(i))

            producer = asyncio.create_task(produce())
            await asyncio.sleep(0.05)
            # One draft in the provider, one in the queue, the third waits.
            assert not producer.done()
            assert provider.calls == 1

            provider.gate.set()
            await producer

        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_callback_error_surfaces_on_exit(self) -> None:
        async def on_result(outcome: EmbedOutcome) -> None:
            raise RuntimeError("storage down")

        with pytest.raises(RuntimeError, match="storage down"):
            async with make_pipeline(FakeProvider(), workers=1).session(on_result) as session:
                await session.submit(make_draft(0))

    @pytest.mark.asyncio
    async def test_workers_stop_on_exit(self) -> None:
        async def on_result(outcome: EmbedOutcome) -> None:
            pass

        async with make_pipeline(FakeProvider()).session(on_result) as session:
            workers = list(session._workers)
        assert all(worker.done() for worker in workers)


class TestEmbedQuery:
    @pytest.mark.asyncio
    async def test_returns_vector(self) -> None:
        vector = await make_pipeline(FakeProvider()).embed_query("parse config")
        np.testing.assert_allclose(vector, vector_for("parse config"))

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self) -> None:
        provider = FakeProvider(transient_failures=1)
        await make_pipeline(provider).embed_query("q")
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_raises_when_exhausted(self) -> None:
        provider = FakeProvider(transient_failures=5)
        with pytest.raises(TransientEmbeddingError):
            await make_pipeline(provider, max_attempts=2).embed_query("q")
