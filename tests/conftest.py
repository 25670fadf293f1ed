"""Shared fixtures: a deterministic embedding provider and sample source trees."""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import List, Sequence

import numpy as np
import pytest

from semindex.config import AppConfig
from semindex.embedding.base import EmbeddingProvider
from semindex.errors import PermanentEmbeddingError, TransientEmbeddingError
from semindex.semantic_index import SemanticIndex

RUST_SOURCE = "fn foo() {}\n"
REJECT_MARKER = "REJECT-ME"


def vector_for(text: str, dimension: int = 8) -> np.ndarray:
    """Deterministic pseudo-embedding seeded from the text digest."""
    seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
    return np.random.default_rng(seed).standard_normal(dimension).astype("float32")


class FakeProvider(EmbeddingProvider):
    """In-memory provider recording every call.

    Texts containing any of ``reject`` are refused permanently; the first
    ``transient_failures`` calls raise a transient error. When ``gate`` is set,
    every call after the first ``gate_after`` waits on it.
    """

    def __init__(
        self,
        model_id: str = "fake-model",
        dimension: int = 8,
        reject: Sequence[str] = (),
        transient_failures: int = 0,
    ) -> None:
        self.model_id = model_id
        self.dimension = dimension
        self.reject = tuple(reject)
        self.transient_failures = transient_failures
        self.calls = 0
        self.texts: List[str] = []
        self.gate: asyncio.Event | None = None
        self.gate_after = 0

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        self.calls += 1
        if self.gate is not None and self.calls > self.gate_after:
            await self.gate.wait()
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientEmbeddingError("overloaded")
        for text in texts:
            if any(marker in text for marker in self.reject):
                raise PermanentEmbeddingError("input rejected")
        self.texts.extend(texts)
        return [vector_for(text, self.dimension) for text in texts]


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Isolated configuration with small queues and no backoff delay."""
    return AppConfig(
        data_dir=tmp_path / "data",
        embed_workers=2,
        queue_size=4,
        batch_size=2,
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        embed_timeout=5.0,
    )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Small source tree: one Rust file, one Markdown file, one TOML file."""
    root = (tmp_path / "project").resolve()
    root.mkdir()
    (root / "a.rs").write_text(RUST_SOURCE)
    (root / "b.md").write_text("# Notes\n\nHow the parser is wired together.\n")
    (root / "c.toml").write_text('[package]\nname = "demo"\n')
    return root


@pytest.fixture
def semantic_index(config: AppConfig, provider: FakeProvider):
    index = SemanticIndex(config=config, provider=provider)
    yield index
    index.close()
