"""Semantic search interface."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List

from semindex.embedding.pipeline import EmbeddingPipeline
from semindex.errors import InvalidRequestError, NotIndexedError
from semindex.index.storage import SQLiteVectorStore
from semindex.models import SearchResult


class Searcher:
    """Embeds a query and ranks the stored chunks of one directory."""

    def __init__(
        self,
        pipeline: EmbeddingPipeline,
        store: SQLiteVectorStore,
        is_indexed: Callable[[Path], Awaitable[bool]],
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.is_indexed = is_indexed

    async def search(self, root: Path, query: str, n: int) -> List[SearchResult]:
        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise InvalidRequestError(f"n must be a positive integer, got {n!r}")
        if not query or not query.strip():
            raise InvalidRequestError("Empty query")
        if not await self.is_indexed(root):
            raise NotIndexedError(root)

        embedding = await self.pipeline.embed_query(query)
        return await asyncio.to_thread(
            self.store.similarity_search,
            root,
            embedding,
            n,
            model=self.pipeline.model_id,
        )
