"""FastAPI service exposing IndexDirectory, IndexingStatus and SearchDirectory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from semindex.config import AppConfig
from semindex.errors import SemIndexError
from semindex.semantic_index import SemanticIndex

LOGGER = logging.getLogger(__name__)

_index: Optional[SemanticIndex] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    global _index
    if _index is not None:
        await _index.aclose()
        _index = None


app = FastAPI(title="semindex", version="0.1.0", lifespan=lifespan)


async def get_index() -> SemanticIndex:
    global _index
    if _index is None:
        config = AppConfig.from_env()
        _index = await SemanticIndex.new(config.data_dir, config=config)
    return _index


class IndexRequest(BaseModel):
    path: str


class IndexReply(BaseModel):
    code: int
    status: str


class StatusReply(BaseModel):
    status: str
    outstanding: int


class SearchRequest(BaseModel):
    path: str
    query: str
    n: int = 10


class SearchResultReply(BaseModel):
    id: str
    path: str
    start_byte: int
    end_byte: int
    score: float


class SearchReply(BaseModel):
    code: int
    message: str
    results: List[SearchResultReply] = []


def _clean_path(path: str) -> str:
    clean = path.strip().replace("\r", "").replace("\n", "")
    if not clean:
        raise HTTPException(status_code=400, detail="No path provided")
    if "\0" in clean:
        raise HTTPException(status_code=400, detail="Invalid path: contains null byte")
    return clean


@app.post("/index", response_model=IndexReply)
async def index_directory(
    payload: IndexRequest, index: SemanticIndex = Depends(get_index)
) -> IndexReply:
    path = _clean_path(payload.path)
    try:
        handle = await index.index_directory(path)
    except (SemIndexError, OSError) as exc:
        LOGGER.error("Failed to start indexing %s: %s", path, exc)
        return IndexReply(code=1, status=f"Failed to start indexing: {exc}")
    return IndexReply(code=0, status=f"Indexing {handle.root}")


@app.get("/status", response_model=StatusReply)
async def indexing_status(path: str, index: SemanticIndex = Depends(get_index)) -> StatusReply:
    status = index.indexing_status(_clean_path(path))
    return StatusReply(status=status.state.value, outstanding=status.outstanding)


@app.post("/search", response_model=SearchReply)
async def search_directory(
    payload: SearchRequest, index: SemanticIndex = Depends(get_index)
) -> SearchReply:
    path = _clean_path(payload.path)
    try:
        results = await index.search_directory(path, payload.n, payload.query)
    except SemIndexError as exc:
        return SearchReply(code=1, message=str(exc))

    return SearchReply(
        code=0,
        message=f"{len(results)} result(s)",
        results=[
            SearchResultReply(
                id=result.id,
                path=str(result.path),
                start_byte=result.start_byte,
                end_byte=result.end_byte,
                score=result.score,
            )
            for result in results
        ],
    )
