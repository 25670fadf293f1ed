"""Core semindex data models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import numpy as np


class JobState(str, Enum):
    """Lifecycle of an indexing job for one directory root."""

    IDLE = "Idle"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(slots=True)
class FileRecord:
    """What the store remembers about a file between passes."""

    path: Path
    sha256: str
    mtime: float
    size: int


@dataclass(slots=True)
class ChunkDraft:
    """A chunk selected by the extractor, not yet embedded.

    ``text`` is the raw byte span decoded as UTF-8, ``document`` is the text sent to
    the embedding provider and ``sha256`` is the digest of ``document``.
    """

    id: str
    path: Path
    start_byte: int
    end_byte: int
    text: str
    document: str
    sha256: str


@dataclass(slots=True)
class EmbeddedChunk:
    """Chunk draft paired with its embedding vector."""

    draft: ChunkDraft
    vector: np.ndarray
    model: str

    @property
    def id(self) -> str:
        return self.draft.id


@dataclass(slots=True)
class SearchResult:
    id: str
    path: Path
    start_byte: int
    end_byte: int
    score: float


@dataclass(slots=True)
class JobStatus:
    """Point-in-time view of a directory job."""

    root: Path
    state: JobState
    outstanding: int = 0
    embedded: int = 0
    failed: int = 0
    error: str | None = None
