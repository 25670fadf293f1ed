"""Embedding provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np


class EmbeddingProvider(ABC):
    """Capability turning text into fixed-dimension vectors.

    Implementations raise ``TransientEmbeddingError`` for failures worth
    retrying and ``PermanentEmbeddingError`` when the input itself is rejected.
    ``model_id`` tags every stored vector; vectors with different ids are never
    compared.
    """

    model_id: str

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Return one float32 vector per input text, in order."""

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]
