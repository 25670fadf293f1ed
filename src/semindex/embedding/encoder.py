"""Local embedding provider backed by sentence-transformers."""

from __future__ import annotations

import asyncio
import logging
import platform
import sys
import threading
from dataclasses import dataclass
from typing import List, Literal, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from semindex.config import DEFAULT_MODEL
from semindex.embedding.base import EmbeddingProvider
from semindex.errors import PermanentEmbeddingError, TransientEmbeddingError

logger = logging.getLogger(__name__)


def _check_onnx_providers() -> list[str]:
    """Return the ONNX Runtime execution providers available, if any."""
    try:
        import onnxruntime as ort
        return ort.get_available_providers()
    except ImportError:
        return []


def detect_optimal_backend() -> tuple[Literal["torch", "onnx"], str | None]:
    """Pick a sentence-transformers backend for this machine.

    Returns:
        (backend_name, onnx_model_file). Apple Silicon gets the ARM64 quantized
        ONNX export; any other machine with ONNX Runtime uses the standard ONNX
        export; everything else falls back to PyTorch.
    """
    if sys.platform == "darwin" and (
        platform.processor() == "arm" or platform.machine() == "arm64"
    ):
        logger.info("Detected Apple Silicon - using ONNX with ARM64 quantized model")
        return ("onnx", "onnx/model_qint8_arm64.onnx")

    providers = _check_onnx_providers()
    if providers:
        logger.info("Using ONNX backend (providers: %s)", ", ".join(providers))
        return ("onnx", None)

    logger.info("ONNX not available, using PyTorch backend on %s", sys.platform)
    return ("torch", None)


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] | None = None
    onnx_model_file: str | None = None
    device: str | None = None


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` producing float32 vectors.

    Falls back to PyTorch when the detected backend fails to load.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()

        if self.config.backend is None:
            self.config.backend, self.config.onnx_model_file = detect_optimal_backend()

        try:
            self._model = self._load_model()
        except Exception as e:
            if self.config.backend == "torch":
                raise
            logger.warning(
                "Failed to load model with backend '%s': %s. Falling back to PyTorch.",
                self.config.backend,
                e,
            )
            self.config.backend = "torch"
            self.config.onnx_model_file = None
            self._model = self._load_model()

        self.dimension = int(self._model.get_sentence_embedding_dimension())
        logger.info(
            "Loaded %s (backend: %s, dimension: %d)",
            self.config.model_name,
            self.config.backend,
            self.dimension,
        )

    def _load_model(self) -> SentenceTransformer:
        model_kwargs = {}
        if self.config.backend == "onnx" and self.config.onnx_model_file:
            model_kwargs["file_name"] = self.config.onnx_model_file

        return SentenceTransformer(
            self.config.model_name,
            backend=self.config.backend,
            device=self.config.device,
            model_kwargs=model_kwargs or None,
        )

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""
        embeddings = self._model.encode(
            list(texts),
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return embeddings.astype("float32", copy=False)


class SentenceTransformerProvider(EmbeddingProvider):
    """Runs an `EmbeddingModel` on worker threads behind the provider interface."""

    def __init__(self, model: EmbeddingModel) -> None:
        self.model = model
        self.model_id = model.config.model_name
        # encode() is not re-entrant on every backend.
        self._lock = threading.Lock()

    @classmethod
    def from_name(cls, model_name: str = DEFAULT_MODEL) -> "SentenceTransformerProvider":
        return cls(EmbeddingModel(EmbeddingConfig(model_name=model_name)))

    def _embed_sync(self, texts: Sequence[str]) -> np.ndarray:
        with self._lock:
            return self.model.embed(texts)

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        try:
            embeddings = await asyncio.to_thread(self._embed_sync, texts)
        except (ValueError, TypeError) as exc:
            raise PermanentEmbeddingError(str(exc)) from exc
        except (RuntimeError, MemoryError) as exc:
            raise TransientEmbeddingError(str(exc)) from exc
        return list(embeddings)
