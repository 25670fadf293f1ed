"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DB_FILENAME = "index.db"


def _default_data_dir() -> Path:
    return Path.home() / ".semindex"


def _default_workers() -> int:
    return os.cpu_count() or 4


@dataclass(slots=True)
class AppConfig:
    data_dir: Path = field(default_factory=_default_data_dir)
    model_name: str = DEFAULT_MODEL

    # Embedding pipeline
    embed_workers: int = field(default_factory=_default_workers)
    queue_size: int = 256
    batch_size: int = 16
    max_attempts: int = 4
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    embed_timeout: float = 30.0

    # Crawling
    max_file_bytes: int = 1 << 20
    skip_dirs: frozenset[str] = frozenset(
        {
            ".git", ".hg", ".svn",
            "node_modules", "__pycache__", ".venv", "venv",
            "target", "build", "dist",
            ".idea", ".vscode", ".cache",
        }
    )

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        for name in ("embed_workers", "queue_size", "batch_size", "max_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.embed_timeout <= 0:
            raise ValueError("embed_timeout must be positive")

    def resolve_db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @classmethod
    def from_env(cls, **overrides) -> "AppConfig":
        """Build a config from ``SEMINDEX_*`` environment variables.

        Supported env vars:
            SEMINDEX_DATA_DIR: directory holding the index database
            SEMINDEX_MODEL: sentence-transformers model name
            SEMINDEX_EMBED_WORKERS: concurrent embedding calls
            SEMINDEX_EMBED_TIMEOUT: per-call timeout in seconds

        Keyword overrides win over the environment.
        """
        values: dict = {}
        if data_dir := os.environ.get("SEMINDEX_DATA_DIR"):
            values["data_dir"] = Path(data_dir)
        if model := os.environ.get("SEMINDEX_MODEL"):
            values["model_name"] = model
        if workers := os.environ.get("SEMINDEX_EMBED_WORKERS"):
            values["embed_workers"] = int(workers)
        if timeout := os.environ.get("SEMINDEX_EMBED_TIMEOUT"):
            values["embed_timeout"] = float(timeout)
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
