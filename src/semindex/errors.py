"""
Error taxonomy and crawl error policies.

Transient embedding failures are retried by the pipeline, permanent ones fail a
single chunk. Only ``JobError`` ends a whole indexing job. File-level I/O errors
met while crawling are logged and skipped according to ``ERROR_POLICIES``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SemIndexError(Exception):
    """Base exception for semindex errors."""


class EmbeddingError(SemIndexError):
    """Error raised by an embedding provider."""


class TransientEmbeddingError(EmbeddingError):
    """Timeout, rate limit or overload; worth retrying."""


class PermanentEmbeddingError(EmbeddingError):
    """The provider rejected the input; retrying will not help."""


class JobError(SemIndexError):
    """An indexing job cannot proceed at all."""


class NotIndexedError(SemIndexError):
    """The directory has never been indexed."""

    def __init__(self, root: Path):
        self.root = root
        super().__init__(f"Directory has not been indexed: {root}")


class InvalidRequestError(SemIndexError, ValueError):
    """Caller supplied an unusable argument."""


class ErrorAction(Enum):
    SKIP = auto()
    ABORT = auto()


@dataclass
class ErrorPolicy:
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


# Checked in order, so subclasses come before OSError.
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {file}",
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="File not found (deleted or broken symlink): {file}",
    ),
    UnicodeDecodeError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Cannot decode file (binary?): {file}",
    ),
    IsADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Expected file, got directory: {file}",
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error reading {file}: {error}",
    ),
}


def handle_error(
    error: Exception,
    file_path: Optional[Path] = None,
    context: str = "",
) -> ErrorAction:
    """
    Log ``error`` according to its policy and return the action to take.

    Errors without a registered policy abort: they are not I/O trouble with a
    single file and must not be hidden.
    """
    policy = None
    for error_type, candidate in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = candidate
            break

    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.ABORT,
            log_level=logging.ERROR,
            message_template="Unexpected error: {file} - {error}",
        )

    file_str = str(file_path) if file_path else "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)
    return policy.action
