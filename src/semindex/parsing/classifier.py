"""Map file paths to a chunking strategy.

Two strategies exist. ``ObjectLevel`` parses the file with a tree-sitter grammar
and emits one chunk per embeddable node; ``WholeFile`` emits the file as a
single chunk. Supporting a new format only means registering its extension.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Union


@dataclass(frozen=True, slots=True)
class ObjectLevel:
    language: str
    node_kinds: frozenset[str]


@dataclass(frozen=True, slots=True)
class WholeFile:
    format: str


Strategy = Union[ObjectLevel, WholeFile]


RUST = ObjectLevel(
    language="rust",
    node_kinds=frozenset(
        {
            "function_item",
            "struct_item",
            "enum_item",
            "union_item",
            "impl_item",
            "trait_item",
            "macro_definition",
        }
    ),
)

PYTHON = ObjectLevel(
    language="python",
    node_kinds=frozenset({"function_definition", "class_definition", "decorated_definition"}),
)

DEFAULT_STRATEGIES: dict[str, Strategy] = {
    ".rs": RUST,
    ".py": PYTHON,
    ".md": WholeFile("markdown"),
    ".markdown": WholeFile("markdown"),
    ".rst": WholeFile("rst"),
    ".txt": WholeFile("text"),
    ".toml": WholeFile("toml"),
    ".yaml": WholeFile("yaml"),
    ".yml": WholeFile("yaml"),
    ".json": WholeFile("json"),
    ".ini": WholeFile("ini"),
    ".cfg": WholeFile("ini"),
}


class ContentClassifier:
    """Extension registry deciding how (and whether) a file is chunked."""

    def __init__(self, strategies: Mapping[str, Strategy] | None = None) -> None:
        self._strategies: dict[str, Strategy] = dict(
            DEFAULT_STRATEGIES if strategies is None else strategies
        )

    def register(self, extension: str, strategy: Strategy) -> None:
        if not extension.startswith("."):
            extension = "." + extension
        self._strategies[extension.lower()] = strategy

    def classify(self, path: Path) -> Strategy | None:
        """Strategy for ``path``, or ``None`` when the file should be skipped."""
        return self._strategies.get(Path(path).suffix.lower())

    @property
    def extensions(self) -> frozenset[str]:
        return frozenset(self._strategies)
