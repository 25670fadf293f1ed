"""Chunk extraction.

Object-level files are parsed with tree-sitter. The syntax tree is walked in
document order and every node whose kind is registered as embeddable becomes a
chunk; the walk does not descend into a selected node, so chunks taken from one
file never overlap. Files that fail to parse are downgraded to a single
whole-file chunk instead of failing the directory pass.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List

import tree_sitter_python
import tree_sitter_rust
from tree_sitter import Language, Node, Parser

from semindex.parsing.classifier import ObjectLevel, Strategy, WholeFile

LOGGER = logging.getLogger(__name__)

GRAMMARS: dict[str, Callable[[], object]] = {
    "rust": tree_sitter_rust.language,
    "python": tree_sitter_python.language,
}

# Parsers are not thread-safe and extraction runs on worker threads.
_local = threading.local()


class ParseError(Exception):
    """Content could not be parsed with the strategy's grammar."""


@dataclass(slots=True)
class Span:
    """Byte range ``[start_byte, end_byte)`` of a file and its text."""

    start_byte: int
    end_byte: int
    text: str


def _get_parser(language: str) -> Parser:
    parsers = _local.__dict__.setdefault("parsers", {})
    if language in parsers:
        return parsers[language]
    grammar = GRAMMARS.get(language)
    if grammar is None:
        raise ParseError(f"no tree-sitter grammar registered for {language}")
    parser = Parser(Language(grammar()))
    parsers[language] = parser
    return parser


def _decode(content: bytes, start: int, end: int) -> str:
    return content[start:end].decode("utf-8", errors="replace")


def _iter_units(root: Node, kinds: frozenset[str]) -> Iterator[Node]:
    """Yield outermost nodes of the given kinds in document order."""
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type in kinds:
            yield node
            continue
        stack.extend(reversed(node.children))


def _object_spans(content: bytes, strategy: ObjectLevel) -> List[Span]:
    parser = _get_parser(strategy.language)
    tree = parser.parse(content)
    if tree.root_node.has_error:
        raise ParseError(f"syntax errors in {strategy.language} source")
    return [
        Span(node.start_byte, node.end_byte, _decode(content, node.start_byte, node.end_byte))
        for node in _iter_units(tree.root_node, strategy.node_kinds)
        if node.end_byte > node.start_byte
    ]


def _whole_file_span(content: bytes) -> List[Span]:
    if not content:
        return []
    return [Span(0, len(content), _decode(content, 0, len(content)))]


def extract(path: Path, content: bytes, strategy: Strategy) -> List[Span]:
    """Split ``content`` into chunk spans according to ``strategy``."""
    if isinstance(strategy, WholeFile):
        return _whole_file_span(content)

    try:
        spans = _object_spans(content, strategy)
    except ParseError as exc:
        LOGGER.info("Falling back to whole-file chunk for %s: %s", path, exc)
        return _whole_file_span(content)

    if not spans:
        LOGGER.debug("No embeddable units in %s, using whole file", path)
        return _whole_file_span(content)
    return spans


def render_document(path: Path, span: Span, strategy: Strategy) -> str:
    """Text handed to the embedding provider for ``span``."""
    fence = strategy.language if isinstance(strategy, ObjectLevel) else strategy.format
    return (
        f"The below is a code snippet from the '{path}' file.\n"
        f"```{fence}\n{span.text}\n```"
    )
