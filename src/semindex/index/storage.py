"""SQLite vector store for file records, chunks and job records."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np

from semindex.models import ChunkDraft, EmbeddedChunk, FileRecord, JobState, JobStatus, SearchResult
from semindex.utils.files import prefix_bounds


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteVectorStore:
    """Single source of truth for file records, chunks and their vectors.

    The connection is shared between threads; every statement runs under one
    lock, which serialises writes (last writer wins on a given chunk id).
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    path TEXT PRIMARY KEY,
                    sha256 TEXT NOT NULL,
                    mtime REAL NOT NULL,
                    size INTEGER NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    start_byte INTEGER NOT NULL,
                    end_byte INTEGER NOT NULL,
                    sha256 TEXT NOT NULL,
                    model TEXT NOT NULL,
                    embedding BLOB,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS directories (
                    path TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    outstanding INTEGER NOT NULL DEFAULT 0,
                    embedded INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )

    # -- file records -------------------------------------------------------

    def get_file(self, path: Path) -> Optional[FileRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT path, sha256, mtime, size FROM files WHERE path = ?", (str(path),)
            ).fetchone()
        if row is None:
            return None
        return FileRecord(Path(row["path"]), row["sha256"], row["mtime"], row["size"])

    def file_hashes(self, root: Path) -> Dict[Path, str]:
        """Known content hash of every file recorded under ``root``."""
        low, high = prefix_bounds(root)
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, sha256 FROM files WHERE path >= ? AND path < ?", (low, high)
            ).fetchall()
        return {Path(row["path"]): row["sha256"] for row in rows}

    def upsert_file(self, record: FileRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO files(path, sha256, mtime, size) VALUES (?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    sha256 = excluded.sha256,
                    mtime = excluded.mtime,
                    size = excluded.size,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (str(record.path), record.sha256, record.mtime, record.size),
            )

    def forget_file(self, path: Path) -> None:
        """Drop the file record so the next pass re-extracts the file."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM files WHERE path = ?", (str(path),))

    # -- chunks -------------------------------------------------------------

    def chunk_ids_for_file(self, path: Path, model: str) -> Set[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM chunks WHERE path = ? AND model = ? AND embedding IS NOT NULL",
                (str(path), model),
            ).fetchall()
        return {row["id"] for row in rows}

    def embedded_hashes(self, ids: Sequence[str]) -> Dict[str, str]:
        """Content hash of each id in ``ids`` that already has a vector."""
        found: Dict[str, str] = {}
        with self._lock:
            for start in range(0, len(ids), 500):
                batch = list(ids[start : start + 500])
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"SELECT id, sha256 FROM chunks WHERE embedding IS NOT NULL "
                    f"AND id IN ({placeholders})",
                    batch,
                ).fetchall()
                found.update({row["id"]: row["sha256"] for row in rows})
        return found

    def embeddings_by_hash(self, hashes: Iterable[str], model: str) -> Dict[str, np.ndarray]:
        """Stored vectors from ``model`` keyed by content hash.

        A chunk whose byte range moved keeps its hash, so its old vector can be
        reused under the new id.
        """
        wanted = list(dict.fromkeys(hashes))
        found: Dict[str, np.ndarray] = {}
        with self._lock:
            for start in range(0, len(wanted), 500):
                batch = wanted[start : start + 500]
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"SELECT sha256, embedding FROM chunks WHERE model = ? "
                    f"AND embedding IS NOT NULL AND sha256 IN ({placeholders})",
                    [model, *batch],
                ).fetchall()
                for row in rows:
                    found.setdefault(
                        row["sha256"], np.frombuffer(row["embedding"], dtype="float32").copy()
                    )
        return found

    def add_pending(self, drafts: Iterable[ChunkDraft], model: str) -> None:
        """Record drafts seen but not yet embedded (NULL embedding)."""
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO chunks(id, path, start_byte, end_byte, sha256, model, embedding)
                VALUES (?, ?, ?, ?, ?, ?, NULL)
                ON CONFLICT(id) DO UPDATE SET
                    sha256 = excluded.sha256,
                    embedding = NULL,
                    updated_at = CURRENT_TIMESTAMP
                """,
                [
                    (d.id, str(d.path), d.start_byte, d.end_byte, d.sha256, model)
                    for d in drafts
                ],
            )

    def upsert(self, chunk: EmbeddedChunk) -> None:
        draft = chunk.draft
        vector = np.asarray(chunk.vector, dtype="float32")
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO chunks(id, path, start_byte, end_byte, sha256, model, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    path = excluded.path,
                    start_byte = excluded.start_byte,
                    end_byte = excluded.end_byte,
                    sha256 = excluded.sha256,
                    model = excluded.model,
                    embedding = excluded.embedding,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    draft.id,
                    str(draft.path),
                    draft.start_byte,
                    draft.end_byte,
                    draft.sha256,
                    chunk.model,
                    sqlite3.Binary(vector.tobytes()),
                ),
            )

    def discard_pending(self, chunk_id: str) -> None:
        """Remove a chunk whose embedding failed."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE id = ? AND embedding IS NULL", (chunk_id,))

    def pending_count(self, root: Path) -> int:
        low, high = prefix_bounds(root)
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE embedding IS NULL AND path >= ? AND path < ?",
                (low, high),
            ).fetchone()
        return int(row[0])

    def count_chunks(self, root: Path) -> int:
        low, high = prefix_bounds(root)
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL "
                "AND path >= ? AND path < ?",
                (low, high),
            ).fetchone()
        return int(row[0])

    def delete_stale(self, root: Path, valid_ids: Set[str], seen_paths: Set[Path]) -> int:
        """Prune chunks under ``root`` not in ``valid_ids`` and unseen file records.

        Returns the number of chunks removed.
        """
        low, high = prefix_bounds(root)
        seen = {str(path) for path in seen_paths}
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM chunks WHERE path >= ? AND path < ?", (low, high)
            ).fetchall()
            stale = [(row["id"],) for row in rows if row["id"] not in valid_ids]
            conn.executemany("DELETE FROM chunks WHERE id = ?", stale)

            files = conn.execute(
                "SELECT path FROM files WHERE path >= ? AND path < ?", (low, high)
            ).fetchall()
            gone = [(row["path"],) for row in files if row["path"] not in seen]
            conn.executemany("DELETE FROM files WHERE path = ?", gone)
        return len(stale)

    def remove_missing_files(self) -> int:
        """Remove files (and their chunks) that no longer exist on disk."""
        with self.transaction() as conn:
            paths = {
                row["path"]
                for row in conn.execute("SELECT path FROM files UNION SELECT path FROM chunks")
            }
            missing = [(path,) for path in paths if not Path(path).exists()]
            conn.executemany("DELETE FROM chunks WHERE path = ?", missing)
            conn.executemany("DELETE FROM files WHERE path = ?", missing)
        return len(missing)

    def similarity_search(
        self, root: Path, query: np.ndarray, n: int, *, model: str
    ) -> List[SearchResult]:
        """Top ``n`` chunks under ``root`` by cosine similarity to ``query``.

        Only vectors produced by ``model`` are compared. Ties are broken by
        chunk id so results are deterministic.
        """
        if n < 1:
            return []
        query = np.asarray(query, dtype="float32").ravel()
        low, high = prefix_bounds(root)
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, path, start_byte, end_byte, embedding
                FROM chunks
                WHERE embedding IS NOT NULL AND model = ? AND path >= ? AND path < ?
                """,
                (model, low, high),
            ).fetchall()

        # Sorted by id so the stable sort below breaks score ties by id.
        rows = sorted(
            (row for row in rows if len(row["embedding"]) == query.nbytes),
            key=lambda row: row["id"],
        )
        if not rows:
            return []

        embeddings = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        norms = np.linalg.norm(embeddings, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, (embeddings @ query) / norms, 0.0)

        order = np.argsort(-scores, kind="stable")[:n]

        return [
            SearchResult(
                id=rows[idx]["id"],
                path=Path(rows[idx]["path"]),
                start_byte=rows[idx]["start_byte"],
                end_byte=rows[idx]["end_byte"],
                score=float(scores[idx]),
            )
            for idx in order
        ]

    # -- job records --------------------------------------------------------

    def save_job(self, status: JobStatus) -> None:
        completed_at = _utcnow() if status.state is JobState.COMPLETED else None
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO directories(
                    path, state, outstanding, embedded, failed, error, created_at, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    state = excluded.state,
                    outstanding = excluded.outstanding,
                    embedded = excluded.embedded,
                    failed = excluded.failed,
                    error = excluded.error,
                    completed_at = COALESCE(excluded.completed_at, directories.completed_at)
                """,
                (
                    str(status.root),
                    status.state.value,
                    status.outstanding,
                    status.embedded,
                    status.failed,
                    status.error,
                    _utcnow(),
                    completed_at,
                ),
            )

    def load_jobs(self) -> List[Tuple[JobStatus, bool]]:
        """Persisted job records with a flag telling whether a pass ever completed."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, state, outstanding, embedded, failed, error, completed_at "
                "FROM directories"
            ).fetchall()
        return [
            (
                JobStatus(
                    root=Path(row["path"]),
                    state=JobState(row["state"]),
                    outstanding=row["outstanding"],
                    embedded=row["embedded"],
                    failed=row["failed"],
                    error=row["error"],
                ),
                row["completed_at"] is not None,
            )
            for row in rows
        ]
