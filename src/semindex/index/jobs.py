"""
Job Tracker - per-directory indexing state machine.

    Idle ──index──▶ Running ──▶ Completed
                       │
                       └──────▶ Failed

At most one job per root is ``Running``. A second ``index_directory`` for a
running root joins the existing job instead of starting another. Every run
gets a fresh ``RunRecord`` (an ``asyncio.Event`` plus the final status); handles
keep the record of the run they joined, so any number of waiters observe that
run's completion and outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

from semindex.models import JobState, JobStatus

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
INTERRUPTED_REASON = "interrupted"


@dataclass
class RunRecord:
    """Completion signal and final status of a single run."""

    done: asyncio.Event = field(default_factory=asyncio.Event)
    final: Optional[JobStatus] = None

    def settle(self, status: JobStatus) -> None:
        self.final = status
        self.done.set()


@dataclass
class DirectoryJob:
    """Mutable job record for one canonical root."""

    root: Path
    state: JobState = JobState.IDLE
    outstanding: int = 0
    submitted: int = 0
    embedded: int = 0
    failed: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    has_completed: bool = False
    _run: RunRecord = field(default_factory=RunRecord, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    def add_outstanding(self, count: int) -> None:
        self.outstanding += count
        self.submitted += count

    def chunk_embedded(self) -> None:
        self.outstanding -= 1
        self.embedded += 1

    def chunk_failed(self) -> None:
        self.outstanding -= 1
        self.failed += 1

    def status(self) -> JobStatus:
        return JobStatus(
            root=self.root,
            state=self.state,
            outstanding=self.outstanding,
            embedded=self.embedded,
            failed=self.failed,
            error=self.error,
        )


class JobHandle:
    """Caller's view of one run of a directory job.

    Once the run ends the handle reports that run's final status, even after
    a later run of the same root has started.
    """

    def __init__(self, job: DirectoryJob) -> None:
        self._job = job
        self._run = job._run
        self._task = job._task

    @property
    def root(self) -> Path:
        return self._job.root

    @property
    def state(self) -> JobState:
        return self._current().state

    @property
    def outstanding(self) -> int:
        return self._current().outstanding

    def done(self) -> bool:
        return self._run.done.is_set()

    async def wait(self) -> JobStatus:
        """Suspend until the run finishes; returns its final status."""
        await self._run.done.wait()
        return self._run.final

    def cancel(self) -> bool:
        """Stop the run; it ends ``Failed`` with a cancellation reason."""
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    def _current(self) -> JobStatus:
        if self._run.final is not None:
            return self._run.final
        return self._job.status()


JobRunner = Callable[[DirectoryJob], Awaitable[None]]
StatusListener = Callable[[JobStatus], Awaitable[None]]


class JobTracker:
    """Arena of job records keyed by canonical root path."""

    def __init__(self, on_transition: Optional[StatusListener] = None) -> None:
        self._jobs: Dict[Path, DirectoryJob] = {}
        self._on_transition = on_transition

    def get(self, root: Path) -> Optional[DirectoryJob]:
        return self._jobs.get(root)

    def status(self, root: Path) -> JobStatus:
        job = self._jobs.get(root)
        if job is None:
            return JobStatus(root=root, state=JobState.IDLE)
        return job.status()

    def has_completed(self, root: Path) -> bool:
        job = self._jobs.get(root)
        return job is not None and job.has_completed

    def running(self) -> list[DirectoryJob]:
        return [job for job in self._jobs.values() if job.state is JobState.RUNNING]

    def admit(self, root: Path, runner: JobRunner) -> JobHandle:
        """Start ``runner`` for ``root`` unless a run is already in flight.

        Check and transition happen without an intervening await, so concurrent
        callers on the same event loop cannot both start a run.
        """
        job = self._jobs.get(root)
        if job is not None and job.state is JobState.RUNNING:
            logger.debug("Joining running job for %s", root)
            return JobHandle(job)

        if job is None:
            job = DirectoryJob(root=root)
            self._jobs[root] = job

        job.state = JobState.RUNNING
        job.outstanding = job.submitted = job.embedded = job.failed = 0
        job.error = None
        job.created_at = datetime.now(timezone.utc)
        run = job._run = RunRecord()
        job._task = asyncio.create_task(self._drive(job, run, runner), name=f"index:{root}")
        job._task.add_done_callback(lambda _: self._reap(job, run))
        logger.info("Indexing job started for %s", root)
        return JobHandle(job)

    def _reap(self, job: DirectoryJob, run: RunRecord) -> None:
        # A task cancelled before its first step never enters _drive.
        if not run.done.is_set():
            self._finish(job, JobState.FAILED, CANCELLED_REASON)
            run.settle(job.status())

    async def _drive(self, job: DirectoryJob, run: RunRecord, runner: JobRunner) -> None:
        await self._notify(job)
        try:
            await runner(job)
        except asyncio.CancelledError:
            self._finish(job, JobState.FAILED, CANCELLED_REASON)
        except Exception as exc:
            logger.exception("Indexing job for %s failed", job.root)
            self._finish(job, JobState.FAILED, str(exc) or type(exc).__name__)
        else:
            if job.submitted > 0 and job.embedded == 0:
                self._finish(
                    job, JobState.FAILED, f"all {job.submitted} chunks failed to embed"
                )
            else:
                self._finish(job, JobState.COMPLETED)
        finally:
            # Snapshot before the next await; a new run may reset the record.
            run.final = job.status()
            try:
                await asyncio.shield(self._notify(job))
            finally:
                run.done.set()

    def _finish(self, job: DirectoryJob, state: JobState, error: Optional[str] = None) -> None:
        job.state = state
        job.error = error
        if state is JobState.COMPLETED:
            job.has_completed = True
            logger.info(
                "Indexing job for %s completed: %d embedded, %d failed",
                job.root,
                job.embedded,
                job.failed,
            )
        else:
            logger.warning("Indexing job for %s failed: %s", job.root, error)

    async def _notify(self, job: DirectoryJob) -> None:
        if self._on_transition is None:
            return
        try:
            await self._on_transition(job.status())
        except Exception:
            logger.exception("Failed to persist job state for %s", job.root)

    def restore(self, records: Iterable[Tuple[JobStatus, bool]]) -> None:
        """Rebuild job records from persisted state after a restart.

        Runs that were in flight when the process stopped become ``Failed``.
        """
        for status, completed_once in records:
            job = DirectoryJob(
                root=status.root,
                state=status.state,
                outstanding=status.outstanding,
                embedded=status.embedded,
                failed=status.failed,
                error=status.error,
                has_completed=completed_once,
            )
            if job.state is JobState.RUNNING:
                job.state = JobState.FAILED
                job.error = INTERRUPTED_REASON
            job._run.settle(job.status())
            self._jobs[status.root] = job

    async def cancel_all(self) -> None:
        tasks = [job._task for job in self.running() if job._task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
