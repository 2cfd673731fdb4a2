"""
Process-wide package job queue.

Jobs are dispatched to a bounded thread pool, at most one running job per
installation. Dispatch is FIFO except that jobs whose site is busy are
skipped over: the first pending job whose site lock can be taken runs
next. When every pending job targets a busy site the dispatcher waits for
a job to finish (or retry_delay seconds, since scans hold site locks too).

Progress is tracked in one QueueSnapshot per run generation. A new
generation starts when jobs are enqueued after the previous one drained.
"""

import logging
import threading
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from fleet.broadcast import CHANNEL_PACKAGE_JOB, EVENT_COMPLETE, EVENT_ERROR, EVENT_PROGRESS
from fleet.models import (
    OperationResult,
    OperationStatus,
    PackageJob,
    PackageOperationInput,
    QueueSnapshot,
    utcnow_iso,
)
from fleet.site_locks import SiteLocks

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8
DEFAULT_RETRY_DELAY = 1.0
SITE_BUSY_MESSAGE = "Site is currently busy with another package job"


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class EnqueueResult:
    accepted: int
    run_id: Optional[str]
    snapshot: QueueSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {'accepted': self.accepted, 'run_id': self.run_id, 'snapshot': self.snapshot.to_dict()}


@dataclass
class JobOutcome:
    """Final result of one job in the current generation."""
    job: PackageJob
    result: OperationResult
    finished_at: str

    def to_dict(self) -> Dict[str, Any]:
        data = self.job.describe()
        data.update(self.result.to_dict())
        data['finished_at'] = self.finished_at
        return data


# ============================================================================
# Pending list
# ============================================================================

class PendingJobs:
    """FIFO of pending jobs that can hand out the first *eligible* job.

    Not thread-safe on its own; the queue guards it with its condition.
    """

    def __init__(self):
        self._items: Deque[PackageJob] = deque()

    def push(self, job: PackageJob):
        self._items.append(job)

    def pop_first(self, predicate: Callable[[PackageJob], bool]) -> Optional[PackageJob]:
        """Remove and return the first job for which predicate(job) is true."""
        for index, job in enumerate(self._items):
            if predicate(job):
                del self._items[index]
                return job
        return None

    def __len__(self) -> int:
        return len(self._items)


# ============================================================================
# Queue
# ============================================================================

class PackageJobQueue:

    def __init__(
        self,
        operations,
        broadcaster,
        site_locks: Optional[SiteLocks] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry_delay: float = DEFAULT_RETRY_DELAY
    ):
        self.operations = operations
        self.broadcaster = broadcaster
        self.site_locks = site_locks or SiteLocks()
        self.concurrency = max(1, int(concurrency))
        self.retry_delay = retry_delay

        self._cond = threading.Condition()
        self._pending = PendingJobs()
        self._running: Dict[str, PackageJob] = {}
        self._snapshot: Optional[QueueSnapshot] = None
        self._outcomes: List[JobOutcome] = []
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='package-job')
        self._dispatcher: Optional[threading.Thread] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(
        self,
        jobs: Sequence[PackageOperationInput],
        site_titles: Optional[Dict[str, str]] = None
    ) -> EnqueueResult:
        site_titles = site_titles or {}

        with self._cond:
            if self._closed:
                raise RuntimeError("Package job queue is shut down")

            if not jobs:
                return EnqueueResult(0, self._snapshot.run_id if self._snapshot else None, self._snapshot_copy())

            if self._snapshot is None or self._snapshot.is_complete:
                self._snapshot = QueueSnapshot(run_id=uuid.uuid4().hex)
                self._outcomes = []
                logger.info(f"Starting package job run {self._snapshot.run_id}")

            for job_input in jobs:
                job = PackageJob(
                    job_id=uuid.uuid4().hex,
                    enqueued_at=utcnow_iso(),
                    installation_id=job_input.installation_id,
                    kind=job_input.kind,
                    slug=job_input.slug,
                    operation=job_input.operation,
                    source=job_input.source,
                    site_title=site_titles.get(job_input.installation_id),
                )
                self._pending.push(job)
                self._snapshot.total += 1
                self._snapshot.queued += 1

            self._touch()
            self._emit(EVENT_PROGRESS, f"Queued {len(jobs)} package job(s)")

            self._ensure_dispatcher()
            self._cond.notify_all()

            return EnqueueResult(len(jobs), self._snapshot.run_id, self._snapshot_copy())

    def snapshot(self) -> QueueSnapshot:
        """Copy of the current generation's snapshot (idle default if none ran yet)."""
        with self._cond:
            return self._snapshot_copy()

    def is_locked(self, installation_id: str) -> bool:
        return self.site_locks.is_locked(installation_id)

    def results(self) -> List[JobOutcome]:
        with self._cond:
            return list(self._outcomes)

    def wait_until_complete(self, timeout: Optional[float] = None) -> bool:
        """Block until the current generation drains. False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._snapshot is None or self._snapshot.is_complete,
                timeout=timeout
            )

    def shutdown(self, wait: bool = True):
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            dispatcher = self._dispatcher

        if dispatcher is not None:
            dispatcher.join(timeout=5)
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self):
        if self._dispatcher is None:
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                name='package-job-dispatcher',
                daemon=True
            )
            self._dispatcher.start()

    def _dispatch_loop(self):
        with self._cond:
            while not self._closed:
                if not len(self._pending) or len(self._running) >= self.concurrency:
                    self._cond.wait()
                    continue

                job = self._pending.pop_first(lambda candidate: self.site_locks.try_acquire(candidate.installation_id))
                if job is None:
                    # Every pending job targets a busy site
                    self._cond.wait(timeout=self.retry_delay)
                    continue

                self._start(job)
                self._executor.submit(self._run_job, job)

    def _start(self, job: PackageJob):
        self._running[job.job_id] = job
        self._snapshot.queued -= 1
        self._snapshot.running += 1
        self._touch()

        title = job.site_title or job.installation_id
        logger.info(f"Starting {job.operation.value} {job.kind.value} '{job.slug}' on {title}")
        self._emit(
            EVENT_PROGRESS,
            f'Started {job.operation.value} {job.kind.value} "{job.slug}" on {title}',
            job=job,
            stage='started'
        )

    def _run_job(self, job: PackageJob):
        try:
            result = self.operations.execute(job.to_input())
        except Exception as e:
            logger.error(f"Package job {job.job_id} crashed: {e}")
            result = OperationResult.failed(str(e) or e.__class__.__name__)

        self._finish(job, result)

    def _finish(self, job: PackageJob, result: OperationResult):
        with self._cond:
            try:
                self.site_locks.release(job.installation_id)
                self._running.pop(job.job_id, None)

                snapshot = self._snapshot
                snapshot.running -= 1
                if result.status is OperationStatus.SUCCESS:
                    snapshot.success += 1
                elif result.status is OperationStatus.SKIPPED:
                    snapshot.skipped += 1
                else:
                    snapshot.failed += 1
                snapshot.recompute_current()
                self._touch()
                self._outcomes.append(JobOutcome(job=job, result=result, finished_at=snapshot.updated_at))

                title = job.site_title or job.installation_id
                message = f"{title}: {result.message}"
                if result.status is OperationStatus.FAILED:
                    logger.error(message)
                    self._emit(EVENT_ERROR, message, job=job, stage='finished', result=result)
                else:
                    logger.info(message)
                    self._emit(EVENT_PROGRESS, message, job=job, stage='finished', result=result)

                if not len(self._pending) and not self._running:
                    snapshot.is_complete = True
                    self._emit(
                        EVENT_COMPLETE,
                        f"Package jobs finished: {snapshot.success} succeeded, "
                        f"{snapshot.failed} failed, {snapshot.skipped} skipped"
                    )
            finally:
                self._cond.notify_all()

    # ------------------------------------------------------------------
    # Helpers (caller holds self._cond)
    # ------------------------------------------------------------------

    def _touch(self):
        self._snapshot.updated_at = utcnow_iso()

    def _snapshot_copy(self) -> QueueSnapshot:
        if self._snapshot is None:
            return QueueSnapshot(is_complete=True)
        return replace(self._snapshot)

    def _emit(
        self,
        type: str,
        message: str,
        job: Optional[PackageJob] = None,
        stage: Optional[str] = None,
        result: Optional[OperationResult] = None
    ):
        data: Dict[str, Any] = {'snapshot': self._snapshot.to_dict()}
        if job is not None:
            data['job'] = job.describe()
        if stage:
            data['stage'] = stage
        if result is not None:
            data['result'] = result.to_dict()

        # Emitted under the queue lock so observers see snapshots in order
        self.broadcaster.emit(CHANNEL_PACKAGE_JOB, type, message, data=data)


# ============================================================================
# Direct (non-queued) actions
# ============================================================================

def run_direct_actions(operations, queue: PackageJobQueue, actions: Sequence[PackageOperationInput]) -> Dict[str, Any]:
    """
    Run activate/deactivate/delete requests synchronously, one by one.

    A site that is busy with a queued job (or a scan) gets a failed result
    instead of waiting. The site lock is held while the action runs so the
    queue will not start a job on it meanwhile.

    Returns:
        Dict with per-action results and success/failed/skipped totals
    """
    results = []
    totals = {status.value: 0 for status in OperationStatus}

    for action in actions:
        if not queue.site_locks.try_acquire(action.installation_id):
            result = OperationResult.failed(SITE_BUSY_MESSAGE)
        else:
            try:
                result = operations.execute(action)
            finally:
                queue.site_locks.release(action.installation_id)

        totals[result.status.value] += 1
        results.append({
            'site_id': action.installation_id,
            'kind': action.kind.value,
            'slug': action.slug,
            'operation': action.operation.value,
            **result.to_dict(),
        })

    return {'results': results, 'total': len(results), **totals}
