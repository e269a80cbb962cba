"""
Batch Scheduler

Priority queue of matching jobs drained by a fixed-interval pump. Up to
``max_concurrent_batches`` jobs run at once; each job resolves its records
in sub-batches of ``max_batch_size`` with a rate-limit delay in between.
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from config.logging import logger
from crosswalk.matching.errors import ExternalCallError, JobError, RecordError
from crosswalk.matching.escalation import ExternalCallBudget
from crosswalk.matching.normalizer import NormalizedResult
from crosswalk.matching.resolver import SequentialResolver
from crosswalk.matching.types import CatalogRecord, CompetitorRecord, Priority


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """Cooperative cancellation signal shared between a job and its canceller."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class JobStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobEventKind(Enum):
    SUBMITTED = "submitted"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobProgress:
    total: int = 0
    completed: int = 0
    cached: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def fraction(self) -> float:
        return self.processed / self.total if self.total else 1.0


@dataclass
class BatchJob:
    """A batch of competitor records matched against one catalog."""
    id: str
    records: list[CompetitorRecord]
    catalog: list[CatalogRecord]
    priority: Priority = Priority.NORMAL
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: JobProgress = field(default_factory=JobProgress)
    results: list[NormalizedResult] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    budget: ExternalCallBudget = field(default_factory=ExternalCallBudget, repr=False)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def snapshot(self) -> "BatchJob":
        """Copy safe to hand to callers; later scheduler mutations do not show through."""
        return replace(
            self,
            records=list(self.records),
            catalog=list(self.catalog),
            progress=replace(self.progress),
            results=list(self.results),
            errors=[dict(e) for e in self.errors],
        )


@dataclass
class JobEvent:
    """Lifecycle notification for a job."""
    kind: JobEventKind
    job_id: str
    job: BatchJob
    progress: JobProgress
    eta_ms: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)


@dataclass
class SchedulerConfig:
    """Configuration for the batch scheduler."""
    max_batch_size: int = 10
    max_concurrent_batches: int = 3
    rate_limit_rpm: int = 50
    poll_interval: float = 1.0
    max_external_calls_per_job: int = 0  # 0 = unlimited
    event_queue_size: int = 1000

    @property
    def delay_seconds(self) -> float:
        """Wait between sub-batches (60000 / rpm milliseconds)."""
        return 60.0 / self.rate_limit_rpm if self.rate_limit_rpm > 0 else 0.0


@dataclass
class SchedulerStats:
    total_jobs: int = 0
    pending_jobs: int = 0
    active_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    total_products_processed: int = 0
    average_job_time_ms: float = 0.0


EventCallback = Callable[[JobEvent], Any]


class BatchScheduler:
    """
    Runs matching jobs with priority, bounded concurrency and rate limiting.

    Usage:
        scheduler = BatchScheduler(resolver, SchedulerConfig(max_concurrent_batches=2))
        scheduler.start()
        job_id = await scheduler.submit(records, catalog, Priority.HIGH)
        job = await scheduler.wait_for(job_id)
        await scheduler.stop()
    """

    def __init__(
        self,
        resolver: SequentialResolver,
        config: Optional[SchedulerConfig] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.resolver = resolver
        self.config = config or SchedulerConfig()
        self.on_event = on_event

        self._jobs: dict[str, BatchJob] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._queue: list[str] = []
        self._running: dict[str, asyncio.Task] = {}
        self._subscribers: list[asyncio.Queue] = []
        self._pump_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    # Lifecycle

    def start(self):
        """Start the queue pump. Must be called from a running event loop."""
        if self._pump_task and not self._pump_task.done():
            return
        self._stopping = asyncio.Event()
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(
            f"Batch scheduler started (concurrency={self.config.max_concurrent_batches}, "
            f"batch_size={self.config.max_batch_size}, rpm={self.config.rate_limit_rpm})"
        )

    async def stop(self, cancel_running: bool = True):
        """
        Stop the pump and wait for running jobs to wind down.

        With ``cancel_running`` queued jobs are cancelled too. Without it
        they stay pending until the scheduler is started again.
        """
        if self._stopping:
            self._stopping.set()
        if self._pump_task:
            await self._pump_task
            self._pump_task = None

        if cancel_running:
            for job_id in list(self._queue):
                await self.cancel(job_id)
            for job_id in list(self._running):
                self._jobs[job_id].token.cancel()
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        logger.info("Batch scheduler stopped")

    async def _pump(self):
        while not self._stopping.is_set():
            self._dispatch()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _dispatch(self):
        while self._queue and len(self._running) < self.config.max_concurrent_batches:
            job_id = self._queue.pop(0)
            # Off the queue, so cancel() goes through the token
            self._jobs[job_id].status = JobStatus.PROCESSING
            task =asyncio.create_task(self._run_job(self._jobs[job_id]))
            self._running[job_id] = task
            task.add_done_callback(lambda _t, jid=job_id: self._running.pop(jid, None))

    # Public API

    async def submit(
        self,
        records: list[Union[CompetitorRecord, dict]],
        catalog: list[Union[CatalogRecord, dict]],
        priority: Priority = Priority.NORMAL,
    ) -> str:
        """
        Queue a job.

        Args:
            records: Competitor records (or dicts in the input format)
            catalog: Catalog records matched against
            priority: Queue band; FIFO within a band

        Returns:
            Job ID
        """
        job = BatchJob(
            id=f"job_{uuid.uuid4().hex[:12]}",
            records=[r if isinstance(r, CompetitorRecord) else CompetitorRecord.from_dict(r) for r in records],
            catalog=[c if isinstance(c, CatalogRecord) else CatalogRecord.from_dict(c) for c in catalog],
            priority=priority,
            budget=ExternalCallBudget(self.config.max_external_calls_per_job),
        )
        job.progress.total = len(job.records)

        self._jobs[job.id] = job
        self._finished[job.id] = asyncio.Event()
        self._enqueue(job)

        logger.info(f"Job submitted: {job.id} ({job.progress.total} records, priority={priority.value})")
        await self._emit(JobEventKind.SUBMITTED, job)
        return job.id

    def _enqueue(self, job: BatchJob):
        # After the last job of equal or higher priority
        position = 0
        for i, queued_id in enumerate(self._queue):
            if self._jobs[queued_id].priority.rank <= job.priority.rank:
                position = i + 1
        self._queue.insert(position, job.id)

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job.

        Pending jobs are cancelled immediately. Processing jobs stop at the
        next sub-batch boundary.

        Returns:
            False if the job is unknown or already finished
        """
        job = self._jobs.get(job_id)
        if job is None or job.status.terminal:
            return False

        if job.status == JobStatus.PENDING:
            if job_id in self._queue:
                self._queue.remove(job_id)
            job.token.cancel()
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            logger.info(f"Job cancelled before start: {job_id}")
            await self._emit(JobEventKind.CANCELLED, job)
            self._finished[job_id].set()
            return True

        job.token.cancel()
        logger.info(f"Cancellation requested for running job: {job_id}")
        return True

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Ordered event channel. A full queue makes emitting jobs wait."""
        queue: asyncio.Queue = asyncio.Queue(
            maxsize=self.config.event_queue_size if maxsize is None else maxsize
        )
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> BatchJob:
        """Wait until the job reaches a terminal state and return its snapshot."""
        if job_id not in self._jobs:
            raise KeyError(f"Unknown job: {job_id}")
        await asyncio.wait_for(self._finished[job_id].wait(), timeout)
        return self._jobs[job_id].snapshot()

    def get_all_jobs(self, status: Optional[JobStatus] = None) -> list[BatchJob]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        return [j.snapshot() for j in sorted(jobs, key=lambda j: j.created_at)]

    def cleanup_old_jobs(self, older_than_hours: float = 24) -> int:
        """Forget finished jobs that completed more than ``older_than_hours`` ago."""
        cutoff = _now() - timedelta(hours=older_than_hours)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.terminal and job.completed_at and job.completed_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
            self._finished.pop(job_id, None)

        if stale:
            logger.info(f"Cleaned up {len(stale)} old jobs")
        return len(stale)

    def stats(self) -> SchedulerStats:
        jobs = list(self._jobs.values())
        durations = [j.duration_ms for j in jobs if j.status == JobStatus.COMPLETED and j.duration_ms is not None]
        return SchedulerStats(
            total_jobs=len(jobs),
            pending_jobs=sum(1 for j in jobs if j.status == JobStatus.PENDING),
            active_jobs=sum(1 for j in jobs if j.status == JobStatus.PROCESSING),
            completed_jobs=sum(1 for j in jobs if j.status == JobStatus.COMPLETED),
            failed_jobs=sum(1 for j in jobs if j.status == JobStatus.FAILED),
            cancelled_jobs=sum(1 for j in jobs if j.status == JobStatus.CANCELLED),
            total_products_processed=sum(j.progress.completed for j in jobs),
            average_job_time_ms=sum(durations) / len(durations) if durations else 0.0,
        )

    # Job execution

    async def _run_job(self, job: BatchJob):
        job.status = JobStatus.PROCESSING
        job.started_at = _now()
        logger.info(f"Job started: {job.id} ({job.progress.total} records)")
        await self._emit(JobEventKind.STARTED, job)

        try:
            await self._process(job)
        except Exception as e:
            error = JobError(job.id, str(e))
            job.status = JobStatus.FAILED
            job.error = str(error)
            job.completed_at = _now()
            logger.error(f"Job failed: {error}")
            await self._emit(JobEventKind.FAILED, job, error=job.error)
        finally:
            self._finished[job.id].set()

    async def _process(self, job: BatchJob):
        size = max(1, self.config.max_batch_size)
        chunks = [job.records[i:i + size] for i in range(0, len(job.records), size)]

        for n, chunk in enumerate(chunks):
            if job.token.cancelled:
                break
            if n > 0 and await job.token.wait(self.config.delay_seconds):
                break

            await self._process_chunk(job, chunk, offset=n * size)
            logger.debug(
                f"Job {job.id}: sub-batch {n + 1}/{len(chunks)} done "
                f"({job.progress.processed}/{job.progress.total})"
            )
            await self._emit(JobEventKind.PROGRESS, job, eta_ms=self._eta_ms(job))

        job.completed_at = _now()
        if job.token.cancelled:
            job.status = JobStatus.CANCELLED
            logger.info(f"Job cancelled: {job.id} after {job.progress.processed}/{job.progress.total} records")
            await self._emit(JobEventKind.CANCELLED, job)
        else:
            job.status = JobStatus.COMPLETED
            logger.info(
                f"Job completed: {job.id} ({job.progress.completed} matched, "
                f"{job.progress.cached} cached, {job.progress.failed} errors)"
            )
            await self._emit(JobEventKind.COMPLETED, job)

    async def _process_chunk(self, job: BatchJob, chunk: list[CompetitorRecord], offset: int):
        for i, record in enumerate(chunk):
            index = offset + i
            try:
                result = await self.resolver.resolve(
                    record,
                    job.catalog,
                    source="batch",
                    budget=job.budget,
                    batch_mode=True,
                )
            except ExternalCallError as e:
                # The rest of this sub-batch is abandoned; the next one still runs
                logger.warning(f"Job {job.id}: external call failed at record {index}: {e}")
                for j, remaining in enumerate(chunk[i:]):
                    self._record_error(
                        job,
                        RecordError(index + j, remaining.sku, remaining.company, str(e), kind="external"),
                    )
                return
            except Exception as e:
                logger.warning(f"Job {job.id}: record {index} ({record.sku}) failed: {e}")
                self._record_error(job, RecordError(index, record.sku, record.company, str(e)))
                continue

            job.results.append(result)
            job.progress.completed += 1
            if result.from_cache:
                job.progress.cached += 1

    def _record_error(self, job: BatchJob, error: RecordError):
        job.errors.append(error.to_dict())
        job.progress.failed += 1

    def _eta_ms(self, job: BatchJob) -> Optional[int]:
        fraction = job.progress.fraction
        if not job.started_at or fraction <= 0:
            return None
        elapsed = (_now() - job.started_at).total_seconds() * 1000
        return int(elapsed / fraction - elapsed)

    async def _emit(
        self,
        kind: JobEventKind,
        job: BatchJob,
        eta_ms: Optional[int] = None,
        error: Optional[str] = None,
    ):
        snapshot = job.snapshot()
        event = JobEvent(
            kind=kind,
            job_id=job.id,
            job=snapshot,
            progress=snapshot.progress,
            eta_ms=eta_ms,
            error=error,
        )
        if self.on_event:
            outcome = self.on_event(event)
            if inspect.isawaitable(outcome):
                await outcome
        for queue in list(self._subscribers):
            await queue.put(event)
