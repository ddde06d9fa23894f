"""
In-process background job queue.

A single coordinator task owns the pending jobs. Everything else talks to it
through its inbox:

* ``submit()`` posts a new job,
* the executor posts the outcome of the job it just ran,
* ``get_stats()`` posts a request and awaits the reply.

On every tick the coordinator starts a drain if there is pending work and no
drain is running. A drain runs ready jobs one at a time, highest priority
first and oldest first within a priority. A failed job is retried with
exponential backoff until it has failed ``max_retries`` times, then it is
dropped and recorded in a bounded dead-letter log.

Jobs live only in memory; pending jobs are lost when the process stops.
"""
import asyncio
import enum
import itertools
import logging
from collections import Counter as Tally, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from prometheus_client import Counter

from alcpt.core.config import settings

logger = logging.getLogger(__name__)

JOB_OUTCOMES = Counter("alcpt_jobs_total", "Background job outcomes", ["kind", "outcome"])


class JobKind(str, enum.Enum):
    AUDIO_GENERATION = "audio_generation"
    ARABIC_EXPLANATION = "arabic_explanation"
    BATCH_PROCESS = "batch_process"


class JobPriority(enum.IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "JobPriority":
        try:
            return cls[label.upper()]
        except KeyError:
            raise ValueError(f"Unknown priority {label!r}") from None


@dataclass
class BackgroundJob:
    kind: JobKind
    priority: JobPriority
    sequence: int
    question_id: Optional[int] = None
    test_id: Optional[int] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    retries: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    not_before: float = 0.0

    @property
    def target(self) -> str:
        if self.kind is JobKind.BATCH_PROCESS:
            return f"test {self.test_id}"
        return f"question {self.question_id}"

    def sort_key(self) -> tuple:
        return (-int(self.priority), self.sequence)


@dataclass(frozen=True)
class DeadJob:
    job_id: str
    kind: str
    question_id: Optional[int]
    test_id: Optional[int]
    retries: int
    error: str
    failed_at: datetime


@dataclass(frozen=True)
class QueueStats:
    pending: int
    by_kind: Dict[str, int]
    by_priority: Dict[str, int]
    draining: bool
    running: bool
    processed: int
    failed_attempts: int
    dead: int
    dead_letters: List[DeadJob]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Handler = Callable[[BackgroundJob], Awaitable[None]]


# Inbox messages
@dataclass
class _Submit:
    job: BackgroundJob


@dataclass
class _Finished:
    job: BackgroundJob
    error: Optional[BaseException]


@dataclass
class _StatsRequest:
    reply: "asyncio.Future[QueueStats]"


_Message = Union[_Submit, _Finished, _StatsRequest]


class BackgroundProcessor:
    def __init__(
        self,
        handlers: Optional[Mapping[JobKind, Handler]] = None,
        *,
        tick_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        dead_letter_capacity: Optional[int] = None,
    ):
        self.tick_interval = settings.JOB_TICK_INTERVAL if tick_interval is None else tick_interval
        self.max_retries = settings.JOB_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = settings.JOB_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self._handlers: Dict[JobKind, Handler] = dict(handlers or {})
        self._inbox: "asyncio.Queue[_Message]" = asyncio.Queue()
        self._sequence = itertools.count(1)
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None

        # Owned by the coordinator
        self._pending: List[BackgroundJob] = []
        self._executing: Optional[BackgroundJob] = None
        self._executor: Optional[asyncio.Task] = None
        self._draining = False
        self._processed = 0
        self._failed_attempts = 0
        self._dead: Deque[DeadJob] = deque(
            maxlen=settings.JOB_DEAD_LETTER_CAPACITY if dead_letter_capacity is None else dead_letter_capacity
        )

    # ------------------------------------------------------------ public API

    def register(self, kind: JobKind, handler: Handler) -> None:
        self._handlers[kind] = handler

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(
        self,
        kind: JobKind,
        *,
        question_id: Optional[int] = None,
        test_id: Optional[int] = None,
        priority: JobPriority = JobPriority.MEDIUM,
    ) -> BackgroundJob:
        """Queue a job. Duplicates are allowed; handlers skip work already done."""
        kind = JobKind(kind)
        if kind is JobKind.BATCH_PROCESS and test_id is None:
            raise ValueError("batch_process jobs need a test_id")
        if kind is not JobKind.BATCH_PROCESS and question_id is None:
            raise ValueError(f"{kind.value} jobs need a question_id")

        job = BackgroundJob(
            kind=kind,
            priority=JobPriority(priority),
            sequence=next(self._sequence),
            question_id=question_id,
            test_id=test_id,
        )
        self._idle.clear()
        self._inbox.put_nowait(_Submit(job))
        logger.debug("Queued %s job %s for %s", kind.value, job.id, job.target)
        return job

    def enqueue_audio(self, question_id: int, priority: JobPriority = JobPriority.MEDIUM) -> BackgroundJob:
        return self.submit(JobKind.AUDIO_GENERATION, question_id=question_id, priority=priority)

    def enqueue_explanation(self, question_id: int, priority: JobPriority = JobPriority.MEDIUM) -> BackgroundJob:
        return self.submit(JobKind.ARABIC_EXPLANATION, question_id=question_id, priority=priority)

    def enqueue_batch(self, test_id: int, priority: JobPriority = JobPriority.LOW) -> BackgroundJob:
        return self.submit(JobKind.BATCH_PROCESS, test_id=test_id, priority=priority)

    async def get_stats(self) -> QueueStats:
        if not self.running:
            # No coordinator to race with
            self._absorb_inbox()
            return self._snapshot()
        reply: asyncio.Future[QueueStats] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_StatsRequest(reply))
        return await reply

    async def dead_letters(self) -> List[DeadJob]:
        return (await self.get_stats()).dead_letters

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="background-processor")
        logger.info("Background processor started (tick %.1fs)", self.tick_interval)

    async def stop(self) -> None:
        tasks = [t for t in (self._executor, self._task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._executor = None
        dropped = len(self._pending) + (1 if self._executing else 0)
        if dropped:
            logger.warning("Background processor stopped with %d unfinished jobs", dropped)

    async def join(self) -> None:
        """Wait until every submitted job has finished or been dropped."""
        await self._idle.wait()

    # ------------------------------------------------------------ coordinator

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.tick_interval
        while True:
            timeout = max(0.0, next_tick - loop.time())
            try:
                message = await asyncio.wait_for(self._inbox.get(), timeout)
            except asyncio.TimeoutError:
                next_tick = loop.time() + self.tick_interval
                if not self._draining and self._pending:
                    self._start_drain(loop.time())
            else:
                self._handle(message, loop.time())
            self._settle()

    def _handle(self, message: _Message, now: float) -> None:
        if isinstance(message, _Submit):
            self._pending.append(message.job)
        elif isinstance(message, _Finished):
            self._finish(message.job, message.error, now)
            if self._draining:
                self._dispatch_next(now)
        elif isinstance(message, _StatsRequest):
            if not message.reply.done():
                message.reply.set_result(self._snapshot())

    def _absorb_inbox(self) -> None:
        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            if isinstance(message, _Submit):
                self._pending.append(message.job)

    def _start_drain(self, now: float) -> None:
        self._draining = True
        self._dispatch_next(now)

    def _dispatch_next(self, now: float) -> None:
        ready = [job for job in self._pending if job.not_before <= now]
        if not ready:
            self._draining = False
            return
        job = min(ready, key=BackgroundJob.sort_key)
        self._pending.remove(job)
        self._executing = job
        self._executor = asyncio.create_task(self._execute(job), name=f"job-{job.id}")

    async def _execute(self, job: BackgroundJob) -> None:
        error: Optional[BaseException] = None
        try:
            handler = self._handlers.get(job.kind)
            if handler is None:
                raise LookupError(f"No handler registered for {job.kind.value}")
            await handler(job)
        except Exception as e:
            error = e
        self._inbox.put_nowait(_Finished(job, error))

    def _finish(self, job: BackgroundJob, error: Optional[BaseException], now: float) -> None:
        self._executing = None
        self._executor = None
        if error is None:
            self._processed += 1
            JOB_OUTCOMES.labels(kind=job.kind.value, outcome="done").inc()
            logger.info("Completed %s job for %s", job.kind.value, job.target)
            return

        job.retries += 1
        self._failed_attempts += 1
        if job.retries >= self.max_retries:
            JOB_OUTCOMES.labels(kind=job.kind.value, outcome="dead").inc()
            logger.error(
                "Dropping %s job %s for %s after %d attempts: %s",
                job.kind.value, job.id, job.target, job.retries, error,
            )
            self._dead.append(DeadJob(
                job_id=job.id,
                kind=job.kind.value,
                question_id=job.question_id,
                test_id=job.test_id,
                retries=job.retries,
                error=str(error),
                failed_at=datetime.now(timezone.utc),
            ))
            return

        delay = self.retry_base_delay * 2 ** (job.retries - 1)
        job.not_before = now + delay
        self._pending.append(job)
        JOB_OUTCOMES.labels(kind=job.kind.value, outcome="retry").inc()
        logger.warning(
            "%s job for %s failed (attempt %d/%d), retrying in %.1fs: %s",
            job.kind.value, job.target, job.retries, self.max_retries, delay, error,
        )

    def _settle(self) -> None:
        if not self._pending and not self._draining and self._executing is None and self._inbox.empty():
            self._idle.set()

    def _snapshot(self) -> QueueStats:
        by_kind = Tally(job.kind.value for job in self._pending)
        by_priority = Tally(job.priority.label for job in self._pending)
        return QueueStats(
            pending=len(self._pending),
            by_kind={kind.value: by_kind.get(kind.value, 0) for kind in JobKind},
            by_priority={p.label: by_priority.get(p.label, 0) for p in sorted(JobPriority, reverse=True)},
            draining=self._draining,
            running=self.running,
            processed=self._processed,
            failed_attempts=self._failed_attempts,
            dead=len(self._dead),
            dead_letters=list(self._dead),
        )
