"""In-process job queue with identity de-duplication, delays and retries.

Six named queues carry the background work. A job's identity is its id: while
a job with that id is waiting, delayed, running or still retained after it
finished, enqueueing the same identity returns the existing job instead of
scheduling a second unit of work.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import JobFailed, JobTimeout, SweeperError, UnknownJob

logger = logging.getLogger(__name__)

WALLET_SCAN = "wallet-scan"
PRICE_UPDATE = "price-update"
SWEEP_EXECUTE = "sweep-execute"
SWEEP_TRACK = "sweep-track"
BRIDGE_EXECUTE = "bridge-execute"
BRIDGE_TRACK = "bridge-track"

QUEUE_NAMES = (WALLET_SCAN, PRICE_UPDATE, SWEEP_EXECUTE, SWEEP_TRACK, BRIDGE_EXECUTE, BRIDGE_TRACK)

DAY = 24 * 3600


@dataclass(frozen=True)
class QueuePolicy:
    attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    delay_seconds: float = 0.0
    keep_completed: int = 1000
    completed_age_seconds: float = DAY
    keep_failed: int = 5000
    failed_age_seconds: float = 7 * DAY


DEFAULT_POLICIES: Dict[str, QueuePolicy] = {
    WALLET_SCAN: QueuePolicy(),
    PRICE_UPDATE: QueuePolicy(keep_completed=0),
    SWEEP_EXECUTE: QueuePolicy(attempts=5),
    SWEEP_TRACK: QueuePolicy(attempts=1),
    BRIDGE_EXECUTE: QueuePolicy(attempts=3, backoff_seconds=5.0),
    BRIDGE_TRACK: QueuePolicy(attempts=1),
}


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_STATES = (JobState.COMPLETED, JobState.FAILED)


@dataclass
class Job:
    id: str
    queue: str
    payload: Dict[str, Any]
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    result: Any = None
    error: Optional[str] = None
    created_at: float = 0.0
    finished_at: Optional[float] = None
    outcome: Optional["asyncio.Future[Tuple[bool, Any]]"] = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES


@dataclass(frozen=True)
class JobHandle:
    id: str
    queue: str
    created: bool


Handler = Callable[[Job], Awaitable[Any]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]


@dataclass
class _Registration:
    handler: Handler
    on_failure: Optional[FailureHook] = None


def should_retry(exc: BaseException) -> bool:
    if isinstance(exc, SweeperError):
        return exc.retryable
    return True


class JobQueue:
    def __init__(
        self,
        concurrency: int = 4,
        policies: Optional[Dict[str, QueuePolicy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.concurrency = concurrency
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.clock = clock
        self._jobs: Dict[str, Job] = {}
        self._queues: Dict[str, "asyncio.Queue[Job]"] = {}
        self._handlers: Dict[str, _Registration] = {}
        self._workers: List["asyncio.Task[None]"] = []
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._started = False
        self._closed = False

    def policy(self, queue_name: str) -> QueuePolicy:
        return self.policies.get(queue_name, QueuePolicy())

    def _queue(self, queue_name: str) -> "asyncio.Queue[Job]":
        if queue_name not in self._queues:
            self._queues[queue_name] = asyncio.Queue()
        return self._queues[queue_name]

    def register(self, queue_name: str, handler: Handler, on_failure: Optional[FailureHook] = None) -> None:
        self._handlers[queue_name] = _Registration(handler, on_failure)
        if self._started:
            self._spawn(queue_name)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for queue_name in self._handlers:
            self._spawn(queue_name)

    def _spawn(self, queue_name: str) -> None:
        queue = self._queue(queue_name)
        for index in range(self.concurrency):
            task = asyncio.create_task(self._worker(queue_name, queue), name=f"{queue_name}-worker-{index}")
            self._workers.append(task)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        identity: str,
        delay: Optional[float] = None,
    ) -> JobHandle:
        if self._closed:
            raise SweeperError("job queue is closed", {"queue": queue_name})
        existing = self._jobs.get(identity)
        if existing is not None:
            logger.debug("job %s already %s, not enqueued again", identity, existing.state.value)
            return JobHandle(id=identity, queue=existing.queue, created=False)

        loop = asyncio.get_running_loop()
        job = Job(
            id=identity,
            queue=queue_name,
            payload=dict(payload),
            created_at=self.clock(),
            outcome=loop.create_future(),
        )
        self._jobs[identity] = job
        wait = self.policy(queue_name).delay_seconds if delay is None else delay
        if wait > 0:
            job.state = JobState.DELAYED
            self._timers[identity] = loop.call_later(wait, self._release, job)
        else:
            self._queue(queue_name).put_nowait(job)
        return JobHandle(id=identity, queue=queue_name, created=True)

    def _release(self, job: Job) -> None:
        self._timers.pop(job.id, None)
        if self._closed:
            return
        job.state = JobState.WAITING
        self._queue(job.queue).put_nowait(job)

    async def _worker(self, queue_name: str, queue: "asyncio.Queue[Job]") -> None:
        while True:
            job = await queue.get()
            try:
                await self._run(job)
            finally:
                queue.task_done()

    async def _run(self, job: Job) -> None:
        registration = self._handlers[job.queue]
        policy = self.policy(job.queue)
        job.state = JobState.ACTIVE
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(policy.attempts, 1)),
                wait=wait_exponential(multiplier=policy.backoff_seconds, max=policy.max_backoff_seconds),
                retry=retry_if_exception(should_retry),
                reraise=True,
            ):
                with attempt:
                    job.attempts_made += 1
                    result = await registration.handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.state = JobState.FAILED
            job.error = str(exc)
            job.finished_at = self.clock()
            logger.warning("job %s on %s failed after %d attempts: %s", job.id, job.queue, job.attempts_made, exc)
            if registration.on_failure is not None:
                try:
                    await registration.on_failure(job, exc)
                except Exception:
                    logger.exception("failure hook for job %s raised", job.id)
            self._resolve(job, False, exc)
        else:
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = self.clock()
            self._resolve(job, True, result)
        self._prune(job.queue)

    @staticmethod
    def _resolve(job: Job, ok: bool, value: Any) -> None:
        if job.outcome is not None and not job.outcome.done():
            job.outcome.set_result((ok, value))

    def _prune(self, queue_name: str) -> None:
        policy = self.policy(queue_name)
        now = self.clock()
        for state, keep, max_age in (
            (JobState.COMPLETED, policy.keep_completed, policy.completed_age_seconds),
            (JobState.FAILED, policy.keep_failed, policy.failed_age_seconds),
        ):
            finished = sorted(
                (job for job in self._jobs.values() if job.queue == queue_name and job.state == state),
                key=lambda job: job.finished_at or 0.0,
                reverse=True,
            )
            for index, job in enumerate(finished):
                if index >= keep or now - (job.finished_at or now) > max_age:
                    del self._jobs[job.id]

    async def wait_for(self, job_id: str, timeout: float = 30.0) -> Any:
        """Result of a job; ``JobTimeout`` leaves the job running.

        ``UnknownJob`` means the id is not tracked, including jobs already pruned.
        """
        job = self._jobs.get(job_id)
        if job is None or job.outcome is None:
            raise UnknownJob(job_id)
        try:
            ok, value = await asyncio.wait_for(asyncio.shield(job.outcome), timeout)
        except asyncio.TimeoutError:
            raise JobTimeout("timed out waiting for job", {"job_id": job_id, "timeout": timeout}) from None
        if not ok:
            raise JobFailed(job_id, str(value))
        return value

    def pending(self) -> List[Job]:
        return [job for job in self._jobs.values() if not job.finished]

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until no job is waiting, delayed or running."""

        async def idle() -> None:
            while True:
                outstanding = [job.outcome for job in self.pending() if job.outcome is not None]
                if not outstanding:
                    return
                await asyncio.wait(outstanding)

        await asyncio.wait_for(idle(), timeout)

    async def close(self) -> None:
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        for job in self._jobs.values():
            if job.outcome is not None and not job.outcome.done():
                job.outcome.cancel()


_default_queue: Optional[JobQueue] = None


def get_job_queue(concurrency: int = 4) -> JobQueue:
    global _default_queue
    if _default_queue is None:
        _default_queue = JobQueue(concurrency=concurrency)
    return _default_queue


async def close_job_queue() -> None:
    global _default_queue
    if _default_queue is not None:
        await _default_queue.close()
        _default_queue = None


async def enqueue_wallet_scan(
    queue: JobQueue,
    address: str,
    chains: Optional[Iterable[str]] = None,
    clock: Callable[[], float] = time.time,
) -> JobHandle:
    payload = {"address": address, "chains": list(chains) if chains else None}
    return await queue.enqueue(WALLET_SCAN, payload, identity=f"scan-{address}-{int(clock() * 1000)}")


async def enqueue_price_update(queue: JobQueue, token: str, chain: str) -> JobHandle:
    payload = {"token": token, "chain": chain}
    return await queue.enqueue(PRICE_UPDATE, payload, identity=f"price-{chain}-{token.lower()}")


async def enqueue_price_updates(queue: JobQueue, tokens: Iterable[Tuple[str, str]]) -> List[JobHandle]:
    """Bulk form of ``enqueue_price_update`` over ``(token, chain)`` pairs."""
    return [await enqueue_price_update(queue, token, chain) for token, chain in tokens]
