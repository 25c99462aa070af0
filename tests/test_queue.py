import asyncio
import unittest

from dust_sweeper.errors import JobFailed, JobTimeout, ProviderError, UnknownJob, ValidationError
from dust_sweeper.queue import (
    PRICE_UPDATE,
    SWEEP_EXECUTE,
    SWEEP_TRACK,
    WALLET_SCAN,
    JobQueue,
    JobState,
    QueuePolicy,
    close_job_queue,
    enqueue_price_update,
    enqueue_price_updates,
    get_job_queue,
)

FAST = {
    SWEEP_EXECUTE: QueuePolicy(attempts=5, backoff_seconds=0),
    SWEEP_TRACK: QueuePolicy(attempts=1, backoff_seconds=0),
    WALLET_SCAN: QueuePolicy(attempts=3, backoff_seconds=0),
    PRICE_UPDATE: QueuePolicy(attempts=3, backoff_seconds=0, keep_completed=0),
}


class JobQueueTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.queue = JobQueue(concurrency=2, policies=FAST)

    async def asyncTearDown(self) -> None:
        await self.queue.close()

    async def test_same_identity_while_pending_runs_once(self) -> None:
        gate = asyncio.Event()
        runs = []

        async def handler(job):
            runs.append(job.id)
            await gate.wait()
            return "done"

        self.queue.register(SWEEP_EXECUTE, handler)
        self.queue.start()
        first = await self.queue.enqueue(SWEEP_EXECUTE, {"n": 1}, identity="sweep-1")
        await asyncio.sleep(0)
        second = await self.queue.enqueue(SWEEP_EXECUTE, {"n": 2}, identity="sweep-1")
        gate.set()

        self.assertEqual(await self.queue.wait_for("sweep-1", timeout=1), "done")
        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(runs, ["sweep-1"])

    async def test_retained_completion_still_deduplicates(self) -> None:
        runs = []

        async def handler(job):
            runs.append(job.id)

        self.queue.register(SWEEP_EXECUTE, handler)
        self.queue.start()
        await self.queue.enqueue(SWEEP_EXECUTE, {}, identity="sweep-2")
        await self.queue.drain(timeout=1)
        again = await self.queue.enqueue(SWEEP_EXECUTE, {}, identity="sweep-2")
        await self.queue.drain(timeout=1)

        self.assertFalse(again.created)
        self.assertEqual(runs, ["sweep-2"])

    async def test_pruned_price_update_can_run_again(self) -> None:
        runs = []

        async def handler(job):
            runs.append(job.payload["token"])

        self.queue.register(PRICE_UPDATE, handler)
        self.queue.start()
        await enqueue_price_update(self.queue, "0xABC", "base")
        await self.queue.drain(timeout=1)
        handle = await enqueue_price_update(self.queue, "0xabc", "base")
        await self.queue.drain(timeout=1)

        self.assertTrue(handle.created)
        self.assertEqual(handle.id, "price-base-0xabc")
        self.assertEqual(len(runs), 2)

    async def test_pruned_job_is_unknown_rather_than_failed(self) -> None:
        async def handler(job):
            return "priced"

        self.queue.register(PRICE_UPDATE, handler)
        self.queue.start()
        handle = await enqueue_price_update(self.queue, "0xabc", "base")
        await self.queue.drain(timeout=1)

        self.assertIsNone(self.queue.get_job(handle.id))
        with self.assertRaises(UnknownJob) as ctx:
            await self.queue.wait_for(handle.id, timeout=1)
        self.assertNotIsInstance(ctx.exception, JobFailed)
        self.assertEqual(ctx.exception.job_id, "price-base-0xabc")
        with self.assertRaises(UnknownJob):
            await self.queue.wait_for("never-enqueued", timeout=1)

    async def test_transient_errors_are_retried_until_success(self) -> None:
        attempts = []

        async def handler(job):
            attempts.append(job.attempts_made)
            if len(attempts) < 3:
                raise ProviderError("rpc timeout")
            return "broadcast"

        self.queue.register(SWEEP_EXECUTE, handler)
        self.queue.start()
        await self.queue.enqueue(SWEEP_EXECUTE, {}, identity="sweep-3")

        self.assertEqual(await self.queue.wait_for("sweep-3", timeout=1), "broadcast")
        self.assertEqual(attempts, [1, 2, 3])

    async def test_validation_failure_stops_immediately_and_calls_hook(self) -> None:
        failures = []
        calls = []

        async def handler(job):
            calls.append(job.id)
            raise ValidationError("quote expired")

        async def on_failure(job, exc):
            failures.append((job.id, str(exc)))

        self.queue.register(SWEEP_EXECUTE, handler, on_failure)
        self.queue.start()
        await self.queue.enqueue(SWEEP_EXECUTE, {}, identity="sweep-4")

        with self.assertRaises(JobFailed) as ctx:
            await self.queue.wait_for("sweep-4", timeout=1)
        self.assertEqual(ctx.exception.reason, "quote expired")
        self.assertEqual(calls, ["sweep-4"])
        self.assertEqual(failures, [("sweep-4", "quote expired")])
        self.assertEqual(self.queue.get_job("sweep-4").state, JobState.FAILED)

    async def test_single_attempt_queue_does_not_retry(self) -> None:
        calls = []

        async def handler(job):
            calls.append(job.id)
            raise ProviderError("node unavailable")

        self.queue.register(SWEEP_TRACK, handler)
        self.queue.start()
        await self.queue.enqueue(SWEEP_TRACK, {}, identity="track-1")
        await self.queue.drain(timeout=1)

        self.assertEqual(calls, ["track-1"])

    async def test_wait_timeout_leaves_job_running(self) -> None:
        gate = asyncio.Event()

        async def handler(job):
            await gate.wait()
            return "late"

        self.queue.register(WALLET_SCAN, handler)
        self.queue.start()
        await self.queue.enqueue(WALLET_SCAN, {}, identity="scan-1")

        with self.assertRaises(JobTimeout):
            await self.queue.wait_for("scan-1", timeout=0.01)
        gate.set()
        self.assertEqual(await self.queue.wait_for("scan-1", timeout=1), "late")

    async def test_delayed_job_waits_before_running(self) -> None:
        async def handler(job):
            return job.payload["value"]

        self.queue.register(WALLET_SCAN, handler)
        self.queue.start()
        await self.queue.enqueue(WALLET_SCAN, {"value": 7}, identity="scan-2", delay=0.05)

        self.assertEqual(self.queue.get_job("scan-2").state, JobState.DELAYED)
        self.assertEqual(await self.queue.wait_for("scan-2", timeout=1), 7)

    async def test_completed_jobs_are_pruned_by_count(self) -> None:
        queue = JobQueue(policies={WALLET_SCAN: QueuePolicy(backoff_seconds=0, keep_completed=2)})

        async def handler(job):
            return None

        queue.register(WALLET_SCAN, handler)
        queue.start()
        for n in range(4):
            await queue.enqueue(WALLET_SCAN, {}, identity=f"scan-{n}")
            await queue.drain(timeout=1)
        await queue.close()

        self.assertEqual(sum(1 for n in range(4) if queue.get_job(f"scan-{n}") is not None), 2)

    async def test_bulk_price_updates(self) -> None:
        handles = await enqueue_price_updates(self.queue, [("0xA", "base"), ("0xB", "base"), ("0xa", "base")])

        self.assertEqual([h.created for h in handles], [True, True, False])


class SingletonTests(unittest.IsolatedAsyncioTestCase):
    async def test_shared_queue_is_lazily_created_and_reset_on_close(self) -> None:
        first = get_job_queue()
        self.assertIs(first, get_job_queue())
        await close_job_queue()
        self.assertIsNot(first, get_job_queue())
        await close_job_queue()


if __name__ == "__main__":
    unittest.main()
