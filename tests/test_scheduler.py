#!/usr/bin/env python3
"""
Tests for the batch scheduler.
"""

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import anthropic
import httpx

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import fakes
from crosswalk.matching.clients import AnthropicMatchClient
from crosswalk.matching.errors import ExternalCallError
from crosswalk.matching.escalation import AiMatcher
from crosswalk.matching.resolver import SequentialResolver
from crosswalk.matching.scheduler import (
    BatchScheduler,
    CancellationToken,
    JobEventKind,
    JobStatus,
    SchedulerConfig,
)
from crosswalk.matching.types import Priority, Stage


def fast_config(**overrides) -> SchedulerConfig:
    values = {
        "max_batch_size": 10,
        "max_concurrent_batches": 3,
        "rate_limit_rpm": 6000,
        "poll_interval": 0.01,
    }
    values.update(overrides)
    return SchedulerConfig(**values)


def exact_records(count: int) -> list:
    return [fakes.competitor("TUD100C936V2", f"Dealer {i}") for i in range(count)]


def test_batch_completes():
    """A small batch runs as one sub-batch and completes."""
    print("\n=== BATCH COMPLETION TESTS ===\n")

    async def run():
        events = []
        scheduler = BatchScheduler(
            SequentialResolver(),
            fast_config(max_concurrent_batches=1, max_batch_size=10),
            on_event=events.append,
        )
        scheduler.start()
        records = [
            fakes.competitor("TUD100C936V2", "Allied"),
            {"sku": "XR16-036", "company": "Goodman", "specifications": {"tonnage": "3 ton", "seer": 16}},
            fakes.competitor("QQQ-1", "Nobody"),
        ]
        job_id = await scheduler.submit(records, fakes.make_catalog())
        job = await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return job, events

    job, events = asyncio.run(run())
    assert job.status == JobStatus.COMPLETED
    assert job.progress.total == 3
    assert job.progress.completed == 3
    assert job.progress.failed == 0
    assert job.errors == []
    assert [r.stage for r in job.results] == [Stage.EXACT, Stage.SPECIFICATION, Stage.FAILED]
    assert all(r.source == "batch" for r in job.results)
    assert job.started_at is not None and job.completed_at is not None
    print("✓ Batch of 3 completed in input order")

    kinds = [e.kind for e in events]
    assert kinds == [
        JobEventKind.SUBMITTED,
        JobEventKind.STARTED,
        JobEventKind.PROGRESS,
        JobEventKind.COMPLETED,
    ]
    assert events[2].progress.completed == 3
    assert events[2].eta_ms == 0
    print("✓ Lifecycle events emitted in order")


def test_cancel_running_job():
    """Cancelling after the first sub-batch stops further sub-batches."""
    print("\n=== CANCELLATION TESTS ===\n")

    async def run():
        scheduler = BatchScheduler(
            SequentialResolver(),
            fast_config(max_batch_size=1, rate_limit_rpm=60),
        )
        events = scheduler.subscribe()
        scheduler.start()
        job_id = await scheduler.submit(exact_records(3), fakes.make_catalog())

        while True:
            event = await asyncio.wait_for(events.get(), timeout=5)
            if event.kind == JobEventKind.PROGRESS:
                break
        assert event.progress.completed == 1
        assert event.eta_ms is not None and event.eta_ms >= 0

        assert await scheduler.cancel(job_id)
        job = await scheduler.wait_for(job_id, timeout=5)

        remaining = []
        while not events.empty():
            remaining.append(events.get_nowait().kind)
        await scheduler.stop()
        return job, remaining

    job, remaining = asyncio.run(run())
    assert job.status == JobStatus.CANCELLED
    assert job.completed_at is not None
    assert job.progress.completed == 1
    assert len(job.results) == 1
    assert remaining == [JobEventKind.CANCELLED]
    print("✓ Rate-limit wait woke on cancel; no further sub-batches ran")


def test_cancel_pending_job():
    """Pending jobs are cancelled immediately."""

    async def run():
        scheduler = BatchScheduler(SequentialResolver(), fast_config())
        job_id = await scheduler.submit(exact_records(2), fakes.make_catalog())
        cancelled = await scheduler.cancel(job_id)
        again = await scheduler.cancel(job_id)
        unknown = await scheduler.cancel("job_missing")
        job = await scheduler.wait_for(job_id, timeout=1)
        return cancelled, again, unknown, job

    cancelled, again, unknown, job = asyncio.run(run())
    assert cancelled
    assert not again, "Terminal jobs cannot be cancelled twice"
    assert not unknown
    assert job.status == JobStatus.CANCELLED
    assert job.completed_at is not None
    assert job.results == []
    print("✓ Pending job cancelled without running")


def test_cancel_dispatched_job():
    """A job taken off the queue but not yet running cancels through its token."""

    async def run():
        scheduler = BatchScheduler(SequentialResolver(), fast_config())
        scheduler.start()
        job_id = await scheduler.submit(exact_records(1), fakes.make_catalog())
        # Let the pump dispatch the job
        await asyncio.sleep(0)
        cancelled = await scheduler.cancel(job_id)
        job = await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return cancelled, job

    cancelled, job = asyncio.run(run())
    assert cancelled
    assert job.status == JobStatus.CANCELLED
    assert job.completed_at is not None
    assert job.results == []
    print("✓ Dispatched job cancelled before its first sub-batch")


def test_stop_cancels_queued_jobs():
    """stop() finishes queued jobs as cancelled so waiters return."""

    async def run():
        scheduler = BatchScheduler(
            SequentialResolver(),
            fast_config(max_concurrent_batches=1, max_batch_size=1, rate_limit_rpm=60),
        )
        events = scheduler.subscribe()
        scheduler.start()
        catalog = fakes.make_catalog()
        first = await scheduler.submit(exact_records(3), catalog)
        second = await scheduler.submit(exact_records(2), catalog)

        while True:
            event = await asyncio.wait_for(events.get(), timeout=5)
            if event.kind == JobEventKind.PROGRESS:
                break

        await scheduler.stop()
        first_job = await scheduler.wait_for(first, timeout=1)
        second_job = await scheduler.wait_for(second, timeout=1)
        return first_job, second_job

    first_job, second_job = asyncio.run(run())
    assert first_job.status == JobStatus.CANCELLED
    assert len(first_job.results) == 1
    assert second_job.status == JobStatus.CANCELLED
    assert second_job.completed_at is not None
    assert second_job.results == []
    print("✓ Running and queued jobs cancelled on stop")


def test_priority_order():
    """High priority jobs start first; FIFO within a band."""
    print("\n=== PRIORITY TESTS ===\n")

    async def run():
        started = []

        def on_event(event):
            if event.kind == JobEventKind.STARTED:
                started.append(event.job_id)

        scheduler = BatchScheduler(
            SequentialResolver(),
            fast_config(max_concurrent_batches=1),
            on_event=on_event,
        )
        catalog = fakes.make_catalog()
        low = await scheduler.submit(exact_records(1), catalog, Priority.LOW)
        normal = await scheduler.submit(exact_records(1), catalog, Priority.NORMAL)
        high_1 = await scheduler.submit(exact_records(1), catalog, Priority.HIGH)
        high_2 = await scheduler.submit(exact_records(1), catalog, Priority.HIGH)

        scheduler.start()
        for job_id in (low, normal, high_1, high_2):
            await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return started, [high_1, high_2, normal, low]

    started, expected = asyncio.run(run())
    assert started == expected, f"Expected {expected}, got {started}"
    print("✓ Jobs started high, high, normal, low")


def test_record_errors():
    """Per-record failures are captured and the job still completes."""
    print("\n=== RECORD ERROR TESTS ===\n")
    resolver = SequentialResolver()
    original = resolver.resolve

    async def flaky_resolve(competitor, catalog, **kwargs):
        if competitor.sku == "BROKEN":
            raise RuntimeError("unparseable record")
        return await original(competitor, catalog, **kwargs)

    resolver.resolve = flaky_resolve

    async def run():
        scheduler = BatchScheduler(resolver, fast_config())
        scheduler.start()
        records = [
            fakes.competitor("TUD100C936V2", "Allied"),
            fakes.competitor("BROKEN", "Allied"),
            fakes.competitor("TUD100C936V2", "Carrier"),
        ]
        job_id = await scheduler.submit(records, fakes.make_catalog())
        job = await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return job

    job = asyncio.run(run())
    assert job.status == JobStatus.COMPLETED
    assert job.progress.completed == 2
    assert job.progress.failed == 1
    assert job.errors == [
        {"index": 1, "sku": "BROKEN", "company": "Allied", "error": "unparseable record", "kind": "record"}
    ]
    print("✓ Failing record recorded, others resolved")


def test_external_error_abandons_sub_batch():
    """An external call failure errors the rest of its sub-batch only."""
    print("\n=== EXTERNAL ERROR TESTS ===\n")
    client = fakes.FakeAIClient(error=ExternalCallError("ai_enhanced", "rate limited", status_code=429))
    resolver = SequentialResolver(ai_matcher=AiMatcher(client))

    async def run():
        scheduler = BatchScheduler(resolver, fast_config(max_batch_size=3))
        scheduler.start()
        records = [
            fakes.competitor("TUD100C936V2", "Allied"),
            fakes.competitor("MYSTERY-1", "Rheem"),
            fakes.competitor("TUD100C936V2", "Carrier"),
            fakes.competitor("TUD100C936V2", "Lennox"),
        ]
        job_id = await scheduler.submit(records, fakes.make_catalog())
        job = await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return job

    job = asyncio.run(run())
    assert job.status == JobStatus.COMPLETED
    assert job.progress.completed == 2
    assert job.progress.failed == 2
    assert [e["index"] for e in job.errors] == [1, 2]
    assert all(e["kind"] == "external" for e in job.errors)
    assert [r.competitor["company"] for r in job.results] == ["Allied", "Lennox"]
    print("✓ Remaining records in the sub-batch errored; next sub-batch ran")


def test_rejected_prompt_keeps_sub_batch():
    """A 400 from the model API fails one AI stage, not the sub-batch."""
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    error = anthropic.BadRequestError("prompt too long", response=httpx.Response(400, request=request), body=None)

    class RejectingMessages:
        async def create(self, **kwargs):
            raise error

    client = AnthropicMatchClient(api_key="test", client=SimpleNamespace(messages=RejectingMessages()))
    resolver = SequentialResolver(ai_matcher=AiMatcher(client))

    async def run():
        scheduler = BatchScheduler(resolver, fast_config(max_batch_size=3))
        scheduler.start()
        records = [
            fakes.competitor("TUD100C936V2", "Allied"),
            fakes.competitor("MYSTERY-1", "Rheem"),
            fakes.competitor("TUD100C936V2", "Carrier"),
        ]
        job_id = await scheduler.submit(records, fakes.make_catalog())
        job = await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return job

    job = asyncio.run(run())
    assert job.status == JobStatus.COMPLETED
    assert job.errors == []
    assert job.progress.completed == 3
    assert [r.stage for r in job.results] == [Stage.EXACT, Stage.FAILED, Stage.EXACT]
    assert any(step.startswith("⚠ AI enhancement failed") for step in job.results[1].processing_steps)
    print("✓ Rejected prompt recorded as a failed stage")


def test_job_failure():
    """Exceptions outside record handling fail the job."""

    async def run():
        def on_event(event):
            if event.kind == JobEventKind.PROGRESS:
                raise RuntimeError("listener crashed")

        scheduler = BatchScheduler(SequentialResolver(), fast_config(), on_event=on_event)
        scheduler.start()
        job_id = await scheduler.submit(exact_records(2), fakes.make_catalog())
        job = await scheduler.wait_for(job_id, timeout=5)
        stats = scheduler.stats()
        await scheduler.stop()
        return job, stats

    job, stats = asyncio.run(run())
    assert job.status == JobStatus.FAILED
    assert "listener crashed" in job.error
    assert job.completed_at is not None
    assert stats.failed_jobs == 1
    print("✓ Job marked failed with its error message")


def test_external_call_budget_per_job():
    """Each job gets its own external call budget."""

    client = fakes.FakeAIClient({"match_found": False})
    resolver = SequentialResolver(ai_matcher=AiMatcher(client))

    async def run():
        scheduler = BatchScheduler(resolver, fast_config(max_external_calls_per_job=1))
        scheduler.start()
        records = [fakes.competitor("MYSTERY-1", "Rheem"), fakes.competitor("MYSTERY-2", "Rheem")]
        job_id = await scheduler.submit(records, fakes.make_catalog())
        job = await scheduler.wait_for(job_id, timeout=5)
        await scheduler.stop()
        return job

    job = asyncio.run(run())
    assert job.status == JobStatus.COMPLETED
    assert len(client.calls) == 1
    assert any("budget exhausted" in step for step in job.results[1].processing_steps)
    print("✓ Second record skipped the AI stage")


def test_stats_and_housekeeping():
    """Test stats(), get_all_jobs() and cleanup_old_jobs()."""
    print("\n=== HOUSEKEEPING TESTS ===\n")

    async def run():
        scheduler = BatchScheduler(SequentialResolver(), fast_config())
        scheduler.start()
        catalog = fakes.make_catalog()
        first = await scheduler.submit(exact_records(2), catalog)
        second = await scheduler.submit(exact_records(3), catalog)
        await scheduler.wait_for(first, timeout=5)
        await scheduler.wait_for(second, timeout=5)
        stats = scheduler.stats()
        completed = scheduler.get_all_jobs(JobStatus.COMPLETED)
        pending = scheduler.get_all_jobs(JobStatus.PENDING)
        removed = scheduler.cleanup_old_jobs(older_than_hours=0)
        remaining = scheduler.get_all_jobs()
        await scheduler.stop()
        return stats, completed, pending, removed, remaining

    stats, completed, pending, removed, remaining = asyncio.run(run())
    assert stats.total_jobs == 2
    assert stats.completed_jobs == 2
    assert stats.total_products_processed == 5
    assert stats.average_job_time_ms >= 0
    assert len(completed) == 2
    assert pending == []
    assert removed == 2
    assert remaining == []
    print("✓ Stats, listing and cleanup")


def test_snapshots_are_copies():
    """get_job returns a snapshot detached from scheduler state."""

    async def run():
        scheduler = BatchScheduler(SequentialResolver(), fast_config())
        job_id = await scheduler.submit(exact_records(1), fakes.make_catalog())
        snapshot = scheduler.get_job(job_id)
        snapshot.records.clear()
        snapshot.progress.completed = 99
        return scheduler.get_job(job_id), scheduler.get_job("job_missing")

    job, missing = asyncio.run(run())
    assert len(job.records) == 1
    assert job.progress.completed == 0
    assert job.status == JobStatus.PENDING
    assert missing is None
    print("✓ Snapshots do not leak mutations")


def test_cancellation_token():
    async def run():
        token = CancellationToken()
        timed_out = await token.wait(0.01)
        token.cancel()
        woke = await token.wait(5)
        return timed_out, woke

    timed_out, woke = asyncio.run(run())
    assert timed_out is False
    assert woke is True
    print("✓ Token wait times out or wakes on cancel")


if __name__ == "__main__":
    tests = [
        ("Batch Completes", test_batch_completes),
        ("Cancel Running Job", test_cancel_running_job),
        ("Cancel Pending Job", test_cancel_pending_job),
        ("Cancel Dispatched Job", test_cancel_dispatched_job),
        ("Stop Cancels Queue", test_stop_cancels_queued_jobs),
        ("Priority Order", test_priority_order),
        ("Record Errors", test_record_errors),
        ("External Errors", test_external_error_abandons_sub_batch),
        ("Rejected Prompt", test_rejected_prompt_keeps_sub_batch),
        ("Job Failure", test_job_failure),
        ("Per-Job Budget", test_external_call_budget_per_job),
        ("Stats and Housekeeping", test_stats_and_housekeeping),
        ("Snapshots", test_snapshots_are_copies),
        ("Cancellation Token", test_cancellation_token),
    ]

    results = []
    for name, test in tests:
        try:
            test()
            results.append((name, True))
        except AssertionError as e:
            print(f"✗ Test failed: {e}")
            results.append((name, False))

    print("\n" + "=" * 50)
    print("TEST SUMMARY")
    print("=" * 50)
    for name, passed in results:
        print(f"{name}: {'PASSED' if passed else 'FAILED'}")
    print("=" * 50)

    sys.exit(0 if all(passed for _, passed in results) else 1)
