import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from conftest import build_orchestrator, directory_transport, make_leads
from graph.models import JobOptions, JobStatus
from jobs.queue import JobQueue
from jobs.store import cancel_target, lead_runs
from tools.errors import JobCancelled, PersistenceConflict
from tools.idempotency import Idem


class ExplodingOrchestrator:
    async def process(self, leads, **kwargs):
        raise RuntimeError("scoring backend unavailable")


def make_queue(store, worker_id="worker-a", orchestrator=None, idempotency=None):
    return JobQueue(
        store,
        orchestrator or build_orchestrator(directory_transport({})),
        stale_after=60.0,
        worker_id=worker_id,
        idempotency=idempotency,
    )


class TestEnqueue:

    async def test_enqueue_persists_queued_job(self, job_store):
        queue = make_queue(job_store)

        job = await queue.enqueue(make_leads(3), JobOptions(use_cleaner=True), user_id="user-1")

        assert job.status == JobStatus.QUEUED
        assert job.total == 3
        assert job.processed == 0
        assert job.options.use_cleaner is True
        items = await job_store.get_items(job.id)
        assert [item.index for item in items] == [0, 1, 2]
        assert all(item.status == JobStatus.QUEUED for item in items)
        assert items[1].payload.id == "lead-1"

    async def test_enqueue_requires_leads(self, job_store):
        with pytest.raises(ValueError):
            await make_queue(job_store).enqueue([])

    async def test_idempotency_key_returns_existing_job(self, job_store):
        queue = make_queue(job_store, idempotency=Idem(redis_url=""))

        first = await queue.enqueue(make_leads(2), idempotency_key="upload-123")
        second = await queue.enqueue(make_leads(2), idempotency_key="upload-123")
        third = await queue.enqueue(make_leads(2), idempotency_key="upload-456")

        assert second.id == first.id
        assert third.id != first.id
        assert len(await queue.list()) == 2


class TestClaim:

    async def test_claim_is_exclusive(self, job_store):
        worker_a = make_queue(job_store, "worker-a")
        worker_b = make_queue(job_store, "worker-b")
        job = await worker_a.enqueue(make_leads(1))

        results = await asyncio.gather(worker_a.claim(job.id), worker_b.claim(job.id))

        claimed = [r for r in results if r is not None]
        assert len(claimed) == 1
        assert claimed[0].status == JobStatus.PROCESSING

    async def test_processing_job_not_stale_is_not_claimable(self, job_store, wall_clock):
        worker_a = make_queue(job_store, "worker-a")
        worker_b = make_queue(job_store, "worker-b")
        job = await worker_a.enqueue(make_leads(1))
        await worker_a.claim(job.id)

        wall_clock.advance(30)

        assert await worker_b.claim(job.id) is None

    async def test_stale_job_reclaimed_exactly_once(self, job_store, wall_clock):
        crashed = make_queue(job_store, "worker-a")
        job = await crashed.enqueue(make_leads(1))
        await crashed.claim(job.id)

        wall_clock.advance(61)
        contenders = [make_queue(job_store, f"worker-{n}") for n in range(4)]
        results = await asyncio.gather(*(q.claim(job.id) for q in contenders))

        claimed = [r for r in results if r is not None]
        assert len(claimed) == 1
        assert claimed[0].owner != "worker-a"
        assert claimed[0].updated_at > job.updated_at

    async def test_finished_job_is_not_claimable(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(1))
        await queue.process(job.id)

        assert await queue.claim(job.id) is None
        assert await queue.claim("missing") is None


class TestRunClaimed:

    async def test_process_completes_job_in_order(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(7), JobOptions(max_concurrency=3))

        snapshot = await queue.process(job.id)

        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.processed == snapshot.total == 7
        assert [r["index"] for r in snapshot.results] == list(range(7))
        assert [r["lead"]["id"] for r in snapshot.results] == [f"lead-{i}" for i in range(7)]
        assert snapshot.metadata["options"]["max_concurrency"] == 3
        assert "usage" in snapshot.metadata
        assert all(item.status == JobStatus.COMPLETED for item in await job_store.get_items(job.id))

    async def test_processed_is_monotonic_and_bounded(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(8))
        observed = []
        original = job_store.record_item_result

        async def recording(job_id, owner, index, result):
            updated = await original(job_id, owner, index, result)
            observed.append((await job_store.get_job(job_id)).processed)
            return updated

        job_store.record_item_result = recording
        await queue.process(job.id)

        assert observed == sorted(observed)
        assert max(observed) <= 8
        assert observed[-1] == 8

    async def test_duplicate_lead_ids_are_kept_apart(self, job_store):
        queue = make_queue(job_store)
        leads = make_leads(2) + make_leads(2)

        job = await queue.enqueue(leads)
        snapshot = await queue.process(job.id)

        assert len(snapshot.results) == 4
        assert [r["lead"]["id"] for r in snapshot.results] == ["lead-0", "lead-1", "lead-0", "lead-1"]

    async def test_resume_only_runs_unfinished_items(self, job_store, wall_clock):
        crashed = make_queue(job_store, "worker-a")
        job = await crashed.enqueue(make_leads(4))
        await crashed.claim(job.id)
        await job_store.record_item_result(job.id, "worker-a", 0, {"index": 0, "partial": True})

        wall_clock.advance(61)
        rescuer = make_queue(job_store, "worker-b")
        snapshot = await rescuer.process(job.id)

        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.processed == 4
        assert snapshot.results[0] == {"index": 0, "partial": True}
        assert [r["index"] for r in snapshot.results] == [0, 1, 2, 3]

    async def test_orchestrator_failure_marks_job_failed(self, job_store):
        queue = make_queue(job_store, orchestrator=ExplodingOrchestrator())
        job = await queue.enqueue(make_leads(3))

        snapshot = await queue.process(job.id)

        assert snapshot.status == JobStatus.FAILED
        assert snapshot.error == "scoring backend unavailable"
        items = await job_store.get_items(job.id)
        assert all(item.status == JobStatus.FAILED for item in items)
        assert all(item.error == "scoring backend unavailable" for item in items)

    async def test_save_results_writes_lead_runs(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(3), JobOptions(save_results=True), user_id="user-9")

        snapshot = await queue.process(job.id)

        assert snapshot.metadata["save_result"] == {"saved": True, "count": 3}
        async with job_store.engine.connect() as conn:
            rows = (await conn.execute(select(lead_runs).where(lead_runs.c.job_id == job.id))).all()
        assert len(rows) == 3
        assert {row.user_id for row in rows} == {"user-9"}

    async def test_lost_ownership_writes_nothing_terminal(self, job_store, wall_clock):
        slow = make_queue(job_store, "worker-a")
        job = await slow.enqueue(make_leads(2))
        claimed = await slow.claim(job.id)

        wall_clock.advance(61)
        assert await make_queue(job_store, "worker-b").claim(job.id) is not None

        with pytest.raises(PersistenceConflict):
            await slow.run_claimed(claimed)

        current = await job_store.get_job(job.id)
        assert current.status == JobStatus.PROCESSING
        assert current.owner == "worker-b"
        assert current.processed == 0


class TestCancel:

    async def test_cancel_queued_job(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(2))

        snapshot = await queue.cancel(job.id, "Uploaded the wrong file")

        assert snapshot.status == JobStatus.FAILED
        assert snapshot.error == "Cancelled: Uploaded the wrong file"
        assert all(item.status == JobStatus.FAILED for item in await job_store.get_items(job.id))
        assert await queue.claim(job.id) is None

    async def test_cancel_request_reaches_worker(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(3))
        await queue.claim(job.id)

        snapshot = await queue.cancel(job.id)
        assert snapshot.status == JobStatus.PROCESSING
        assert snapshot.metadata["cancel_requested"] == "Cancelled by user"

        with pytest.raises(JobCancelled):
            await queue.run_claimed(await job_store.get_job(job.id))

        final = await queue.get_status(job.id)
        assert final.status == JobStatus.FAILED
        assert final.error == "Cancelled: Cancelled by user"

    async def test_cancel_request_survives_heartbeats(self, job_store, wall_clock):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(2))
        await queue.claim(job.id)
        wall_clock.advance(5)
        assert await job_store.heartbeat(job.id, "worker-a")

        assert await job_store.request_cancel(job.id, "Stop now")

        wall_clock.advance(5)
        assert await job_store.heartbeat(job.id, "worker-a")
        refreshed = await job_store.get_job(job.id)
        assert refreshed.metadata["cancel_requested"] == "Stop now"
        assert refreshed.status == JobStatus.PROCESSING

    def test_cancel_read_locks_the_job_row(self):
        from sqlalchemy.dialects import postgresql

        sql = str(cancel_target("job-1").compile(dialect=postgresql.dialect()))

        assert "FOR UPDATE" in sql

    async def test_unrecorded_cancel_is_reported(self, job_store):
        queue = make_queue(job_store)
        job = await queue.enqueue(make_leads(2))
        await queue.claim(job.id)
        job_store.request_cancel = AsyncMock(return_value=False)

        with pytest.raises(PersistenceConflict):
            await queue.cancel(job.id, "Stop now")

    async def test_cancel_unknown_job(self, job_store):
        assert await make_queue(job_store).cancel("nope") is None


class TestListing:

    async def test_list_newest_first_and_active(self, job_store, wall_clock):
        queue = make_queue(job_store)
        ids = []
        for _ in range(3):
            ids.append((await queue.enqueue(make_leads(1), user_id="user-1")).id)
            wall_clock.advance(5)
        await queue.process(ids[2])

        listed = await queue.list()
        active = await queue.active("user-1")

        assert [job.id for job in listed] == list(reversed(ids))
        assert active.id == ids[1]
        assert await queue.active("someone-else") is None

    async def test_worker_drains_queue(self, job_store):
        queue = make_queue(job_store)
        queue.poll_interval = 0.01
        jobs = [await queue.enqueue(make_leads(2)) for _ in range(2)]
        stop = asyncio.Event()

        worker = asyncio.ensure_future(queue.run_worker(stop))
        for _ in range(200):
            statuses = [(await job_store.get_job(job.id)).status for job in jobs]
            if all(status == JobStatus.COMPLETED for status in statuses):
                break
            await asyncio.sleep(0.02)
        stop.set()
        await worker

        assert all(status == JobStatus.COMPLETED for status in statuses)
