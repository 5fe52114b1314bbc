import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from graph.models import Job, JobOptions, JobSnapshot, JobStatus, Lead, LeadResult
from graph.orchestrator import EnrichmentOrchestrator
from graph.pipeline import CancelSignal
from jobs.store import JobStore
from tools.errors import JobCancelled, PersistenceConflict
from tools.idempotency import Idem

OWNERSHIP_LOST = "Ownership lost to another worker"


class JobQueue:
    """
    Durable job lifecycle: queued -> processing -> completed | failed.

    Any number of JobQueue instances (one per worker process) may share a
    store; who runs a job is decided by conditional updates in the store.
    """

    def __init__(
        self,
        store: JobStore,
        orchestrator: EnrichmentOrchestrator,
        stale_after: float = 60.0,
        worker_id: str = "worker",
        idempotency: Optional[Idem] = None,
        heartbeat_interval: Optional[float] = None,
        poll_interval: float = 2.0,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.stale_after = stale_after
        self.worker_id = worker_id
        self.idempotency = idempotency
        self.heartbeat_interval = heartbeat_interval or max(stale_after / 3.0, 0.01)
        self.poll_interval = poll_interval
        self._signals: Dict[str, CancelSignal] = {}
        self._running: Dict[str, "asyncio.Task[Optional[JobSnapshot]]"] = {}

    async def enqueue(
        self,
        leads: Sequence[Lead],
        options: Optional[JobOptions] = None,
        user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Job:
        """Persist a queued job and return it without waiting for any processing."""
        if not leads:
            raise ValueError("At least one lead is required")

        options = options or JobOptions()
        job_id = str(uuid4())

        if idempotency_key and self.idempotency is not None:
            winner = await self.idempotency.check_and_set(f"enqueue:{idempotency_key}", job_id)
            if winner != job_id:
                existing = await self.store.get_job(winner)
                if existing is not None:
                    logger.info(f"Idempotency key {idempotency_key} already used by job {winner}")
                    return existing
                logger.warning(f"Idempotency key {idempotency_key} points at missing job {winner}, creating a new one")

        job = await self.store.insert_job(job_id, leads, options, user_id=user_id)
        logger.info(f"Enqueued job {job.id} with {job.total} leads for user {user_id or '-'}")
        return job

    def _is_stale(self, job: Job) -> bool:
        return job.updated_at <= self.store.clock() - timedelta(seconds=self.stale_after)

    async def claim(self, job_id: str) -> Optional[Job]:
        """
        Take ownership of a job.

        Returns:
            The claimed job, or None when it is missing, finished, or owned by
            a live worker
        """
        job = await self.store.get_job(job_id)
        if job is None or job.status.terminal:
            return None

        if job.status == JobStatus.QUEUED:
            claimed = await self.store.claim_queued(job_id, self.worker_id)
        elif self._is_stale(job):
            claimed = await self.store.reclaim_stale(job_id, self.worker_id, self.stale_after)
            if claimed is not None:
                logger.warning(f"Reclaimed stale job {job_id} from {job.owner or 'unknown owner'}")
        else:
            return None

        if claimed is None:
            logger.info(f"Job {job_id} was claimed by another worker")
        return claimed

    async def run_claimed(self, job: Job) -> Optional[JobSnapshot]:
        """
        Drive every unfinished item of a claimed job through the orchestrator.

        Raises:
            JobCancelled: the job was cancelled; it has been marked failed
            PersistenceConflict: another worker took the job over; nothing terminal was written
        """
        items = await self.store.get_items(job.id)
        pending = [item for item in items if item.result is None]
        signal = self._signals.setdefault(job.id, CancelSignal())
        requested = job.metadata.get("cancel_requested")
        if requested:
            signal.cancel(requested)

        lost = asyncio.Event()
        heartbeat = asyncio.ensure_future(self._heartbeat(job.id, signal, lost))
        try:
            await self.store.mark_items_processing(job.id, [item.index for item in pending])
            logger.info(f"Running job {job.id}: {len(pending)}/{job.total} items pending")

            async def on_progress(result: LeadResult, completed: int, total: int) -> None:
                await self.store.record_item_result(
                    job.id, self.worker_id, result.index, result.model_dump(mode="json")
                )
                logger.debug(f"Job {job.id} progress {completed}/{total}")

            try:
                batch = await self.orchestrator.process(
                    [item.payload for item in pending],
                    use_cleaner=job.options.use_cleaner,
                    max_concurrency=job.options.max_concurrency,
                    on_progress=on_progress,
                    cancel=signal,
                    indexes=[item.index for item in pending],
                )
            except JobCancelled as e:
                if lost.is_set():
                    raise PersistenceConflict(f"Job {job.id}: {OWNERSHIP_LOST}") from e
                await self.store.fail_job(job.id, str(e), owner=self.worker_id)
                logger.warning(f"Job {job.id} cancelled: {e.reason}")
                raise
            except PersistenceConflict:
                logger.warning(f"Job {job.id} lost to another worker, leaving it alone")
                raise
            except Exception as e:
                message = str(e) or e.__class__.__name__
                logger.error(f"Job {job.id} failed: {message}")
                await self.store.fail_job(job.id, message, owner=self.worker_id)
                return await self.get_status(job.id)

            metadata = dict(job.metadata)
            metadata.pop("cancel_requested", None)
            metadata["options"] = job.options.model_dump()
            metadata["usage"] = batch.usage.model_dump()
            if job.options.save_results:
                metadata["save_result"] = await self.store.save_lead_runs(job.id, job.user_id, batch.results)

            if not await self.store.complete_job(job.id, self.worker_id, metadata):
                raise PersistenceConflict(f"Job {job.id}: {OWNERSHIP_LOST}")
            logger.info(f"Job {job.id} completed with {len(batch.results)} new results")
            return await self.get_status(job.id)
        finally:
            heartbeat.cancel()
            self._signals.pop(job.id, None)

    async def _heartbeat(self, job_id: str, signal: CancelSignal, lost: asyncio.Event) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                alive = await self.store.heartbeat(job_id, self.worker_id)
                if not alive:
                    logger.warning(f"Heartbeat for job {job_id} rejected, another worker owns it")
                    lost.set()
                    signal.cancel(OWNERSHIP_LOST)
                    return
                job = await self.store.get_job(job_id)
            except SQLAlchemyError as e:
                logger.error(f"Heartbeat for job {job_id} failed: {e}")
                continue
            if job is not None and job.metadata.get("cancel_requested"):
                signal.cancel(job.metadata["cancel_requested"])

    async def process(self, job_id: str) -> Optional[JobSnapshot]:
        """Claim and run one job; returns None when someone else has it."""
        job = await self.claim(job_id)
        if job is None:
            return None
        try:
            return await self.run_claimed(job)
        except JobCancelled:
            return await self.get_status(job_id)
        except PersistenceConflict as e:
            logger.warning(str(e))
            return None

    def trigger(self, job_id: str) -> "asyncio.Task[Optional[JobSnapshot]]":
        """Start processing a job in the background of the current event loop."""
        running = self._running.get(job_id)
        if running is not None and not running.done():
            return running

        task = asyncio.ensure_future(self.process(job_id))
        self._running[job_id] = task

        def _done(finished: "asyncio.Task[Optional[JobSnapshot]]") -> None:
            self._running.pop(job_id, None)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Background run of job {job_id} crashed: {error}")

        task.add_done_callback(_done)
        return task

    async def run_worker(self, stop: asyncio.Event) -> None:
        """Poll for queued or stale jobs until ``stop`` is set."""
        logger.info(f"Worker {self.worker_id} polling every {self.poll_interval}s")
        while not stop.is_set():
            try:
                job_ids = await self.store.claimable_jobs(self.stale_after)
            except SQLAlchemyError as e:
                logger.error(f"Worker {self.worker_id} could not poll jobs: {e}")
                job_ids = []

            for job_id in job_ids:
                if stop.is_set():
                    break
                if job_id in self._running:
                    continue
                try:
                    await self.process(job_id)
                except Exception as e:
                    logger.error(f"Worker {self.worker_id} failed on job {job_id}: {e}")

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Worker {self.worker_id} stopped")

    async def cancel(self, job_id: str, reason: Optional[str] = None) -> Optional[JobSnapshot]:
        """Cancel a queued or running job; returns the updated snapshot."""
        reason = reason or "Cancelled by user"
        job = await self.store.get_job(job_id)
        if job is None:
            return None

        if job.status == JobStatus.QUEUED:
            if await self.store.fail_job(job_id, str(JobCancelled(reason)), expected_status=JobStatus.QUEUED):
                logger.info(f"Cancelled queued job {job_id}: {reason}")
                return await self.get_status(job_id)
            job = await self.store.get_job(job_id)

        if job is not None and job.status == JobStatus.PROCESSING:
            signal = self._signals.get(job_id)
            if signal is not None:
                signal.cancel(reason)
            if await self.store.request_cancel(job_id, reason):
                logger.info(f"Cancellation requested for job {job_id}: {reason}")
            else:
                refreshed = await self.store.get_job(job_id)
                if refreshed is not None and refreshed.status == JobStatus.PROCESSING:
                    raise PersistenceConflict(f"Could not record cancel request for job {job_id}")
                logger.info(f"Job {job_id} finished before the cancel request was recorded")

        return await self.get_status(job_id)

    async def get_status(self, job_id: str) -> Optional[JobSnapshot]:
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        items = await self.store.get_items(job_id)
        results = [item.result for item in items if item.result is not None]
        return JobSnapshot(**job.model_dump(), results=results)

    async def list(self, limit: int = 50, user_id: Optional[str] = None) -> List[Job]:
        return await self.store.list_jobs(limit=limit, user_id=user_id)

    async def active(self, user_id: Optional[str] = None) -> Optional[Job]:
        jobs = await self.store.list_jobs(
            limit=1, user_id=user_id, statuses=[JobStatus.QUEUED, JobStatus.PROCESSING]
        )
        return jobs[0] if jobs else None

    async def shutdown(self) -> None:
        for task in list(self._running.values()):
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
