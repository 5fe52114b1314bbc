from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    and_,
    event,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from graph.models import Job, JobItem, JobOptions, JobStatus, Lead, LeadResult
from tools.errors import PersistenceConflict

JSONType = JSON().with_variant(JSONB(), "postgresql")

metadata_obj = MetaData()

lead_jobs = Table(
    "lead_jobs",
    metadata_obj,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=True, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("total", Integer, nullable=False),
    Column("processed", Integer, nullable=False, default=0),
    Column("error", Text, nullable=True),
    Column("metadata", JSONType, nullable=True),
    Column("owner", String(128), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

lead_job_items = Table(
    "lead_job_items",
    metadata_obj,
    Column("job_id", String(36), ForeignKey("lead_jobs.id", ondelete="CASCADE"), nullable=False),
    Column("item_index", Integer, nullable=False),
    Column("payload", JSONType, nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("result", JSONType, nullable=True),
    Column("error", Text, nullable=True),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("job_id", "item_index"),
)

lead_runs = Table(
    "lead_runs",
    metadata_obj,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("job_id", String(36), nullable=True, index=True),
    Column("user_id", String(64), nullable=True),
    Column("lead_id", Text, nullable=False),
    Column("company", Text, nullable=False),
    Column("industry", Text, nullable=True),
    Column("final_score", Float, nullable=False),
    Column("interpretation", String(16), nullable=False),
    Column("weights", JSONType, nullable=False),
    Column("scores", JSONType, nullable=False),
    Column("reasoning", Text, nullable=False),
    Column("enriched", JSONType, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

UNRESOLVED = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


def _serialize_sqlite_writes(engine: AsyncEngine) -> None:
    # Take the write lock at BEGIN so racing writers queue on the busy timeout
    # instead of failing to upgrade a shared lock.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def cancel_target(job_id: str):
    # SQLite has no row locks; BEGIN IMMEDIATE already serializes the transaction there.
    return (
        select(lead_jobs.c["metadata"])
        .where(lead_jobs.c.id == job_id, lead_jobs.c.status == JobStatus.PROCESSING.value)
        .with_for_update()
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo; they were written as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobStore:
    """
    Durable storage for jobs and their items.

    Every state change is a conditional UPDATE; a zero row count means a
    competing writer got there first and is reported as False (or
    PersistenceConflict), never silently overwritten.

    Args:
        database_url: SQLAlchemy async URL, e.g. ``sqlite+aiosqlite:///jobs.db``
        clock: Returns the current aware UTC time, injectable for tests
    """

    def __init__(self, database_url: str, clock: Callable[[], datetime] = utcnow, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_async_engine(database_url, pool_pre_ping=True)
        if self.engine.dialect.name == "sqlite":
            _serialize_sqlite_writes(self.engine)
        self.clock = clock
        self._last_stamp: Optional[datetime] = None

    def now(self) -> datetime:
        # Strictly increasing so every write moves updated_at forward.
        stamp = self.clock()
        if self._last_stamp is not None and stamp <= self._last_stamp:
            stamp = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = stamp
        return stamp

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata_obj.create_all)
        logger.info("Job store schema ready")

    async def close(self) -> None:
        await self.engine.dispose()

    @staticmethod
    def _to_job(row) -> Job:
        data = dict(row._mapping)
        metadata = data.get("metadata") or {}
        return Job(
            id=data["id"],
            user_id=data["user_id"],
            status=JobStatus(data["status"]),
            total=data["total"],
            processed=data["processed"],
            error=data["error"],
            owner=data["owner"],
            created_at=_aware(data["created_at"]),
            updated_at=_aware(data["updated_at"]),
            options=JobOptions.model_validate(metadata.get("options") or {}),
            metadata=metadata,
        )

    @staticmethod
    def _to_item(row) -> JobItem:
        data = dict(row._mapping)
        return JobItem(
            job_id=data["job_id"],
            index=data["item_index"],
            payload=Lead.model_validate(data["payload"]),
            status=JobStatus(data["status"]),
            result=data["result"],
            error=data["error"],
        )

    async def insert_job(self, job_id: str, leads: Sequence[Lead], options: JobOptions, user_id: Optional[str] = None) -> Job:
        """Persist a queued job header and one queued item per lead in one transaction."""
        now = self.now()
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(lead_jobs).values(
                    id=job_id,
                    user_id=user_id,
                    status=JobStatus.QUEUED.value,
                    total=len(leads),
                    processed=0,
                    metadata={"options": options.model_dump()},
                    created_at=now,
                    updated_at=now,
                )
            )
            await conn.execute(
                insert(lead_job_items),
                [
                    {
                        "job_id": job_id,
                        "item_index": index,
                        "payload": lead.model_dump(mode="json"),
                        "status": JobStatus.QUEUED.value,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for index, lead in enumerate(leads)
                ],
            )
        job = await self.get_job(job_id)
        if job is None:
            raise PersistenceConflict(f"Job {job_id} vanished right after insert")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(lead_jobs).where(lead_jobs.c.id == job_id))).first()
        return self._to_job(row) if row is not None else None

    async def get_items(self, job_id: str) -> List[JobItem]:
        async with self.engine.connect() as conn:
            rows = await conn.execute(
                select(lead_job_items)
                .where(lead_job_items.c.job_id == job_id)
                .order_by(lead_job_items.c.item_index)
            )
            return [self._to_item(row) for row in rows]

    async def list_jobs(self, limit: int = 50, user_id: Optional[str] = None,
                        statuses: Optional[Sequence[JobStatus]] = None) -> List[Job]:
        query = select(lead_jobs).order_by(lead_jobs.c.created_at.desc()).limit(limit)
        if user_id is not None:
            query = query.where(lead_jobs.c.user_id == user_id)
        if statuses:
            query = query.where(lead_jobs.c.status.in_([s.value for s in statuses]))
        async with self.engine.connect() as conn:
            return [self._to_job(row) for row in await conn.execute(query)]

    async def claimable_jobs(self, stale_after: float, limit: int = 10) -> List[str]:
        """Ids of queued jobs and stale processing jobs, oldest first."""
        cutoff = self.clock() - timedelta(seconds=stale_after)
        query = (
            select(lead_jobs.c.id)
            .where(
                or_(
                    lead_jobs.c.status == JobStatus.QUEUED.value,
                    and_(lead_jobs.c.status == JobStatus.PROCESSING.value, lead_jobs.c.updated_at <= cutoff),
                )
            )
            .order_by(lead_jobs.c.created_at)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            return [row.id for row in await conn.execute(query)]

    async def claim_queued(self, job_id: str, owner: str) -> Optional[Job]:
        """Atomically move a queued job to processing; None when someone else won."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(lead_jobs)
                .where(lead_jobs.c.id == job_id, lead_jobs.c.status == JobStatus.QUEUED.value)
                .values(status=JobStatus.PROCESSING.value, owner=owner, updated_at=self.now())
            )
        if result.rowcount != 1:
            return None
        return await self.get_job(job_id)

    async def reclaim_stale(self, job_id: str, owner: str, stale_after: float) -> Optional[Job]:
        """Take over a processing job whose owner has been silent past ``stale_after`` seconds."""
        cutoff = self.clock() - timedelta(seconds=stale_after)
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(lead_jobs)
                .where(
                    lead_jobs.c.id == job_id,
                    lead_jobs.c.status == JobStatus.PROCESSING.value,
                    lead_jobs.c.updated_at <= cutoff,
                )
                .values(owner=owner, updated_at=self.now())
            )
        if result.rowcount != 1:
            return None
        return await self.get_job(job_id)

    async def heartbeat(self, job_id: str, owner: str) -> bool:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(lead_jobs)
                .where(
                    lead_jobs.c.id == job_id,
                    lead_jobs.c.status == JobStatus.PROCESSING.value,
                    lead_jobs.c.owner == owner,
                )
                .values(updated_at=self.now())
            )
        return result.rowcount == 1

    async def mark_items_processing(self, job_id: str, indexes: Sequence[int]) -> None:
        if not indexes:
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(lead_job_items)
                .where(
                    lead_job_items.c.job_id == job_id,
                    lead_job_items.c.item_index.in_(list(indexes)),
                    lead_job_items.c.status.in_(UNRESOLVED),
                )
                .values(status=JobStatus.PROCESSING.value, updated_at=self.now())
            )

    async def record_item_result(self, job_id: str, owner: str, index: int, result: Dict[str, Any]) -> bool:
        """
        Store one item's result and bump the job's processed counter.

        Returns:
            False when the item was already completed (nothing incremented)

        Raises:
            PersistenceConflict: the job is no longer processing under ``owner``
        """
        now = self.now()
        async with self.engine.begin() as conn:
            item_update = await conn.execute(
                update(lead_job_items)
                .where(
                    lead_job_items.c.job_id == job_id,
                    lead_job_items.c.item_index == index,
                    lead_job_items.c.status != JobStatus.COMPLETED.value,
                )
                .values(status=JobStatus.COMPLETED.value, result=result, error=None, processed_at=now, updated_at=now)
            )
            if item_update.rowcount != 1:
                logger.warning(f"Item {index} of job {job_id} already completed, not counting it again")
                return False

            job_update = await conn.execute(
                update(lead_jobs)
                .where(
                    lead_jobs.c.id == job_id,
                    lead_jobs.c.status == JobStatus.PROCESSING.value,
                    lead_jobs.c.owner == owner,
                    lead_jobs.c.processed < lead_jobs.c.total,
                )
                .values(processed=lead_jobs.c.processed + 1, updated_at=now)
            )
            if job_update.rowcount != 1:
                # Raising inside the transaction rolls the item write back too.
                raise PersistenceConflict(f"Job {job_id} is no longer owned by {owner}")
        return True

    async def complete_job(self, job_id: str, owner: str, metadata: Dict[str, Any]) -> bool:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(lead_jobs)
                .where(
                    lead_jobs.c.id == job_id,
                    lead_jobs.c.status == JobStatus.PROCESSING.value,
                    lead_jobs.c.owner == owner,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    processed=lead_jobs.c.total,
                    error=None,
                    metadata=metadata,
                    updated_at=self.now(),
                )
            )
        return result.rowcount == 1

    async def fail_job(self, job_id: str, error: str, owner: Optional[str] = None,
                       expected_status: JobStatus = JobStatus.PROCESSING) -> bool:
        """Mark a job failed and fail its unresolved items, if the job is still in ``expected_status``."""
        conditions = [lead_jobs.c.id == job_id, lead_jobs.c.status == expected_status.value]
        if owner is not None:
            conditions.append(lead_jobs.c.owner == owner)
        now = self.now()
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(lead_jobs).where(*conditions).values(status=JobStatus.FAILED.value, error=error, updated_at=now)
            )
            if result.rowcount != 1:
                return False
            await conn.execute(
                update(lead_job_items)
                .where(lead_job_items.c.job_id == job_id, lead_job_items.c.status.in_(UNRESOLVED))
                .values(status=JobStatus.FAILED.value, error=error, updated_at=now)
            )
        return True

    async def request_cancel(self, job_id: str, reason: str) -> bool:
        """
        Flag a processing job for cancellation; its worker picks the flag up on heartbeat.

        The job row stays locked between the metadata read and the write, so
        heartbeats and item results committed meanwhile cannot void the request.

        Returns:
            False when the job is missing or no longer processing
        """
        async with self.engine.begin() as conn:
            row = (await conn.execute(cancel_target(job_id))).first()
            if row is None:
                return False
            metadata = dict(row[0] or {})
            metadata["cancel_requested"] = reason
            result = await conn.execute(
                update(lead_jobs)
                .where(lead_jobs.c.id == job_id, lead_jobs.c.status == JobStatus.PROCESSING.value)
                .values(metadata=metadata)
            )
        return result.rowcount == 1

    async def save_lead_runs(self, job_id: Optional[str], user_id: Optional[str],
                             results: Sequence[LeadResult]) -> Dict[str, Any]:
        """Append one lead_runs row per result. Returns ``{saved, count, error?}``."""
        if not results:
            return {"saved": True, "count": 0}
        now = self.now()
        rows = [
            {
                "job_id": job_id,
                "user_id": user_id,
                "lead_id": result.lead.id,
                "company": result.enriched.cleaned.company or result.lead.company,
                "industry": result.score.industry,
                "final_score": result.score.final_score,
                "interpretation": result.score.interpretation.value,
                "weights": result.score.weights_applied.model_dump(),
                "scores": result.score.scores.model_dump(),
                "reasoning": result.score.reasoning,
                "enriched": result.enriched.model_dump(mode="json"),
                "created_at": now,
            }
            for result in results
        ]
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(lead_runs), rows)
        except SQLAlchemyError as e:
            logger.error(f"Saving lead runs failed for job {job_id}: {e}")
            return {"saved": False, "count": 0, "error": str(e)}
        return {"saved": True, "count": len(rows)}
