"""SQL implementation of the execution repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, nullcontext
from typing import Any, AsyncIterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from ..errors import DuplicateAssignment, UpstreamError
from ..models import Assignment, Instance, InstanceStep, TimelineEvent
from .repository import ExecutionRepository
from .tables import ALL_TABLES, AssignmentRow, EventRow, InstanceRow, InstanceStepRow

logger = logging.getLogger(__name__)

_INSTANCE_IMMUTABLE = {"id", "snapshot", "variables", "process_id", "started_at"}
_STEP_IMMUTABLE = {"id", "instance_id", "step_id", "sequence"}


def normalize_database_url(database_url: str) -> str:
    """Map plain database URLs onto their async drivers."""
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


def _to_instance(row: InstanceRow) -> Instance:
    return Instance.model_validate(row.model_dump())


def _to_step(row: InstanceStepRow) -> InstanceStep:
    return InstanceStep.model_validate(row.model_dump())


def _to_assignment(row: AssignmentRow) -> Assignment:
    return Assignment.model_validate(row.model_dump())


def _to_event(row: EventRow) -> TimelineEvent:
    data = row.model_dump()
    data["metadata"] = data.pop("event_metadata", None) or {}
    return TimelineEvent.model_validate(data)


class _SQLTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_instance(
        self, instance_id: str, for_update: bool = False
    ) -> Instance | None:
        stmt = select(InstanceRow).where(InstanceRow.id == instance_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalars().first()
        return _to_instance(row) if row else None

    async def insert_instance(self, instance: Instance) -> None:
        self._session.add(InstanceRow(**instance.model_dump()))
        await self._session.flush()

    async def update_instance(self, instance: Instance) -> None:
        values = instance.model_dump(exclude=_INSTANCE_IMMUTABLE)
        await self._session.execute(
            update(InstanceRow).where(InstanceRow.id == instance.id).values(**values)
        )

    async def insert_steps(self, steps: list[InstanceStep]) -> None:
        self._session.add_all([InstanceStepRow(**s.model_dump()) for s in steps])
        await self._session.flush()

    async def get_step(self, instance_id: str, step_id: str) -> InstanceStep | None:
        stmt = select(InstanceStepRow).where(
            InstanceStepRow.instance_id == instance_id,
            InstanceStepRow.step_id == step_id,
        )
        row = (await self._session.execute(stmt)).scalars().first()
        return _to_step(row) if row else None

    async def list_steps(self, instance_id: str) -> list[InstanceStep]:
        return await _select_steps(self._session, instance_id)

    async def update_step(
        self, step: InstanceStep, expected_status: Optional[str] = None
    ) -> bool:
        stmt = update(InstanceStepRow).where(InstanceStepRow.id == step.id)
        if expected_status is not None:
            stmt = stmt.where(InstanceStepRow.status == expected_status)
        result = await self._session.execute(
            stmt.values(**step.model_dump(exclude=_STEP_IMMUTABLE)).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount == 1

    async def list_assignments(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Assignment]:
        return await _select_assignments(self._session, instance_id, step_id, status)

    async def transition_assignments(
        self,
        instance_id: str,
        step_id: str,
        from_status: str,
        to_status: str,
        completed_at=None,
    ) -> list[Assignment]:
        matched = await _select_assignments(
            self._session, instance_id, step_id, from_status
        )
        if not matched:
            return []
        values: dict[str, Any] = {"status": to_status}
        if completed_at is not None:
            values["completed_at"] = completed_at
        await self._session.execute(
            update(AssignmentRow)
            .where(
                AssignmentRow.id.in_([a.id for a in matched]),
                AssignmentRow.status == from_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return matched

    async def insert_assignment(self, assignment: Assignment) -> None:
        self._session.add(AssignmentRow(**assignment.model_dump()))
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DuplicateAssignment(assignment.instance_id, assignment.step_id) from exc


class SQLExecutionRepository(ExecutionRepository):
    """Persist execution state through SQLModel tables."""

    def __init__(self, database_url: str) -> None:
        self.database_url = normalize_database_url(database_url)
        self._is_sqlite = self.database_url.startswith("sqlite")
        connect_args = {"check_same_thread": False} if self._is_sqlite else {}
        self.engine = create_async_engine(
            self.database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()
        # SQLite allows one writer at a time
        self._write_lock = asyncio.Lock() if self._is_sqlite else None

    # ------------------------------------------------------------------
    # Schema management
    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all, tables=ALL_TABLES)
            self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.init_db()
        try:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error(f"Database read failed: {exc}")
            raise UpstreamError("Storage read failed", {"reason": str(exc)}) from exc

    # ------------------------------------------------------------------
    # Repository API
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SQLTransaction]:
        await self.init_db()
        lock = self._write_lock if self._write_lock is not None else nullcontext()
        async with lock:
            try:
                async with AsyncSession(self.engine, expire_on_commit=False) as session:
                    async with session.begin():
                        yield _SQLTransaction(session)
            except SQLAlchemyError as exc:
                logger.error(f"Database transaction failed: {exc}")
                raise UpstreamError(
                    "Storage write failed, retry the operation", {"reason": str(exc)}
                ) from exc

    async def get_instance(self, instance_id: str) -> Instance | None:
        async with self.session() as session:
            row = await session.get(InstanceRow, instance_id)
            return _to_instance(row) if row else None

    async def list_instances(self, status: Optional[str] = None) -> list[Instance]:
        stmt = select(InstanceRow).order_by(InstanceRow.started_at.desc())
        if status is not None:
            stmt = stmt.where(InstanceRow.status == status)
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_instance(r) for r in rows]

    async def list_steps(self, instance_id: str) -> list[InstanceStep]:
        async with self.session() as session:
            return await _select_steps(session, instance_id)

    async def list_assignments(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Assignment]:
        async with self.session() as session:
            return await _select_assignments(session, instance_id, step_id, status)

    async def append_event(self, event: TimelineEvent) -> TimelineEvent:
        data = event.model_dump(exclude={"seq", "metadata"})
        row = EventRow(**data, event_metadata=event.metadata)
        lock = self._write_lock if self._write_lock is not None else nullcontext()
        async with lock:
            async with self.session() as session:
                session.add(row)
                await session.commit()
                return event.model_copy(update={"seq": row.seq})

    async def list_events(
        self, instance_id: str, limit: int, offset: int
    ) -> list[TimelineEvent]:
        stmt = (
            select(EventRow)
            .where(EventRow.instance_id == instance_id)
            .order_by(EventRow.created_at.desc(), EventRow.seq.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_event(r) for r in rows]

    async def count_events(self, instance_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(EventRow)
            .where(EventRow.instance_id == instance_id)
        )
        async with self.session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def close(self) -> None:
        await self.engine.dispose()


async def _select_steps(session: AsyncSession, instance_id: str) -> list[InstanceStep]:
    stmt = (
        select(InstanceStepRow)
        .where(InstanceStepRow.instance_id == instance_id)
        .order_by(InstanceStepRow.sequence)
    )
    rows = (await session.execute(stmt)).scalars().all()
    return [_to_step(r) for r in rows]


async def _select_assignments(
    session: AsyncSession,
    instance_id: str,
    step_id: Optional[str],
    status: Optional[str],
) -> list[Assignment]:
    stmt = select(AssignmentRow).where(AssignmentRow.instance_id == instance_id)
    if step_id is not None:
        stmt = stmt.where(AssignmentRow.step_id == step_id)
    if status is not None:
        stmt = stmt.where(AssignmentRow.status == status)
    rows = (await session.execute(stmt.order_by(AssignmentRow.assigned_at))).scalars().all()
    return [_to_assignment(r) for r in rows]
