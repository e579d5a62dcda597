"""Postgres-backed repository for render jobs using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.render.errors import RenderErrorKind
from app.render.models import TERMINAL_STATUSES, RenderJobRecord, RenderStatus, ensure_transition, utc_now
from app.schema.render_jobs import RenderJob
from app.storage.render_jobs_repo import CANCEL_PREEMPTED_STATUSES, RenderJobsRepository, check_mutable_fields

_ACTIVE_STATUS_VALUES = [status.value for status in RenderStatus if status not in TERMINAL_STATUSES]
_TERMINAL_STATUS_VALUES = [status.value for status in TERMINAL_STATUSES]


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
  values = dict(changes)
  if isinstance(values.get("error_kind"), RenderErrorKind):
    values["error_kind"] = values["error_kind"].value
  return values


class PostgresRenderJobsRepository(RenderJobsRepository):
  """Persist render jobs to Postgres with compare-and-set status updates."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def create_job(self, record: RenderJobRecord) -> None:
    async with self._session_factory() as session:
      job = RenderJob(
        job_id=record.job_id,
        owner_id=record.owner_id,
        spec_json=record.spec,
        status=record.status.value,
        progress=record.progress,
        cost=record.cost,
        retry_count=record.retry_count,
        total_frames=record.total_frames,
        partition_count=record.partition_count,
        cancel_requested=record.cancel_requested,
        created_at=record.created_at,
        updated_at=record.updated_at,
      )
      session.add(job)
      await session.commit()

  async def get_job(self, job_id: str) -> RenderJobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(RenderJob, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def list_jobs(self, owner_id: str, *, limit: int = 20, offset: int = 0) -> list[RenderJobRecord]:
    async with self._session_factory() as session:
      stmt = select(RenderJob).where(RenderJob.owner_id == owner_id).order_by(RenderJob.created_at.desc()).limit(limit).offset(offset)
      result = await session.execute(stmt)
      return [self._model_to_record(row) for row in result.scalars().all()]

  async def _guarded_update(self, job_id: str, *, expected_status: RenderStatus, values: dict[str, Any], refuse_if_cancelled: bool = False) -> RenderJobRecord | None:
    conditions = [RenderJob.job_id == job_id, RenderJob.status == expected_status.value]
    if refuse_if_cancelled:
      conditions.append(RenderJob.cancel_requested.is_(False))
    stmt = (
      update(RenderJob)
      .where(*conditions)
      .values(**values)
      .returning(RenderJob)
      .execution_options(synchronize_session=False)
    )
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      row = result.scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_job(self, job_id: str, *, expected_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
    check_mutable_fields(changes)
    values = _column_values(changes)
    values["updated_at"] = utc_now()
    return await self._guarded_update(job_id, expected_status=expected_status, values=values)

  async def transition(self, job_id: str, *, expected_status: RenderStatus, target_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
    ensure_transition(expected_status, target_status)
    check_mutable_fields(changes)
    now = utc_now()
    values = _column_values(changes)
    values["status"] = target_status.value
    values["updated_at"] = now
    if target_status in TERMINAL_STATUSES:
      values["completed_at"] = now
    return await self._guarded_update(job_id, expected_status=expected_status, values=values, refuse_if_cancelled=target_status in CANCEL_PREEMPTED_STATUSES)

  async def request_cancel(self, job_id: str) -> RenderJobRecord | None:
    stmt = update(RenderJob).where(RenderJob.job_id == job_id, RenderJob.status.in_(_ACTIVE_STATUS_VALUES)).values(cancel_requested=True, updated_at=utc_now()).execution_options(synchronize_session=False)
    async with self._session_factory() as session:
      await session.execute(stmt)
      await session.commit()
    return await self.get_job(job_id)

  async def mark_settled(self, job_id: str) -> None:
    stmt = update(RenderJob).where(RenderJob.job_id == job_id, RenderJob.status.in_(_TERMINAL_STATUS_VALUES), RenderJob.settled_at.is_(None)).values(settled_at=utc_now()).execution_options(synchronize_session=False)
    async with self._session_factory() as session:
      await session.execute(stmt)
      await session.commit()

  async def list_active(self) -> list[RenderJobRecord]:
    async with self._session_factory() as session:
      result = await session.execute(select(RenderJob).where(RenderJob.status.in_(_ACTIVE_STATUS_VALUES)).order_by(RenderJob.created_at))
      return [self._model_to_record(row) for row in result.scalars().all()]

  async def list_unsettled(self) -> list[RenderJobRecord]:
    async with self._session_factory() as session:
      stmt = select(RenderJob).where(RenderJob.status.in_(_TERMINAL_STATUS_VALUES), RenderJob.settled_at.is_(None)).order_by(RenderJob.created_at)
      result = await session.execute(stmt)
      return [self._model_to_record(row) for row in result.scalars().all()]

  def _model_to_record(self, row: RenderJob) -> RenderJobRecord:
    return RenderJobRecord(
      job_id=row.job_id,
      owner_id=row.owner_id,
      spec=dict(row.spec_json or {}),
      status=RenderStatus(row.status),
      cost=int(row.cost),
      created_at=row.created_at,
      updated_at=row.updated_at,
      progress=float(row.progress or 0.0),
      retry_count=int(row.retry_count or 0),
      total_frames=int(row.total_frames or 0),
      partition_count=int(row.partition_count or 0),
      tracking_id=row.tracking_id,
      resource_locator=row.resource_locator,
      output_locator=row.output_locator,
      output_size_bytes=row.output_size_bytes,
      output_path=row.output_path,
      output_url=row.output_url,
      error_kind=RenderErrorKind(row.error_kind) if row.error_kind else None,
      error_message=row.error_message,
      cancel_requested=bool(row.cancel_requested),
      dispatched_at=row.dispatched_at,
      completed_at=row.completed_at,
      settled_at=row.settled_at,
    )
