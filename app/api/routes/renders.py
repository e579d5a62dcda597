from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from app.api.deps import get_render_service
from app.api.models import RenderJobResponse, RenderQuoteResponse, job_to_response
from app.core.security import get_owner_id
from app.render.service import RenderService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=RenderJobResponse)
async def submit_render(
  payload: dict[str, Any] = Body(...),  # noqa: B008
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  service: RenderService = Depends(get_render_service),  # noqa: B008
) -> RenderJobResponse:
  """
  Admit a render request.

  The submission carries the animation spec, the source asset URL, optional
  image slots, an optional audio URL and the output kind. Credits are
  reserved before the job is queued; the job then progresses in the background.
  """
  job = await service.submit(payload, owner_id)
  return job_to_response(job)


@router.post("/quote", response_model=RenderQuoteResponse)
async def quote_render(
  payload: dict[str, Any] = Body(...),  # noqa: B008
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  service: RenderService = Depends(get_render_service),  # noqa: B008
) -> RenderQuoteResponse:
  """Validate a submission and return its credit cost without reserving anything."""
  cost = service.quote(payload)
  balance = await service.balance(owner_id)
  return RenderQuoteResponse(cost=cost, balance=balance, affordable=balance >= cost)


@router.get("", response_model=list[RenderJobResponse])
async def list_renders(
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  service: RenderService = Depends(get_render_service),  # noqa: B008
  limit: int = Query(20, ge=1, le=100),  # noqa: B008
  offset: int = Query(0, ge=0),  # noqa: B008
) -> list[RenderJobResponse]:
  """List the caller's renders, newest first."""
  jobs = await service.list_jobs(owner_id, limit=limit, offset=offset)
  return [job_to_response(job) for job in jobs]


@router.get("/{job_id}", response_model=RenderJobResponse)
async def get_render(job_id: str, owner_id: str = Depends(get_owner_id), service: RenderService = Depends(get_render_service)) -> RenderJobResponse:  # noqa: B008
  """Return the current state of one render."""
  job = await service.get_job(job_id, owner_id)
  return job_to_response(job)


@router.post("/{job_id}/cancel", response_model=RenderJobResponse)
async def cancel_render(job_id: str, owner_id: str = Depends(get_owner_id), service: RenderService = Depends(get_render_service)) -> RenderJobResponse:  # noqa: B008
  """Request cancellation; the job becomes cancelled at its next orchestration step."""
  job = await service.cancel(job_id, owner_id)
  return job_to_response(job)
