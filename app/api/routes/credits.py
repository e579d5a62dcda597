from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_render_service
from app.api.models import CreditBalanceResponse, LedgerEntryResponse, ledger_entry_to_response
from app.core.security import get_owner_id
from app.render.service import RenderService

router = APIRouter()


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(owner_id: str = Depends(get_owner_id), service: RenderService = Depends(get_render_service)) -> CreditBalanceResponse:  # noqa: B008
  """Return the caller's available credits (held reservations already deducted)."""
  return CreditBalanceResponse(balance=await service.balance(owner_id))


@router.get("/ledger", response_model=list[LedgerEntryResponse])
async def list_ledger(
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  service: RenderService = Depends(get_render_service),  # noqa: B008
  limit: int = Query(50, ge=1, le=200),  # noqa: B008
) -> list[LedgerEntryResponse]:
  """Return the caller's most recent credit movements."""
  entries = await service.ledger_entries(owner_id, limit=limit)
  return [ledger_entry_to_response(entry) for entry in entries]
