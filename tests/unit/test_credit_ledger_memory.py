from __future__ import annotations

import asyncio

import pytest

from app.render.errors import InsufficientCreditsError
from app.schema.credits import LedgerReason
from app.storage.memory import InMemoryCreditLedger


@pytest.mark.anyio
async def test_reserve_holds_credits_and_is_idempotent_per_job() -> None:
  ledger = InMemoryCreditLedger(initial_balances={"user-1": 10})
  first = await ledger.reserve(user_id="user-1", job_id="job-1", amount=4)
  again = await ledger.reserve(user_id="user-1", job_id="job-1", amount=4)
  assert first.entry_id == again.entry_id
  assert await ledger.balance("user-1") == 6
  assert [entry.reason for entry in ledger.entries] == [LedgerReason.GRANT, LedgerReason.RESERVE]


@pytest.mark.anyio
async def test_insufficient_balance_writes_nothing() -> None:
  ledger = InMemoryCreditLedger(initial_balances={"user-1": 3})
  with pytest.raises(InsufficientCreditsError) as excinfo:
    await ledger.reserve(user_id="user-1", job_id="job-1", amount=4)
  assert excinfo.value.required == 4
  assert excinfo.value.available == 3
  assert len(ledger.entries) == 1


@pytest.mark.anyio
async def test_commit_keeps_the_charge_and_blocks_a_later_refund() -> None:
  ledger = InMemoryCreditLedger(initial_balances={"user-1": 10})
  await ledger.reserve(user_id="user-1", job_id="job-1", amount=10)
  assert await ledger.commit("job-1") is True
  assert await ledger.commit("job-1") is False
  assert await ledger.refund("job-1") is False
  assert await ledger.balance("user-1") == 0
  assert [entry.reason for entry in ledger.entries if entry.job_id == "job-1"] == [LedgerReason.RESERVE, LedgerReason.COMMIT]


@pytest.mark.anyio
async def test_refund_restores_the_hold_once() -> None:
  ledger = InMemoryCreditLedger(initial_balances={"user-1": 10})
  await ledger.reserve(user_id="user-1", job_id="job-1", amount=6)
  assert await ledger.refund("job-1") is True
  assert await ledger.refund("job-1") is False
  assert await ledger.balance("user-1") == 10


@pytest.mark.anyio
async def test_settling_an_unknown_job_is_a_no_op() -> None:
  ledger = InMemoryCreditLedger()
  assert await ledger.commit("nope") is False
  assert await ledger.refund("nope") is False


@pytest.mark.anyio
async def test_concurrent_reservations_cannot_overdraw() -> None:
  ledger = InMemoryCreditLedger(initial_balances={"user-1": 10})
  results = await asyncio.gather(
    ledger.reserve(user_id="user-1", job_id="job-a", amount=10),
    ledger.reserve(user_id="user-1", job_id="job-b", amount=10),
    return_exceptions=True,
  )
  failures = [result for result in results if isinstance(result, InsufficientCreditsError)]
  assert len(failures) == 1
  assert await ledger.balance("user-1") == 0


@pytest.mark.anyio
async def test_grant_and_adjustment_entries() -> None:
  ledger = InMemoryCreditLedger()
  await ledger.grant(user_id="user-1", amount=20)
  await ledger.grant(user_id="user-1", amount=-5, reason=LedgerReason.ADJUSTMENT)
  assert await ledger.balance("user-1") == 15
  newest = await ledger.list_entries("user-1", limit=1)
  assert newest[0].reason == LedgerReason.ADJUSTMENT
  with pytest.raises(ValueError):
    await ledger.grant(user_id="user-1", amount=5, reason=LedgerReason.COMMIT)
