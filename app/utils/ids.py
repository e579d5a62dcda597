"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new render job identifier."""
  return str(uuid.uuid4())


def generate_entry_id() -> str:
  """Return a new ledger or notification row identifier."""
  return str(uuid.uuid4())
