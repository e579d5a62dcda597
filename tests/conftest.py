"""Test configuration for importing the application package."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402

from tests.render_fakes import OWNER_ID, build_harness, make_settings  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings():
  return make_settings()


@pytest.fixture
def owner_id() -> str:
  return OWNER_ID


@pytest.fixture
def harness_factory():
  """Return the harness builder so tests can script the fleet per case."""
  return build_harness
