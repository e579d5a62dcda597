"""Wire render collaborators from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.config import Settings
from app.core.database import get_session_factory
from app.notifications.contracts import NotificationSink
from app.notifications.in_app_repo import PostgresNotificationSink
from app.render.admission import RequestAdmitter
from app.render.dispatch import Dispatcher
from app.render.errors import FleetRejectedError
from app.render.finalize import Finalizer
from app.render.notify import NotificationEmitter
from app.render.progress import ProgressAggregator
from app.render.reconcile import LedgerReconciler
from app.render.scheduler import RenderScheduler
from app.render.service import RenderService
from app.render.settlement import RenderSettlement
from app.services.credit_ledger import CreditLedger, PostgresCreditLedger
from app.services.storage_client import ObjectStore, build_object_store
from app.services.worker_fleet import FleetProgress, FleetSubmission, HttpWorkerFleet, TrackingHandle, WorkerFleet
from app.storage.memory import InMemoryCreditLedger, InMemoryNotificationSink, InMemoryObjectStore, InMemoryRenderJobsRepository
from app.storage.postgres_render_jobs_repo import PostgresRenderJobsRepository
from app.storage.render_jobs_repo import RenderJobsRepository

logger = logging.getLogger(__name__)


class NullWorkerFleet:
  """Fleet used when REEL_FLEET_BASE_URL is unset; every dispatch is rejected."""

  async def submit(self, submission: FleetSubmission) -> TrackingHandle:
    raise FleetRejectedError("Worker fleet is not configured (REEL_FLEET_BASE_URL).")

  async def progress(self, handle: TrackingHandle) -> FleetProgress:
    raise FleetRejectedError("Worker fleet is not configured (REEL_FLEET_BASE_URL).")

  async def fetch_artifact(self, output_locator: str) -> bytes:
    raise FleetRejectedError("Worker fleet is not configured (REEL_FLEET_BASE_URL).")


@dataclass
class RenderComponents:
  """Everything the API and lifespan need, built once per process."""

  jobs_repo: RenderJobsRepository
  ledger: CreditLedger
  sink: NotificationSink
  store: ObjectStore
  fleet: WorkerFleet
  scheduler: RenderScheduler | None
  service: RenderService

  async def aclose(self) -> None:
    if self.scheduler is not None:
      await self.scheduler.shutdown()
    close = getattr(self.fleet, "aclose", None)
    if close is not None:
      await close()


def build_render_components(
  settings: Settings,
  *,
  jobs_repo: RenderJobsRepository | None = None,
  ledger: CreditLedger | None = None,
  sink: NotificationSink | None = None,
  store: ObjectStore | None = None,
  fleet: WorkerFleet | None = None,
) -> RenderComponents:
  """Build collaborators, preferring Postgres/GCS/HTTP when configured and in-memory otherwise."""
  session_factory = get_session_factory() if settings.pg_dsn else None
  if session_factory is not None:
    jobs_repo = jobs_repo or PostgresRenderJobsRepository(session_factory)
    ledger = ledger or PostgresCreditLedger(session_factory)
    sink = sink or PostgresNotificationSink(session_factory)
  else:
    logger.warning("REEL_PG_DSN not set; render jobs, credits and notifications are kept in memory.")
    jobs_repo = jobs_repo or InMemoryRenderJobsRepository()
    ledger = ledger or InMemoryCreditLedger()
    sink = sink or InMemoryNotificationSink()

  if store is None:
    if settings.gcs_storage_host or settings.gcp_project_id:
      store = build_object_store(settings)
    else:
      logger.warning("No GCS configuration; render outputs are kept in memory.")
      store = InMemoryObjectStore(base_url=settings.public_base_url or "memory://renders")

  if fleet is None:
    fleet = HttpWorkerFleet(settings) if settings.fleet_base_url else NullWorkerFleet()

  settlement = RenderSettlement(jobs_repo=jobs_repo, reconciler=LedgerReconciler(ledger), emitter=NotificationEmitter(sink))
  scheduler: RenderScheduler | None = None
  if settings.scheduler_enabled:
    scheduler = RenderScheduler(
      jobs_repo=jobs_repo,
      dispatcher=Dispatcher(jobs_repo=jobs_repo, fleet=fleet, settings=settings),
      aggregator=ProgressAggregator(jobs_repo=jobs_repo, fleet=fleet, settings=settings),
      finalizer=Finalizer(jobs_repo=jobs_repo, fleet=fleet, store=store, settings=settings),
      settlement=settlement,
      settings=settings,
    )

  admitter = RequestAdmitter(jobs_repo=jobs_repo, ledger=ledger, settings=settings, on_admitted=scheduler.submit if scheduler else None)
  service = RenderService(jobs_repo=jobs_repo, ledger=ledger, admitter=admitter, scheduler=scheduler)
  return RenderComponents(jobs_repo=jobs_repo, ledger=ledger, sink=sink, store=store, fleet=fleet, scheduler=scheduler, service=service)
