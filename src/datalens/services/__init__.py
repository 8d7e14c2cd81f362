"""
Service layer for DataLens.

Services hold the business logic between the job queue and the
repositories:

- DiscoveryPipeline: connector + detector -> inventory and classifications
- ScanOrchestrator: ScanRun admission, queueing and execution
- DSRService: DSR intake, approval, rejection and verification
- DSRExecutor: per-source execution of approved DSRs

``build_services`` wires them once per process and subscribes the job
handlers to their queues.
"""

from dataclasses import dataclass
from functools import partial
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datalens.connectors import ConnectorRegistry, build_default_registry
from datalens.core.detection import ComposableDetector, build_detector
from datalens.jobs.queue import DSR_TASK, SCAN_TASK, TaskQueue
from datalens.jobs.tasks import execute_dsr_job, execute_scan_job
from datalens.server.config import Settings, get_settings
from datalens.server.events import AuditLogger, EventPublisher
from datalens.server.repositories import Repositories

from .base import BaseService
from .discovery_service import ConnectionTestResult, DiscoveryPipeline, ScanStats
from .dsr_executor import DSRExecutor
from .dsr_service import DSRService
from .scan_service import ScanOrchestrator

__all__ = [
    "BaseService",
    "ConnectionTestResult",
    "DiscoveryPipeline",
    "DSRExecutor",
    "DSRService",
    "ScanOrchestrator",
    "ScanStats",
    "Services",
    "build_services",
]


@dataclass
class Services:
    """Everything a worker or an embedding application needs."""

    settings: Settings
    repos: Repositories
    registry: ConnectorRegistry
    detector: ComposableDetector
    events: EventPublisher
    audit: AuditLogger
    scan_queue: TaskQueue
    dsr_queue: TaskQueue
    pipeline: DiscoveryPipeline
    scans: ScanOrchestrator
    dsrs: DSRService
    executor: DSRExecutor

    @property
    def queues(self) -> dict[str, TaskQueue]:
        return {SCAN_TASK: self.scan_queue, DSR_TASK: self.dsr_queue}

    async def drain(self) -> None:
        """Wait for in-flight events and audit writes."""
        await self.events.drain()
        await self.audit.drain()


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    registry: Optional[ConnectorRegistry] = None,
    detector: Optional[ComposableDetector] = None,
    events: Optional[EventPublisher] = None,
) -> Services:
    """
    Wire every service against one session factory.

    Args:
        session_factory: Factory returned by ``init_db``
        settings: Application settings (global settings when omitted)
        registry: Connector registry (built-in connectors when omitted)
        detector: Composable detector (built from settings when omitted)
        events: Event publisher (a new one when omitted)
    """
    settings = settings or get_settings()
    repos = Repositories(session_factory)
    registry = registry or build_default_registry(settings.connectors)
    detector = detector or build_detector(settings.detection)
    events = events or EventPublisher()
    audit = AuditLogger(repos.audit_logs)

    scan_queue = TaskQueue(session_factory, SCAN_TASK, max_retries=settings.jobs.max_retries)
    # DSRs outrank scans in the queue
    dsr_queue = TaskQueue(session_factory, DSR_TASK, priority=80, max_retries=settings.jobs.max_retries)

    pipeline = DiscoveryPipeline(repos, settings, registry, detector, events, audit)
    scans = ScanOrchestrator(repos, settings, pipeline, scan_queue, events, audit)
    dsrs = DSRService(repos, settings, dsr_queue, events, audit)
    executor = DSRExecutor(repos, settings, registry, events, audit)

    scan_queue.subscribe(partial(execute_scan_job, scans))
    dsr_queue.subscribe(partial(execute_dsr_job, executor))

    return Services(
        settings=settings,
        repos=repos,
        registry=registry,
        detector=detector,
        events=events,
        audit=audit,
        scan_queue=scan_queue,
        dsr_queue=dsr_queue,
        pipeline=pipeline,
        scans=scans,
        dsrs=dsrs,
        executor=executor,
    )
