"""
Portal Orchestrator
Drives a portal through queued -> processing -> completed|failed

The build runs in the background worker pool; completion updates go through
the store's atomic update and never overwrite a terminal state.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from chat.errors import DocumentNotFound, ForbiddenError, InternalError, PortalNotFound
from database.repositories import PortalRepository, ProcessedCVRepository
from database.schemas import (
    Portal,
    PortalConfig,
    PortalErrorRecord,
    PortalStatus,
    PortalUrls,
    utcnow,
)
from etl.config import TIMEOUT_CONFIG
from etl.error_handling import ErrorType, describe_failure
from etl.logging_config import get_portal_logger
from etl.portal_builder import GENERATOR_NAME, GENERATOR_VERSION, BuildResult, PortalBuilder
from etl.tasks import BackgroundTaskManager
from monitoring.metrics import inc as metrics_inc, observe as metrics_observe

logger = logging.getLogger(__name__)
build_logger = structlog.get_logger("portal_builds")


@dataclass
class PortalStatusView:
    portal_id: str
    status: PortalStatus
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    urls: Optional[PortalUrls] = None
    steps_completed: Optional[List[str]] = None
    warnings: Optional[List[str]] = None
    error: Optional[PortalErrorRecord] = None


def new_portal_id(now: datetime) -> str:
    return f"portal_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)}"


class PortalOrchestrator:
    """
    Owns portal status transitions

    Only this class mutates portal documents. Retries are a caller decision:
    a failed build stays failed.
    """

    def __init__(
        self,
        portals: PortalRepository,
        cvs: ProcessedCVRepository,
        builder: PortalBuilder,
        task_manager: BackgroundTaskManager,
        build_timeout: float = TIMEOUT_CONFIG['portal_generation_seconds'],
        clock=utcnow,
    ):
        self.portals = portals
        self.cvs = cvs
        self.builder = builder
        self.task_manager = task_manager
        self.build_timeout = build_timeout
        self.clock = clock

    async def request_generation(
        self,
        user_id: str,
        processed_cv_id: str,
        config: Optional[PortalConfig] = None,
    ) -> Portal:
        """
        Create a portal for a processed CV and start building it

        Returns the portal in `processing` state; the build continues in the
        background and its outcome is visible through `get_status`.
        """
        cv = await self.cvs.get(processed_cv_id)
        if cv is None:
            raise DocumentNotFound(processed_cv_id=processed_cv_id)
        if cv.get('userId') != user_id:
            raise ForbiddenError("Access denied to this CV", processed_cv_id=processed_cv_id)

        now = self.clock()
        portal = Portal(
            portal_id=new_portal_id(now),
            user_id=user_id,
            processed_cv_id=processed_cv_id,
            status=PortalStatus.QUEUED,
            config=config or PortalConfig(),
            created_at=now,
            updated_at=now,
            metadata={'version': GENERATOR_VERSION, 'generated_by': GENERATOR_NAME},
        )
        await self.portals.create(portal)
        log = get_portal_logger(__name__, portal_id=portal.portal_id, user_id=user_id)
        log.info(f"Queued portal generation for CV {processed_cv_id}")

        try:
            portal = await self._transition(portal.portal_id, self._mark_processing)
            self.task_manager.submit(self._run_build, portal.portal_id, name=f"build_{portal.portal_id}")
        except Exception as e:
            log.error(f"Failed to start portal generation: {e}")
            await self._fail(portal.portal_id, processed_cv_id, ErrorType.INTERNAL.value, str(e))
            await metrics_inc("portal_builds_total", labels={"outcome": "submit_failed"})
            raise InternalError("Failed to start portal generation", portal_id=portal.portal_id) from e

        await metrics_inc("portal_generation_requests_total")
        return portal

    async def get_status(self, portal_id: str, user_id: str) -> PortalStatusView:
        portal = await self.portals.get(portal_id)
        if portal is None:
            raise PortalNotFound(portal_id=portal_id)
        if portal.user_id != user_id:
            raise ForbiddenError("Access denied to this portal", portal_id=portal_id)

        return PortalStatusView(
            portal_id=portal.portal_id,
            status=portal.status,
            created_at=portal.created_at,
            updated_at=portal.updated_at,
            processing_started_at=portal.processing_started_at,
            processing_completed_at=portal.processing_completed_at,
            urls=portal.urls,
            steps_completed=portal.steps_completed,
            warnings=portal.warnings,
            error=portal.error,
        )

    # =======================
    # Build and completion
    # =======================
    async def _run_build(self, portal_id: str) -> Optional[Portal]:
        """Background job: never raises, every outcome ends in a terminal state"""
        log = get_portal_logger(__name__, portal_id=portal_id, stage='build')
        started = self.clock()

        portal = await self.portals.get(portal_id)
        if portal is None:
            log.error("Portal disappeared before its build started")
            return None

        try:
            cv = await self.cvs.get(portal.processed_cv_id)
            if cv is None:
                raise DocumentNotFound(processed_cv_id=portal.processed_cv_id)
            result = await asyncio.wait_for(self.builder.build(portal, cv), timeout=self.build_timeout)
        except asyncio.CancelledError:
            await self._fail(portal_id, portal.processed_cv_id, ErrorType.INTERNAL.value, "Portal build cancelled")
            raise
        except Exception as e:
            failure = describe_failure(e, self.build_timeout)
            log.error(f"Portal build failed ({failure.code}, {failure.severity.value}): {failure.message}")
            await metrics_inc("portal_builds_total", labels={"outcome": "failed"})
            build_logger.warning(
                "Portal build failed",
                portal_id=portal_id,
                error_code=failure.code,
                retryable=failure.retryable,
            )
            return await self._fail(portal_id, portal.processed_cv_id, failure.code, failure.message)

        elapsed = (self.clock() - started).total_seconds()
        await metrics_observe("portal_build_seconds", elapsed)

        if not result.success:
            log.error(f"Portal builder reported failure: {result.error_message}")
            await metrics_inc("portal_builds_total", labels={"outcome": "failed"})
            return await self._fail(
                portal_id,
                portal.processed_cv_id,
                result.error_code or ErrorType.INTERNAL.value,
                result.error_message or "Portal generation failed",
                result.warnings,
            )

        completed = await self._transition(portal_id, lambda p: self._mark_completed(p, result))
        if completed is not None and completed.status == PortalStatus.COMPLETED and result.urls:
            try:
                await self.cvs.backfill_portal(portal.processed_cv_id, portal_id, result.urls)
            except Exception as e:
                log.warning(f"Failed to back-fill portal URLs onto CV {portal.processed_cv_id}: {e}")

        await metrics_inc("portal_builds_total", labels={"outcome": "completed"})
        build_logger.info(
            "Portal build completed",
            portal_id=portal_id,
            duration_seconds=round(elapsed, 3),
            steps=len(result.steps_completed),
            warnings=len(result.warnings),
        )
        log.info(f"Portal build completed in {elapsed:.2f}s ({', '.join(result.steps_completed)})")
        return completed

    async def _transition(self, portal_id: str, fn) -> Optional[Portal]:
        return await self.portals.update(portal_id, fn)

    def _mark_processing(self, portal: Optional[Portal]) -> Optional[Portal]:
        if portal is None or portal.status != PortalStatus.QUEUED:
            return None
        now = self.clock()
        portal.status = PortalStatus.PROCESSING
        portal.processing_started_at = now
        portal.updated_at = now
        return portal

    def _mark_completed(self, portal: Optional[Portal], result: BuildResult) -> Optional[Portal]:
        if portal is None or portal.status.is_terminal:
            return None
        now = self.clock()
        portal.status = PortalStatus.COMPLETED
        portal.updated_at = now
        portal.processing_completed_at = now
        portal.urls = result.urls
        portal.metadata = {**portal.metadata, **result.metadata}
        portal.steps_completed = list(result.steps_completed)
        portal.warnings = list(result.warnings)
        return portal

    async def _fail(
        self,
        portal_id: str,
        processed_cv_id: str,
        code: str,
        message: str,
        warnings: Optional[List[str]] = None,
    ) -> Optional[Portal]:
        def mark_failed(portal: Optional[Portal]) -> Optional[Portal]:
            if portal is None or portal.status.is_terminal:
                return None
            now = self.clock()
            portal.status = PortalStatus.FAILED
            portal.updated_at = now
            portal.processing_completed_at = now
            portal.warnings = list(warnings or [])
            portal.error = PortalErrorRecord(
                code=code,
                message=message,
                timestamp=now,
                context={'processed_cv_id': processed_cv_id, 'portal_id': portal_id},
            )
            return portal

        try:
            return await self._transition(portal_id, mark_failed)
        except Exception as e:
            logger.error(f"Could not record failure for portal {portal_id}: {e}")
            return None

    def describe(self) -> Dict[str, Any]:
        """Build settings and worker pool state for the health endpoint"""
        return {'build_timeout': self.build_timeout, 'workers': self.task_manager.get_stats()}
