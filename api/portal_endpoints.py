"""
FastAPI Endpoints for Portal Generation
Owner-facing endpoints to request a portal build and poll its status
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import Field, field_validator

from api.auth import get_current_user
from api.chat_endpoints import CamelModel
from api.dependencies import ServiceContainer, get_container
from api.envelopes import run_with_timeout, success
from database.schemas import PortalConfig
from etl.config import TIMEOUT_CONFIG

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portal", tags=["Portal Generation"])


class GeneratePortalRequest(CamelModel):
    """Portal generation request model"""
    processed_cv_id: str = Field(..., min_length=1)
    portal_config: Optional[PortalConfig] = None

    @field_validator('processed_cv_id')
    @classmethod
    def validate_processed_cv_id(cls, v):
        if not v.strip():
            raise ValueError('processedCvId cannot be empty')
        return v.strip()


@router.post(
    "/generate",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Generate Portal",
    description="Queue an interactive portal build for a processed CV"
)
async def generate_portal(
    request: GeneratePortalRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    portal = await run_with_timeout(
        container.orchestrator.request_generation(
            current_user["user_id"],
            request.processed_cv_id,
            request.portal_config,
        ),
        TIMEOUT_CONFIG['portal_generation_seconds'],
        "portal generation request",
    )
    return success(
        portal_id=portal.portal_id,
        status=portal.status,
        message="Portal generation initiated successfully. Check status using portal ID.",
    )


@router.get(
    "/{portal_id}/status",
    summary="Get Portal Status"
)
async def get_portal_status(
    portal_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    view = await container.orchestrator.get_status(portal_id, current_user["user_id"])
    return success(
        portal_id=view.portal_id,
        status=view.status,
        created_at=view.created_at,
        updated_at=view.updated_at,
        processing_started_at=view.processing_started_at,
        processing_completed_at=view.processing_completed_at,
        urls=view.urls,
        steps_completed=view.steps_completed,
        warnings=view.warnings,
        error=view.error,
    )
