"""
FastAPI Endpoints for Portal Analytics
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from api.auth import get_current_user
from api.dependencies import ServiceContainer, get_container
from api.envelopes import run_with_timeout
from chat.errors import InvalidInputError
from etl.config import TIMEOUT_CONFIG

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portal", tags=["Portal Analytics"])


def parse_date(value: Optional[str], name: str, end_of_day: bool = False) -> Optional[datetime]:
    """Accept ISO-8601 dates or datetimes; a trailing Z means UTC.

    A bare date used as an upper bound covers that whole day.
    """
    if value is None or value == "":
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidInputError(f"Invalid '{name}' date: {value}")
    if end_of_day and len(value) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


@router.get(
    "/{portal_id}/analytics",
    summary="Get Portal Analytics",
    description="Overview, engagement, timeline, geographic, technology and performance rollups for the portal owner"
)
async def get_portal_analytics(
    portal_id: str,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    timeframe: Optional[str] = Query(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    start = parse_date(date_from, "from")
    end = parse_date(date_to, "to", end_of_day=True)

    report = await run_with_timeout(
        container.aggregator.get_report(
            portal_id, current_user["user_id"], start=start, end=end, timeframe=timeframe
        ),
        TIMEOUT_CONFIG['analytics_fetch_seconds'],
        "analytics fetch",
    )
    return {"success": True, **report.model_dump(mode='json', by_alias=True)}
