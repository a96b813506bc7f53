"""
Response envelopes shared by the portal routers
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Dict, TypeVar

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from chat.errors import OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar('T')


def camelize(value: Any) -> Any:
    """Recursively convert dict keys to camelCase and values to JSON-friendly types"""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode='json')
    if isinstance(value, dict):
        return {to_camel(str(k)): camelize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [camelize(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def success(**fields: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    body.update(camelize(fields))
    return body


async def run_with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await within `seconds`; exceeding it becomes a 504 envelope"""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        logger.error(f"{operation} exceeded {seconds}s")
        raise OperationTimeout(operation=operation)
