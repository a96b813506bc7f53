"""
Portal builders invoked by the portal orchestrator.

A builder turns a processed CV into a ready portal: it prepares whatever the
chat needs and returns the public URLs. The orchestrator only cares about the
`BuildResult`; builders may report failure either by returning an unsuccessful
result or by raising.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from database.schemas import Portal, PortalUrls
from etl.config import PORTAL_CONFIG
from etl.error_handling import ErrorType
from etl.logging_config import LogContext
from rag.retrieval_engine import RetrievalEngine

logger = logging.getLogger(__name__)

GENERATOR_NAME = 'cv-portal-generator'
GENERATOR_VERSION = '1.0.0'


class BuildStep:
    VALIDATE_CV = 'validate_cv'
    BUILD_INDEX = 'build_index'
    DERIVE_URLS = 'derive_urls'


@dataclass
class BuildResult:
    success: bool
    urls: Optional[PortalUrls] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    steps_completed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PortalBuilder(Protocol):
    async def build(self, portal: Portal, cv: Dict[str, Any]) -> BuildResult: ...


def portal_urls(
    portal_id: str,
    base_url: str = PORTAL_CONFIG['base_url'],
    api_base_url: str = PORTAL_CONFIG['api_base_url'],
) -> PortalUrls:
    base_url = base_url.rstrip('/')
    api_base_url = api_base_url.rstrip('/')
    return PortalUrls(
        portal=f"{base_url}/{portal_id}",
        chat=f"{api_base_url}/portal/{portal_id}/chat",
        contact=f"{base_url}/{portal_id}/contact",
        download=f"{api_base_url}/portal/{portal_id}/cv/download",
    )


class DefaultPortalBuilder:
    """Builds the CV retrieval index (when retrieval is configured) and derives the portal URLs"""

    def __init__(
        self,
        retrieval_engine: Optional[RetrievalEngine] = None,
        base_url: str = PORTAL_CONFIG['base_url'],
        api_base_url: str = PORTAL_CONFIG['api_base_url'],
    ):
        self.retrieval_engine = retrieval_engine
        self.base_url = base_url
        self.api_base_url = api_base_url

    async def build(self, portal: Portal, cv: Dict[str, Any]) -> BuildResult:
        result = BuildResult(success=False)

        if not isinstance(cv, dict) or not cv:
            result.error_code = ErrorType.VALIDATION.value
            result.error_message = "Processed CV has no content"
            return result
        result.steps_completed.append(BuildStep.VALIDATE_CV)

        chunks = 0
        if self.retrieval_engine is None:
            result.warnings.append("Retrieval is not configured; chat will use fallback answers")
        else:
            # A missing index only degrades chat; sessions retry the build on start
            try:
                with LogContext(logger, "index build", portal_id=portal.portal_id) as ctx:
                    index = await self.retrieval_engine.build_index(portal.processed_cv_id, cv)
                chunks = len(index.chunks)
                result.steps_completed.append(BuildStep.BUILD_INDEX)
                result.metadata['index_build_seconds'] = ctx.duration
            except Exception as e:
                logger.warning(f"Index build failed for portal {portal.portal_id}: {e}")
                result.warnings.append(f"Retrieval index unavailable: {e}")

        result.urls = portal_urls(portal.portal_id, self.base_url, self.api_base_url)
        result.steps_completed.append(BuildStep.DERIVE_URLS)

        result.metadata.update({
            'version': GENERATOR_VERSION,
            'generated_by': GENERATOR_NAME,
            'theme': portal.config.theme.value,
            'features': list(portal.config.features),
            'indexed_chunks': chunks,
        })
        result.success = True
        return result
