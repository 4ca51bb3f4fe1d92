"""
Wiring of pipeline components.

The content source and quality score trigger are external collaborators
that the hosting process registers once at startup with
configure_pipeline(). Process-wide state (the duplicate cache and the
entity repository) lives in PipelineComponents and is shared by every
orchestrator built from it.
"""

import logging
from dataclasses import dataclass, field

from crave_pipeline.collection.duplicates import DuplicateDetector
from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import ConfigurationError
from crave_pipeline.extraction.client import ExtractionClient
from crave_pipeline.pipeline.interfaces import ContentSource, QualityScoreTrigger
from crave_pipeline.pipeline.orchestrator import PipelineOrchestrator
from crave_pipeline.resolution.repository import EntityRepository, InMemoryEntityRepository
from crave_pipeline.resolution.resolver import EntityResolver

logger = logging.getLogger(__name__)


@dataclass
class PipelineComponents:
    """Long-lived collaborators shared by all jobs in a process."""

    content_source: ContentSource
    quality_trigger: QualityScoreTrigger | None = None
    detector: DuplicateDetector = field(default_factory=DuplicateDetector)
    repository: EntityRepository = field(default_factory=InMemoryEntityRepository)


_components: PipelineComponents | None = None


def configure_pipeline(
    content_source: ContentSource,
    quality_trigger: QualityScoreTrigger | None = None,
    repository: EntityRepository | None = None,
    detector: DuplicateDetector | None = None,
) -> PipelineComponents:
    """Register the process-wide pipeline collaborators."""
    global _components
    _components = PipelineComponents(
        content_source=content_source,
        quality_trigger=quality_trigger,
        detector=detector or DuplicateDetector(),
        repository=repository or InMemoryEntityRepository(),
    )
    logger.info(
        "Pipeline configured",
        extra={
            "content_source": type(content_source).__name__,
            "quality_trigger": type(quality_trigger).__name__ if quality_trigger else None,
            "repository": type(_components.repository).__name__,
        },
    )
    return _components


def get_pipeline_components() -> PipelineComponents:
    """
    Get the registered pipeline collaborators.

    Raises:
        ConfigurationError: If configure_pipeline() was never called
    """
    if _components is None:
        raise ConfigurationError(
            "Pipeline not configured: call configure_pipeline() with a content source"
        )
    return _components


def reset_pipeline() -> None:
    """Forget the registered collaborators (tests)."""
    global _components
    _components = None


def build_orchestrator(
    components: PipelineComponents | None = None,
    extraction_client: ExtractionClient | None = None,
) -> PipelineOrchestrator:
    """Build an orchestrator over the shared components.

    The extraction client holds an HTTP connection pool bound to the
    running event loop, so callers that run each job in a fresh loop pass
    a fresh client.
    """
    components = components or get_pipeline_components()
    return PipelineOrchestrator(
        content_source=components.content_source,
        detector=components.detector,
        extraction_client=extraction_client or ExtractionClient(),
        resolver=EntityResolver(components.repository),
        quality_trigger=components.quality_trigger,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        coverage_scopes=settings.COVERAGE_SCOPES,
    )
