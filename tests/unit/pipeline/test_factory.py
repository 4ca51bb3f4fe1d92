"""
Unit tests for pipeline wiring.
"""

from unittest.mock import AsyncMock

import pytest

from crave_pipeline.collection.duplicates import DuplicateDetector
from crave_pipeline.core.errors import ConfigurationError
from crave_pipeline.extraction.client import ExtractionClient
from crave_pipeline.pipeline.factory import (
    build_orchestrator,
    configure_pipeline,
    get_pipeline_components,
    reset_pipeline,
)
from crave_pipeline.pipeline.orchestrator import PipelineOrchestrator
from crave_pipeline.resolution.repository import InMemoryEntityRepository


@pytest.fixture(autouse=True)
def clean_pipeline():
    reset_pipeline()
    yield
    reset_pipeline()


class TestConfigurePipeline:
    """Tests for configure_pipeline and get_pipeline_components."""

    def test_unconfigured_raises(self):
        with pytest.raises(ConfigurationError):
            get_pipeline_components()

    def test_defaults_to_in_memory_state(self):
        source = AsyncMock()

        components = configure_pipeline(source)

        assert get_pipeline_components() is components
        assert components.content_source is source
        assert components.quality_trigger is None
        assert isinstance(components.detector, DuplicateDetector)
        assert isinstance(components.repository, InMemoryEntityRepository)

    def test_explicit_collaborators(self):
        repository = InMemoryEntityRepository()
        detector = DuplicateDetector()
        trigger = AsyncMock()

        components = configure_pipeline(
            AsyncMock(), quality_trigger=trigger, repository=repository, detector=detector
        )

        assert components.repository is repository
        assert components.detector is detector
        assert components.quality_trigger is trigger


class TestBuildOrchestrator:
    """Tests for build_orchestrator."""

    def test_builds_from_registered_components(self):
        configure_pipeline(AsyncMock())

        orchestrator = build_orchestrator(extraction_client=AsyncMock(spec=ExtractionClient))

        assert isinstance(orchestrator, PipelineOrchestrator)
        assert orchestrator.scope_for("austinfood") == "austin"

    def test_requires_configuration(self):
        with pytest.raises(ConfigurationError):
            build_orchestrator(extraction_client=AsyncMock(spec=ExtractionClient))
