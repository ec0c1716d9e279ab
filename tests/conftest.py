"""
Pytest configuration for the egress test suite.
Provides settings, fake collaborators and a ready-to-use service.
"""

import pytest
import pytest_asyncio

from egress_service.config import Settings
from egress_service.metrics import get_metrics_collector
from egress_service.services.egress import EgressService

from fakes import FakeConnector, FakePipeline


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with empty metrics."""
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def settings(tmp_path):
    """Test settings writing into a temporary directory with instant retries."""
    return Settings(
        _env_file=None,
        environment="testing",
        output_directory=tmp_path / "egress",
        delivery_max_attempts=3,
        delivery_base_delay=0,
        delivery_jitter=False,
    )


@pytest.fixture
def pipeline():
    pipeline = FakePipeline()
    pipeline.add_room("room-a", "TR_audio", "TR_video")
    pipeline.add_room("room-b", "TR_screen")
    return pipeline


@pytest.fixture
def connector():
    return FakeConnector()


@pytest_asyncio.fixture
async def service(settings, pipeline, connector):
    """Egress service streaming through the fake connector."""
    service = EgressService(
        pipeline,
        settings=settings,
        connectors={"rtmp": connector, "rtmps": connector, "srt": connector},
    )
    yield service
    await service.close()
