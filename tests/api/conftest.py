"""API-specific test fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

from capacity_queue.api.routes.queue import get_engine
from capacity_queue.main import create_app


@pytest.fixture
def app(harness):
    """App whose queue routes use the fake-backed engine from the shared harness."""
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: harness.engine
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    # ASGITransport doesn't run the lifespan, so no database or Redis is initialized
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
