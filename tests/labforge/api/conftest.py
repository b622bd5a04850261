"""Fixtures for API tests."""

import pytest
from fastapi.testclient import TestClient

from labforge.api.app import app
from labforge.api.deps import LabServices, get_services


@pytest.fixture
def services(runtime, lab_store, registry, sandbox):
    return LabServices(runtime=runtime, lab_store=lab_store, registry=registry, sandbox=sandbox)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    # The context manager keeps one event loop alive, so session expiry
    # tasks survive between requests
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
        test_client.portal.call(services.registry.shutdown)
    app.dependency_overrides.pop(get_services, None)
