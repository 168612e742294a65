import os

# Tests always run against the simulated band with no synthetic telemetry
os.environ["SVC_MODE"] = "sim"
os.environ["SIM_TELEMETRY"] = "0"

import pytest
from fastapi.testclient import TestClient

from main import create_app


@pytest.fixture
def client():
    """App client with the lifespan running (router and simulated band started)."""
    with TestClient(create_app()) as c:
        yield c
