"""Pytest fixtures for previsit tests."""
import pytest
from fastapi.testclient import TestClient

from previsit.main import app


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    return TestClient(app)
