from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from chessduel.server import create_app
from chessduel.tests.fakes import offline_settings


def get_test_client() -> TestClient:
    return TestClient(create_app(offline_settings()))


@pytest.fixture
def client() -> Iterator[TestClient]:
    # One portal for the whole test so every socket shares the app's event loop
    with get_test_client() as test_client:
        yield test_client
