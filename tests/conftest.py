import os

os.environ["STORE_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SUBMIT_DELAY_SECONDS"] = "0"
os.environ["LOGIN_DELAY_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient

from db import MemoryStore
from ledger import LedgerService
from session import AdminCredentialAuthenticator, SessionContext


@pytest.fixture(scope="session")
def admin_authenticator():
    # bcrypt hashing is slow, share one across the run
    return AdminCredentialAuthenticator("admin", "admin123")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store):
    return LedgerService(store)


@pytest.fixture
def session_ctx(store, admin_authenticator):
    return SessionContext(store, admin_authenticator=admin_authenticator)


@pytest.fixture
def complaint_data():
    return {
        "name": "A",
        "phone": "123",
        "address": "X",
        "category": "pothole",
        "description": "d",
    }


@pytest.fixture
def client(service, session_ctx):
    import main

    main.limiter.enabled = False
    main.app.dependency_overrides[main.get_ledger_service] = lambda: service
    main.app.dependency_overrides[main.get_session_context] = lambda: session_ctx
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def citizen_headers(client):
    response = client.post("/auth/login", json={"username": "asha", "password": "secret"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    response = client.post("/admin/login", json={"username": "admin", "password": "admin123"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
