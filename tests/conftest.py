"""
Pytest configuration and shared fixtures.

Test settings are set as environment variables here, before any
tollfree_sms import, so the cached Settings and the module-level engine
pick them up. An in-memory SQLite database is created per test and the
Surge API is replaced by an httpx.MockTransport.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SURGE_API_KEY", "test-surge-key")
os.environ.setdefault("SURGE_API_BASE", "https://surge.test")
os.environ.setdefault("SURGE_ACCOUNT_ID", "acct_master")
os.environ.setdefault("SURGE_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("SURGE_MAX_NUMBERS", "0")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from tollfree_sms.config import get_settings
get_settings.cache_clear()

from tollfree_sms import models  # noqa: E402,F401
from tollfree_sms.carrier import CarrierClient  # noqa: E402
from tollfree_sms.deps import create_access_token, get_app_settings, get_carrier  # noqa: E402
from tollfree_sms.main import app  # noqa: E402
from tollfree_sms.storage import Base, SessionLocal, Store, engine  # noqa: E402


OWNER_ID = "user-owner"


class FakeSurge:
    """
    In-process stand-in for the Surge REST API.

    Records every request and answers from per-operation response queues.
    A queued (status, body) pair is consumed once; when the queue is empty
    the default success response is returned.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, list[tuple[int, object]]] = {}
        self.capability_status = "pending"
        self.capability_message = None
        self._numbers = 0
        self._campaigns = 0
        self._messages = 0
        self._accounts = 0

    def respond(self, operation: str, status: int, body: object) -> None:
        self.responses.setdefault(operation, []).append((status, body))

    def calls(self, operation: str) -> list[httpx.Request]:
        return [r for r in self.requests if self._operation(r) == operation]

    def bodies(self, operation: str) -> list[dict]:
        return [json.loads(r.content) for r in self.calls(operation)]

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        path = request.url.path
        if request.method == "POST" and path == "/accounts":
            return "create_account"
        if path.endswith("/phone_numbers"):
            return "purchase_number"
        if path.endswith("/campaigns"):
            return "submit_verification"
        if path.endswith("/status"):
            return "capability_status"
        if path.endswith("/messages"):
            return "send_message"
        return "unknown"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        operation = self._operation(request)

        queued = self.responses.get(operation)
        if queued:
            status, body = queued.pop(0)
            return httpx.Response(status, json=body)

        if operation == "create_account":
            self._accounts += 1
            return httpx.Response(201, json={"id": f"acct_sub_{self._accounts}"})
        if operation == "purchase_number":
            self._numbers += 1
            return httpx.Response(201, json={"id": f"pn_{self._numbers}", "number": f"+1833555{self._numbers:04d}"})
        if operation == "submit_verification":
            self._campaigns += 1
            return httpx.Response(201, json={"id": f"cmp_{self._campaigns}", "status": "pending"})
        if operation == "capability_status":
            capability = {"status": self.capability_status}
            if self.capability_message:
                capability["message"] = self.capability_message
            return httpx.Response(200, json={"capabilities": {"toll_free_messaging": capability}})
        if operation == "send_message":
            self._messages += 1
            return httpx.Response(200, json={"id": f"msg_out_{self._messages}", "status": "queued"})
        return httpx.Response(404, json={"error": {"message": "Not found"}})


def make_carrier(settings, surge: FakeSurge, **kwargs) -> CarrierClient:
    http_client = httpx.AsyncClient(
        base_url=settings.SURGE_API_BASE,
        transport=httpx.MockTransport(surge.handler),
    )
    return CarrierClient(settings, http_client=http_client, **kwargs)


def business_info(**overrides) -> dict:
    """A valid onboarding payload."""
    info = {
        "legal_name": "Acme Plumbing LLC",
        "brand_name": "Acme Plumbing",
        "website": "https://acme.example.com",
        "contact_name": "Jane Doe",
        "contact_email": "jane@acme.example.com",
        "contact_phone": "+14155550123",
        "address": {
            "line1": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "postal_code": "62701",
            "country": "US",
        },
        "ein": "12-3456789",
        "estimated_monthly_volume": 500,
        "opt_in_method": "website form",
        "opt_in_evidence_url": "https://acme.example.com/sms-consent",
    }
    info.update(overrides)
    return info


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def surge():
    return FakeSurge()


@pytest.fixture
def carrier(settings, surge):
    return make_carrier(settings, surge)


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db_session):
    return Store(db_session)


@pytest.fixture
def client(db_session, settings, carrier):
    """Create test client wired to the fake carrier."""
    app.dependency_overrides[get_carrier] = lambda: carrier
    app.dependency_overrides[get_app_settings] = lambda: settings

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(settings):
    return {"Authorization": f"Bearer {create_access_token(OWNER_ID, settings)}"}


@pytest.fixture
def business(store):
    return store.create_business(owner_id=OWNER_ID, name="Acme Plumbing")
