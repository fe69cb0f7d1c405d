"""
Pytest fixtures for Vault backend tests.

Provides a fresh database per test, two tenants with members and catalog
items, API keys, and a recording HTTP transport for outbound webhooks.
"""

import httpx
import pytest

from vault import create_app
from vault.extensions import db
from vault.services import api_key_service, catalog_service, currency_service, member_service


CRON_SECRET = "test-cron-secret"


class WebhookRecorder:
    """
    httpx.MockTransport handler that records every outbound request.

    Responds with `status` (default 200). Set `fail_with` to an exception
    instance to simulate a transport error.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.fail_with: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        return httpx.Response(self.status, text="ok" if self.status < 400 else "error")

    def to(self, url_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url_prefix)]

    def clear(self):
        self.requests.clear()


@pytest.fixture(scope='function')
def recorder():
    return WebhookRecorder()


@pytest.fixture(scope='function')
def app(tmp_path, recorder):
    """Create application for testing on a throwaway SQLite file."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'vault-test.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'NOTIFIER_MODE': 'inline',
        'WEBHOOK_HTTP_TRANSPORT': httpx.MockTransport(recorder),
        'CRON_SECRET': CRON_SECRET,
        'API_RATE_LIMIT': 100,
        'API_RATE_WINDOW_SECONDS': 60,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    yield db.session
    db.session.rollback()


@pytest.fixture(scope='function')
def org_a(app):
    """Organization A (enterprise plan, API access)."""
    org = member_service.create_organization("Org A - Acme Corp", "acme", plan="enterprise")
    return org.id


@pytest.fixture(scope='function')
def org_b(app):
    """Organization B (enterprise plan, API access)."""
    org = member_service.create_organization("Org B - Beta Inc", "beta", plan="enterprise")
    return org.id


@pytest.fixture(scope='function')
def pro_org(app):
    """Organization on the pro plan (no API access)."""
    org = member_service.create_organization("Pro Org", "pro-org", plan="pro")
    return org.id


@pytest.fixture(scope='function')
def member_a(org_a):
    return member_service.add_member(org_a, "ada@acme.test", "Ada")["id"]


@pytest.fixture(scope='function')
def member_a2(org_a):
    return member_service.add_member(org_a, "grace@acme.test", "Grace")["id"]


@pytest.fixture(scope='function')
def member_b(org_b):
    return member_service.add_member(org_b, "bob@beta.test", "Bob")["id"]


@pytest.fixture(scope='function')
def funded_member_a(org_a, member_a):
    """member_a with a balance of 1000."""
    currency_service.credit(org_a, member_a, 1000, "Opening balance", performed_by="test")
    return member_a


@pytest.fixture(scope='function')
def mug(org_a):
    """Finite-stock item in org A: price 100, stock 5."""
    return catalog_service.create_item(org_a, {"name": "Coffee Mug", "price": 100, "stock_quantity": 5})["id"]


@pytest.fixture(scope='function')
def sticker(org_a):
    """Unlimited-stock item in org A: price 10."""
    return catalog_service.create_item(org_a, {"name": "Sticker", "price": 10})["id"]


@pytest.fixture(scope='function')
def api_key_a(org_a):
    """Raw API key for org A with every capability."""
    _, raw_key = api_key_service.create_api_key(org_a, "full access", ["*"])
    return raw_key


@pytest.fixture(scope='function')
def read_only_key_a(org_a):
    _, raw_key = api_key_service.create_api_key(org_a, "reporting", ["currency:read", "orders:read"])
    return raw_key


@pytest.fixture(scope='function')
def api_key_b(org_b):
    _, raw_key = api_key_service.create_api_key(org_b, "full access", ["*"])
    return raw_key


def auth_headers(raw_key: str) -> dict:
    return {"Authorization": f"Bearer {raw_key}"}


@pytest.fixture(scope='function')
def headers_a(api_key_a):
    return auth_headers(api_key_a)


@pytest.fixture(scope='function')
def read_only_headers_a(read_only_key_a):
    return auth_headers(read_only_key_a)


@pytest.fixture(scope='function')
def headers_b(api_key_b):
    return auth_headers(api_key_b)


@pytest.fixture(scope='function')
def endpoint_a(org_a):
    """Webhook endpoint in org A subscribed to every event."""
    from vault.services import webhook_service
    return webhook_service.create_endpoint(org_a, "https://hooks.acme.test/vault", list(webhook_service.ALL_EVENTS))
