import os

# Configure before anything reads banklink.settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BANK_CLIENT_ID", "demo-client")
os.environ.setdefault("BANK_API_BASE_URL", "http://127.0.0.1:8000/provider")
os.environ.setdefault("BANK_AUTH_URL", "http://127.0.0.1:8000/provider/authorize")
os.environ.setdefault("BANK_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("VAULT_KEY", "test-vault-key")

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from banklink.main import app as fastapi_app
from banklink.db import Base, get_db, utcnow
from banklink.models import CONNECTION_ACTIVE, ROLE_SUPERADMIN, Connection, Membership
from banklink.provider_client import ProviderClient
from banklink.provider_mock import reset_ratelimits
from banklink.vault import get_vault

# Use in-memory SQLite with StaticPool so all connections share the same memory DB
engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"

ADMIN = {"X-User-Id": "admin-1"}
VIEWER = {"X-User-Id": "viewer-1"}
ACCOUNTANT = {"X-User-Id": "accountant-1"}
OTHER_ADMIN = {"X-User-Id": "admin-2"}


@pytest.fixture(scope="function")
def db():
    reset_ratelimits()

    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    session.add_all([
        Membership(user_id="admin-1", tenant_id=TENANT_A, role=ROLE_SUPERADMIN),
        Membership(user_id="viewer-1", tenant_id=TENANT_A, role="viewer"),
        Membership(user_id="accountant-1", tenant_id=TENANT_A, role="accountant"),
        Membership(user_id="admin-2", tenant_id=TENANT_B, role=ROLE_SUPERADMIN),
    ])
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        try:
            yield db
        finally:
            pass

    fastapi_app.dependency_overrides[get_db] = override_get_db

    # ProviderClient talks httpx; point it at the in-process /provider routes
    original_get_client = ProviderClient._get_client

    def mock_get_client(self):
        return TestClient(fastapi_app, base_url="http://127.0.0.1:8000")

    ProviderClient._get_client = mock_get_client

    test_client = TestClient(fastapi_app, base_url="http://127.0.0.1:8000", follow_redirects=False)
    yield test_client

    ProviderClient._get_client = original_get_client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def connect(client):
    """Runs authorize -> consent -> callback for the given user; returns the callback response."""
    def _connect(headers=ADMIN):
        resp = client.get("/integrations/bank/authorize", headers=headers)
        assert resp.status_code == 302
        consent = urlparse(resp.headers["location"])

        consent_resp = client.get(f"{consent.path}?{consent.query}")
        assert consent_resp.status_code == 200
        redirect_to = urlparse(consent_resp.json()["redirect_to"])

        params = {k: v[0] for k, v in parse_qs(redirect_to.query).items()}
        return client.get(redirect_to.path, params=params, headers=headers)

    return _connect


@pytest.fixture
def make_connection(db):
    """Inserts an active connection with the given plaintext tokens."""
    def _make(tenant_id=TENANT_A, access_token="at_current", refresh_token="rt_valid", expires_in=3600,
              refresh_expires_in=timedelta(days=30)):
        vault = get_vault()
        now = utcnow()
        conn = Connection(
            tenant_id=tenant_id,
            access_token_enc=vault.encrypt(access_token),
            refresh_token_enc=vault.encrypt(refresh_token),
            access_token_expires_at=now + timedelta(seconds=expires_in),
            refresh_token_expires_at=now + refresh_expires_in,
            status=CONNECTION_ACTIVE,
        )
        db.add(conn)
        db.commit()
        return conn

    return _make
