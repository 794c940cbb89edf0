"""Shared test fixtures and configuration for backend tests."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from kidslink.auth import Identity
from kidslink.config import AppConfig, DatabaseSettings, ImageSettings, JWTSecrets, Secrets
from kidslink.conversations.schemas import UserInfo
from kidslink.main import create_app

TEST_SECRET = "kidslink-test-secret-0123456789abcdef"

ANNA = UserInfo(id="u-anna", username="anna", full_name="Anna Tran", role="parent")
BINH = UserInfo(id="u-binh", username="binh", full_name="Binh Le", role="teacher")
CHI = UserInfo(id="u-chi", username="chi", full_name="Chi Pham", role="parent")


@pytest.fixture
def config(tmp_path):
    """In-memory databases and a temporary upload directory."""
    return AppConfig(
        database=DatabaseSettings(path=":memory:"),
        images=ImageSettings(
            upload_dir=str(tmp_path / "uploads"),
            metadata_db_path=":memory:",
            public_base_url="http://testserver",
        ),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    """TestClient with the lifespan running (services live on app.state)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def store(app, client):
    return app.state.store


@pytest.fixture
def users(store):
    """Seed the three users used across the API and chat tests."""
    for user in (ANNA, BINH, CHI):
        store.upsert_user(user)
    return {"anna": ANNA, "binh": BINH, "chi": CHI}


@pytest.fixture
def conversation(store, users):
    """Class group shared by Anna and Binh; Chi is not a participant."""
    return store.create_conversation(
        "Lop La 1", class_id="class-1", is_class_group=True,
        participant_ids=[ANNA.id, BINH.id],
    )


@pytest.fixture
def issue_token(app, client):
    """Return a helper that signs a token for a user ID."""
    def _issue(user_id, role="parent", username=None, expires_in=timedelta(hours=1)):
        identity = Identity(id=user_id, role=role, username=username or user_id)
        return app.state.token_service.issue(identity, expires_in=expires_in)
    return _issue


@pytest.fixture
def auth_headers(issue_token):
    def _headers(user_id, **kwargs):
        return {"Authorization": f"Bearer {issue_token(user_id, **kwargs)}"}
    return _headers
