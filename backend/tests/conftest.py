"""
Pytest config: backend on sys.path, test env before app imports, SQLite-backed fixtures.
"""
from __future__ import annotations

import os
import sys
import tempfile
import time
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-0123456789abcdef0123")
os.environ.setdefault("PRINT_TOKEN_SECRET", "test-print-secret-0123456789abcdef01")
os.environ.setdefault("INTERNAL_API_SECRET", "test-internal-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("REPORT_CACHE_DIR", tempfile.mkdtemp(prefix="riskmate-report-cache-"))
os.environ.pop("S3_BUCKET", None)
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("SEED_DEMO_ORG", None)

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Organization, Role, User
from db.session import Base, get_db
from rate_limiter import get_rate_limiter


def make_token(user_id: str, email: str | None = None, ttl_seconds: int = 3600) -> str:
    now = int(time.time())
    payload = {
        "sub": user_id,
        "aud": "authenticated",
        "role": "authenticated",
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    get_rate_limiter().reset()
    yield
    get_rate_limiter().reset()


@pytest.fixture()
def client(session_factory):
    from main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def org(db):
    organization = Organization(id="org-1", name="Acme Construction")
    db.add(organization)
    db.commit()
    return organization


@pytest.fixture()
def make_user(db, org):
    """Create a user in org-1 with the given role; returns (user, auth headers)."""

    def _make(role: Role | str = Role.owner, user_id: str | None = None):
        role_value = role.value if isinstance(role, Role) else role
        uid = user_id or f"user-{role_value}"
        user = User(id=uid, organization_id=org.id, email=f"{uid}@example.com", full_name=uid, role=role_value)
        db.add(user)
        db.commit()
        return user, {"Authorization": f"Bearer {make_token(uid)}"}

    return _make


@pytest.fixture()
def token_for():
    return make_token
