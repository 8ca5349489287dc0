"""Shared fixtures: an in-memory MongoDB, a TestClient wired to it and account helpers."""

import os

os.environ.update({
    "MONGODB_URI": "mongodb://localhost:27017/devlink_test",
    "JWT_ACCESS_SECRET": "test-access-secret",
    "JWT_REFRESH_SECRET": "test-refresh-secret",
    "CLOUDINARY_CLOUD_NAME": "test-cloud",
    "CLOUDINARY_API_KEY": "test-key",
    "CLOUDINARY_API_SECRET": "test-secret",
    "SMTP_HOST": "",
    "BCRYPT_ROUNDS": "4",
    "PLATFORM_COMMISSION_PCT": "10",
})

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import mailer
from main import app
from routers.auth import create_account
from security import create_access_token

PASSWORD = "correct-horse-9"


@pytest.fixture
def db():
    database_ = mongomock.MongoClient()["devlink_test"]
    database.ensure_indexes(database_)
    return database_


@pytest.fixture
def outbox(monkeypatch):
    sent = []
    monkeypatch.setattr(mailer, "send_verification_email", lambda email, otp: sent.append((email, otp)))
    return sent


@pytest.fixture
def client(db, outbox):
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class Account:
    def __init__(self, user_id, role, access_token, refresh_token=None):
        self.id = user_id
        self.role = role
        self.access_token = access_token
        self.refresh_token = refresh_token

    @property
    def headers(self):
        return bearer(self.access_token)


@pytest.fixture
def signup(client, outbox):
    """Run the full send-otp / verify-otp / register flow and return the Account."""

    def _signup(email, role="developer", full_name=None, password=PASSWORD):
        r = client.post("/api/auth/send-otp", json={"email": email})
        assert r.status_code == 200, r.text
        otp = outbox[-1][1]
        r = client.post("/api/auth/verify-otp", json={"email": email, "otp": otp})
        assert r.status_code == 200, r.text
        body = {"email": email, "password": password, "role": role}
        if full_name:
            body["full_name"] = full_name
        r = client.post("/api/auth/register", json=body)
        assert r.status_code == 201, r.text
        data = r.json()
        return Account(data["user_id"], data["role"], data["access_token"], data["refresh_token"])

    return _signup


@pytest.fixture
def developer(signup):
    return signup("dev@example.com", "developer", "Dana Dev")


@pytest.fixture
def employer(signup):
    return signup("boss@example.com", "employer", "Acme Ltd")


@pytest.fixture
def admin(db):
    user_id = create_account(db, "root@example.com", PASSWORD, "admin", "Root Admin")
    return Account(user_id, "admin", create_access_token({"id": user_id, "role": "admin"}))


@pytest.fixture
def job(client, employer):
    r = client.post("/api/jobs", headers=employer.headers, json={
        "title": "Senior React Developer",
        "description": "Build and maintain our React frontend.",
        "required_skills": ["React", "TypeScript"],
        "budget_min": 1000,
        "budget_max": 3000,
    })
    assert r.status_code == 201, r.text
    return r.json()["id"]
