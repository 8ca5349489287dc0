"""Email verification, registration, login and token refresh."""

from datetime import timedelta

import pytest

import routers.auth
from database import utcnow
from errors import Conflict
from routers.auth import create_account


class TestEmailVerification:
    def test_send_otp_stores_six_digit_code(self, client, db, outbox):
        r = client.post("/api/auth/send-otp", json={"email": "New@Example.com"})
        assert r.status_code == 200
        record = db["emailverification"].find_one({"email": "new@example.com"})
        assert record is not None
        assert len(record["otp"]) == 6 and record["otp"].isdigit()
        assert outbox == [("new@example.com", record["otp"])]

    def test_resend_replaces_previous_code(self, client, db):
        client.post("/api/auth/send-otp", json={"email": "a@example.com"})
        client.post("/api/auth/send-otp", json={"email": "a@example.com"})
        assert db["emailverification"].count_documents({"email": "a@example.com"}) == 1

    def test_send_otp_for_existing_account(self, client, developer):
        r = client.post("/api/auth/send-otp", json={"email": "dev@example.com"})
        assert r.status_code == 409

    def test_mail_failure_discards_code(self, client, db, monkeypatch):
        def broken(email, otp):
            raise routers.auth.mailer.MailerError("smtp down")

        monkeypatch.setattr(routers.auth.mailer, "send_verification_email", broken)
        r = client.post("/api/auth/send-otp", json={"email": "x@example.com"})
        assert r.status_code == 500
        assert db["emailverification"].count_documents({}) == 0

    def test_wrong_code(self, client, outbox):
        client.post("/api/auth/send-otp", json={"email": "b@example.com"})
        wrong = "000000" if outbox[-1][1] != "000000" else "111111"
        r = client.post("/api/auth/verify-otp", json={"email": "b@example.com", "otp": wrong})
        assert r.status_code == 400
        assert r.json()["message"] == "Incorrect verification code"

    def test_expired_code_is_deleted(self, client, db, outbox):
        client.post("/api/auth/send-otp", json={"email": "c@example.com"})
        db["emailverification"].update_one({"email": "c@example.com"}, {"$set": {"expires_at": utcnow() - timedelta(minutes=1)}})
        r = client.post("/api/auth/verify-otp", json={"email": "c@example.com", "otp": outbox[-1][1]})
        assert r.status_code == 400
        assert db["emailverification"].count_documents({"email": "c@example.com"}) == 0

    def test_code_cannot_be_reused(self, client, outbox):
        client.post("/api/auth/send-otp", json={"email": "d@example.com"})
        otp = outbox[-1][1]
        assert client.post("/api/auth/verify-otp", json={"email": "d@example.com", "otp": otp}).status_code == 200
        r = client.post("/api/auth/verify-otp", json={"email": "d@example.com", "otp": otp})
        assert r.status_code == 400


class TestRegistration:
    def test_creates_user_and_profile(self, client, db, signup):
        account = signup("amina@example.com", "developer", "Amina")
        assert db["user"].count_documents({"email": "amina@example.com"}) == 1
        assert db["developer"].count_documents({"user_id": account.id}) == 1
        assert db["employer"].count_documents({}) == 0
        assert db["emailverification"].count_documents({"email": "amina@example.com"}) == 0

    def test_employer_company_defaults_to_full_name(self, db, signup):
        account = signup("hire@example.com", "employer", "Hire Co")
        assert db["employer"].find_one({"user_id": account.id})["company_name"] == "Hire Co"

    def test_requires_verified_email(self, client):
        r = client.post("/api/auth/register", json={
            "email": "nobody@example.com", "password": "long-enough", "role": "developer",
        })
        assert r.status_code == 403

    def test_duplicate_email_conflicts(self, client, db, signup):
        signup("twice@example.com")
        db["emailverification"].insert_one({
            "email": "twice@example.com", "otp": "123456", "verified": True,
            "expires_at": utcnow() + timedelta(minutes=5),
        })
        r = client.post("/api/auth/register", json={
            "email": "TWICE@example.com", "password": "long-enough", "role": "developer",
        })
        assert r.status_code == 409
        assert db["user"].count_documents({"email": "twice@example.com"}) == 1
        assert db["developer"].count_documents({}) == 1

    def test_admin_role_cannot_self_register(self, client):
        r = client.post("/api/auth/register", json={
            "email": "sneaky@example.com", "password": "long-enough", "role": "admin",
        })
        assert r.status_code == 400
        assert r.json()["errors"][0]["field"] == "role"

    def test_short_password_rejected(self, client):
        r = client.post("/api/auth/register", json={
            "email": "short@example.com", "password": "short", "role": "developer",
        })
        assert r.status_code == 400

    def test_failed_profile_insert_removes_user(self, db, monkeypatch):
        real_create = routers.auth.create_document

        def flaky(database, collection, data):
            if collection == "developer":
                raise RuntimeError("profile store unavailable")
            return real_create(database, collection, data)

        monkeypatch.setattr(routers.auth, "create_document", flaky)
        with pytest.raises(RuntimeError):
            create_account(db, "orphan@example.com", "long-enough", "developer")
        assert db["user"].count_documents({"email": "orphan@example.com"}) == 0

    def test_create_account_conflict(self, db):
        create_account(db, "one@example.com", "long-enough", "employer")
        with pytest.raises(Conflict):
            create_account(db, "One@Example.com", "long-enough", "employer")


class TestLogin:
    def test_login_returns_token_pair(self, client, db, developer):
        r = client.post("/api/auth/login", json={"email": "DEV@example.com", "password": "correct-horse-9"})
        assert r.status_code == 200
        body = r.json()
        assert body["access_token"] and body["refresh_token"]
        assert body["role"] == "developer"
        assert db["refreshtoken"].count_documents({"user_id": developer.id}) == 2

    @pytest.mark.parametrize("email, password", [
        ("dev@example.com", "wrong-password"),
        ("ghost@example.com", "correct-horse-9"),
    ])
    def test_bad_credentials_are_generic(self, client, developer, email, password):
        r = client.post("/api/auth/login", json={"email": email, "password": password})
        assert r.status_code == 401
        assert r.json() == {"message": "Invalid credentials"}

    def test_suspended_account(self, client, db, developer):
        db["user"].update_one({"email": "dev@example.com"}, {"$set": {"status": "suspended"}})
        r = client.post("/api/auth/login", json={"email": "dev@example.com", "password": "correct-horse-9"})
        assert r.status_code == 403


class TestRefreshAndLogout:
    def test_refresh_issues_access_token(self, client, developer):
        r = client.post("/api/auth/refresh", json={"refresh_token": developer.refresh_token})
        assert r.status_code == 200
        token = r.json()["access_token"]
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["email"] == "dev@example.com"

    def test_access_token_is_not_a_refresh_token(self, client, developer):
        r = client.post("/api/auth/refresh", json={"refresh_token": developer.access_token})
        assert r.status_code == 401

    def test_logout_revokes_refresh_token(self, client, developer):
        r = client.post("/api/auth/logout", headers=developer.headers, json={"refresh_token": developer.refresh_token})
        assert r.status_code == 200
        r = client.post("/api/auth/refresh", json={"refresh_token": developer.refresh_token})
        assert r.status_code == 401

    def test_me(self, client, developer):
        r = client.get("/api/auth/me", headers=developer.headers)
        assert r.json() == {
            "id": developer.id,
            "email": "dev@example.com",
            "role": "developer",
            "full_name": "Dana Dev",
            "status": "active",
        }
