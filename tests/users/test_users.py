# tests/users/test_users.py

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from common.auth import ALGORITHM, SECRET_KEY, make_service_account_token
from common.clock import utcnow
from common.mailer import SmtpMailer
from users_service import models
from users_service.main import app
from users_service.database import Base, SessionLocal, engine
from users_service.notifications import FRONTEND_URL, AccountNotifier, get_notifier

client = TestClient(app)


class RecordingNotifier:
    """
    Stands in for the account mail dispatcher and keeps every payload.
    """

    def __init__(self):
        self.events = []

    def notify_welcome(self, payload):
        self.events.append(("welcome", payload))

    def notify_password_reset(self, payload):
        self.events.append(("password_reset", payload))

    def notify_newsletter_subscription(self, payload):
        self.events.append(("newsletter_subscription", payload))

    def of_kind(self, kind):
        return [payload for k, payload in self.events if k == kind]


@pytest.fixture
def mails():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def reset_db(mails):
    """
    Clean the users table before each test.
    We drop & recreate all tables for simplicity.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_notifier] = lambda: mails
    yield
    app.dependency_overrides.pop(get_notifier, None)
    Base.metadata.drop_all(bind=engine)


def register_user(username: str, email: str, password: str = "Test1234"):
    """
    Helper: register a user via the public registration endpoint.

    Role is assigned internally:
      - first user => ADMIN (super-admin)
      - subsequent users => USER
    """
    payload = {
        "first_name": username.capitalize(),
        "last_name": "Tester",
        "username": username,
        "email": email,
        "password": password,
    }
    response = client.post("/api/v1/users/register", json=payload)
    assert response.status_code == 201
    return response.json()


def login_and_get_token(username: str, password: str):
    # login uses form data, not JSON
    response = client.post("/api/v1/users/login", data={"username": username, "password": password})
    assert response.status_code == 200
    body = response.json()
    assert "access_token" in body
    return body["access_token"]


def auth(token: str):
    return {"Authorization": f"Bearer {token}"}


# ---------- Registration & login ----------


def test_first_user_is_super_admin():
    body = register_user("admin1", "admin1@example.com", password="Admin1234")
    assert body["role"] == "ADMIN"
    assert body["permissions"] == []
    assert "hashed_password" not in body
    assert "password" not in body


def test_second_user_is_customer():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    u2 = register_user("user1", "user1@example.com", password="User1234")
    assert u2["role"] == "USER"


def test_register_duplicate_username_fails():
    register_user("user1", "user1@example.com")
    res = client.post(
        "/api/v1/users/register",
        json={
            "first_name": "Other",
            "last_name": "User",
            "username": "user1",
            "email": "other@example.com",
            "password": "Test1234",
        },
    )
    assert res.status_code == 400
    body = res.json()
    assert body["service"] == "users"
    assert "exists" in body["detail"].lower()


@pytest.mark.parametrize(
    "password, message",
    [
        ("Abc123", "at least 8 characters"),
        ("NoDigitsHere", "at least one digit"),
        ("12345678", "at least one letter"),
    ],
)
def test_weak_passwords_rejected(password, message):
    res = client.post(
        "/api/v1/users/register",
        json={
            "first_name": "Weak",
            "last_name": "User",
            "username": "weak1",
            "email": "weak1@example.com",
            "password": password,
        },
    )
    assert res.status_code == 400
    assert message in res.json()["detail"]


def test_login_token_carries_role_and_permissions():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    token = login_and_get_token("admin1", "Admin1234")

    claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    assert claims["sub"] == "admin1"
    assert claims["role"] == "ADMIN"
    assert claims["permissions"] == []
    assert isinstance(claims["user_id"], int)


def test_login_wrong_password_fails():
    register_user("user1", "user1@example.com", password="User1234")
    res = client.post("/api/v1/users/login", data={"username": "user1", "password": "WrongPass1"})
    assert res.status_code == 401


def test_access_me_without_token_fails():
    res = client.get("/api/v1/users/me")
    assert res.status_code == 401


def test_update_my_profile():
    register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("user1", "User1234")

    res = client.put(
        "/api/v1/users/me",
        headers=auth(token),
        json={"first_name": "New", "email": "newemail@example.com"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["first_name"] == "New"
    assert body["email"] == "newemail@example.com"


def test_update_email_to_existing_one_fails():
    register_user("user1", "user1@example.com", password="User1234")
    register_user("user2", "user2@example.com", password="User5678")
    token = login_and_get_token("user1", "User1234")

    res = client.put("/api/v1/users/me", headers=auth(token), json={"email": "user2@example.com"})
    assert res.status_code == 400
    assert "email" in res.json()["detail"].lower()


# ---------- Admin ----------


def test_customer_cannot_list_users():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("user1", "User1234")

    res = client.get("/api/v1/users", headers=auth(token))
    assert res.status_code == 403


def test_admin_can_list_users():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("admin1", "Admin1234")

    res = client.get("/api/v1/users", headers=auth(token))
    assert res.status_code == 200
    assert {u["username"] for u in res.json()} == {"admin1", "user1"}


def test_service_account_reads_customer_snapshot():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    user = register_user("user1", "user1@example.com", password="User1234")

    res = client.get(
        f"/api/v1/users/id/{user['id']}",
        headers=auth(make_service_account_token("bookings_service")),
    )
    assert res.status_code == 200
    body = res.json()
    assert body == {
        "id": user["id"],
        "name": "User1 Tester",
        "email": "user1@example.com",
        "phone": None,
        "is_active": True,
    }


def test_customer_cannot_read_snapshots():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    user = register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("user1", "User1234")

    res = client.get(f"/api/v1/users/id/{user['id']}", headers=auth(token))
    assert res.status_code == 403


def test_snapshot_of_unknown_user_is_404():
    res = client.get("/api/v1/users/id/999", headers=auth(make_service_account_token("bookings_service")))
    assert res.status_code == 404


def test_promotion_then_permission_assignment():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    user = register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("admin1", "Admin1234")

    res_perm = client.put(
        f"/api/v1/users/{user['id']}/permissions",
        headers=auth(token),
        json={"permissions": ["read"]},
    )
    assert res_perm.status_code == 400

    res_role = client.put(f"/api/v1/users/{user['id']}/role", headers=auth(token), json={"role": "admin"})
    assert res_role.status_code == 200
    assert res_role.json()["role"] == "ADMIN"

    res_perm = client.put(
        f"/api/v1/users/{user['id']}/permissions",
        headers=auth(token),
        json={"permissions": ["read", "create"]},
    )
    assert res_perm.status_code == 200
    assert res_perm.json()["permissions"] == ["CREATE", "READ"]


def test_restricted_admin_cannot_delete_or_manage_roles():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    second = register_user("admin2", "admin2@example.com", password="Admin5678")
    victim = register_user("user1", "user1@example.com", password="User1234")
    root_token = login_and_get_token("admin1", "Admin1234")

    client.put(f"/api/v1/users/{second['id']}/role", headers=auth(root_token), json={"role": "ADMIN"})
    client.put(
        f"/api/v1/users/{second['id']}/permissions",
        headers=auth(root_token),
        json={"permissions": ["READ"]},
    )
    token = login_and_get_token("admin2", "Admin5678")

    assert client.get("/api/v1/users", headers=auth(token)).status_code == 200
    assert client.delete(f"/api/v1/users/{victim['id']}", headers=auth(token)).status_code == 403
    res = client.put(f"/api/v1/users/{victim['id']}/role", headers=auth(token), json={"role": "ADMIN"})
    assert res.status_code == 403


def test_role_change_invalidates_old_token():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    user = register_user("user1", "user1@example.com", password="User1234")
    root_token = login_and_get_token("admin1", "Admin1234")
    user_token = login_and_get_token("user1", "User1234")

    client.put(f"/api/v1/users/{user['id']}/role", headers=auth(root_token), json={"role": "ADMIN"})

    res = client.get("/api/v1/users/me", headers=auth(user_token))
    assert res.status_code == 401


def test_admin_cannot_delete_self():
    admin = register_user("admin1", "admin1@example.com", password="Admin1234")
    token = login_and_get_token("admin1", "Admin1234")

    res = client.delete(f"/api/v1/users/{admin['id']}", headers=auth(token))
    assert res.status_code == 400


def test_blocked_user_cannot_login():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    user = register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("admin1", "Admin1234")

    res = client.put(f"/api/v1/users/{user['id']}/block", headers=auth(token))
    assert res.status_code == 200
    assert res.json()["is_active"] is False

    res_login = client.post("/api/v1/users/login", data={"username": "user1", "password": "User1234"})
    assert res_login.status_code == 401

    client.put(f"/api/v1/users/{user['id']}/unblock", headers=auth(token))
    assert login_and_get_token("user1", "User1234")


def test_admin_can_delete_other_user():
    register_user("admin1", "admin1@example.com", password="Admin1234")
    user = register_user("user1", "user1@example.com", password="User1234")
    token = login_and_get_token("admin1", "Admin1234")

    res = client.delete(f"/api/v1/users/{user['id']}", headers=auth(token))
    assert res.status_code == 204

    res_login = client.post("/api/v1/users/login", data={"username": "user1", "password": "User1234"})
    assert res_login.status_code == 401


def test_expired_token_rejected():
    register_user("user1", "user1@example.com", password="User1234")
    expired = jwt.encode(
        {
            "sub": "user1",
            "user_id": 1,
            "role": "ADMIN",
            "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
        },
        SECRET_KEY,
        algorithm=ALGORITHM,
    )
    res = client.get("/api/v1/users/me", headers=auth(expired))
    assert res.status_code == 401


# ---------- Welcome mail, password recovery, newsletter ----------


def test_registration_sends_welcome_mail(mails):
    register_user("user1", "user1@example.com")
    welcome = mails.of_kind("welcome")
    assert len(welcome) == 1
    assert welcome[0]["email"] == "user1@example.com"
    assert welcome[0]["username"] == "user1"


def test_rejected_registration_sends_no_mail(mails):
    res = client.post(
        "/api/v1/users/register",
        json={
            "first_name": "Weak",
            "last_name": "User",
            "username": "weak1",
            "email": "weak1@example.com",
            "password": "short1",
        },
    )
    assert res.status_code == 400
    assert mails.events == []


def request_reset(email: str):
    return client.post("/api/v1/users/forgot-password", json={"email": email})


def test_forgot_password_reply_does_not_reveal_accounts(mails):
    register_user("user1", "user1@example.com")

    known = request_reset("user1@example.com")
    unknown = request_reset("nobody@example.com")

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    resets = mails.of_kind("password_reset")
    assert [m["email"] for m in resets] == ["user1@example.com"]


def test_reset_token_is_stored_as_digest_with_one_hour_expiry(mails):
    user = register_user("user1", "user1@example.com")
    before = utcnow()
    request_reset("user1@example.com")
    token = mails.of_kind("password_reset")[0]["token"]

    assert len(token) >= 43  # 32 random bytes, url-safe base64
    with SessionLocal() as db:
        row = db.get(models.User, user["id"])
        assert row.reset_password_token is not None
        assert row.reset_password_token != token
        assert len(row.reset_password_token) == 64
        assert timedelta(minutes=59) < row.reset_password_expiry - before <= timedelta(hours=1, minutes=1)


def test_reset_password_with_mailed_token(mails):
    user = register_user("user1", "user1@example.com", password="User1234")
    request_reset("user1@example.com")
    token = mails.of_kind("password_reset")[0]["token"]

    res = client.post(
        "/api/v1/users/reset-password",
        json={"token": token, "new_password": "Fresh5678"},
    )
    assert res.status_code == 200
    assert "updated" in res.json()["message"].lower()

    assert login_and_get_token("user1", "Fresh5678")
    old = client.post("/api/v1/users/login", data={"username": "user1", "password": "User1234"})
    assert old.status_code == 401

    with SessionLocal() as db:
        row = db.get(models.User, user["id"])
        assert row.reset_password_token is None
        assert row.reset_password_expiry is None

    reused = client.post(
        "/api/v1/users/reset-password",
        json={"token": token, "new_password": "Other9999"},
    )
    assert reused.status_code == 400
    assert login_and_get_token("user1", "Fresh5678")


def test_newer_reset_request_replaces_pending_token(mails):
    register_user("user1", "user1@example.com")
    request_reset("user1@example.com")
    request_reset("user1@example.com")
    first, second = [m["token"] for m in mails.of_kind("password_reset")]

    res = client.post("/api/v1/users/reset-password", json={"token": first, "new_password": "Fresh5678"})
    assert res.status_code == 400
    res = client.post("/api/v1/users/reset-password", json={"token": second, "new_password": "Fresh5678"})
    assert res.status_code == 200


def test_expired_reset_token_is_refused(mails):
    user = register_user("user1", "user1@example.com", password="User1234")
    request_reset("user1@example.com")
    token = mails.of_kind("password_reset")[0]["token"]

    with SessionLocal() as db:
        row = db.get(models.User, user["id"])
        row.reset_password_expiry = utcnow() - timedelta(seconds=1)
        db.commit()

    res = client.post("/api/v1/users/reset-password", json={"token": token, "new_password": "Fresh5678"})
    assert res.status_code == 400
    assert "expired" in res.json()["detail"]
    assert login_and_get_token("user1", "User1234")


def test_unknown_reset_token_is_refused():
    register_user("user1", "user1@example.com")
    res = client.post("/api/v1/users/reset-password", json={"token": "not-a-token", "new_password": "Fresh5678"})
    assert res.status_code == 400


def test_reset_enforces_password_strength(mails):
    register_user("user1", "user1@example.com", password="User1234")
    request_reset("user1@example.com")
    token = mails.of_kind("password_reset")[0]["token"]

    res = client.post("/api/v1/users/reset-password", json={"token": token, "new_password": "NoDigitsHere"})
    assert res.status_code == 400
    assert "digit" in res.json()["detail"]

    # the token survives a rejected attempt
    res = client.post("/api/v1/users/reset-password", json={"token": token, "new_password": "Fresh5678"})
    assert res.status_code == 200


def test_newsletter_subscription_sends_confirmation(mails):
    res = client.post("/api/v1/newsletter/subscribe", json={"email": "fan@example.com"})
    assert res.status_code == 200
    assert "confirmation" in res.json()["message"].lower()
    assert mails.of_kind("newsletter_subscription") == [{"email": "fan@example.com"}]


def test_newsletter_rejects_invalid_email(mails):
    res = client.post("/api/v1/newsletter/subscribe", json={"email": "not-an-email"})
    assert res.status_code == 422
    assert mails.events == []


class CapturingMailer(SmtpMailer):
    def __init__(self):
        super().__init__(host="")
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))


def test_reset_mail_carries_the_reset_link():
    mailer = CapturingMailer()
    notifier = AccountNotifier(mailer=mailer)
    try:
        future = notifier.notify_password_reset(
            {"email": "user1@example.com", "name": "User1 Tester", "token": "abc123", "expires_at": "2024-01-01 10:00"}
        )
        future.result(timeout=5)
    finally:
        notifier.shutdown()

    [(to, subject, body)] = mailer.sent
    assert to == "user1@example.com"
    assert f"{FRONTEND_URL}/reset-password?token=abc123" in body
