import os
import uuid
from typing import Any, Dict, Optional

import pytest

# Configure before the app module reads its environment
os.environ["TIPS_STORE"] = "memory"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["DISABLE_RATE_LIMITS"] = "1"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("BREVO_API_KEY", None)
os.environ.pop("HEALTHCHECK_TOKEN", None)

import app as server  # noqa: E402
from repository import MemoryRepository  # noqa: E402

PASSWORD = "Password001!!"


class ApiClient:
    """Thin wrapper over the Flask test client with bearer-token helpers."""

    def __init__(self, client):
        self.client = client

    @staticmethod
    def _headers(token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def get(self, path: str, token: Optional[str] = None):
        return self.client.get(path, headers=self._headers(token))

    def post(self, path: str, json: Dict[str, Any] = None, token: Optional[str] = None):
        return self.client.post(path, json=json or {}, headers=self._headers(token))

    def put(self, path: str, json: Dict[str, Any] = None, token: Optional[str] = None):
        return self.client.put(path, json=json or {}, headers=self._headers(token))

    def patch(self, path: str, json: Dict[str, Any] = None, token: Optional[str] = None):
        return self.client.patch(path, json=json or {}, headers=self._headers(token))

    def delete(self, path: str, token: Optional[str] = None):
        return self.client.delete(path, headers=self._headers(token))

    def register_and_login(self, email: str = None, password: str = PASSWORD) -> Dict[str, Any]:
        """
        Registers a fresh user, then logs in and returns { token, user }.
        """
        email = email or f"test_{uuid.uuid4().hex[:8]}@example.com"

        reg_resp = self.post("/api/auth/register", {"email": email, "password": password})
        assert reg_resp.status_code == 201, f"Register failed: {reg_resp.status_code} {reg_resp.get_data(as_text=True)}"

        login_resp = self.post("/api/auth/login", {"email": email, "password": password})
        assert login_resp.status_code == 200, f"Login failed: {login_resp.status_code} {login_resp.get_data(as_text=True)}"

        data = login_resp.get_json()
        return {"token": data["token"], "user": data["user"]}

    def create_admin(self, email: str = None) -> Dict[str, Any]:
        """
        Seeds an admin straight into the store (as scripts/create_admin.py does)
        and logs in through the API.
        """
        email = email or f"admin_{uuid.uuid4().hex[:8]}@example.com"
        server.store.insert_user({
            "email": email,
            "password": server.hash_password(PASSWORD),
            "role": "admin",
            "name": "Admin",
        })
        resp = self.post("/api/auth/login", {"email": email, "password": PASSWORD})
        assert resp.status_code == 200, f"Admin login failed: {resp.status_code}"
        data = resp.get_json()
        return {"token": data["token"], "user": data["user"]}

    def create_prediction(self, admin_token: str, **overrides) -> Dict[str, Any]:
        payload = {
            "match": "Inter vs Juventus",
            "sport": "Soccer",
            "league": "Serie A",
            "pick": "1",
            "odds": 1.85,
            "date": "2026-11-02T19:45:00Z",
        }
        payload.update(overrides)
        resp = self.post("/api/predictions", payload, token=admin_token)
        assert resp.status_code == 201, f"Create prediction failed: {resp.status_code} {resp.get_data(as_text=True)}"
        return resp.get_json()


@pytest.fixture(autouse=True)
def store(monkeypatch):
    repo = MemoryRepository()
    monkeypatch.setattr(server, "store", repo)
    return repo


@pytest.fixture
def api():
    server.app.config["TESTING"] = True
    with server.app.test_client() as client:
        yield ApiClient(client)


@pytest.fixture
def admin(api):
    return api.create_admin()


@pytest.fixture
def user(api):
    return api.register_and_login()


@pytest.fixture
def outbox(monkeypatch):
    """Captures outgoing emails instead of calling Brevo."""
    sent = []

    def fake_send(to_email, subject, body):
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True

    monkeypatch.setattr(server, "send_email_via_brevo", fake_send)
    return sent
