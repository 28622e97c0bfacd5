import importlib.util
from pathlib import Path

import pytest

from conftest import PASSWORD
from passwords import check_password
from repository import MemoryRepository

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "create_admin.py"


@pytest.fixture
def script(monkeypatch):
    """Loads scripts/create_admin.py against an in-memory store."""
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "service-key")

    found = importlib.util.spec_from_file_location("create_admin", SCRIPT)
    module = importlib.util.module_from_spec(found)
    found.loader.exec_module(module)

    repo = MemoryRepository()
    opened = []

    def fake_repository(url, key):
        opened.append(url)
        return repo

    monkeypatch.setattr(module, "SupabaseRepository", fake_repository)
    monkeypatch.setattr(module, "ADMIN_EMAIL", "root@example.com")
    module.repo = repo
    module.opened = opened
    return module


@pytest.mark.parametrize("password", [None, "short1", "longpassword", "1234567890"])
def test_weak_admin_password_is_refused(script, monkeypatch, password):
    monkeypatch.setattr(script, "ADMIN_PASSWORD", password)

    assert script.create_first_admin() is False
    assert script.opened == []
    assert script.repo.list_users() == []


def test_creates_admin_with_hashed_password(script, monkeypatch):
    monkeypatch.setattr(script, "ADMIN_PASSWORD", PASSWORD)

    assert script.create_first_admin() is True
    admin = script.repo.find_user_by_email("root@example.com")
    assert admin["role"] == "admin"
    assert admin["password"] != PASSWORD
    assert check_password(PASSWORD, admin["password"])


def test_promotes_existing_user(script, monkeypatch):
    monkeypatch.setattr(script, "ADMIN_PASSWORD", PASSWORD)
    script.repo.insert_user({"email": "root@example.com", "password": "x", "role": "user"})

    assert script.create_first_admin() is True
    assert script.repo.find_user_by_email("root@example.com")["role"] == "admin"
    assert len(script.repo.list_users()) == 1
