"""
tests/test_cli.py -- `python main.py seed` against a throwaway database file.
"""

from __future__ import annotations

import pytest

import main
from auth.credentials import verify_password
from auth.models import Role
from auth.store import UserStore
from core.config import get_settings
from tenancy.store import TenancyStore
from tests.conftest import DEFAULT_PASSWORD


@pytest.fixture
def seed_db(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'seed.db'}"
    monkeypatch.setattr(get_settings(), "database_url", url)
    return url


def test_seed_creates_plans_and_super_admin_once(seed_db, capsys):
    assert main.seed(DEFAULT_PASSWORD) == 0
    assert main.seed("ignored") == 0
    assert "already exists" in capsys.readouterr().out

    users = UserStore(seed_db)
    tenancy = TenancyStore(seed_db)
    try:
        admin = users.get_by_email(get_settings().super_admin_email)
        assert admin.role is Role.SUPER_ADMIN
        assert verify_password(admin, DEFAULT_PASSWORD)
        assert len(tenancy.list_plans()) == 2
    finally:
        users.close()
        tenancy.close()


def test_seed_rejects_weak_password(seed_db):
    assert main.seed("short") == 1
    users = UserStore(seed_db)
    try:
        assert not users.has_users()
    finally:
        users.close()
