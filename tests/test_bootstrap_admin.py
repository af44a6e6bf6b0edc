import importlib.util
from pathlib import Path

import pytest

from gatehouse.storage.directory import check_password_hash
from gatehouse.storage.models import Principal

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


class FakeDirectory:
    def __init__(self, *principals):
        self.users = {p.email: p for p in principals}
        self.created = []
        self.role_updates = []

    def find_by_identifier(self, identifier):
        return self.users.get(identifier)

    def create_user(self, email, password_hash, *, role="user", display_name=None):
        self.created.append((email, password_hash, role))
        return Principal(id="new-1", email=email, role=role, display_name=display_name)

    def update_role(self, user_id, role):
        self.role_updates.append((user_id, role))


def test_creates_admin_with_hashed_password(bootstrap):
    directory = FakeDirectory()
    result = bootstrap(directory, "Admin@Example.com", "Secure#Password123")
    assert result == {"user_id": "new-1", "email": "admin@example.com", "status": "created"}
    email, password_hash, role = directory.created[0]
    assert role == "admin"
    assert check_password_hash(password_hash, "Secure#Password123", user_id="new-1")


def test_promotes_existing_user(bootstrap):
    directory = FakeDirectory(Principal(id="u-7", email="admin@example.com"))
    result = bootstrap(directory, "admin@example.com", "Secure#Password123")
    assert result["status"] == "promoted"
    assert directory.role_updates == [("u-7", "admin")]


def test_existing_admin_untouched(bootstrap):
    directory = FakeDirectory(Principal(id="u-1", email="admin@example.com", role="admin"))
    assert bootstrap(directory, "admin@example.com", "x")["status"] == "already_admin"
    assert directory.role_updates == []


def test_dry_run_changes_nothing(bootstrap):
    directory = FakeDirectory()
    assert bootstrap(directory, "admin@example.com", "x", dry_run=True)["status"] == "dry_run"
    assert directory.created == []
