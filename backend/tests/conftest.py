from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pocketledger.config import Settings
from pocketledger.main import create_app

ADMIN = {
    "username": "admin",
    "email": "admin@example.com",
    "password": "Secret123!",
    "confirmPassword": "Secret123!",
    "firstName": "Ada",
    "lastName": "Admin",
}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        env_file=str(tmp_path / ".env"),
        database_url="",
        supabase_url="",
        supabase_anon_key="",
        supabase_service_key="",
    )


@pytest.fixture
def client(settings: Settings) -> TestClient:
    return TestClient(create_app(settings))


def sqlite_database(tmp_path: Path, filename: str = "finance.db", name: str = "Local SQLite") -> dict:
    return {"provider": "sqlite", "name": name, "database": str(tmp_path / filename)}


def login(client: TestClient, username: str, password: str) -> dict[str, str]:
    res = client.post("/api/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['token']}"}


@pytest.fixture
def admin_headers(client: TestClient, tmp_path: Path) -> dict[str, str]:
    res = client.post("/api/initialization", json={"admin": ADMIN, "database": sqlite_database(tmp_path)})
    assert res.status_code == 200, res.text
    return login(client, ADMIN["username"], ADMIN["password"])
