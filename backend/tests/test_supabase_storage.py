import json

import httpx
import pytest

from pocketledger.errors import ConflictError, SetupRequiredError
from pocketledger.supabase_storage import SupabaseStorage

PROJECT_URL = "https://demo.supabase.co"
MISSING = {"code": "PGRST205", "message": "Could not find the table 'public.users' in the schema cache"}


class FakePostgrest:
    """Minimal PostgREST stand-in: tables appear once exec_sql has run."""

    def __init__(self, provisioned: bool = False, exec_sql_status: int = 200) -> None:
        self.provisioned = provisioned
        self.exec_sql_status = exec_sql_status
        self.rows: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/rest/v1")
        self.calls.append((request.method, path))
        if path == "/rpc/exec_sql":
            if self.exec_sql_status == 200:
                self.provisioned = True
                assert "CREATE TABLE IF NOT EXISTS users" in json.loads(request.content)["sql_query"]
            return httpx.Response(self.exec_sql_status, json={"message": "function exec_sql does not exist"})
        if not self.provisioned:
            return httpx.Response(404, json=MISSING)
        table = path.strip("/")
        rows = self.rows.setdefault(table, [])
        if request.method == "POST":
            payload = json.loads(request.content)
            if any(row.get("username") == payload.get("username") for row in rows if "username" in payload):
                return httpx.Response(409, json={"code": "23505", "message": "duplicate key value"})
            row = {"id": len(rows) + 1, **payload}
            rows.append(row)
            return httpx.Response(201, json=[row])
        if request.method == "GET":
            matching = rows
            for key, value in request.url.params.multi_items():
                if key in {"select", "limit"}:
                    continue
                expected = value.split(".", 1)[1]
                matching = [row for row in matching if str(row.get(key)) == expected]
            return httpx.Response(200, json=matching)
        return httpx.Response(405, json={"message": "not supported"})


def _storage(backend: FakePostgrest, service_key: str | None = None, auto_create: bool = False) -> SupabaseStorage:
    client = httpx.Client(base_url=f"{PROJECT_URL}/rest/v1", transport=httpx.MockTransport(backend))
    return SupabaseStorage(PROJECT_URL, "anon-key", service_key=service_key, auto_create=auto_create, client=client)


def _admin() -> dict:
    return {
        "username": "admin",
        "email": "admin@example.com",
        "password": "Secret123!",
        "first_name": "Ada",
        "last_name": "Admin",
        "role": "admin",
    }


def test_reads_of_missing_tables_are_empty() -> None:
    storage = _storage(FakePostgrest())
    assert storage.list_users() == []
    assert storage.get_user_by_username("admin") is None
    assert storage.missing_tables() == ["users", "categories", "accounts", "transactions", "budgets", "goals", "bills", "products"]


def test_write_without_service_key_requires_manual_setup() -> None:
    backend = FakePostgrest()
    storage = _storage(backend)
    with pytest.raises(SetupRequiredError) as exc_info:
        storage.create_user(_admin())
    message = exc_info.value.message
    assert message.startswith("SETUP REQUIRED")
    assert "/api/initialization/supabase-schema" in message
    assert exc_info.value.status_code == 424
    assert ("POST", "/rpc/exec_sql") not in backend.calls


def test_write_with_service_key_creates_schema_and_retries() -> None:
    backend = FakePostgrest()
    storage = _storage(backend, service_key="service-key")
    user = storage.create_user(_admin())
    assert user["id"] == 1
    assert user["username"] == "admin"
    assert backend.calls.count(("POST", "/rpc/exec_sql")) == 1
    assert storage.get_user_by_username("admin")["email"] == "admin@example.com"


def test_failed_provisioning_explains_the_manual_steps() -> None:
    storage = _storage(FakePostgrest(exec_sql_status=404), service_key="service-key")
    with pytest.raises(SetupRequiredError) as exc_info:
        storage.create_user(_admin())
    assert "exec_sql" in exc_info.value.message


def test_ensure_schema_provisions_only_when_asked() -> None:
    backend = FakePostgrest()
    _storage(backend, service_key="service-key").ensure_schema()
    assert backend.provisioned is False

    _storage(backend, service_key="service-key", auto_create=True).ensure_schema()
    assert backend.provisioned is True


def test_duplicate_user_maps_to_conflict() -> None:
    storage = _storage(FakePostgrest(provisioned=True), service_key="service-key")
    storage.create_user(_admin())
    with pytest.raises(ConflictError):
        storage.create_user(_admin())
