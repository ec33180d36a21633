from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any

import httpx
from fastapi.encoders import jsonable_encoder

from .errors import ConflictError, SetupRequiredError, StorageError
from .persistence import Criterion, Storage
from .tables import REQUIRED_TABLES, render_schema_sql

logger = logging.getLogger(__name__)

# PostgREST codes for "relation does not exist" and "table not in schema cache"
_MISSING_TABLE_CODES = {"42P01", "PGRST205"}
_UNIQUE_VIOLATION = "23505"


def _filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    return body if isinstance(body, dict) else {"message": str(body)}


def is_missing_table(response: httpx.Response) -> bool:
    if response.status_code not in (400, 404):
        return False
    return _error_body(response).get("code") in _MISSING_TABLE_CODES


class SupabaseStorage(Storage):
    """Talks to the project's PostgREST endpoint (``/rest/v1``) with the anon or service key.

    Missing tables are created on the first write through the ``exec_sql`` RPC
    when a service key is available; otherwise a SETUP REQUIRED error tells the
    operator how to create them by hand.
    """

    provider = "supabase"
    enforces_foreign_keys = True

    def __init__(
        self,
        url: str,
        anon_key: str,
        service_key: str | None = None,
        auto_create: bool = False,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.service_key = service_key or None
        self.auto_create = auto_create
        key = self.service_key or anon_key
        self.client = client or httpx.Client(
            base_url=f"{self.url}/rest/v1",
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
            timeout=timeout,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("supabase request %s %s failed: %s", method, path, exc)
            raise StorageError(f"supabase error: {exc}") from exc

    @staticmethod
    def _raise_for(response: httpx.Response) -> None:
        if response.is_success:
            return
        body = _error_body(response)
        message = body.get("message") or response.reason_phrase
        if response.status_code == 409 or body.get("code") == _UNIQUE_VIOLATION:
            raise ConflictError(f"supabase constraint violation: {message}")
        raise StorageError(f"supabase error ({response.status_code}): {message}")

    def _read_rows(self, table: str, params: list[tuple[str, str]]) -> list[dict[str, Any]]:
        response = self._request("GET", f"/{table}", params=params)
        # reads of a table that does not exist yet behave like an empty table
        if is_missing_table(response):
            return []
        self._raise_for(response)
        return response.json()

    def _write(self, method: str, table: str, params: list[tuple[str, str]], payload: Any = None) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"params": params, "headers": {"Prefer": "return=representation"}}
        if payload is not None:
            kwargs["json"] = jsonable_encoder(payload)
        response = self._request(method, f"/{table}", **kwargs)
        if is_missing_table(response):
            self._provision(table)
            response = self._request(method, f"/{table}", **kwargs)
            if is_missing_table(response):
                raise SetupRequiredError(table, self.url, "the schema was created but the API schema cache has not reloaded yet")
        self._raise_for(response)
        return response.json()

    def _provision(self, table: str) -> None:
        if not self.service_key:
            raise SetupRequiredError(
                table, self.url, "no service role key was supplied, so tables cannot be created automatically"
            )
        logger.warning("Supabase table %s is missing, creating schema through exec_sql", table)
        sql = render_schema_sql() + "\nNOTIFY pgrst, 'reload schema';\n"
        response = self._request("POST", "/rpc/exec_sql", json={"sql_query": sql})
        if not response.is_success:
            message = _error_body(response).get("message") or response.reason_phrase
            raise SetupRequiredError(
                table,
                self.url,
                f"automatic creation failed ({response.status_code}: {message}); the exec_sql function may be missing",
            )

    def _fetch(self, table: str, entity_id: int) -> dict[str, Any] | None:
        rows = self._read_rows(table, [("select", "*"), ("id", f"eq.{entity_id}"), ("limit", "1")])
        return rows[0] if rows else None

    def _select(self, table: str, criteria: list[Criterion]) -> list[dict[str, Any]]:
        params = [("select", "*")]
        params.extend((column, f"{op}.{_filter_value(value)}") for column, op, value in criteria)
        return self._read_rows(table, params)

    def _insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        rows = self._write("POST", table, [], values)
        if not rows:
            raise StorageError(f"supabase error: insert into {table} returned no row")
        return rows[0]

    def _patch(self, table: str, entity_id: int, values: dict[str, Any]) -> dict[str, Any] | None:
        rows = self._write("PATCH", table, [("id", f"eq.{entity_id}")], values)
        return rows[0] if rows else None

    def _remove(self, table: str, entity_id: int) -> bool:
        response = self._request(
            "DELETE", f"/{table}", params=[("id", f"eq.{entity_id}")], headers={"Prefer": "return=representation"}
        )
        if is_missing_table(response):
            return False
        self._raise_for(response)
        return bool(response.json())

    def missing_tables(self) -> list[str]:
        missing = []
        for table in REQUIRED_TABLES:
            response = self._request("GET", f"/{table}", params=[("select", "id"), ("limit", "1")])
            if is_missing_table(response):
                missing.append(table)
            else:
                self._raise_for(response)
        return missing

    def ensure_schema(self) -> None:
        if not (self.auto_create and self.service_key):
            return
        missing = self.missing_tables()
        if missing:
            self._provision(missing[0])
