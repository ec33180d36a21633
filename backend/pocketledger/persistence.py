from __future__ import annotations

import logging
import operator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator

from sqlalchemy import create_engine, delete, event, func, inspect, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .auth_utils import hash_password, mask_url
from .errors import ConflictError, NotFoundError, StorageError
from .store import InMemoryStore
from .tables import (
    ENTITY_TABLES,
    OWNED_REFERENCES,
    REQUIRED_TABLES,
    column_defaults,
    column_names,
    metadata,
    referencing_columns,
)

logger = logging.getLogger(__name__)

# (column, operator, value)
Criterion = tuple[str, str, Any]

_OPERATORS = {"eq": operator.eq, "gte": operator.ge, "lte": operator.le}

# query filter name -> (column, operator)
ENTITY_FILTERS: dict[str, dict[str, tuple[str, str]]] = {
    "accounts": {"isActive": ("is_active", "eq")},
    "categories": {"type": ("type", "eq")},
    "transactions": {
        "accountId": ("account_id", "eq"),
        "categoryId": ("category_id", "eq"),
        "type": ("type", "eq"),
        "startDate": ("date", "gte"),
        "endDate": ("date", "lte"),
    },
    "budgets": {"categoryId": ("category_id", "eq"), "isActive": ("is_active", "eq")},
    "goals": {"isCompleted": ("is_completed", "eq")},
    "bills": {
        "accountId": ("account_id", "eq"),
        "categoryId": ("category_id", "eq"),
        "isPaid": ("is_paid", "eq"),
    },
    "products": {"barcode": ("barcode", "eq"), "category": ("category", "eq")},
}

# (sort column, newest first)
ENTITY_ORDERING: dict[str, tuple[str, bool]] = {
    "transactions": ("date", True),
    "bills": ("due_date", False),
    "budgets": ("start_date", True),
}

_PROTECTED_COLUMNS = {"id", "user_id", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _singular(entity: str) -> str:
    if entity == "categories":
        return "category"
    return entity[:-1] if entity.endswith("s") else entity


def _matches(row: dict[str, Any], criteria: list[Criterion]) -> bool:
    for column, op, value in criteria:
        current = row.get(column)
        if op != "eq" and current is None:
            return False
        if not _OPERATORS[op](current, value):
            return False
    return True


def _total(values: Any) -> Decimal:
    return sum((Decimal(str(value)) for value in values if value is not None), Decimal("0"))


class Storage:
    """Common contract every storage adapter fulfils.

    Subclasses provide the five row primitives (``_fetch``, ``_select``,
    ``_insert``, ``_patch``, ``_remove``); ownership checks, partial updates,
    filtering and password handling live here so they behave the same on
    every provider.
    """

    provider = "memory"
    # adapters backed by a real database leave ondelete rules to it
    enforces_foreign_keys = False

    def _fetch(self, table: str, entity_id: int) -> dict[str, Any] | None:
        raise NotImplementedError

    def _select(self, table: str, criteria: list[Criterion]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def _patch(self, table: str, entity_id: int, values: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    def _remove(self, table: str, entity_id: int) -> bool:
        raise NotImplementedError

    def ensure_schema(self) -> None:
        return None

    def missing_tables(self) -> list[str]:
        return []

    def close(self) -> None:
        return None

    @staticmethod
    def _check_entity(entity: str) -> None:
        if entity not in ENTITY_TABLES:
            raise ValueError(f"unknown entity: {entity}")

    @staticmethod
    def _clean(table: str, data: dict[str, Any]) -> dict[str, Any]:
        allowed = column_names(table) - _PROTECTED_COLUMNS
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key not in allowed or value is None:
                continue
            values[key] = value.value if isinstance(value, Enum) else value
        return values

    def _criteria(self, entity: str, filters: dict[str, Any] | None) -> list[Criterion]:
        known = ENTITY_FILTERS.get(entity, {})
        criteria: list[Criterion] = []
        for name, value in (filters or {}).items():
            if value is None:
                continue
            if name not in known:
                raise ValueError(f"unsupported filter for {entity}: {name}")
            column, op = known[name]
            criteria.append((column, op, value.value if isinstance(value, Enum) else value))
        return criteria

    def _check_references(self, entity: str, user_id: int, values: dict[str, Any], entity_id: int | None = None) -> None:
        for column, target in OWNED_REFERENCES.get(entity, {}).items():
            ref_id = values.get(column)
            if ref_id is None:
                continue
            if target == entity and ref_id == entity_id:
                raise ValueError(f"{_singular(entity)} cannot reference itself")
            ref = self._fetch(target, ref_id)
            if ref is None or ref.get("user_id") != user_id:
                raise NotFoundError(f"{_singular(target)} not found: {ref_id}")

    def get(self, entity: str, user_id: int, entity_id: int) -> dict[str, Any]:
        self._check_entity(entity)
        row = self._fetch(entity, entity_id)
        if row is None or row.get("user_id") != user_id:
            raise NotFoundError(f"{_singular(entity)} not found: {entity_id}")
        return row

    def list(self, entity: str, user_id: int, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self._check_entity(entity)
        criteria: list[Criterion] = [("user_id", "eq", user_id)]
        criteria.extend(self._criteria(entity, filters))
        rows = self._select(entity, criteria)
        column, newest_first = ENTITY_ORDERING.get(entity, ("id", False))
        return sorted(rows, key=lambda row: (row[column], row["id"]), reverse=newest_first)

    def create(self, entity: str, user_id: int, data: dict[str, Any]) -> dict[str, Any]:
        self._check_entity(entity)
        values = self._clean(entity, data)
        self._check_references(entity, user_id, values)
        values["user_id"] = user_id
        return self._insert(entity, values)

    def update(self, entity: str, user_id: int, entity_id: int, patch: dict[str, Any]) -> dict[str, Any]:
        current = self.get(entity, user_id, entity_id)
        values = self._clean(entity, patch)
        if not values:
            return current
        self._check_references(entity, user_id, values, entity_id)
        row = self._patch(entity, entity_id, values)
        if row is None:
            raise NotFoundError(f"{_singular(entity)} not found: {entity_id}")
        return row

    def _plan_delete(self, table: str, entity_id: int) -> tuple[dict[str, set[int]], list[tuple[str, int, str]]]:
        """Rows a delete removes and the references it clears, following the schema's ondelete rules.

        Raises ConflictError when a row outside the delete still references
        one that would be removed, before anything is changed.
        """
        doomed: dict[str, set[int]] = {name: set() for name in REQUIRED_TABLES}
        pending = [(table, entity_id)]
        while pending:
            name, row_id = pending.pop()
            if row_id in doomed[name]:
                continue
            doomed[name].add(row_id)
            for child, column, rule in referencing_columns(name):
                if rule == "CASCADE":
                    pending.extend((child, row["id"]) for row in self._select(child, [(column, "eq", row_id)]))

        cleared: list[tuple[str, int, str]] = []
        for name, row_ids in doomed.items():
            for row_id in row_ids:
                for child, column, rule in referencing_columns(name):
                    if rule == "CASCADE":
                        continue
                    for row in self._select(child, [(column, "eq", row_id)]):
                        if row["id"] in doomed[child]:
                            continue
                        if rule == "SET NULL":
                            cleared.append((child, row["id"], column))
                        else:
                            raise ConflictError(f"{_singular(name)} {row_id} is still referenced by {child}")
        return doomed, cleared

    def _remove_with_references(self, table: str, entity_id: int) -> bool:
        if self.enforces_foreign_keys:
            return self._remove(table, entity_id)
        if self._fetch(table, entity_id) is None:
            return False
        doomed, cleared = self._plan_delete(table, entity_id)
        for child, row_id, column in cleared:
            self._patch(child, row_id, {column: None})
        # children first
        for name in reversed(REQUIRED_TABLES):
            for row_id in doomed[name]:
                self._remove(name, row_id)
        return True

    def delete(self, entity: str, user_id: int, entity_id: int) -> None:
        self.get(entity, user_id, entity_id)
        if not self._remove_with_references(entity, entity_id):
            raise NotFoundError(f"{_singular(entity)} not found: {entity_id}")

    def get_user(self, user_id: int) -> dict[str, Any] | None:
        return self._fetch("users", user_id)

    def get_user_by_username(self, username: str) -> dict[str, Any] | None:
        rows = self._select("users", [("username", "eq", username)])
        return rows[0] if rows else None

    def list_users(self) -> list[dict[str, Any]]:
        return sorted(self._select("users", []), key=lambda row: row["id"])

    def count_users(self) -> int:
        return len(self._select("users", []))

    def _check_user_unique(self, values: dict[str, Any], user_id: int | None = None) -> None:
        for column in ("username", "email"):
            if column not in values:
                continue
            for row in self._select("users", [(column, "eq", values[column])]):
                if row["id"] != user_id:
                    raise ConflictError(f"{column} already registered: {values[column]}")

    def create_user(self, data: dict[str, Any]) -> dict[str, Any]:
        password = data.get("password")
        if not password:
            raise ValueError("password is required")
        values = self._clean("users", data)
        values.pop("password_hash", None)
        values.setdefault("role", "user")
        self._check_user_unique(values)
        values["password_hash"] = hash_password(password)
        return self._insert("users", values)

    def update_user(self, user_id: int, patch: dict[str, Any]) -> dict[str, Any]:
        current = self.get_user(user_id)
        if current is None:
            raise NotFoundError(f"user not found: {user_id}")
        values = self._clean("users", patch)
        values.pop("password_hash", None)
        password = patch.get("password")
        # an empty or missing password keeps the stored hash
        if password:
            values["password_hash"] = hash_password(password)
        if not values:
            return current
        self._check_user_unique(values, user_id)
        values["updated_at"] = _utcnow()
        row = self._patch("users", user_id, values)
        if row is None:
            raise NotFoundError(f"user not found: {user_id}")
        return row

    def delete_user(self, user_id: int) -> bool:
        return self._remove_with_references("users", user_id)

    def user_stats(self) -> dict[str, int]:
        users = self._select("users", [])
        return {
            "total_users": len(users),
            "active_users": sum(1 for row in users if row["is_active"]),
            "admin_users": sum(1 for row in users if row["role"] == "admin"),
        }

    # --- analytics ---

    def account_balance(self, user_id: int) -> Decimal:
        return _total(row["balance"] for row in self._select("accounts", [("user_id", "eq", user_id)]))

    def flow_total(self, user_id: int, flow: str, start: date, end: date) -> Decimal:
        """Sum of income or expense transactions dated between *start* and *end* inclusive."""
        criteria: list[Criterion] = [
            ("user_id", "eq", user_id),
            ("type", "eq", flow),
            ("date", "gte", start),
            ("date", "lte", end),
        ]
        return _total(row["amount"] for row in self._select("transactions", criteria))

    def category_spending(self, user_id: int, start: date, end: date) -> list[dict[str, Any]]:
        criteria: list[Criterion] = [
            ("user_id", "eq", user_id),
            ("type", "eq", "expense"),
            ("date", "gte", start),
            ("date", "lte", end),
        ]
        totals: dict[int, Decimal] = {}
        for row in self._select("transactions", criteria):
            totals[row["category_id"]] = totals.get(row["category_id"], Decimal("0")) + Decimal(str(row["amount"]))
        names = {row["id"]: row["name"] for row in self._select("categories", [("user_id", "eq", user_id)])}
        spending = [
            {"category_id": category_id, "category_name": names.get(category_id, "Unknown"), "amount": amount}
            for category_id, amount in totals.items()
        ]
        return sorted(spending, key=lambda item: (-item["amount"], item["category_id"]))

    def search_products(self, user_id: int, query: str) -> list[dict[str, Any]]:
        """Case-insensitive substring match on product name, brand and category."""
        needle = query.strip().lower()
        return [
            row
            for row in self.list("products", user_id)
            if any(needle in (row.get(column) or "").lower() for column in ("name", "brand", "category"))
        ]

    def dump_table(self, table: str) -> list[dict[str, Any]]:
        return sorted(self._select(table, []), key=lambda row: row["id"])

    def load_row(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        values = {key: value for key, value in row.items() if key != "id" and key in column_names(table)}
        return self._insert(table, values)

    def copy_from(self, source: Storage) -> dict[str, int]:
        """Copy every table of *source* into this storage, remapping ids in foreign-key order."""
        id_maps: dict[str, dict[int, int]] = {table: {} for table in REQUIRED_TABLES}
        counts: dict[str, int] = {}

        def remap(table: str, ref_table: str, ref_id: int) -> int:
            new_id = id_maps[ref_table].get(ref_id)
            if new_id is None:
                raise StorageError(f"{table} row references missing {_singular(ref_table)} {ref_id}")
            return new_id

        for table in REQUIRED_TABLES:
            # self references are linked once every row of the table exists
            pending_links: list[tuple[int, str, int]] = []
            rows = source.dump_table(table)
            for row in rows:
                values = dict(row)
                if table != "users":
                    values["user_id"] = remap(table, "users", values["user_id"])
                for column, ref_table in OWNED_REFERENCES.get(table, {}).items():
                    ref_id = values.get(column)
                    if ref_id is None:
                        continue
                    if ref_table == table:
                        values[column] = None
                        pending_links.append((row["id"], column, ref_id))
                    else:
                        values[column] = remap(table, ref_table, ref_id)
                created = self.load_row(table, values)
                id_maps[table][row["id"]] = created["id"]
            for old_id, column, ref_id in pending_links:
                self._patch(table, id_maps[table][old_id], {column: remap(table, table, ref_id)})
            counts[table] = len(rows)
            logger.info("Copied %s rows of %s", len(rows), table)
        return counts


class MemoryStorage(Storage):
    provider = "memory"

    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()

    def _fetch(self, table: str, entity_id: int) -> dict[str, Any] | None:
        row = self.store.tables[table].get(entity_id)
        return dict(row) if row is not None else None

    def _select(self, table: str, criteria: list[Criterion]) -> list[dict[str, Any]]:
        return [dict(row) for row in self.store.tables[table].values() if _matches(row, criteria)]

    def _insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        row: dict[str, Any] = {name: None for name in column_names(table)}
        row.update(column_defaults(table))
        row.update(values)
        row["id"] = self.store.next_id(table)
        self.store.tables[table][row["id"]] = row
        return dict(row)

    def _patch(self, table: str, entity_id: int, values: dict[str, Any]) -> dict[str, Any] | None:
        row = self.store.tables[table].get(entity_id)
        if row is None:
            return None
        row.update(values)
        return dict(row)

    def _remove(self, table: str, entity_id: int) -> bool:
        return self.store.tables[table].pop(entity_id, None) is not None


def _driver_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).strip()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqlStorage(Storage):
    """SQLAlchemy adapter shared by PostgreSQL, Neon, MySQL, PlanetScale and SQLite."""

    enforces_foreign_keys = True

    def __init__(
        self,
        database_url: str,
        provider: str = "sqlite",
        connect_args: dict[str, Any] | None = None,
        pool_size: int | None = None,
        echo: bool = False,
    ) -> None:
        self.provider = provider
        self.database_url = database_url
        self.closed = False
        engine_kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True, "echo": echo}
        args = dict(connect_args or {})
        is_sqlite = database_url.startswith("sqlite")
        if is_sqlite:
            args.setdefault("check_same_thread", False)
            if database_url in {"sqlite://", "sqlite:///:memory:"}:
                engine_kwargs["poolclass"] = StaticPool
        elif pool_size:
            engine_kwargs["pool_size"] = pool_size
        self.engine: Engine = create_engine(database_url, connect_args=args, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        logger.info("Created %s storage for %s", provider, mask_url(database_url))

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise ConflictError(f"{self.provider} constraint violation: {_driver_message(exc)}") from exc
        except SQLAlchemyError as exc:
            logger.error("%s storage error: %s", self.provider, _driver_message(exc))
            raise StorageError(f"{self.provider} error: {_driver_message(exc)}") from exc
        finally:
            if self.closed:
                # a replaced adapter still serving a late request must not keep a fresh pool open
                self.engine.dispose()

    @staticmethod
    def _read(conn: Connection, table: str, entity_id: int) -> dict[str, Any] | None:
        table_obj = metadata.tables[table]
        row = conn.execute(select(table_obj).where(table_obj.c.id == entity_id)).mappings().first()
        return dict(row) if row is not None else None

    def _fetch(self, table: str, entity_id: int) -> dict[str, Any] | None:
        with self._transaction() as conn:
            return self._read(conn, table, entity_id)

    def _select(self, table: str, criteria: list[Criterion]) -> list[dict[str, Any]]:
        table_obj = metadata.tables[table]
        statement = select(table_obj)
        for column, op, value in criteria:
            statement = statement.where(_OPERATORS[op](table_obj.c[column], value))
        with self._transaction() as conn:
            return [dict(row) for row in conn.execute(statement).mappings().all()]

    def _insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        table_obj = metadata.tables[table]
        with self._transaction() as conn:
            result = conn.execute(insert(table_obj).values(**values))
            new_id = result.inserted_primary_key[0]
            row = self._read(conn, table, new_id)
        if row is None:
            raise StorageError(f"{self.provider} error: inserted {_singular(table)} could not be read back")
        return row

    def _patch(self, table: str, entity_id: int, values: dict[str, Any]) -> dict[str, Any] | None:
        table_obj = metadata.tables[table]
        with self._transaction() as conn:
            conn.execute(update(table_obj).where(table_obj.c.id == entity_id).values(**values))
            return self._read(conn, table, entity_id)

    def _remove(self, table: str, entity_id: int) -> bool:
        table_obj = metadata.tables[table]
        with self._transaction() as conn:
            result = conn.execute(delete(table_obj).where(table_obj.c.id == entity_id))
            return result.rowcount > 0

    def _sum(self, statement: Any) -> Decimal:
        with self._transaction() as conn:
            return Decimal(str(conn.execute(statement).scalar_one()))

    def account_balance(self, user_id: int) -> Decimal:
        accounts = metadata.tables["accounts"]
        return self._sum(select(func.coalesce(func.sum(accounts.c.balance), 0)).where(accounts.c.user_id == user_id))

    def flow_total(self, user_id: int, flow: str, start: date, end: date) -> Decimal:
        tx = metadata.tables["transactions"]
        statement = select(func.coalesce(func.sum(tx.c.amount), 0)).where(
            tx.c.user_id == user_id, tx.c.type == flow, tx.c.date >= start, tx.c.date <= end
        )
        return self._sum(statement)

    def category_spending(self, user_id: int, start: date, end: date) -> list[dict[str, Any]]:
        tx = metadata.tables["transactions"]
        categories = metadata.tables["categories"]
        amount = func.sum(tx.c.amount).label("amount")
        statement = (
            select(tx.c.category_id, categories.c.name.label("category_name"), amount)
            .join(categories, categories.c.id == tx.c.category_id)
            .where(tx.c.user_id == user_id, tx.c.type == "expense", tx.c.date >= start, tx.c.date <= end)
            .group_by(tx.c.category_id, categories.c.name)
            .order_by(amount.desc(), tx.c.category_id)
        )
        with self._transaction() as conn:
            rows = conn.execute(statement).mappings().all()
        return [
            {"category_id": row["category_id"], "category_name": row["category_name"], "amount": Decimal(str(row["amount"]))}
            for row in rows
        ]

    def ensure_schema(self) -> None:
        try:
            metadata.create_all(self.engine, checkfirst=True)
        except SQLAlchemyError as exc:
            raise StorageError(f"{self.provider} error: {_driver_message(exc)}") from exc

    def missing_tables(self) -> list[str]:
        try:
            existing = set(inspect(self.engine).get_table_names())
        except SQLAlchemyError as exc:
            raise StorageError(f"{self.provider} error: {_driver_message(exc)}") from exc
        return [name for name in REQUIRED_TABLES if name not in existing]

    def close(self) -> None:
        # checked-out connections finish their work and are closed on return
        self.closed = True
        self.engine.dispose()
