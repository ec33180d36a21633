from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateTable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("role", String(20), nullable=False, default="user"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_login_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("color", String(7), nullable=False, default="#0F766E"),
    Column("parent_id", Integer, ForeignKey("categories.id", ondelete="SET NULL")),
    Column("is_default", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(50), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, default=0),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("description", String(255), nullable=False),
    Column("notes", Text),
    Column("date", Date, nullable=False),
    Column("type", String(20), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("period", String(20), nullable=False, default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("target_amount", Numeric(14, 2), nullable=False),
    Column("current_amount", Numeric(14, 2), nullable=False, default=0),
    Column("target_date", Date),
    Column("is_completed", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

bills = Table(
    "bills",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("due_date", Date, nullable=False),
    Column("frequency", String(20), nullable=False, default="monthly"),
    Column("is_recurring", Boolean, nullable=False, default=True),
    Column("is_paid", Boolean, nullable=False, default=False),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("barcode", String(64)),
    Column("category", String(100)),
    Column("brand", String(100)),
    Column("last_price", Numeric(14, 2)),
    Column("average_price", Numeric(14, 2)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

# foreign-key order, used for schema checks, migration and DDL output
REQUIRED_TABLES = ("users", "categories", "accounts", "transactions", "budgets", "goals", "bills", "products")
ENTITY_TABLES = REQUIRED_TABLES[1:]

# columns that must reference a row owned by the same user
OWNED_REFERENCES: dict[str, dict[str, str]] = {
    "categories": {"parent_id": "categories"},
    "transactions": {"account_id": "accounts", "category_id": "categories"},
    "budgets": {"category_id": "categories"},
    "bills": {"account_id": "accounts", "category_id": "categories"},
}


def column_defaults(table_name: str) -> dict:
    """Python-side defaults for a table, for stores that do not run SQLAlchemy inserts."""
    values: dict = {}
    for column in metadata.tables[table_name].columns:
        if column.default is None or column.primary_key:
            continue
        arg = column.default.arg
        values[column.name] = arg(None) if callable(arg) else arg
    return values


def column_names(table_name: str) -> set[str]:
    return {column.name for column in metadata.tables[table_name].columns}


def referencing_columns(table_name: str) -> list[tuple[str, str, str]]:
    """(table, column, ondelete) for every foreign key that points at ``table_name``.

    A missing ondelete is reported as ``NO ACTION``: the delete fails if the
    referencing row is still there once the whole delete has been applied.
    """
    refs = []
    for name in REQUIRED_TABLES:
        for fk in metadata.tables[name].foreign_keys:
            if fk.column.table.name == table_name:
                refs.append((name, fk.parent.name, (fk.ondelete or "NO ACTION").upper()))
    return refs


def render_schema_sql(if_not_exists: bool = True) -> str:
    statements = []
    for name in REQUIRED_TABLES:
        ddl = CreateTable(metadata.tables[name], if_not_exists=if_not_exists).compile(dialect=postgresql.dialect())
        statements.append(str(ddl).strip() + ";")
    return "\n\n".join(statements) + "\n"
