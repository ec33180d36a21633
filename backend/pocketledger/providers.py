from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote_plus, urlparse

import httpx
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.pool import NullPool

from .config import Settings
from .persistence import SqlStorage, Storage
from .schemas import (
    ConnectionDetails,
    ConnectionErrorType,
    DatabaseProvider,
    DatabaseSetup,
    ProviderRecommendation,
    ValidationResult,
)
from .supabase_storage import SupabaseStorage, is_missing_table
from .tables import REQUIRED_TABLES
from .validation import RuleCollector, is_supabase_url

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class ConnectionProbeError(Exception):
    """A probe failure whose category is already known."""

    def __init__(self, message: str, kind: ConnectionErrorType) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class ProbeOutcome:
    latency_ms: int
    details: ConnectionDetails


class ProviderStrategy:
    provider: DatabaseProvider
    label = ""
    dialect = ""
    default_port: int | None = None

    def validate(self, config: DatabaseSetup) -> ValidationResult:
        raise NotImplementedError

    async def probe(self, config: DatabaseSetup, settings: Settings) -> ProbeOutcome:
        raise NotImplementedError

    def build_storage(self, config: DatabaseSetup, settings: Settings) -> Storage:
        raise NotImplementedError

    def environment(self, config: DatabaseSetup, settings: Settings, docker: bool = False) -> dict[str, str]:
        raise NotImplementedError

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        raise NotImplementedError


class SqlProviderStrategy(ProviderStrategy):
    """Providers reached through a SQLAlchemy engine."""

    driver = ""
    url_schemes: tuple[str, ...] = ()
    version_query = "SELECT version()"
    requires_connection_string = False

    def validate(self, config: DatabaseSetup) -> ValidationResult:
        rules = RuleCollector()
        if config.connectionString:
            schemes = " or ".join(f"{scheme}://" for scheme in self.url_schemes[:2])
            rules.check_scheme(
                config.connectionString,
                self.url_schemes,
                f"{self.label} connection string must start with {schemes}",
            )
        elif self.requires_connection_string:
            rules.error(f"{self.label} connection string is required")
        else:
            suffix = "when no connection string is given"
            rules.require(config.host, f"Host is required {suffix}")
            rules.require(config.port, f"Port is required {suffix}")
            rules.require(config.database, f"Database name is required {suffix}")
            rules.require(config.username, f"Username is required {suffix}")
            if not config.password:
                rules.warn("No password supplied; the connection will be attempted without one")
        return rules.result()

    def _normalize(self, url: str) -> str:
        scheme, rest = url.split("://", 1)
        if "+" in scheme:
            return url
        return f"{self.driver}://{rest}"

    def database_url(self, config: DatabaseSetup, settings: Settings) -> str:
        if config.connectionString:
            return self._normalize(config.connectionString)
        auth = quote_plus(config.username or "")
        if config.password:
            auth = f"{auth}:{quote_plus(config.password)}"
        port = config.port or self.default_port
        return f"{self.driver}://{auth}@{config.host}:{port}/{config.database}"

    def public_url(self, config: DatabaseSetup, settings: Settings) -> str:
        """Driver-neutral URL, as other tools expect it in DATABASE_URL."""
        url = self.database_url(config, settings)
        scheme, rest = url.split("://", 1)
        return f"{scheme.split('+', 1)[0]}://{rest}"

    def connect_args(self, config: DatabaseSetup, settings: Settings) -> dict[str, Any]:
        return {"connect_timeout": settings.db_connect_timeout}

    def _probe_sync(self, config: DatabaseSetup, settings: Settings) -> ProbeOutcome:
        url = self.database_url(config, settings)
        engine = create_engine(url, poolclass=NullPool, connect_args=self.connect_args(config, settings))
        try:
            started = time.perf_counter()
            with engine.connect() as conn:
                version = conn.execute(text(self.version_query)).scalar()
                latency_ms = int((time.perf_counter() - started) * 1000)
                existing = set(inspect(conn).get_table_names())
        finally:
            engine.dispose()
        parsed = make_url(url)
        details = ConnectionDetails(
            provider=self.provider,
            host=parsed.host,
            database=parsed.database,
            version=str(version) if version is not None else None,
            ssl=config.ssl,
            missingTables=[name for name in REQUIRED_TABLES if name not in existing],
        )
        return ProbeOutcome(latency_ms=latency_ms, details=details)

    async def probe(self, config: DatabaseSetup, settings: Settings) -> ProbeOutcome:
        # drivers block, keep them off the event loop
        return await run_in_threadpool(self._probe_sync, config, settings)

    def build_storage(self, config: DatabaseSetup, settings: Settings) -> Storage:
        return SqlStorage(
            self.database_url(config, settings),
            provider=self.provider.value,
            connect_args=self.connect_args(config, settings),
            pool_size=config.maxConnections,
            echo=settings.sql_echo,
        )

    def _docker_host(self, host: str | None, docker: bool) -> str | None:
        if docker and host in _LOCAL_HOSTS:
            return "host.docker.internal"
        return host


class PostgresProvider(SqlProviderStrategy):
    provider = DatabaseProvider.postgresql
    label = "PostgreSQL"
    dialect = "postgresql"
    default_port = 5432
    driver = "postgresql+psycopg"
    url_schemes = ("postgresql", "postgres", "postgresql+psycopg")

    def connect_args(self, config: DatabaseSetup, settings: Settings) -> dict[str, Any]:
        args = super().connect_args(config, settings)
        url = config.connectionString or ""
        if config.ssl and "sslmode=" not in url:
            args["sslmode"] = "require"
        return args

    def environment(self, config: DatabaseSetup, settings: Settings, docker: bool = False) -> dict[str, str]:
        values = {"DATABASE_PROVIDER": self.provider.value, "DATABASE_URL": self.public_url(config, settings)}
        if not config.connectionString:
            values.update(
                {
                    "POSTGRES_HOST": self._docker_host(config.host, docker) or "",
                    "POSTGRES_PORT": str(config.port or self.default_port),
                    "POSTGRES_DB": config.database or "",
                    "POSTGRES_USER": config.username or "",
                    "POSTGRES_PASSWORD": config.password or "",
                }
            )
        return values

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        return ProviderRecommendation(
            title="PostgreSQL Setup",
            description="Traditional PostgreSQL database server",
            tips=[
                "Ensure PostgreSQL server is running and accessible",
                "Create database and user before connecting",
                "Use connection pooling for production",
                "Use 'postgres' as hostname in Docker Compose" if is_docker else "Use actual server hostname/IP",
            ],
            warnings=["Make sure PostgreSQL service is defined in docker-compose.yml"]
            if is_docker
            else ["Ensure firewall allows connections on PostgreSQL port (5432)"],
        )


class NeonProvider(PostgresProvider):
    provider = DatabaseProvider.neon
    label = "Neon"
    requires_connection_string = True

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        return ProviderRecommendation(
            title="Neon Database Setup",
            description="Serverless PostgreSQL with branching and automatic scaling",
            tips=[
                "Get connection string from Neon Console → Connection Details",
                "Use the pooled connection string for better performance",
                "Tables will be created automatically on activation",
            ],
        )


class MysqlProvider(SqlProviderStrategy):
    provider = DatabaseProvider.mysql
    label = "MySQL"
    dialect = "mysql"
    default_port = 3306
    driver = "mysql+pymysql"
    url_schemes = ("mysql", "mysql+pymysql")
    version_query = "SELECT VERSION()"

    def database_url(self, config: DatabaseSetup, settings: Settings) -> str:
        url = make_url(super().database_url(config, settings))
        # TLS is configured through connect_args, PyMySQL rejects these as keywords
        url = url.difference_update_query(["ssl", "sslaccept", "sslmode", "ssl-mode"])
        return url.render_as_string(hide_password=False)

    def connect_args(self, config: DatabaseSetup, settings: Settings) -> dict[str, Any]:
        args = super().connect_args(config, settings)
        if config.ssl:
            args["ssl"] = {"check_hostname": False}
        return args

    def environment(self, config: DatabaseSetup, settings: Settings, docker: bool = False) -> dict[str, str]:
        values = {"DATABASE_PROVIDER": self.provider.value, "DATABASE_URL": self.public_url(config, settings)}
        if not config.connectionString:
            values.update(
                {
                    "MYSQL_HOST": self._docker_host(config.host, docker) or "",
                    "MYSQL_PORT": str(config.port or self.default_port),
                    "MYSQL_DATABASE": config.database or "",
                    "MYSQL_USER": config.username or "",
                    "MYSQL_PASSWORD": config.password or "",
                }
            )
        return values

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        return ProviderRecommendation(
            title="MySQL Setup",
            description="Traditional MySQL database server",
            tips=[
                "Ensure MySQL server is running and accessible",
                "Create database and user before connecting",
                "Use connection pooling for production",
                "Use 'mysql' as hostname in Docker Compose" if is_docker else "Use actual server hostname/IP",
            ],
            warnings=["Make sure MySQL service is defined in docker-compose.yml"]
            if is_docker
            else ["Ensure firewall allows connections on MySQL port (3306)"],
        )


class PlanetScaleProvider(MysqlProvider):
    provider = DatabaseProvider.planetscale
    label = "PlanetScale"
    requires_connection_string = True

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        return ProviderRecommendation(
            title="PlanetScale Setup",
            description="Serverless MySQL with branching and global distribution",
            tips=[
                "Get connection string from PlanetScale Dashboard → Connect",
                "Use the 'General' connection string format",
                "Consider using branches for schema changes",
            ],
        )


class SqliteProvider(SqlProviderStrategy):
    provider = DatabaseProvider.sqlite
    label = "SQLite"
    dialect = "sqlite"
    driver = "sqlite"
    version_query = "SELECT sqlite_version()"

    def validate(self, config: DatabaseSetup) -> ValidationResult:
        return ValidationResult(isValid=True)

    def database_path(self, config: DatabaseSetup, settings: Settings) -> str:
        return config.database or settings.default_sqlite_path

    def database_url(self, config: DatabaseSetup, settings: Settings) -> str:
        path = self.database_path(config, settings)
        if path == ":memory:":
            return "sqlite://"
        return f"sqlite:///{path}"

    def connect_args(self, config: DatabaseSetup, settings: Settings) -> dict[str, Any]:
        return {}

    def _probe_sync(self, config: DatabaseSetup, settings: Settings) -> ProbeOutcome:
        path = self.database_path(config, settings)
        if path == ":memory:" or Path(path).exists():
            outcome = super()._probe_sync(config, settings)
        else:
            # nothing to inspect yet and the probe must not create the file
            started = time.perf_counter()
            engine = create_engine("sqlite://", poolclass=NullPool)
            try:
                with engine.connect() as conn:
                    version = conn.execute(text(self.version_query)).scalar()
            finally:
                engine.dispose()
            outcome = ProbeOutcome(
                latency_ms=int((time.perf_counter() - started) * 1000),
                details=ConnectionDetails(provider=self.provider, version=str(version), missingTables=list(REQUIRED_TABLES)),
            )
        outcome.details.host = None
        outcome.details.database = path
        outcome.details.ssl = None
        return outcome

    def build_storage(self, config: DatabaseSetup, settings: Settings) -> Storage:
        path = self.database_path(config, settings)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        return SqlStorage(self.database_url(config, settings), provider=self.provider.value, echo=settings.sql_echo)

    def environment(self, config: DatabaseSetup, settings: Settings, docker: bool = False) -> dict[str, str]:
        return {"DATABASE_PROVIDER": self.provider.value, "SQLITE_DATABASE_PATH": self.database_path(config, settings)}

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        return ProviderRecommendation(
            title="SQLite Setup",
            description="File-based database, perfect for development and small deployments",
            tips=[
                "No external database server required",
                "Database file will be created automatically",
                "Data persists in the finance.db file inside the data directory",
            ],
            warnings=["Not recommended for high-concurrency production use", "Backup the database file regularly"],
        )


class SupabaseProvider(ProviderStrategy):
    provider = DatabaseProvider.supabase
    label = "Supabase"
    dialect = "postgresql"
    default_port = 5432

    def validate(self, config: DatabaseSetup) -> ValidationResult:
        rules = RuleCollector()
        if rules.require(config.supabaseUrl, "Supabase project URL is required"):
            if not is_supabase_url(config.supabaseUrl or ""):
                rules.error("Supabase URL must look like https://<project>.supabase.co")
        rules.require(config.supabaseAnonKey, "Supabase anon key is required")
        if config.autoCreateTables and not config.supabaseServiceKey:
            rules.error("Supabase service role key is required to create tables automatically")
        return rules.result()

    async def probe(self, config: DatabaseSetup, settings: Settings) -> ProbeOutcome:
        key = config.supabaseServiceKey or config.supabaseAnonKey or ""
        headers = {"apikey": key, "Authorization": f"Bearer {key}"}
        base_url = (config.supabaseUrl or "").rstrip("/")
        async with httpx.AsyncClient(base_url=base_url, headers=headers, timeout=settings.db_connect_timeout) as client:
            started = time.perf_counter()
            response = await client.get("/auth/v1/health")
            latency_ms = int((time.perf_counter() - started) * 1000)
            self._check_auth(response)
            if not response.is_success:
                raise ConnectionProbeError(
                    f"Supabase health check failed with status {response.status_code}", ConnectionErrorType.unknown
                )
            try:
                version = response.json().get("version")
            except ValueError:
                version = None
            missing = []
            for table in REQUIRED_TABLES:
                table_response = await client.get(f"/rest/v1/{table}", params={"select": "id", "limit": "1"})
                self._check_auth(table_response)
                if is_missing_table(table_response):
                    missing.append(table)
        details = ConnectionDetails(
            provider=self.provider,
            host=urlparse(base_url).hostname,
            database="postgres",
            version=f"Supabase Auth {version}" if version else "Supabase",
            ssl=True,
            missingTables=missing,
        )
        return ProbeOutcome(latency_ms=latency_ms, details=details)

    @staticmethod
    def _check_auth(response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            raise ConnectionProbeError(
                "Authentication failed: the Supabase API key was rejected", ConnectionErrorType.auth
            )

    def build_storage(self, config: DatabaseSetup, settings: Settings) -> Storage:
        return SupabaseStorage(
            config.supabaseUrl or "",
            config.supabaseAnonKey or "",
            service_key=config.supabaseServiceKey,
            auto_create=config.autoCreateTables,
            timeout=settings.db_connect_timeout,
        )

    def environment(self, config: DatabaseSetup, settings: Settings, docker: bool = False) -> dict[str, str]:
        return {
            "DATABASE_PROVIDER": self.provider.value,
            "SUPABASE_URL": config.supabaseUrl or "",
            "SUPABASE_ANON_KEY": config.supabaseAnonKey or "",
            "SUPABASE_SERVICE_KEY": config.supabaseServiceKey or "",
        }

    def recommendation(self, is_docker: bool) -> ProviderRecommendation:
        return ProviderRecommendation(
            title="Supabase Setup",
            description="Cloud-hosted PostgreSQL with automatic scaling and real-time features",
            tips=[
                "Get credentials from Supabase Dashboard → Settings → API",
                "Service Role Key is required for automatic table creation",
                "Without it, run the schema from GET /api/initialization/supabase-schema in the SQL editor",
            ],
            warnings=["Ensure Docker container has internet access to reach Supabase"] if is_docker else [],
        )


PROVIDERS: dict[DatabaseProvider, ProviderStrategy] = {
    strategy.provider: strategy
    for strategy in (
        PostgresProvider(),
        NeonProvider(),
        MysqlProvider(),
        PlanetScaleProvider(),
        SqliteProvider(),
        SupabaseProvider(),
    )
}


def get_provider(provider: DatabaseProvider | str) -> ProviderStrategy:
    return PROVIDERS[DatabaseProvider(provider)]


def validate_database_config(config: DatabaseSetup) -> ValidationResult:
    """Check a candidate configuration without touching the network."""
    return get_provider(config.provider).validate(config)
