import asyncio
from pathlib import Path

from pocketledger.config import Settings
from pocketledger.connection_tester import ConnectionTester, classify_error
from pocketledger.providers import ConnectionProbeError, PostgresProvider, SqliteProvider
from pocketledger.schemas import ConnectionErrorType, DatabaseSetup
from pocketledger.tables import REQUIRED_TABLES


def _postgres() -> DatabaseSetup:
    return DatabaseSetup(provider="postgresql", connectionString="postgresql://app:pw@db.internal:5432/finance")


def test_sqlite_probe_of_missing_file_reports_all_tables_and_creates_nothing(settings: Settings, tmp_path: Path) -> None:
    path = tmp_path / "new.db"
    result = asyncio.run(ConnectionTester(settings).test_connection(DatabaseSetup(provider="sqlite", database=str(path))))
    assert result.success is True
    assert result.details.missingTables == list(REQUIRED_TABLES)
    assert result.details.database == str(path)
    assert result.details.version
    assert not path.exists()


def test_sqlite_probe_after_schema_creation_finds_every_table(settings: Settings, tmp_path: Path) -> None:
    setup = DatabaseSetup(provider="sqlite", database=str(tmp_path / "ready.db"))
    storage = SqliteProvider().build_storage(setup, settings)
    storage.ensure_schema()
    storage.close()

    result = asyncio.run(ConnectionTester(settings).test_connection(setup))
    assert result.success is True
    assert result.details.missingTables == []
    assert result.latencyMs is not None and result.latencyMs >= 0


def test_repeated_tests_give_the_same_outcome(settings: Settings, tmp_path: Path) -> None:
    tester = ConnectionTester(settings)
    setup = DatabaseSetup(provider="sqlite", database=str(tmp_path / "same.db"))
    first = asyncio.run(tester.test_connection(setup))
    second = asyncio.run(tester.test_connection(setup))
    assert first.success == second.success
    assert first.details.missingTables == second.details.missingTables


def test_invalid_config_never_reaches_the_network(settings: Settings, monkeypatch) -> None:
    async def forbidden_probe(self, config, settings):
        raise AssertionError("probe must not run for invalid configs")

    monkeypatch.setattr(PostgresProvider, "probe", forbidden_probe)
    result = asyncio.run(ConnectionTester(settings).test_connection(DatabaseSetup(provider="postgresql")))
    assert result.success is False
    assert result.errorType == ConnectionErrorType.validation
    assert "Host is required" in result.error


def test_driver_failures_are_returned_not_raised(settings: Settings, monkeypatch) -> None:
    async def failing_probe(self, config, settings):
        raise RuntimeError('FATAL:  password authentication failed for user "app"')

    monkeypatch.setattr(PostgresProvider, "probe", failing_probe)
    result = asyncio.run(ConnectionTester(settings).test_connection(_postgres()))
    assert result.success is False
    assert result.errorType == ConnectionErrorType.auth
    assert result.error.startswith("Authentication failed")


def test_classify_error_categories() -> None:
    kind, message = classify_error(RuntimeError('could not translate host name "nope" to address'))
    assert kind == ConnectionErrorType.network
    assert message.startswith("Host not found")

    kind, message = classify_error(RuntimeError("connection timed out"))
    assert kind == ConnectionErrorType.network

    kind, message = classify_error(ConnectionProbeError("Invalid key", ConnectionErrorType.auth))
    assert (kind, message) == (ConnectionErrorType.auth, "Invalid key")

    kind, message = classify_error(RuntimeError("something odd"))
    assert kind == ConnectionErrorType.unknown
    assert "something odd" in message
