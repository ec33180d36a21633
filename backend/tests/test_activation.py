import asyncio
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from pocketledger.activation import ActivationManager, StorageHandle
from pocketledger.bootstrap import BootstrapStore
from pocketledger.config import Settings
from pocketledger.connection_tester import ConnectionTester
from pocketledger.errors import (
    ActivationError,
    ActiveDatabaseError,
    ConfigValidationError,
    ConnectionTestRequiredError,
)
from pocketledger.persistence import MemoryStorage
from pocketledger.providers import ConnectionProbeError, PostgresProvider, SqliteProvider
from pocketledger.schemas import ConnectionErrorType, DatabaseSetup, MigrationStatus


@pytest.fixture
def manager(settings: Settings) -> ActivationManager:
    return ActivationManager(
        BootstrapStore(settings.bootstrap_path),
        StorageHandle(MemoryStorage()),
        ConnectionTester(settings),
        settings,
    )


def _sqlite(tmp_path: Path, filename: str, name: str) -> DatabaseSetup:
    return DatabaseSetup(provider="sqlite", name=name, database=str(tmp_path / filename))


def _postgres() -> DatabaseSetup:
    return DatabaseSetup(
        provider="postgresql",
        name="Production",
        host="db.example.com",
        port=5432,
        database="finance",
        username="app",
        password="wrong-password",
    )


def _active_ids(manager: ActivationManager) -> list[str]:
    return [config.id for config in manager.list_configs() if config.isActive]


def test_invalid_config_is_not_stored(manager: ActivationManager) -> None:
    with pytest.raises(ConfigValidationError) as exc_info:
        manager.add_config(DatabaseSetup(provider="postgresql", name="Broken"))
    assert len(exc_info.value.errors) == 4
    assert manager.list_configs() == []


def test_failed_test_blocks_activation(manager: ActivationManager, monkeypatch) -> None:
    async def rejected(self, config, settings):
        raise ConnectionProbeError("password authentication failed for user \"app\"", ConnectionErrorType.auth)

    monkeypatch.setattr(PostgresProvider, "probe", rejected)
    config = manager.add_config(_postgres())
    before = manager.handle.current

    result = asyncio.run(manager.test_config(config.id))
    assert result.success is False
    assert result.errorType == ConnectionErrorType.auth
    stored = manager.get_config(config.id)
    assert stored.isConnected is False
    assert stored.lastConnectionTest is not None
    assert stored.lastTestError

    with pytest.raises(ConnectionTestRequiredError) as exc_info:
        manager.activate(config.id)
    assert "Connection Test Required" in exc_info.value.message
    assert manager.handle.current is before
    assert _active_ids(manager) == []


def test_untested_config_cannot_be_activated(manager: ActivationManager) -> None:
    config = manager.add_config(_postgres())
    with pytest.raises(ConnectionTestRequiredError):
        manager.activate(config.id)


def test_switching_keeps_exactly_one_active(manager: ActivationManager, tmp_path: Path) -> None:
    first = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    second = manager.add_config(_sqlite(tmp_path, "b.db", "B"))

    manager.activate(first.id)
    assert _active_ids(manager) == [first.id]
    first_storage = manager.handle.current
    first_storage.create_user(
        {"username": "carol", "email": "carol@example.com", "password": "Secret123!", "first_name": "C", "last_name": "L"}
    )

    manager.activate(second.id)
    assert _active_ids(manager) == [second.id]
    assert manager.handle.config_id == second.id
    assert manager.handle.current is not first_storage
    assert manager.handle.current.count_users() == 0
    # a request that captured the old adapter can still finish
    assert first_storage.count_users() == 1

    # re-activating the active config changes nothing
    assert manager.activate(second.id).isActive is True
    assert _active_ids(manager) == [second.id]


def test_failed_activation_keeps_previous_database(manager: ActivationManager, tmp_path: Path, monkeypatch) -> None:
    first = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    second = manager.add_config(_sqlite(tmp_path, "b.db", "B"))
    manager.activate(first.id)
    current = manager.handle.current

    def broken(self, config, settings):
        raise RuntimeError("disk is read-only")

    monkeypatch.setattr(SqliteProvider, "build_storage", broken)
    with pytest.raises(ActivationError):
        manager.activate(second.id)
    assert manager.handle.current is current
    assert manager.handle.config_id == first.id
    assert _active_ids(manager) == [first.id]


def test_active_config_cannot_be_deleted(manager: ActivationManager, tmp_path: Path) -> None:
    config = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    manager.activate(config.id)
    before = manager.list_configs()

    with pytest.raises(ActiveDatabaseError) as exc_info:
        manager.delete_config(config.id)
    assert "Cannot delete active database configuration 'A'" in exc_info.value.message
    assert manager.list_configs() == before


def test_inactive_config_can_be_deleted(manager: ActivationManager, tmp_path: Path) -> None:
    config = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    manager.delete_config(config.id)
    assert manager.list_configs() == []


def test_credentials_of_active_config_are_locked(manager: ActivationManager, tmp_path: Path) -> None:
    config = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    manager.activate(config.id)
    with pytest.raises(ActiveDatabaseError):
        manager.update_config(config.id, {"database": str(tmp_path / "other.db")})
    renamed = manager.update_config(config.id, {"name": "Renamed"})
    assert renamed.name == "Renamed"
    assert renamed.isActive is True


def test_credential_change_resets_connection_state(manager: ActivationManager, monkeypatch) -> None:
    async def accepted(self, config, settings):
        return await SqliteProvider.probe(SqliteProvider(), DatabaseSetup(provider="sqlite", database=":memory:"), settings)

    monkeypatch.setattr(PostgresProvider, "probe", accepted)
    config = manager.add_config(_postgres())
    assert asyncio.run(manager.test_config(config.id)).success is True
    assert manager.get_config(config.id).isConnected is True

    updated = manager.update_config(config.id, {"password": "new-password"})
    assert updated.isConnected is False
    assert updated.lastConnectionTest is None


def test_credential_edit_during_test_discards_the_outcome(manager: ActivationManager, monkeypatch) -> None:
    config = manager.add_config(_postgres())

    async def edited_while_running(self, probed, settings):
        # another admin fixes the password before this probe returns
        manager.update_config(config.id, {"password": "brand-new-password"})
        return await SqliteProvider.probe(SqliteProvider(), DatabaseSetup(provider="sqlite", database=":memory:"), settings)

    monkeypatch.setattr(PostgresProvider, "probe", edited_while_running)
    assert asyncio.run(manager.test_config(config.id)).success is True

    stored = manager.get_config(config.id)
    assert stored.password == "brand-new-password"
    assert stored.isConnected is False
    assert stored.lastConnectionTest is None
    with pytest.raises(ConnectionTestRequiredError):
        manager.activate(config.id)


def test_rename_during_test_keeps_the_outcome(manager: ActivationManager, monkeypatch) -> None:
    config = manager.add_config(_postgres())

    async def renamed_while_running(self, probed, settings):
        manager.update_config(config.id, {"name": "Production (primary)"})
        return await SqliteProvider.probe(SqliteProvider(), DatabaseSetup(provider="sqlite", database=":memory:"), settings)

    monkeypatch.setattr(PostgresProvider, "probe", renamed_while_running)
    asyncio.run(manager.test_config(config.id))

    stored = manager.get_config(config.id)
    assert stored.name == "Production (primary)"
    assert stored.isConnected is True


def test_bootstrap_restores_active_database(settings: Settings, manager: ActivationManager, tmp_path: Path) -> None:
    config = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    manager.activate(config.id)

    restarted = ActivationManager(
        BootstrapStore(settings.bootstrap_path), StorageHandle(MemoryStorage()), ConnectionTester(settings), settings
    )
    restarted.bootstrap()
    assert restarted.handle.config_id == config.id
    assert restarted.handle.current.provider == "sqlite"


def test_migration_copies_records(manager: ActivationManager, tmp_path: Path) -> None:
    source = manager.handle.current
    user = source.create_user(
        {"username": "dana", "email": "dana@example.com", "password": "Secret123!", "first_name": "D", "last_name": "N"}
    )
    category = source.create("categories", user["id"], {"name": "Salary", "type": "income"})
    account = source.create("accounts", user["id"], {"name": "Main", "type": "checking"})
    source.create(
        "transactions",
        user["id"],
        {
            "account_id": account["id"],
            "category_id": category["id"],
            "amount": Decimal("2500.00"),
            "description": "March salary",
            "date": date(2026, 3, 25),
            "type": "income",
        },
    )
    target = manager.add_config(_sqlite(tmp_path, "target.db", "Target"))

    log = manager.migrate(target.id)
    assert log.status == MigrationStatus.completed
    assert log.fromProvider == "memory"
    assert log.toProvider == "sqlite"
    assert log.migrationDetails["users"] == 1
    assert log.migrationDetails["transactions"] == 1
    assert log.recordsMigrated == 4
    assert manager.list_migrations()[0].id == log.id

    manager.activate(target.id)
    copied = manager.handle.current.get_user_by_username("dana")
    rows = manager.handle.current.list("transactions", copied["id"])
    assert rows[0]["amount"] == Decimal("2500.00")


def test_failed_migration_is_logged(manager: ActivationManager, tmp_path: Path, monkeypatch) -> None:
    target = manager.add_config(_sqlite(tmp_path, "target.db", "Target"))

    def broken(self, config, settings):
        raise RuntimeError("disk is read-only")

    monkeypatch.setattr(SqliteProvider, "build_storage", broken)
    log = manager.migrate(target.id)
    assert log.status == MigrationStatus.failed
    assert "disk is read-only" in log.errorMessage
    assert manager.list_migrations()[0].status == MigrationStatus.failed


def test_migration_to_active_database_is_rejected(manager: ActivationManager, tmp_path: Path) -> None:
    config = manager.add_config(_sqlite(tmp_path, "a.db", "A"))
    manager.activate(config.id)
    with pytest.raises(ValueError):
        manager.migrate(config.id)
