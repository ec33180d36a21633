import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from .bootstrap import BootstrapStore
from .config import Settings
from .connection_tester import ConnectionTester
from .environment import detect_environment_config
from .errors import (
    ActivationError,
    ActiveDatabaseError,
    ConfigValidationError,
    ConnectionTestRequiredError,
    NotFoundError,
    PocketLedgerError,
    SetupRequiredError,
)
from .persistence import Storage
from .providers import get_provider, validate_database_config
from .schemas import (
    ConnectionTestResult,
    DatabaseConfig,
    DatabaseProvider,
    DatabaseSetup,
    MigrationLog,
    MigrationStatus,
)

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = {
    "connectionString",
    "host",
    "port",
    "database",
    "username",
    "password",
    "supabaseUrl",
    "supabaseAnonKey",
    "supabaseServiceKey",
    "ssl",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageHandle:
    """The process-wide active storage adapter.

    Adapter and config id are held as one tuple and replaced by a single
    assignment, so a reader never sees one without the other.
    """

    def __init__(self, storage: Storage, config_id: Optional[str] = None) -> None:
        self._active = (storage, config_id)

    @property
    def current(self) -> Storage:
        return self._active[0]

    @property
    def config_id(self) -> Optional[str]:
        return self._active[1]

    def swap(self, storage: Storage, config_id: Optional[str]) -> Storage:
        previous = self._active[0]
        self._active = (storage, config_id)
        return previous


class ActivationManager:
    def __init__(self, store: BootstrapStore, handle: StorageHandle, tester: ConnectionTester, settings: Settings) -> None:
        self.store = store
        self.handle = handle
        self.tester = tester
        self.settings = settings

    @staticmethod
    def _record_test(config: DatabaseConfig, result: ConnectionTestResult) -> None:
        config.isConnected = result.success
        config.lastConnectionTest = _utcnow()
        config.lastTestError = result.error

    def new_config(self, setup: DatabaseSetup, test_result: Optional[ConnectionTestResult] = None) -> DatabaseConfig:
        validation = validate_database_config(setup)
        if not validation.isValid:
            raise ConfigValidationError(validation.errors)
        now = _utcnow()
        config = DatabaseConfig(**setup.model_dump(), id=uuid4().hex, createdAt=now, updatedAt=now)
        if test_result is not None:
            self._record_test(config, test_result)
        return config

    def list_configs(self) -> list[DatabaseConfig]:
        return self.store.list_configs()

    def get_config(self, config_id: str) -> DatabaseConfig:
        config = self.store.get_config(config_id)
        if config is None:
            raise NotFoundError(f"database configuration not found: {config_id}")
        return config

    def active_config(self) -> Optional[DatabaseConfig]:
        return next((config for config in self.list_configs() if config.isActive), None)

    def add_config(self, setup: DatabaseSetup) -> DatabaseConfig:
        config = self.new_config(setup)
        self.store.save_config(config)
        logger.info("Added %s database configuration '%s' (%s)", config.provider.value, config.name, config.id)
        return config

    def update_config(self, config_id: str, changes: dict[str, Any]) -> DatabaseConfig:
        config = self.get_config(config_id)
        changes = {key: value for key, value in changes.items() if value is not None}
        credentials_changed = any(
            key in CREDENTIAL_FIELDS and getattr(config, key) != value for key, value in changes.items()
        )
        if credentials_changed and config.isActive:
            raise ActiveDatabaseError("Cannot change the credentials of the active database; activate another one first")
        updated = config.model_copy(update=changes)
        if credentials_changed:
            validation = validate_database_config(updated)
            if not validation.isValid:
                raise ConfigValidationError(validation.errors)
            # new credentials need a new test
            updated.isConnected = False
            updated.lastConnectionTest = None
            updated.lastTestError = None
        updated.updatedAt = _utcnow()
        self.store.save_config(updated)
        return updated

    async def test_config(self, config_id: str) -> ConnectionTestResult:
        config = self.get_config(config_id)
        result = await self.tester.test_connection(config)
        current = self.get_config(config_id)
        if any(getattr(current, key) != getattr(config, key) for key in CREDENTIAL_FIELDS):
            # credentials were edited while the probe ran; its outcome describes the old ones
            logger.info("Discarding connection test for %s: credentials changed during the test", current.name)
            return result
        self._record_test(current, result)
        self.store.save_config(current)
        return result

    def _require_tested(self, config: DatabaseConfig) -> None:
        if config.provider == DatabaseProvider.sqlite:
            return
        if not (config.isConnected and config.lastConnectionTest is not None):
            raise ConnectionTestRequiredError(config.name)

    def build_storage(self, config: DatabaseConfig) -> Storage:
        strategy = get_provider(config.provider)
        try:
            storage = strategy.build_storage(config, self.settings)
        except Exception as exc:  # bad URLs and missing drivers surface here
            logger.error("Could not create %s storage for '%s': %s", config.provider.value, config.name, exc)
            raise ActivationError(f"Could not open database '{config.name}': {exc}") from exc
        try:
            storage.ensure_schema()
        except SetupRequiredError:
            storage.close()
            raise
        except PocketLedgerError as exc:
            storage.close()
            logger.error("Could not prepare schema for '%s': %s", config.name, exc.message)
            raise ActivationError(f"Could not prepare database '{config.name}': {exc.message}") from exc
        return storage

    def _commit(self, config: DatabaseConfig, storage: Storage) -> DatabaseConfig:
        now = _utcnow()
        configs = [item for item in self.list_configs() if item.id != config.id]
        configs.append(config)
        configs.sort(key=lambda item: item.createdAt)
        for item in configs:
            if item.isActive != (item.id == config.id):
                item.isActive = item.id == config.id
                item.updatedAt = now
        try:
            self.store.replace_configs(configs)
        except PocketLedgerError:
            storage.close()
            raise
        previous = self.handle.swap(storage, config.id)
        if previous is not storage:
            previous.close()
        logger.info("Activated %s database '%s' (%s)", config.provider.value, config.name, config.id)
        return next(item for item in configs if item.id == config.id)

    def activate(self, config_id: str, storage: Optional[Storage] = None) -> DatabaseConfig:
        config = self.get_config(config_id)
        if config.isActive and self.handle.config_id == config_id and storage is None:
            return config
        self._require_tested(config)
        storage = storage or self.build_storage(config)
        return self._commit(config, storage)

    def activate_new(self, config: DatabaseConfig, storage: Storage) -> DatabaseConfig:
        """Persist a config that is not stored yet and make it active with an adapter already built."""
        self._require_tested(config)
        return self._commit(config, storage)

    def delete_config(self, config_id: str) -> None:
        config = self.get_config(config_id)
        if config.isActive or self.handle.config_id == config_id:
            raise ActiveDatabaseError(f"Cannot delete active database configuration '{config.name}'")
        self.store.delete_config(config_id)
        logger.info("Deleted database configuration '%s' (%s)", config.name, config_id)

    def discard_config(self, config_id: str) -> None:
        if self.store.get_config(config_id) is not None and self.handle.config_id != config_id:
            self.store.delete_config(config_id)

    def bootstrap(self) -> None:
        """Restore the active adapter at startup, falling back to memory."""
        configs = self.list_configs()
        if not configs:
            seeded = self._seed_from_environment()
            configs = [seeded] if seeded else []
        active = next((config for config in configs if config.isActive), None)
        if active is None:
            logger.info("No active database configuration, serving from in-memory storage")
            return
        try:
            storage = self.build_storage(active)
        except PocketLedgerError as exc:
            logger.error("Could not restore database '%s', serving from memory: %s", active.name, exc.message)
            return
        self.handle.swap(storage, active.id)
        logger.info("Restored %s database '%s'", active.provider.value, active.name)

    def _seed_from_environment(self) -> Optional[DatabaseConfig]:
        setup = detect_environment_config(self.settings)
        if setup is None:
            return None
        try:
            config = self.new_config(setup)
        except ConfigValidationError as exc:
            logger.warning("Ignoring database settings from the environment: %s", exc.message)
            return None
        # operator supplied settings are trusted as the active database
        config.isActive = True
        self.store.save_config(config)
        logger.info("Registered %s database from environment variables", config.provider.value)
        return config

    def list_migrations(self) -> list[MigrationLog]:
        return self.store.list_migrations()

    def migrate(self, to_config_id: str, from_config_id: Optional[str] = None) -> MigrationLog:
        target_config = self.get_config(to_config_id)
        self._require_tested(target_config)
        source_config = self.get_config(from_config_id) if from_config_id else None
        if from_config_id == to_config_id or (source_config is None and self.handle.config_id == to_config_id):
            raise ValueError("source and target database must differ")

        log = MigrationLog(
            id=uuid4().hex,
            fromProvider=source_config.provider.value if source_config else self.handle.current.provider,
            toProvider=target_config.provider.value,
            startedAt=_utcnow(),
        )
        self.store.save_migration(log)

        opened: list[Storage] = []
        try:
            if source_config is None or source_config.id == self.handle.config_id:
                source = self.handle.current
            else:
                source = self.build_storage(source_config)
                opened.append(source)
            target = self.build_storage(target_config)
            opened.append(target)
            log.status = MigrationStatus.in_progress
            self.store.save_migration(log)
            counts = target.copy_from(source)
        except PocketLedgerError as exc:
            log.status = MigrationStatus.failed
            log.errorMessage = exc.message
            log.completedAt = _utcnow()
            self.store.save_migration(log)
            logger.error("Migration %s to %s failed: %s", log.fromProvider, log.toProvider, exc.message)
            return log
        finally:
            for storage in opened:
                storage.close()

        log.status = MigrationStatus.completed
        log.migrationDetails = counts
        log.recordsMigrated = sum(counts.values())
        log.completedAt = _utcnow()
        self.store.save_migration(log)
        logger.info("Migrated %s records from %s to %s", log.recordsMigrated, log.fromProvider, log.toProvider)
        return log
