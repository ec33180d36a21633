import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder

from .errors import StorageError
from .schemas import DatabaseConfig, InitializationStatus, MigrationLog

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, data: dict) -> None:
    """Write JSON to *path* atomically using temp-file + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_f:
            json.dump(data, tmp_f, indent=2)
            tmp_f.flush()
            os.fsync(tmp_f.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class BootstrapStore:
    """Database configurations, migration logs and the initialization record.

    Lives in a fixed JSON file inside the data directory so it survives
    switching the active database provider.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> dict[str, Any]:
        empty: dict[str, Any] = {"configs": [], "migrations": [], "initialization": None}
        if not self.path.exists():
            return empty
        try:
            with self.path.open(encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"cannot read bootstrap store {self.path}: {exc}") from exc
        empty.update(raw)
        return empty

    def _save(self, state: dict[str, Any]) -> None:
        try:
            _atomic_write_json(self.path, jsonable_encoder(state))
        except OSError as exc:
            logger.error("Failed to write bootstrap store %s: %s", self.path, exc)
            raise StorageError(f"cannot write bootstrap store {self.path}: {exc}") from exc
        self._state = state

    def list_configs(self) -> list[DatabaseConfig]:
        return [DatabaseConfig.model_validate(item) for item in self._state["configs"]]

    def get_config(self, config_id: str) -> Optional[DatabaseConfig]:
        for config in self.list_configs():
            if config.id == config_id:
                return config
        return None

    def replace_configs(self, configs: list[DatabaseConfig]) -> None:
        """Persist the full config list in one write."""
        with self._lock:
            state = dict(self._state)
            state["configs"] = [config.model_dump(mode="json") for config in configs]
            self._save(state)

    def save_config(self, config: DatabaseConfig) -> None:
        configs = [item for item in self.list_configs() if item.id != config.id]
        configs.append(config)
        configs.sort(key=lambda item: item.createdAt)
        self.replace_configs(configs)

    def delete_config(self, config_id: str) -> None:
        self.replace_configs([item for item in self.list_configs() if item.id != config_id])

    def list_migrations(self) -> list[MigrationLog]:
        logs = [MigrationLog.model_validate(item) for item in self._state["migrations"]]
        return sorted(logs, key=lambda log: log.startedAt, reverse=True)

    def save_migration(self, log: MigrationLog) -> None:
        with self._lock:
            state = dict(self._state)
            migrations = [item for item in state["migrations"] if item.get("id") != log.id]
            migrations.append(log.model_dump(mode="json"))
            state["migrations"] = migrations
            self._save(state)

    def get_initialization(self) -> InitializationStatus:
        raw = self._state.get("initialization")
        if not raw:
            return InitializationStatus(isInitialized=False)
        return InitializationStatus.model_validate(raw)

    def save_initialization(self, status: InitializationStatus) -> None:
        with self._lock:
            state = dict(self._state)
            state["initialization"] = status.model_dump(mode="json")
            self._save(state)
