import asyncio
import logging
from datetime import datetime, timezone

from fastapi.concurrency import run_in_threadpool

from .activation import ActivationManager
from .bootstrap import BootstrapStore
from .config import Settings
from .connection_tester import ConnectionTester
from .environment import detect_environment_config, has_env_file, is_docker, write_env_file
from .errors import AlreadyInitializedError, ConnectionFailedError, PocketLedgerError
from .persistence import Storage
from .providers import PROVIDERS, get_provider
from .schemas import (
    AdminSetup,
    ConnectionTestResult,
    DatabaseProvider,
    DatabaseSetup,
    DeploymentContext,
    InitializationAdminSummary,
    InitializationDatabaseSummary,
    InitializationRequest,
    InitializationResult,
    InitializationStatus,
)

logger = logging.getLogger(__name__)


class InitializationManager:
    """First-run setup: create the administrator and commit the first database.

    The commit order is fixed: build the target adapter, create the admin in
    it, then persist and activate the configuration. When activation fails
    after the admin was created, the admin row is deleted again and the
    unactivated configuration is dropped.
    """

    def __init__(
        self,
        store: BootstrapStore,
        activation: ActivationManager,
        tester: ConnectionTester,
        settings: Settings,
    ) -> None:
        self.store = store
        self.activation = activation
        self.tester = tester
        self.settings = settings
        self._lock = asyncio.Lock()

    def status(self) -> InitializationStatus:
        return self.store.get_initialization()

    def is_initialized(self) -> bool:
        return self.store.get_initialization().isInitialized

    def require_uninitialized(self) -> None:
        if self.is_initialized():
            raise AlreadyInitializedError()

    def validate_admin(self, admin: AdminSetup) -> None:
        # field rules run in the model, nothing is stored here
        self.require_uninitialized()

    async def test_database(self, setup: DatabaseSetup) -> ConnectionTestResult:
        self.require_uninitialized()
        return await self.tester.test_connection(setup)

    async def initialize(self, request: InitializationRequest) -> InitializationResult:
        # a second wizard submit waits here and then finds the system initialized
        async with self._lock:
            return await self._initialize(request)

    async def _initialize(self, request: InitializationRequest) -> InitializationResult:
        self.require_uninitialized()
        setup = request.database
        test_result = None
        if setup.provider != DatabaseProvider.sqlite:
            test_result = await self.tester.test_connection(setup)
            if not test_result.success:
                raise ConnectionFailedError(f"Database connection failed: {test_result.error}")
        config = self.activation.new_config(setup, test_result)

        # adapter construction, schema creation and the admin insert all block on the database
        storage = await run_in_threadpool(self.activation.build_storage, config)
        admin = request.admin
        try:
            user = await run_in_threadpool(
                storage.create_user,
                {
                    "username": admin.username,
                    "email": admin.email,
                    "password": admin.password,
                    "first_name": admin.firstName,
                    "last_name": admin.lastName,
                    "role": "admin",
                },
            )
        except PocketLedgerError:
            await run_in_threadpool(storage.close)
            raise

        try:
            config = await run_in_threadpool(self.activation.activate_new, config, storage)
        except PocketLedgerError as exc:
            logger.error("Activation failed during initialization, removing admin %s: %s", admin.username, exc.message)
            await run_in_threadpool(self._compensate, storage, user["id"], config.id)
            raise

        env_written = False
        if setup.generateEnvFile:
            values = get_provider(config.provider).environment(config, self.settings, docker=is_docker())
            write_env_file(self.settings, values)
            env_written = True

        status = InitializationStatus(
            isInitialized=True,
            adminUser=InitializationAdminSummary(id=user["id"], username=user["username"], email=user["email"]),
            database=InitializationDatabaseSummary(provider=config.provider, name=config.name, configId=config.id),
            createdAt=datetime.now(timezone.utc),
        )
        self.store.save_initialization(status)
        logger.info("Initialization completed with %s database '%s'", config.provider.value, config.name)
        return InitializationResult(
            success=True,
            adminUser=status.adminUser,
            database=status.database,
            envFileWritten=env_written,
        )

    def _compensate(self, storage: Storage, user_id: int, config_id: str) -> None:
        try:
            storage.delete_user(user_id)
        except PocketLedgerError as exc:
            logger.error("Could not remove admin user %s after failed activation: %s", user_id, exc.message)
        self.activation.discard_config(config_id)
        storage.close()

    def deployment_context(self) -> DeploymentContext:
        docker = is_docker()
        detected = detect_environment_config(self.settings)
        return DeploymentContext(
            isDocker=docker,
            hasEnvFile=has_env_file(self.settings),
            detectedProvider=detected.provider if detected else None,
            recommendations={
                provider.value: strategy.recommendation(docker) for provider, strategy in PROVIDERS.items()
            },
        )
