import calendar
import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi import Path as PathParam
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic.alias_generators import to_snake
from starlette.exceptions import HTTPException as StarletteHTTPException

from .activation import ActivationManager, StorageHandle
from .auth_utils import mask_secret, mask_url, verify_password
from .bootstrap import BootstrapStore
from .config import Settings, settings, setup_logging
from .connection_tester import ConnectionTester
from .errors import PocketLedgerError
from .initialization import InitializationManager
from .persistence import MemoryStorage, Storage
from .schemas import (
    AccountCreate,
    AccountResponse,
    AccountUpdate,
    AdminSetup,
    AdminUserUpdate,
    AdminValidationResponse,
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    AuthResponse,
    BalanceResponse,
    BillCreate,
    BillResponse,
    BillUpdate,
    BudgetCreate,
    BudgetResponse,
    BudgetUpdate,
    CategoryCreate,
    CategoryResponse,
    CategorySpending,
    CategoryUpdate,
    ConnectionTestResult,
    DatabaseConfig,
    DatabaseConfigResponse,
    DatabaseSetup,
    DatabaseSetupUpdate,
    DeploymentContext,
    FlowType,
    GoalCreate,
    GoalResponse,
    GoalUpdate,
    HealthResponse,
    InitializationRequest,
    InitializationResult,
    InitializationStatus,
    LoginRequest,
    MigrationLog,
    MigrationRequest,
    MonthlyExpensesResponse,
    MonthlyIncomeResponse,
    ProductCreate,
    ProductResponse,
    ProductUpdate,
    SupabaseSchemaResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionUpdate,
    UserCreate,
    UserResponse,
    UserStats,
    UserUpdate,
)
from .tables import render_schema_sql

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "pl_session"
PUBLIC_API = {"/api/health", "/api/auth/login"}

router = APIRouter()


class SessionRegistry:
    """Login sessions kept in process memory, keyed by an opaque token."""

    def __init__(self, timeout_minutes: int = 0) -> None:
        self.timeout_minutes = timeout_minutes
        self._sessions: dict[str, dict[str, Any]] = {}

    def create(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        self._sessions[token] = {"username": username, "last_seen": datetime.now(timezone.utc)}
        return token

    def username(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        session = self._sessions.get(token)
        if session is None:
            return None
        now = datetime.now(timezone.utc)
        if self.timeout_minutes and (now - session["last_seen"]) > timedelta(minutes=self.timeout_minutes):
            del self._sessions[token]
            return None
        session["last_seen"] = now
        return session["username"]

    def drop(self, token: Optional[str]) -> None:
        if token:
            self._sessions.pop(token, None)


def _extract_token_from_request(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


def _error_content(code: str, message: str, details: Optional[list[ApiErrorDetail]] = None) -> dict[str, Any]:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details or []))
    return payload.model_dump()


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_content("VALIDATION_ERROR", message, details),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


async def domain_exception_handler(request: Request, exc: PocketLedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    details = [ApiErrorDetail(field="database", message=item) for item in exc.details]
    return JSONResponse(status_code=exc.status_code, content=_error_content(exc.code, exc.message, details))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED", 409: "CONFLICT"}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(codes.get(exc.status_code, "HTTP_ERROR"), str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def api_auth_middleware(request: Request, call_next):
    path = request.url.path
    if path.startswith("/api") and path not in PUBLIC_API and not path.startswith("/api/initialization"):
        token = _extract_token_from_request(request)
        if not request.app.state.sessions.username(token):
            return JSONResponse(status_code=401, content=_error_content("UNAUTHORIZED", "authentication required"))
    return await call_next(request)


def get_storage(request: Request) -> Storage:
    # captured once per request, a concurrent switch does not affect this request
    return request.app.state.storage.current


def get_activation(request: Request) -> ActivationManager:
    return request.app.state.activation


def get_initialization(request: Request) -> InitializationManager:
    return request.app.state.initialization


def current_user(request: Request, storage: Storage = Depends(get_storage)) -> dict[str, Any]:
    token = _extract_token_from_request(request)
    username = request.app.state.sessions.username(token)
    if username is None:
        raise HTTPException(status_code=401, detail="invalid or expired token")
    user = storage.get_user_by_username(username)
    if user is None or not user.get("is_active"):
        request.app.state.sessions.drop(token)
        raise HTTPException(status_code=401, detail="user not found")
    return user


def require_admin(user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="administrator role required")
    return user


def _to_columns(payload: BaseModel) -> dict[str, Any]:
    return {to_snake(key): value for key, value in payload.model_dump(exclude_none=True).items()}


def _config_response(config: DatabaseConfig) -> DatabaseConfigResponse:
    return DatabaseConfigResponse(
        id=config.id,
        name=config.name,
        provider=config.provider,
        connectionString=mask_url(config.connectionString),
        host=config.host,
        port=config.port,
        database=config.database,
        username=config.username,
        hasPassword=bool(config.password),
        supabaseUrl=config.supabaseUrl,
        supabaseAnonKey=mask_secret(config.supabaseAnonKey),
        hasServiceKey=bool(config.supabaseServiceKey),
        ssl=config.ssl,
        maxConnections=config.maxConnections,
        autoCreateTables=config.autoCreateTables,
        isActive=config.isActive,
        isConnected=config.isConnected,
        lastConnectionTest=config.lastConnectionTest,
        lastTestError=config.lastTestError,
        createdAt=config.createdAt,
        updatedAt=config.updatedAt,
    )


@router.get("/api/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    handle: StorageHandle = request.app.state.storage
    return HealthResponse(status="ok", provider=handle.current.provider, configId=handle.config_id)


# --- initialization ---------------------------------------------------------------------


@router.get("/api/initialization/status", response_model=InitializationStatus)
async def initialization_status(manager: InitializationManager = Depends(get_initialization)) -> InitializationStatus:
    return manager.status()


@router.post("/api/initialization/admin", response_model=AdminValidationResponse)
async def initialization_validate_admin(
    payload: AdminSetup,
    manager: InitializationManager = Depends(get_initialization),
) -> AdminValidationResponse:
    manager.validate_admin(payload)
    return AdminValidationResponse(valid=True)


@router.post("/api/initialization/test-database", response_model=ConnectionTestResult)
async def initialization_test_database(
    payload: DatabaseSetup,
    manager: InitializationManager = Depends(get_initialization),
) -> ConnectionTestResult:
    return await manager.test_database(payload)


@router.post("/api/initialization", response_model=InitializationResult)
async def initialize(
    payload: InitializationRequest,
    manager: InitializationManager = Depends(get_initialization),
) -> InitializationResult:
    return await manager.initialize(payload)


@router.get("/api/initialization/deployment-context", response_model=DeploymentContext)
async def initialization_deployment_context(
    manager: InitializationManager = Depends(get_initialization),
) -> DeploymentContext:
    return manager.deployment_context()


@router.get("/api/initialization/supabase-schema", response_model=SupabaseSchemaResponse)
async def initialization_supabase_schema() -> SupabaseSchemaResponse:
    return SupabaseSchemaResponse(sql=render_schema_sql())


# --- auth ---------------------------------------------------------------------------------


@router.post("/api/auth/login", response_model=AuthResponse)
async def auth_login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    storage: Storage = Depends(get_storage),
) -> AuthResponse:
    user = storage.get_user_by_username(payload.username.strip())
    if user is None or not verify_password(payload.password, user.get("password_hash")):
        raise HTTPException(status_code=401, detail="invalid username or password")
    if not user.get("is_active"):
        raise HTTPException(status_code=403, detail="account is disabled")
    user = storage.update_user(user["id"], {"last_login_at": datetime.now(timezone.utc)})
    token = request.app.state.sessions.create(user["username"])
    response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False)
    logger.info("User %s logged in", user["username"])
    return AuthResponse(token=token, user=UserResponse.model_validate(user))


@router.post("/api/auth/logout", status_code=204)
async def auth_logout(request: Request, response: Response) -> Response:
    request.app.state.sessions.drop(_extract_token_from_request(request))
    response.delete_cookie(SESSION_COOKIE_NAME)
    response.status_code = 204
    return response


@router.get("/api/auth/user", response_model=UserResponse)
async def auth_user(user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
    return user


@router.put("/api/auth/profile", response_model=UserResponse)
async def auth_update_profile(
    payload: UserUpdate,
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> dict[str, Any]:
    return storage.update_user(user["id"], _to_columns(payload))


# --- administration -------------------------------------------------------------------


@router.get("/api/admin/users", response_model=list[UserResponse])
async def admin_list_users(
    admin: dict[str, Any] = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list_users()


@router.get("/api/admin/users/stats", response_model=UserStats)
async def admin_user_stats(
    admin: dict[str, Any] = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> dict[str, int]:
    return storage.user_stats()


@router.post("/api/admin/users", response_model=UserResponse, status_code=201)
async def admin_create_user(
    payload: UserCreate,
    admin: dict[str, Any] = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> dict[str, Any]:
    user = storage.create_user(_to_columns(payload))
    logger.info("Admin %s created user %s", admin["username"], user["username"])
    return user


@router.put("/api/admin/users/{user_id}", response_model=UserResponse)
async def admin_update_user(
    user_id: int,
    payload: AdminUserUpdate,
    admin: dict[str, Any] = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> dict[str, Any]:
    return storage.update_user(user_id, _to_columns(payload))


@router.delete("/api/admin/users/{user_id}", status_code=204)
async def admin_delete_user(
    user_id: int,
    admin: dict[str, Any] = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> Response:
    if user_id == admin["id"]:
        raise HTTPException(status_code=409, detail="administrators cannot delete their own account")
    if not storage.delete_user(user_id):
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}")
    return Response(status_code=204)


@router.get("/api/admin/databases", response_model=list[DatabaseConfigResponse])
async def admin_list_databases(
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> list[DatabaseConfigResponse]:
    return [_config_response(config) for config in manager.list_configs()]


@router.post("/api/admin/databases", response_model=DatabaseConfigResponse, status_code=201)
async def admin_add_database(
    payload: DatabaseSetup,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> DatabaseConfigResponse:
    return _config_response(manager.add_config(payload))


@router.get("/api/admin/databases/migrations", response_model=list[MigrationLog])
async def admin_list_migrations(
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> list[MigrationLog]:
    return manager.list_migrations()


@router.post("/api/admin/databases/migrate", response_model=MigrationLog)
async def admin_migrate_database(
    payload: MigrationRequest,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> MigrationLog:
    # copying every table blocks on both databases
    return await run_in_threadpool(manager.migrate, payload.toConfigId, payload.fromConfigId)


@router.get("/api/admin/databases/{config_id}", response_model=DatabaseConfigResponse)
async def admin_get_database(
    config_id: str,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> DatabaseConfigResponse:
    return _config_response(manager.get_config(config_id))


@router.put("/api/admin/databases/{config_id}", response_model=DatabaseConfigResponse)
async def admin_update_database(
    config_id: str,
    payload: DatabaseSetupUpdate,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> DatabaseConfigResponse:
    return _config_response(manager.update_config(config_id, payload.model_dump(exclude_none=True)))


@router.post("/api/admin/databases/{config_id}/test", response_model=ConnectionTestResult)
async def admin_test_database(
    config_id: str,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> ConnectionTestResult:
    return await manager.test_config(config_id)


@router.post("/api/admin/databases/{config_id}/activate", response_model=DatabaseConfigResponse)
async def admin_activate_database(
    config_id: str,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> DatabaseConfigResponse:
    # opening the target and preparing its schema block on the database
    return _config_response(await run_in_threadpool(manager.activate, config_id))


@router.delete("/api/admin/databases/{config_id}", status_code=204)
async def admin_delete_database(
    config_id: str,
    admin: dict[str, Any] = Depends(require_admin),
    manager: ActivationManager = Depends(get_activation),
) -> Response:
    manager.delete_config(config_id)
    return Response(status_code=204)


# --- finance entities -----------------------------------------------------------------


def _entity_routes(entity: str, path: str, create_model: type, update_model: type, response_model: type) -> None:
    """Register create/get/update/delete routes for one user-scoped entity."""
    singular = "category" if entity == "categories" else entity[:-1]

    @router.post(path, response_model=response_model, status_code=201, name=f"create_{singular}")
    async def create_entity(
        payload: create_model,
        user: dict[str, Any] = Depends(current_user),
        storage: Storage = Depends(get_storage),
    ) -> dict[str, Any]:
        return storage.create(entity, user["id"], _to_columns(payload))

    @router.get(f"{path}/{{entity_id}}", response_model=response_model, name=f"get_{singular}")
    async def get_entity(
        entity_id: int,
        user: dict[str, Any] = Depends(current_user),
        storage: Storage = Depends(get_storage),
    ) -> dict[str, Any]:
        return storage.get(entity, user["id"], entity_id)

    @router.put(f"{path}/{{entity_id}}", response_model=response_model, name=f"update_{singular}")
    async def update_entity(
        entity_id: int,
        payload: update_model,
        user: dict[str, Any] = Depends(current_user),
        storage: Storage = Depends(get_storage),
    ) -> dict[str, Any]:
        return storage.update(entity, user["id"], entity_id, _to_columns(payload))

    @router.delete(f"{path}/{{entity_id}}", status_code=204, name=f"delete_{singular}")
    async def delete_entity(
        entity_id: int,
        user: dict[str, Any] = Depends(current_user),
        storage: Storage = Depends(get_storage),
    ) -> Response:
        storage.delete(entity, user["id"], entity_id)
        return Response(status_code=204)


@router.get("/api/accounts", response_model=list[AccountResponse])
async def list_accounts(
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list("accounts", user["id"], {"isActive": is_active})


@router.get("/api/categories", response_model=list[CategoryResponse])
async def list_categories(
    flow_type: Optional[FlowType] = Query(default=None, alias="type"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list("categories", user["id"], {"type": flow_type})


@router.get("/api/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    account_id: Optional[int] = Query(default=None, alias="accountId"),
    category_id: Optional[int] = Query(default=None, alias="categoryId"),
    flow_type: Optional[FlowType] = Query(default=None, alias="type"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    filters = {
        "accountId": account_id,
        "categoryId": category_id,
        "type": flow_type,
        "startDate": start_date,
        "endDate": end_date,
    }
    return storage.list("transactions", user["id"], filters)


@router.get("/api/budgets", response_model=list[BudgetResponse])
async def list_budgets(
    category_id: Optional[int] = Query(default=None, alias="categoryId"),
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list("budgets", user["id"], {"categoryId": category_id, "isActive": is_active})


@router.get("/api/goals", response_model=list[GoalResponse])
async def list_goals(
    is_completed: Optional[bool] = Query(default=None, alias="isCompleted"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list("goals", user["id"], {"isCompleted": is_completed})


@router.get("/api/bills", response_model=list[BillResponse])
async def list_bills(
    account_id: Optional[int] = Query(default=None, alias="accountId"),
    category_id: Optional[int] = Query(default=None, alias="categoryId"),
    is_paid: Optional[bool] = Query(default=None, alias="isPaid"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list("bills", user["id"], {"accountId": account_id, "categoryId": category_id, "isPaid": is_paid})


@router.get("/api/products", response_model=list[ProductResponse])
async def list_products(
    barcode: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.list("products", user["id"], {"barcode": barcode, "category": category})


@router.get("/api/products/search", response_model=list[ProductResponse])
async def search_products(
    q: str = Query(min_length=1),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    return storage.search_products(user["id"], q)


# --- analytics ------------------------------------------------------------------------

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def _month_bounds(month: str) -> tuple[date, date]:
    year, number = (int(part) for part in month.split("-"))
    return date(year, number, 1), date(year, number, calendar.monthrange(year, number)[1])


@router.get("/api/analytics/balance", response_model=BalanceResponse)
async def analytics_balance(
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> BalanceResponse:
    return BalanceResponse(balance=storage.account_balance(user["id"]))


@router.get("/api/analytics/income/{month}", response_model=MonthlyIncomeResponse)
async def analytics_income(
    month: str = PathParam(pattern=MONTH_PATTERN),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> MonthlyIncomeResponse:
    income = storage.flow_total(user["id"], FlowType.income.value, *_month_bounds(month))
    return MonthlyIncomeResponse(month=month, income=income)


@router.get("/api/analytics/expenses/{month}", response_model=MonthlyExpensesResponse)
async def analytics_expenses(
    month: str = PathParam(pattern=MONTH_PATTERN),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> MonthlyExpensesResponse:
    expenses = storage.flow_total(user["id"], FlowType.expense.value, *_month_bounds(month))
    return MonthlyExpensesResponse(month=month, expenses=expenses)


@router.get("/api/analytics/category-spending", response_model=list[CategorySpending])
async def analytics_category_spending(
    start_date: date = Query(alias="startDate"),
    end_date: date = Query(alias="endDate"),
    user: dict[str, Any] = Depends(current_user),
    storage: Storage = Depends(get_storage),
) -> list[dict[str, Any]]:
    if start_date > end_date:
        raise ValueError("startDate must not be after endDate")
    return storage.category_spending(user["id"], start_date, end_date)


_entity_routes("accounts", "/api/accounts", AccountCreate, AccountUpdate, AccountResponse)
_entity_routes("categories", "/api/categories", CategoryCreate, CategoryUpdate, CategoryResponse)
_entity_routes("transactions", "/api/transactions", TransactionCreate, TransactionUpdate, TransactionResponse)
_entity_routes("budgets", "/api/budgets", BudgetCreate, BudgetUpdate, BudgetResponse)
_entity_routes("goals", "/api/goals", GoalCreate, GoalUpdate, GoalResponse)
_entity_routes("bills", "/api/bills", BillCreate, BillUpdate, BillResponse)
_entity_routes("products", "/api/products", ProductCreate, ProductUpdate, ProductResponse)


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or settings
    setup_logging(config)
    Path(config.data_dir).mkdir(parents=True, exist_ok=True)

    store = BootstrapStore(config.bootstrap_path)
    handle = StorageHandle(MemoryStorage())
    tester = ConnectionTester(config)
    activation = ActivationManager(store, handle, tester, config)
    activation.bootstrap()

    application = FastAPI(
        title="Pocket Ledger API",
        version="0.1.0",
        description="Personal finance API with switchable database providers.",
    )
    application.state.settings = config
    application.state.storage = handle
    application.state.activation = activation
    application.state.initialization = InitializationManager(store, activation, tester, config)
    application.state.sessions = SessionRegistry(config.session_timeout_minutes)

    application.add_exception_handler(RequestValidationError, validation_exception_handler)
    application.add_exception_handler(ValueError, value_error_exception_handler)
    application.add_exception_handler(PocketLedgerError, domain_exception_handler)
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.middleware("http")(api_auth_middleware)
    application.include_router(router)
    return application


app = create_app()
