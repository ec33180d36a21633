import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_snake


class DatabaseProvider(str, Enum):
    postgresql = "postgresql"
    supabase = "supabase"
    sqlite = "sqlite"
    neon = "neon"
    mysql = "mysql"
    planetscale = "planetscale"


class MigrationStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class ConnectionErrorType(str, Enum):
    validation = "validation"
    auth = "auth"
    network = "network"
    unknown = "unknown"


class UserRole(str, Enum):
    user = "user"
    admin = "admin"


class FlowType(str, Enum):
    income = "income"
    expense = "expense"


class BudgetPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class BillFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    status: str
    provider: str
    configId: Optional[str] = None


# --- database configuration -------------------------------------------------


class CredentialInput(BaseModel):
    """Normalizes the text fields a setup form posts, for both create and update."""

    @field_validator("port", mode="before", check_fields=False)
    @classmethod
    def blank_port(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "connectionString",
        "host",
        "database",
        "username",
        "supabaseUrl",
        "supabaseAnonKey",
        "supabaseServiceKey",
        check_fields=False,
    )
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else value


class DatabaseSetup(CredentialInput):
    provider: DatabaseProvider
    name: str = Field(default="Primary database", min_length=1, max_length=120)
    connectionString: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    supabaseUrl: Optional[str] = None
    supabaseAnonKey: Optional[str] = None
    supabaseServiceKey: Optional[str] = None
    ssl: bool = True
    maxConnections: int = Field(default=10, ge=1, le=100)
    autoCreateTables: bool = False
    generateEnvFile: bool = False


class DatabaseSetupUpdate(CredentialInput):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    connectionString: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    supabaseUrl: Optional[str] = None
    supabaseAnonKey: Optional[str] = None
    supabaseServiceKey: Optional[str] = None
    ssl: Optional[bool] = None
    maxConnections: Optional[int] = Field(default=None, ge=1, le=100)
    autoCreateTables: Optional[bool] = None


class DatabaseConfig(DatabaseSetup):
    id: str
    isActive: bool = False
    isConnected: bool = False
    lastConnectionTest: Optional[datetime] = None
    lastTestError: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class DatabaseConfigResponse(BaseModel):
    id: str
    name: str
    provider: DatabaseProvider
    connectionString: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    hasPassword: bool = False
    supabaseUrl: Optional[str] = None
    supabaseAnonKey: Optional[str] = None
    hasServiceKey: bool = False
    ssl: bool
    maxConnections: int
    autoCreateTables: bool
    isActive: bool
    isConnected: bool
    lastConnectionTest: Optional[datetime] = None
    lastTestError: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class ValidationResult(BaseModel):
    isValid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ConnectionDetails(BaseModel):
    provider: DatabaseProvider
    host: Optional[str] = None
    database: Optional[str] = None
    version: Optional[str] = None
    ssl: Optional[bool] = None
    missingTables: list[str] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    success: bool
    latencyMs: Optional[int] = None
    details: Optional[ConnectionDetails] = None
    error: Optional[str] = None
    errorType: Optional[ConnectionErrorType] = None
    warnings: list[str] = Field(default_factory=list)


class MigrationRequest(BaseModel):
    fromConfigId: Optional[str] = None
    toConfigId: str


class MigrationLog(BaseModel):
    id: str
    fromProvider: Optional[str] = None
    toProvider: str
    status: MigrationStatus = MigrationStatus.pending
    startedAt: datetime
    completedAt: Optional[datetime] = None
    recordsMigrated: int = 0
    errorMessage: Optional[str] = None
    migrationDetails: dict[str, int] = Field(default_factory=dict)


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain or domain.startswith(".") or domain.endswith("."):
        raise ValueError("must be a valid email address")
    return value


# --- initialization ------------------------------------------------------------


class AdminSetup(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=100)
    confirmPassword: str
    firstName: str = Field(min_length=1, max_length=100)
    lastName: str = Field(min_length=1, max_length=100)

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        value = value.strip()
        if not value.replace("_", "").replace("-", "").replace(".", "").isalnum():
            raise ValueError("username may contain letters, digits, '.', '-' and '_' only")
        return value

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)

    @model_validator(mode="after")
    def validate_passwords_match(self) -> "AdminSetup":
        if self.password != self.confirmPassword:
            raise ValueError("passwords do not match")
        return self


class AdminValidationResponse(BaseModel):
    valid: bool


class InitializationRequest(BaseModel):
    admin: AdminSetup
    database: DatabaseSetup


class InitializationAdminSummary(BaseModel):
    id: int
    username: str
    email: str


class InitializationDatabaseSummary(BaseModel):
    provider: DatabaseProvider
    name: str
    configId: str


class InitializationStatus(BaseModel):
    isInitialized: bool
    adminUser: Optional[InitializationAdminSummary] = None
    database: Optional[InitializationDatabaseSummary] = None
    createdAt: Optional[datetime] = None


class InitializationResult(BaseModel):
    success: bool
    adminUser: InitializationAdminSummary
    database: InitializationDatabaseSummary
    envFileWritten: bool = False


class ProviderRecommendation(BaseModel):
    title: str
    description: str
    tips: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class DeploymentContext(BaseModel):
    isDocker: bool
    hasEnvFile: bool
    detectedProvider: Optional[DatabaseProvider] = None
    recommendations: dict[str, ProviderRecommendation]


class SupabaseSchemaResponse(BaseModel):
    sql: str


# --- auth and users --------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=100)


class RowModel(BaseModel):
    """Response model filled straight from a snake_case storage row."""

    model_config = ConfigDict(alias_generator=AliasGenerator(validation_alias=to_snake), populate_by_name=True)


class UserResponse(RowModel):
    id: int
    username: str
    email: str
    firstName: str
    lastName: str
    role: UserRole
    isActive: bool
    lastLoginAt: Optional[datetime] = None
    createdAt: datetime


class AuthResponse(BaseModel):
    token: str
    user: UserResponse


class UserUpdate(BaseModel):
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    firstName: Optional[str] = Field(default=None, min_length=1, max_length=100)
    lastName: Optional[str] = Field(default=None, min_length=1, max_length=100)
    password: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: Optional[str]) -> Optional[str]:
        # empty means "keep the current password"
        if value and len(value) < 8:
            raise ValueError("password must have at least 8 characters")
        return value


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=100)
    firstName: str = Field(min_length=1, max_length=100)
    lastName: str = Field(min_length=1, max_length=100)
    role: UserRole = UserRole.user

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class AdminUserUpdate(UserUpdate):
    role: Optional[UserRole] = None
    isActive: Optional[bool] = None


# --- finance entities --------------------------------------------------------------


class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: str = Field(min_length=1, max_length=50)
    balance: Decimal = Decimal("0")
    currency: str = "USD"
    isActive: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        up = value.upper()
        if len(up) != 3:
            raise ValueError("must be 3-letter ISO code")
        return up


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[str] = Field(default=None, min_length=1, max_length=50)
    balance: Optional[Decimal] = None
    currency: Optional[str] = None
    isActive: Optional[bool] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        up = value.upper()
        if len(up) != 3:
            raise ValueError("must be 3-letter ISO code")
        return up


class AccountResponse(RowModel):
    id: int
    name: str
    type: str
    balance: Decimal
    currency: str
    isActive: bool
    createdAt: datetime


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: FlowType
    color: str = Field(default="#0F766E", pattern=r"^#[0-9A-Fa-f]{6}$")
    parentId: Optional[int] = None
    isDefault: bool = False


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[FlowType] = None
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    parentId: Optional[int] = None
    isDefault: Optional[bool] = None


class CategoryResponse(RowModel):
    id: int
    name: str
    type: FlowType
    color: str
    parentId: Optional[int] = None
    isDefault: bool


class TransactionCreate(BaseModel):
    accountId: int
    categoryId: int
    amount: Decimal = Field(gt=Decimal("0"))
    description: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = None
    date: date
    type: FlowType


class TransactionUpdate(BaseModel):
    accountId: Optional[int] = None
    categoryId: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    notes: Optional[str] = None
    # the field name shadows the type once the default is bound
    date: Optional[dt.date] = None
    type: Optional[FlowType] = None


class TransactionResponse(RowModel):
    id: int
    accountId: int
    categoryId: int
    amount: Decimal
    description: str
    notes: Optional[str] = None
    date: date
    type: FlowType
    createdAt: datetime


class BudgetCreate(BaseModel):
    categoryId: int
    amount: Decimal = Field(gt=Decimal("0"))
    period: BudgetPeriod = BudgetPeriod.monthly
    startDate: date
    endDate: date
    isActive: bool = True

    @model_validator(mode="after")
    def validate_dates(self) -> "BudgetCreate":
        if self.endDate < self.startDate:
            raise ValueError("endDate must be on or after startDate")
        return self


class BudgetUpdate(BaseModel):
    categoryId: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    period: Optional[BudgetPeriod] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    isActive: Optional[bool] = None


class BudgetResponse(RowModel):
    id: int
    categoryId: int
    amount: Decimal
    period: BudgetPeriod
    startDate: date
    endDate: date
    isActive: bool
    createdAt: datetime


class GoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    targetAmount: Decimal = Field(gt=Decimal("0"))
    currentAmount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    targetDate: Optional[date] = None
    isCompleted: bool = False


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    targetAmount: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    currentAmount: Optional[Decimal] = Field(default=None, ge=Decimal("0"))
    targetDate: Optional[date] = None
    isCompleted: Optional[bool] = None


class GoalResponse(RowModel):
    id: int
    name: str
    description: Optional[str] = None
    targetAmount: Decimal
    currentAmount: Decimal
    targetDate: Optional[date] = None
    isCompleted: bool
    createdAt: datetime


class BillCreate(BaseModel):
    categoryId: int
    accountId: int
    name: str = Field(min_length=1, max_length=100)
    amount: Decimal = Field(gt=Decimal("0"))
    dueDate: date
    frequency: BillFrequency = BillFrequency.monthly
    isRecurring: bool = True
    isPaid: bool = False
    notes: Optional[str] = None


class BillUpdate(BaseModel):
    categoryId: Optional[int] = None
    accountId: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    dueDate: Optional[date] = None
    frequency: Optional[BillFrequency] = None
    isRecurring: Optional[bool] = None
    isPaid: Optional[bool] = None
    notes: Optional[str] = None


class BillResponse(RowModel):
    id: int
    categoryId: int
    accountId: int
    name: str
    amount: Decimal
    dueDate: date
    frequency: BillFrequency
    isRecurring: bool
    isPaid: bool
    notes: Optional[str] = None
    createdAt: datetime


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    barcode: Optional[str] = Field(default=None, max_length=64)
    category: Optional[str] = None
    brand: Optional[str] = None
    lastPrice: Optional[Decimal] = Field(default=None, ge=Decimal("0"))
    averagePrice: Optional[Decimal] = Field(default=None, ge=Decimal("0"))


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    barcode: Optional[str] = Field(default=None, max_length=64)
    category: Optional[str] = None
    brand: Optional[str] = None
    lastPrice: Optional[Decimal] = Field(default=None, ge=Decimal("0"))
    averagePrice: Optional[Decimal] = Field(default=None, ge=Decimal("0"))


class ProductResponse(RowModel):
    id: int
    name: str
    barcode: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    lastPrice: Optional[Decimal] = None
    averagePrice: Optional[Decimal] = None
    createdAt: datetime


# --- analytics --------------------------------------------------------------


class BalanceResponse(BaseModel):
    balance: Decimal


class MonthlyIncomeResponse(BaseModel):
    month: str
    income: Decimal


class MonthlyExpensesResponse(BaseModel):
    month: str
    expenses: Decimal


class CategorySpending(RowModel):
    categoryId: int
    categoryName: str
    amount: Decimal


class UserStats(RowModel):
    totalUsers: int
    activeUsers: int
    adminUsers: int
