class PocketLedgerError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class StorageError(PocketLedgerError):
    status_code = 500
    code = "STORAGE_ERROR"


class NotFoundError(PocketLedgerError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(PocketLedgerError):
    status_code = 409
    code = "CONFLICT"


class ConfigValidationError(PocketLedgerError):
    status_code = 400
    code = "CONFIG_INVALID"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid database configuration: " + "; ".join(errors), errors)
        self.errors = errors


class ConnectionTestRequiredError(PocketLedgerError):
    status_code = 409
    code = "CONNECTION_TEST_REQUIRED"

    def __init__(self, config_name: str) -> None:
        super().__init__(
            f"Connection Test Required: run a successful connection test for '{config_name}' before activating it"
        )


class ActiveDatabaseError(PocketLedgerError):
    status_code = 409
    code = "ACTIVE_DATABASE"


class ActivationError(PocketLedgerError):
    status_code = 502
    code = "ACTIVATION_FAILED"


class AlreadyInitializedError(PocketLedgerError):
    status_code = 409
    code = "ALREADY_INITIALIZED"

    def __init__(self) -> None:
        super().__init__("Application is already initialized")


class ConnectionFailedError(PocketLedgerError):
    status_code = 400
    code = "CONNECTION_FAILED"


class SetupRequiredError(StorageError):
    """A Supabase table is missing and cannot be created automatically.

    The message is multi-line and meant to be shown to the operator as is.
    """

    status_code = 424
    code = "SETUP_REQUIRED"

    def __init__(self, table: str, project_url: str, reason: str) -> None:
        message = "\n".join(
            [
                f"SETUP REQUIRED: table '{table}' does not exist in the Supabase project {project_url}.",
                f"Reason: {reason}",
                "To fix it:",
                "  1. Open the SQL editor of your Supabase dashboard.",
                "  2. Run the schema returned by GET /api/initialization/supabase-schema.",
                "  3. Retry the request, or supply the service role key so tables can be created automatically.",
            ]
        )
        super().__init__(message)
        self.table = table
