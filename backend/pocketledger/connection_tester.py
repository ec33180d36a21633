import logging
import re
import time

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .providers import ConnectionProbeError, get_provider, validate_database_config
from .schemas import ConnectionErrorType, ConnectionTestResult, DatabaseSetup

logger = logging.getLogger(__name__)

_AUTH_PATTERNS = re.compile(
    r"password authentication failed|access denied|authentication failed|invalid api key|"
    r"invalid password|no password supplied|role .* does not exist|jwt",
    re.IGNORECASE,
)
_HOST_PATTERNS = re.compile(
    r"could not translate host name|name or service not known|nodename nor servname|"
    r"getaddrinfo|unknown host|enotfound|can't connect to mysql server on",
    re.IGNORECASE,
)
_TIMEOUT_PATTERNS = re.compile(r"timed out|timeout", re.IGNORECASE)
_REFUSED_PATTERNS = re.compile(r"connection refused|econnrefused|could not connect|is the server running", re.IGNORECASE)


def _raw_message(exc: Exception) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).strip() or exc.__class__.__name__


def classify_error(exc: Exception) -> tuple[ConnectionErrorType, str]:
    """Map a driver exception to an error category and a readable message."""
    if isinstance(exc, ConnectionProbeError):
        return exc.kind, str(exc)
    raw = _raw_message(exc)
    if isinstance(exc, httpx.TimeoutException) or (_TIMEOUT_PATTERNS.search(raw) and not _AUTH_PATTERNS.search(raw)):
        return ConnectionErrorType.network, "Connection timed out. The database server did not answer in time."
    if _AUTH_PATTERNS.search(raw):
        return ConnectionErrorType.auth, "Authentication failed. Please check your username, password or API key."
    if _HOST_PATTERNS.search(raw):
        return ConnectionErrorType.network, "Host not found. Please check the database host name."
    if isinstance(exc, httpx.TransportError) or _REFUSED_PATTERNS.search(raw):
        return ConnectionErrorType.network, f"Network error: could not reach the database server ({raw})"
    if isinstance(exc, SQLAlchemyError):
        return ConnectionErrorType.unknown, raw
    return ConnectionErrorType.unknown, f"{exc.__class__.__name__}: {raw}"


class ConnectionTester:
    """Runs a single, side-effect free connection attempt for a candidate configuration."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def test_connection(self, config: DatabaseSetup) -> ConnectionTestResult:
        validation = validate_database_config(config)
        if not validation.isValid:
            return ConnectionTestResult(
                success=False,
                error="; ".join(validation.errors),
                errorType=ConnectionErrorType.validation,
                warnings=validation.warnings,
            )
        strategy = get_provider(config.provider)
        started = time.perf_counter()
        try:
            outcome = await strategy.probe(config, self.settings)
        except Exception as exc:  # every driver failure becomes a result
            kind, message = classify_error(exc)
            logger.warning("Connection test for %s failed (%s): %s", config.provider.value, kind.value, _raw_message(exc))
            return ConnectionTestResult(
                success=False,
                latencyMs=int((time.perf_counter() - started) * 1000),
                error=message,
                errorType=kind,
                warnings=validation.warnings,
            )
        logger.info(
            "Connection test for %s succeeded in %sms, missing tables: %s",
            config.provider.value,
            outcome.latency_ms,
            ", ".join(outcome.details.missingTables) or "none",
        )
        return ConnectionTestResult(
            success=True,
            latencyMs=outcome.latency_ms,
            details=outcome.details,
            warnings=validation.warnings,
        )
