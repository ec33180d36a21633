from typing import Optional
from urllib.parse import urlparse

from .schemas import ValidationResult


class RuleCollector:
    """Accumulates every rule violation so callers see all problems at once."""

    def __init__(self) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def error(self, message: str) -> None:
        self.errors.append(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def require(self, value: Optional[object], message: str) -> bool:
        if value is None or (isinstance(value, str) and not value.strip()):
            self.error(message)
            return False
        return True

    def check_scheme(self, url: str, schemes: tuple[str, ...], message: str) -> None:
        scheme = url.split("://", 1)[0].lower() if "://" in url else ""
        if scheme not in schemes:
            self.error(message)

    def result(self) -> ValidationResult:
        return ValidationResult(isValid=not self.errors, errors=list(self.errors), warnings=list(self.warnings))


def is_supabase_url(url: str) -> bool:
    parsed = urlparse(url)
    host = parsed.hostname or ""
    if parsed.scheme != "https" or not host.endswith(".supabase.co"):
        return False
    project = host[: -len(".supabase.co")]
    return bool(project) and "." not in project
