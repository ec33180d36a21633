import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    data_dir: str = os.getenv("DATA_DIR", "data")
    env_file: str = os.getenv("ENV_FILE", ".env")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    db_connect_timeout: int = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    sql_echo: bool = os.getenv("SQL_ECHO", "false").strip().lower() in {"1", "true", "yes"}
    session_timeout_minutes: int = int(os.getenv("SESSION_TIMEOUT_MINUTES", "0"))
    database_url: str = os.getenv("DATABASE_URL", "")
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_anon_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    supabase_service_key: str = os.getenv("SUPABASE_SERVICE_KEY", "")

    @property
    def bootstrap_path(self) -> Path:
        return Path(self.data_dir) / "system.json"

    @property
    def default_sqlite_path(self) -> str:
        return str(Path(self.data_dir) / "finance.db")


def setup_logging(config: Settings) -> None:
    level = getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # driver chatter drowns out request logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if config.sql_echo else logging.WARNING)


settings = Settings()
