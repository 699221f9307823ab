"""Configuration settings for the context memory service."""

import logging
import sys
from pathlib import Path

from pydantic_settings import BaseSettings
from rich.console import Console
from rich.logging import RichHandler

# Repository root (where alembic.ini and the backups live for repo installs)
_PACKAGE_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "claude_context"
    db_user: str = "context"
    db_password: str = "context"
    db_pool_size: int = 5
    db_max_overflow: int = 5

    # Timeouts
    db_connect_timeout: int = 10  # seconds
    db_statement_timeout: int = 30_000  # milliseconds
    backup_command_timeout: int = 600  # seconds

    # Semantic search
    embedding_dimensions: int = 1536
    vector_ef_search: int = 200  # hnsw candidate list; must cover the largest limit

    # Logging
    log_level: str = "INFO"

    # Backups
    backup_label: str = "context_memory"
    backup_staging_dir: Path = _PACKAGE_DIR / "backups" / "github"
    backup_repo_dir: Path = _PACKAGE_DIR
    backup_subdir: str = "database-backups"
    backup_retention: int = 10
    git_remote: str = "origin"
    git_branch: str = "main"
    repo_owner: str | None = None
    repo_name: str | None = None

    # External commands
    pg_dump_cmd: str = "pg_dump"
    git_cmd: str = "git"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "CONTEXT_"
        env_file = ".env"


# Global settings instance
settings = Settings()


def setup_logging(level: str | None = None) -> None:
    """Send log records to stderr; stdout is reserved for the MCP stream."""
    handler = RichHandler(
        console=Console(file=sys.stderr),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    for noisy in ("sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
