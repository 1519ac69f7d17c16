import os
import sqlite3
import sys
from datetime import date
from pathlib import Path
from typing import FrozenSet, Optional

import logfire
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

# Setup base path
BASE_DIR = Path(__file__).parent.parent

# Load environment variables
load_dotenv(BASE_DIR / ".env")  # Load non-sensitive configs first
load_dotenv(BASE_DIR / ".env.secrets")  # Load sensitive configs (these will override)

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level}</level> | <level>{message}</level>"

# Setup logging
logger.remove()  # Remove default handler

# File logging - detailed logs
logger.add(
    "logs/visit_adjust.log",
    rotation="500 MB",
    retention="10 days",
    compression="zip",
    backtrace=True,
    diagnose=True,
    enqueue=True,
    catch=True,
    format=LOG_FORMAT,
    level="DEBUG",  # Log everything to file
)

# Console logging - only important messages
logger.add(
    sys.stderr,
    format="<level>{message}</level>",
    level="WARNING",  # Only warnings and errors to console
    backtrace=True,
    diagnose=True,
)

# Public holidays on which normal-tier adjustments are refused
DEFAULT_HOLIDAYS: FrozenSet[date] = frozenset(
    date.fromisoformat(d)
    for d in [
        "2025-01-01",
        "2025-02-10", "2025-02-11", "2025-02-12", "2025-02-13",
        "2025-02-14", "2025-02-15", "2025-02-16",
        "2025-04-05", "2025-04-06", "2025-04-07",
        "2025-05-01", "2025-05-02", "2025-05-03",
        "2025-06-09", "2025-06-10", "2025-06-11",
        "2025-09-15", "2025-09-16", "2025-09-17",
        "2025-10-01", "2025-10-02", "2025-10-03", "2025-10-04",
        "2025-10-05", "2025-10-06", "2025-10-07",
    ]
)


def get_env_int(key: str, default: int) -> int:
    """Read an int from the environment, ignoring trailing ``# comments``."""
    value = os.getenv(key, str(default))
    return int(value.split("#")[0].strip())


def get_env_float(key: str, default: float) -> float:
    """Read a float from the environment, ignoring trailing ``# comments``."""
    value = os.getenv(key, str(default))
    return float(value.split("#")[0].strip())


class SeverityWeights(BaseModel):
    """Weights of the conflict severity factors. Should sum to 1."""

    overlap: float = 0.4
    priority: float = 0.3
    service: float = 0.2
    resource: float = 0.1


class EngineSettings(BaseModel):
    """Tunable knobs of the conflict engine."""

    buffer_minutes: int = Field(default=15, ge=0)
    check_radius_days: int = Field(default=7, ge=0)
    max_concurrent_checks: int = Field(default=50, ge=1)
    batch_size: int = Field(default=20, ge=1)
    lookup_timeout_seconds: Optional[float] = 10.0
    cache_ttl_seconds: float = 300.0
    emergency_notice_hours: float = 2.0
    severity_weights: SeverityWeights = Field(default_factory=SeverityWeights)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from environment variables."""
        return cls(
            buffer_minutes=get_env_int("ADJUST_BUFFER_MINUTES", 15),
            check_radius_days=get_env_int("CONFLICT_CHECK_RADIUS_DAYS", 7),
            max_concurrent_checks=get_env_int("MAX_CONCURRENT_CHECKS", 50),
            batch_size=get_env_int("CONFLICT_BATCH_SIZE", 20),
            lookup_timeout_seconds=get_env_float("LOOKUP_TIMEOUT_SECONDS", 10.0),
            cache_ttl_seconds=get_env_float("SCHEDULE_CACHE_TTL_SECONDS", 300.0),
            emergency_notice_hours=get_env_float("EMERGENCY_NOTICE_HOURS", 2.0),
        )


class DatabaseConfig:
    """Database configuration and initialization."""

    def __init__(self, db_url: Optional[str] = None):
        """Initialize database configuration.

        Args:
            db_url: Database URL. If None, uses environment variable or default SQLite.
        """
        self.db_url = db_url or os.getenv("DATABASE_URL", "sqlite:///visit_adjust.db")
        self._engine = None
        self._session_factory = None

    @property
    def engine(self) -> Engine:
        """Get or create SQLAlchemy engine."""
        if self._engine is None:
            connect_args = {}
            if self.db_url.startswith("sqlite"):
                connect_args["detect_types"] = (
                    sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES
                )
                # SQLite stores naive datetimes; the schedule store restores tzinfo
                # Adapters run their sessions in worker threads
                connect_args["check_same_thread"] = False

            engine_kwargs = {}
            if self.db_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection so every thread sees the same database
                engine_kwargs["poolclass"] = StaticPool

            self._engine = create_engine(
                self.db_url,
                connect_args=connect_args,
                **engine_kwargs,
            )
            # Create tables if they don't exist
            Base.metadata.create_all(self._engine)
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create SQLAlchemy session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine)
        return self._session_factory

    def init_db(self) -> Engine:
        """Initialize the database and return the engine."""
        return self.engine


class Config:
    """Global configuration singleton"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._init()
        return cls._instance

    def _init(self):
        """Initialize configuration"""
        # Disable Logfire console output via environment variable
        os.environ["LOGFIRE_CONSOLE_LOG"] = "false"

        # Configure logfire; spans are only exported when a token is present
        logfire.configure(
            service_name="visit_adjust",
            send_to_logfire="if-token-present",
        )
        logger.debug("Logfire configured")

        # Database configuration
        self.db = DatabaseConfig()
        logger.debug(f"Database configured with URL: {self.db.db_url}")

        self.settings = EngineSettings.from_env()
        self.holidays = DEFAULT_HOLIDAYS
        logger.debug(f"Engine settings: {self.settings.model_dump()}")

        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").split("#")[0].strip()

        # Update log levels if specified in environment
        if self.log_level != "INFO":
            logger.remove()
            logger.add(
                "logs/visit_adjust.log",
                rotation="500 MB",
                retention="10 days",
                compression="zip",
                backtrace=True,
                diagnose=True,
                enqueue=True,
                catch=True,
                format=LOG_FORMAT,
                level=self.log_level,
            )
            logger.add(
                sys.stderr,
                format="<level>{message}</level>",
                level="WARNING",
                backtrace=True,
                diagnose=True,
            )


# Create global config instance
config = Config()
