"""
Database configuration for the storage context.

Reads the connection URL from the environment (.env supported).
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///outs/jobs.db"
DEFAULT_TABLE = "jobs"


@dataclass
class DatabaseConfig:
    """Where SQL output goes: any SQLAlchemy URL plus a table name."""

    url: str = DEFAULT_DATABASE_URL
    table: str = DEFAULT_TABLE

    @classmethod
    def from_env(cls, table: str = None):
        """Create DatabaseConfig from DATABASE_URL / DATABASE_TABLE environment variables."""
        return cls(
            url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            table=table or os.getenv("DATABASE_TABLE", DEFAULT_TABLE),
        )

    @property
    def connection_string(self) -> str:
        return self.url
