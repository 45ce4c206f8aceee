"""
Append-only output sinks for job records.

Sinks only persist. Deduplication by job URL and quota enforcement belong to the
crawler, which serializes its calls to ``append``; the locks here only protect
direct multi-threaded use.
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

import pandas as pd
from sqlalchemy import create_engine

from jobtrawl.contexts.crawling.models import JobRecord
from jobtrawl.contexts.storage.config import DatabaseConfig


class Sink(ABC):
    @abstractmethod
    def append(self, record: JobRecord) -> None:
        """Durably store one record."""
        pass

    def close(self) -> None:
        pass


class JsonLinesSink(Sink):
    """One JSON object per line, appended to ``path`` (parent dirs created)."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: JobRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class SQLSink(Sink):
    """Append records to a SQL table through pandas + SQLAlchemy (table created on first write)."""

    def __init__(self, db_config: DatabaseConfig = None):
        self.db_config = db_config or DatabaseConfig.from_env()
        self._ensure_sqlite_dir()
        self.engine = create_engine(self.db_config.connection_string)
        self._lock = threading.Lock()

    def _ensure_sqlite_dir(self) -> None:
        prefix = "sqlite:///"
        url = self.db_config.connection_string
        if url.startswith(prefix) and url != prefix + ":memory:":
            Path(url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)

    def append(self, record: JobRecord) -> None:
        df = pd.DataFrame([record.to_dict()], columns=JobRecord.field_names())
        with self._lock:
            df.to_sql(self.db_config.table, self.engine, if_exists="append", index=False)

    def read_df(self) -> pd.DataFrame:
        """Everything written so far, as a DataFrame."""
        return pd.read_sql_table(self.db_config.table, self.engine)

    def close(self) -> None:
        self.engine.dispose()
