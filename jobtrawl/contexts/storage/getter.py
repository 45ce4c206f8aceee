from pathlib import Path
from typing import Union

from jobtrawl.contexts.crawling.errors import FatalConfigurationError
from jobtrawl.contexts.storage.config import DatabaseConfig
from jobtrawl.contexts.storage.sinks import JsonLinesSink, Sink, SQLSink

# Supported sink kinds
ALLOWED_SINKS = ["jsonl", "sql"]


def get_sink(kind: str, output: Union[str, Path, None] = None) -> Sink:
    """
    Factory function for output sinks.

    Args:
        kind: "jsonl" (output is a file path) or "sql" (output is a SQLAlchemy URL;
              falls back to DATABASE_URL when empty)
        output: Destination for the chosen kind

    Raises:
        FatalConfigurationError: If the kind is unsupported or a JSON Lines path is missing
    """
    kind = (kind or "").lower()

    if kind == "jsonl":
        if not output:
            raise FatalConfigurationError("The jsonl sink needs an output path")
        return JsonLinesSink(output)
    elif kind == "sql":
        db_config = DatabaseConfig.from_env()
        if output and "://" in str(output):
            db_config.url = str(output)
        return SQLSink(db_config)
    else:
        raise FatalConfigurationError(
            f"Unsupported sink: '{kind}'. Supported sinks: {', '.join(ALLOWED_SINKS)}"
        )
