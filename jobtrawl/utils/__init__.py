"""
Shared utility functions.
"""

from jobtrawl.utils.config_helpers import merge_configs
from jobtrawl.utils.text_processing import (
    clean_optional,
    contains_keyword,
    html_to_text,
    normalize_whitespace,
)

__all__ = [
    # Text processing
    "normalize_whitespace",
    "html_to_text",
    "contains_keyword",
    "clean_optional",
    # Configuration utilities
    "merge_configs",
]
