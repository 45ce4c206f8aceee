"""
Run configuration for a crawl.

CrawlConfig doubles as an OmegaConf structured schema. Values are layered as
dataclass defaults < config/crawl.yaml (under CONFIG_PATH) < extra YAML files
< explicit overrides, then normalized into the safe ranges the crawler runs in.
"""

import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote, urlencode, urlparse

from dotenv import load_dotenv
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from jobtrawl.contexts.crawling.errors import FatalConfigurationError
from jobtrawl.contexts.crawling.links import PageClass, classify
from jobtrawl.utils.config_helpers import merge_configs

load_dotenv()
CONFIG_PATH = Path(os.getenv("CONFIG_PATH", "config"))
DEFAULT_CONFIG_FILE = CONFIG_PATH / "crawl.yaml"
OUTPUT_PATH = os.getenv("OUTPUT_PATH", "outs/jobs.jsonl")

# Bounds applied regardless of what the caller asks for
MIN_CONCURRENCY_FLOOR = 2
MAX_CONCURRENCY_FLOOR = 4
MAX_CONCURRENCY_CEILING = 24
REQUESTS_PER_MINUTE_FLOOR = 90
SESSION_POOL_FLOOR = 30

POSTED_WITHIN_CHOICES = ("1", "3", "7")
DEFAULT_KEYWORD = "admin"


@dataclass
class DelayRange:
    """Inclusive range of seconds for a randomized pause."""

    min: float = 0.0
    max: float = 0.0


@dataclass
class CrawlConfig:
    # ---- what to crawl ----
    start_urls: List[str] = field(default_factory=list)
    base_url: str = "https://www.totaljobs.com"
    keyword: str = DEFAULT_KEYWORD
    location: str = ""
    category: str = ""
    posted_within: Optional[str] = None

    # ---- budgets ----
    target_record_count: int = 100
    max_pages: int = 10
    collect_details: bool = True
    detail_buffer_ratio: float = 1.5

    # ---- concurrency and pacing ----
    min_concurrency: Optional[int] = None
    max_concurrency: int = 10
    requests_per_minute: int = 180
    request_timeout: float = 60.0
    verify_ssl: bool = True
    navigation_delay: DelayRange = field(default_factory=lambda: DelayRange(0.05, 0.2))
    listing_delay: DelayRange = field(default_factory=lambda: DelayRange(0.05, 0.15))
    detail_delay: DelayRange = field(default_factory=lambda: DelayRange(0.1, 0.25))
    block_delay: DelayRange = field(default_factory=lambda: DelayRange(1.5, 3.0))
    backoff_base: float = 1.0
    backoff_cap: float = 10.0

    # ---- retries and sessions ----
    max_request_retries: int = 4
    listing_requeue_limit: int = 2
    session_pool_size: Optional[int] = None
    session_max_usage: int = 20
    session_max_error_score: int = 5

    # ---- output ----
    sink: str = "jsonl"
    output: str = OUTPUT_PATH
    show_progress: bool = True


DELAY_FIELDS = ("navigation_delay", "listing_delay", "detail_delay", "block_delay")


def _coerce_delay_ranges(layer: Dict[str, Any]) -> Dict[str, Any]:
    """Accept ``[min, max]`` lists for delay ranges alongside ``{min:, max:}`` mappings."""
    layer = dict(layer)
    for name in DELAY_FIELDS:
        value = layer.get(name)
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                raise FatalConfigurationError(f"{name} must have exactly two values, got {list(value)}")
            layer[name] = {"min": value[0], "max": value[1]}
    return layer


def normalize_delay(delay: DelayRange) -> DelayRange:
    low, high = float(delay.min), float(delay.max)
    if not (math.isfinite(low) and math.isfinite(high)):
        raise FatalConfigurationError(f"Delay range must be finite, got {delay}")
    low, high = sorted((low, high))
    return DelayRange(max(0.0, low), max(0.0, high))


def build_start_url(
    base_url: str,
    keyword: str = "",
    location: str = "",
    category: str = "",
    posted_within: Optional[str] = None,
) -> str:
    """
    Search URL for the given terms: ``<base>/jobs/<keyword>?Location=..&Category=..&postedWithin=..&page=1``.

    Without any search terms the default keyword search is used.
    """
    base = base_url.rstrip("/") + "/jobs"
    if not keyword and not location and not category:
        keyword = DEFAULT_KEYWORD
    path = f"{base}/{quote(keyword.strip(), safe='')}" if keyword else f"{base}/"

    params = []
    if location:
        params.append(("Location", location))
    if category:
        params.append(("Category", category))
    if posted_within is not None and str(posted_within) in POSTED_WITHIN_CHOICES:
        params.append(("postedWithin", str(posted_within)))
    params.append(("page", "1"))
    return f"{path}?{urlencode(params)}"


def validate_start_url(url: str) -> str:
    """Raise FatalConfigurationError unless ``url`` is an http(s) listing or job page."""
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise FatalConfigurationError(f"Start URL must be an absolute http(s) URL: {url!r}")
    if classify(url) is PageClass.OTHER:
        raise FatalConfigurationError(f"Start URL is neither a job search page nor a job page: {url!r}")
    return url.strip()


def normalize_config(config: CrawlConfig) -> CrawlConfig:
    """Clamp numbers into their safe ranges, normalize delays and resolve start URLs."""
    max_concurrency = min(MAX_CONCURRENCY_CEILING, max(MAX_CONCURRENCY_FLOOR, config.max_concurrency))
    if config.min_concurrency is not None:
        min_concurrency = max(MIN_CONCURRENCY_FLOOR, min(config.min_concurrency, max_concurrency))
    else:
        min_concurrency = min(max_concurrency, max(4, min(6, math.floor(max_concurrency * 0.6))))

    start_urls = [u for u in (config.start_urls or []) if u and u.strip()]
    if not start_urls:
        start_urls = [
            build_start_url(config.base_url, config.keyword, config.location, config.category, config.posted_within)
        ]
    start_urls = [validate_start_url(u) for u in start_urls]

    sink = (config.sink or "jsonl").lower()

    return replace(
        config,
        start_urls=start_urls,
        target_record_count=max(1, config.target_record_count),
        max_pages=max(1, config.max_pages),
        detail_buffer_ratio=max(1.0, config.detail_buffer_ratio),
        min_concurrency=min_concurrency,
        max_concurrency=max_concurrency,
        requests_per_minute=max(REQUESTS_PER_MINUTE_FLOOR, config.requests_per_minute),
        request_timeout=max(1.0, config.request_timeout),
        navigation_delay=normalize_delay(config.navigation_delay),
        listing_delay=normalize_delay(config.listing_delay),
        detail_delay=normalize_delay(config.detail_delay),
        block_delay=normalize_delay(config.block_delay),
        backoff_base=max(0.0, config.backoff_base),
        backoff_cap=max(0.0, config.backoff_cap),
        max_request_retries=max(0, config.max_request_retries),
        listing_requeue_limit=max(0, config.listing_requeue_limit),
        session_pool_size=max(SESSION_POOL_FLOOR, max_concurrency * 3, config.session_pool_size or 0),
        session_max_usage=max(1, config.session_max_usage),
        session_max_error_score=max(1, config.session_max_error_score),
        sink=sink,
    )


def load_config(
    config_paths: Optional[Sequence[Union[str, Path]]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> CrawlConfig:
    """
    Build a normalized CrawlConfig.

    Args:
        config_paths: YAML files to layer on the defaults, later ones win. When None,
                      ``$CONFIG_PATH/crawl.yaml`` is used if it exists.
        overrides: Highest-precedence values (e.g. from the CLI). None values are ignored.

    Raises:
        FatalConfigurationError: On unreadable files, wrong value types or unusable start URLs
    """
    if config_paths is None:
        config_paths = [DEFAULT_CONFIG_FILE] if DEFAULT_CONFIG_FILE.exists() else []

    try:
        merged = OmegaConf.structured(CrawlConfig)
        if config_paths:
            file_layer = OmegaConf.to_container(merge_configs(list(config_paths)), resolve=True)
            merged = OmegaConf.merge(merged, OmegaConf.create(_coerce_delay_ranges(file_layer or {})))
        if overrides:
            override_layer = {k: v for k, v in overrides.items() if v is not None}
            merged = OmegaConf.merge(merged, OmegaConf.create(_coerce_delay_ranges(override_layer)))
        config = OmegaConf.to_object(merged)
    except (OmegaConfBaseException, FileNotFoundError, ValueError) as e:
        raise FatalConfigurationError(f"Invalid crawl configuration: {e}") from e

    return normalize_config(config)


def config_to_dict(config: CrawlConfig) -> Dict[str, Any]:
    return OmegaConf.to_container(OmegaConf.structured(config))
