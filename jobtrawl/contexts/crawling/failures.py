"""
Failure classification and retry policy.

A failed fetch is classified from its HTTP status and error message into a
FailureKind; the kind decides whether the session identity is rotated or just
marked degraded, how long to back off, and whether the target may be retried.
Once the retry budget is spent, listing pages get requeued with a fresh
identity (then skipped), and detail pages fall back to their listing seed.
"""

import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from jobtrawl.contexts.crawling.errors import TransportError
from jobtrawl.contexts.crawling.models import CrawlTarget

PermanentCodeSet = (401, 403, 404, 410)
TransientCodeSet = (408, 425, 429, 500, 502, 503, 504)
BlockedCodeSet = (403, 429)
TimeoutCodeSet = (408,)

BLOCK_MARKERS = re.compile(r"\b(403|429)\b|blocked|captcha|access denied|too many requests", re.IGNORECASE)
TIMEOUT_MARKERS = re.compile(r"timed out|timeout", re.IGNORECASE)
PROTOCOL_MARKERS = re.compile(r"nghttp2|protocolerror|protocol error", re.IGNORECASE)
NETWORK_MARKERS = re.compile(
    r"socket hang up|econnreset|connection reset|connection aborted|remotedisconnected|"
    r"etimedout|enotfound|name or service not known|failed to resolve|nodename nor servname|"
    r"temporary failure in name resolution|max retries exceeded|connection refused|"
    r"chunkedencodingerror|incompleteread",
    re.IGNORECASE,
)

# Recovery pauses (seconds) for non-blocking failures; blocks use the configured block delay
TIMEOUT_DELAY = (0.5, 1.0)
NETWORK_DELAY = (0.8, 1.5)
PROTOCOL_DELAY = (0.3, 0.8)

BACKOFF_BASE = 1.0
BACKOFF_CAP = 10.0
BACKOFF_JITTER = 1.0


class FailureKind(str, Enum):
    RATE_LIMITED_OR_BLOCKED = "rate_limited_or_blocked"
    TIMEOUT = "timeout"
    TRANSIENT_NETWORK = "transient_network"
    UNCLASSIFIED = "unclassified"


class FailureAction(str, Enum):
    RETRY = "retry"
    ROTATE_AND_RETRY = "rotate_and_retry"
    GIVE_UP = "give_up"
    FALLBACK_SAVE = "fallback_save"
    REQUEUE_LISTING = "requeue_listing"
    SKIP_PAGE = "skip_page"


@dataclass(frozen=True)
class FailureClassification:
    kind: FailureKind
    rotate_session: bool = False
    degrade_session: bool = False
    # Fixed recovery pause, None means "use the configured block delay"
    recovery_delay: Optional[Tuple[float, float]] = None

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.UNCLASSIFIED


def classify_failure(
    status: Optional[int] = None,
    message: str = "",
    transport_kind: Optional[str] = None,
) -> FailureClassification:
    """
    Classify a failed fetch.

    Args:
        status: HTTP status code, if a response came back
        message: Error message text
        transport_kind: TransportError.kind, if the transport already knows (e.g. "timeout")

    A response status is decided on the code alone; the message markers only
    apply when no response came back (a URL slug may well contain "blocked").
    """
    if status is not None:
        return _classify_status(status)

    message = message or ""

    if BLOCK_MARKERS.search(message):
        return FailureClassification(FailureKind.RATE_LIMITED_OR_BLOCKED, rotate_session=True)

    if transport_kind == "timeout" or TIMEOUT_MARKERS.search(message):
        return FailureClassification(FailureKind.TIMEOUT, degrade_session=True, recovery_delay=TIMEOUT_DELAY)

    if PROTOCOL_MARKERS.search(message):
        # HTTP/2 stream resets are tied to the connection, so start over with a new identity
        return FailureClassification(FailureKind.TRANSIENT_NETWORK, rotate_session=True, recovery_delay=PROTOCOL_DELAY)

    if transport_kind == "network" or NETWORK_MARKERS.search(message):
        return FailureClassification(FailureKind.TRANSIENT_NETWORK, degrade_session=True, recovery_delay=NETWORK_DELAY)

    return FailureClassification(FailureKind.UNCLASSIFIED)


def _classify_status(status: int) -> FailureClassification:
    if status in BlockedCodeSet:
        return FailureClassification(FailureKind.RATE_LIMITED_OR_BLOCKED, rotate_session=True)

    if status in PermanentCodeSet:
        return FailureClassification(FailureKind.UNCLASSIFIED)

    if status in TimeoutCodeSet:
        return FailureClassification(FailureKind.TIMEOUT, degrade_session=True, recovery_delay=TIMEOUT_DELAY)

    if status in TransientCodeSet:
        return FailureClassification(FailureKind.TRANSIENT_NETWORK, degrade_session=True, recovery_delay=NETWORK_DELAY)

    return FailureClassification(FailureKind.UNCLASSIFIED)


def classify_transport_error(error: TransportError) -> FailureClassification:
    return classify_failure(status=error.status, message=error.message, transport_kind=error.kind)


def decide_action(
    classification: FailureClassification,
    target: CrawlTarget,
    max_retries: int,
    listing_requeue_limit: int,
) -> FailureAction:
    """
    What to do with a target after a failed fetch.

    Retryable failures are retried until ``max_retries``. After that (or straight
    away for unclassified failures) listing pages are requeued up to
    ``listing_requeue_limit`` times and then skipped; detail pages with a titled
    seed fall back to saving the seed, others are given up.
    """
    if classification.retryable and target.retry_count < max_retries:
        return FailureAction.ROTATE_AND_RETRY if classification.rotate_session else FailureAction.RETRY

    if target.is_listing:
        if target.requeue_attempt < listing_requeue_limit:
            return FailureAction.REQUEUE_LISTING
        return FailureAction.SKIP_PAGE

    if target.seed is not None and target.seed.has_title:
        return FailureAction.FALLBACK_SAVE
    return FailureAction.GIVE_UP


def random_delay(delay_range, rng: random.Random = None) -> float:
    """Uniform delay within a (min, max) pair or an object with .min/.max."""
    rng = rng or random
    low, high = (delay_range.min, delay_range.max) if hasattr(delay_range, "min") else delay_range
    if high <= low:
        return max(0.0, low)
    return rng.uniform(low, high)


def backoff_delay(
    retry_count: int,
    base: float = BACKOFF_BASE,
    cap: float = BACKOFF_CAP,
    jitter: float = BACKOFF_JITTER,
    rng: random.Random = None,
) -> float:
    """Exponential backoff with uniform jitter: min(base * 2**n + U(0, jitter), cap)."""
    rng = rng or random
    if retry_count <= 0:
        return 0.0
    return min(base * (2 ** retry_count) + rng.uniform(0, jitter), cap)
