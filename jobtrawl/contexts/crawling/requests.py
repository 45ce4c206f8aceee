"""HTTP transport, session identities and request pacing for the crawler."""

import itertools
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

import requests

from jobtrawl.contexts.crawling.errors import TransportError
from jobtrawl.contexts.crawling.links import same_host
from jobtrawl.contexts.crawling.models import DEFAULT_REFERER

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]

BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-GB,en-US;q=0.9,en;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Connection": "keep-alive",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}


def build_headers(url: str, referer: Optional[str] = None, user_agent: Optional[str] = None) -> Dict[str, str]:
    """Browser-like navigation headers for a request to ``url`` coming from ``referer``."""
    referer = referer or DEFAULT_REFERER
    headers = dict(BASE_HEADERS)
    headers["Referer"] = referer
    headers["Sec-Fetch-Site"] = "same-origin" if same_host(url, referer) else "cross-site"
    if user_agent:
        headers["User-Agent"] = user_agent
    return headers


@dataclass
class FetchResult:
    status: int
    body: str
    final_url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def raise_for_status(self) -> "FetchResult":
        if not self.ok:
            raise TransportError("http", f"HTTP {self.status} for {self.final_url}", status=self.status)
        return self


class RequestsTransport:
    """
    Fetch pages with requests.

    Raises TransportError for anything that did not produce a response; non-2xx
    responses are returned as-is and judged by the caller.
    """

    def __init__(self, timeout: float = 60.0, verify_ssl: bool = True):
        self.timeout = float(timeout)
        self.verify_ssl = verify_ssl
        self._fallback_session = requests.Session()

    def fetch(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        identity: Optional["SessionIdentity"] = None,
    ) -> FetchResult:
        session = identity.session if identity is not None else self._fallback_session
        try:
            response = session.get(
                url,
                headers=dict(headers or {}),
                timeout=timeout or self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            raise TransportError("timeout", str(e)) from e
        except (
            requests.exceptions.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
            requests.exceptions.ContentDecodingError,
        ) as e:
            raise TransportError("network", str(e)) from e
        except requests.RequestException as e:
            raise TransportError("unclassified", str(e)) from e

        # Servers that omit a charset get ISO-8859-1 from requests; the site is UTF-8
        if not response.encoding or response.encoding.lower() == "iso-8859-1":
            response.encoding = "utf-8"
        return FetchResult(status=response.status_code, body=response.text, final_url=response.url)

    def close(self) -> None:
        self._fallback_session.close()


class SessionIdentity:
    """A simulated client: its own cookie jar (requests.Session) and User-Agent."""

    def __init__(self, identity_id: int, user_agent: str, session: requests.Session):
        self.identity_id = identity_id
        self.user_agent = user_agent
        self.session = session
        self.usage_count = 0
        self.error_score = 0.0
        self.retired = False

    def __repr__(self):
        return (
            f"SessionIdentity(id={self.identity_id}, uses={self.usage_count}, "
            f"errors={self.error_score}, retired={self.retired})"
        )


class SessionPool:
    """
    Bounded pool of session identities.

    Identities are handed out at random once the pool is full. An identity is
    retired after ``max_usage_count`` uses, when its error score reaches
    ``max_error_score``, or immediately on ``rotate``.
    """

    ERROR_SCORE_DECREMENT = 0.5

    def __init__(
        self,
        max_pool_size: int = 30,
        max_usage_count: int = 20,
        max_error_score: int = 5,
        rng: Optional[random.Random] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        user_agents: Optional[List[str]] = None,
    ):
        self.max_pool_size = max(1, max_pool_size)
        self.max_usage_count = max(1, max_usage_count)
        self.max_error_score = max(1, max_error_score)
        self.rng = rng or random.Random()
        self.session_factory = session_factory
        self.user_agents = user_agents or USER_AGENTS
        self._ids = itertools.count(1)
        self._active: List[SessionIdentity] = []
        self._retired: List[SessionIdentity] = []
        self._lock = threading.Lock()

    def _create(self) -> SessionIdentity:
        identity = SessionIdentity(next(self._ids), self.rng.choice(self.user_agents), self.session_factory())
        self._active.append(identity)
        return identity

    def _retire(self, identity: SessionIdentity) -> None:
        if identity.retired:
            return
        identity.retired = True
        if identity in self._active:
            self._active.remove(identity)
        self._retired.append(identity)

    def acquire(self) -> SessionIdentity:
        with self._lock:
            if len(self._active) < self.max_pool_size:
                identity = self._create()
            else:
                identity = self.rng.choice(self._active)
            identity.usage_count += 1
            if identity.usage_count >= self.max_usage_count:
                # This use is still allowed, the identity just won't be handed out again
                self._retire(identity)
            return identity

    def rotate(self, identity: Optional[SessionIdentity]) -> None:
        """Retire an identity right away; the next acquire() issues a fresh one."""
        if identity is None:
            return
        with self._lock:
            self._retire(identity)

    def mark_degraded(self, identity: Optional[SessionIdentity]) -> None:
        if identity is None:
            return
        with self._lock:
            identity.error_score += 1
            if identity.error_score >= self.max_error_score:
                self._retire(identity)

    def mark_good(self, identity: Optional[SessionIdentity]) -> None:
        if identity is None:
            return
        with self._lock:
            identity.error_score = max(0.0, identity.error_score - self.ERROR_SCORE_DECREMENT)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def retired_count(self) -> int:
        with self._lock:
            return len(self._retired)

    def close(self) -> None:
        with self._lock:
            for identity in self._active + self._retired:
                identity.session.close()


class RequestRateLimiter:
    """Space request starts at least 60 / max_per_minute seconds apart across all workers."""

    def __init__(
        self,
        max_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = 60.0 / max(1, max_per_minute)
        self.clock = clock
        self.sleep = sleep
        self._next_slot = 0.0
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Block until this caller's slot. Returns the time waited."""
        with self._lock:
            now = self.clock()
            start = max(now, self._next_slot)
            self._next_slot = start + self.interval
        wait = start - now
        if wait > 0:
            self.sleep(wait)
        return wait
