"""
Crawl orchestration.

The Crawler drains a shared frontier with a bounded, self-scaling pool of worker
threads. Each worker takes one target at a time through
fetch -> classify -> extract -> enqueue follow-ups, and all shared bookkeeping
goes through CrawlState so quota and dedup checks stay atomic.

Run states: running -> quota_reached | page_budget_exhausted | frontier_empty.
Per-target failures never end the run; run_crawl() turns anything fatal into a
failed summary instead of a crash.
"""

import json
import math
import os
import random
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from dotenv import load_dotenv
from loguru import logger
from tqdm import tqdm

from jobtrawl.contexts.crawling.config import CrawlConfig, load_config
from jobtrawl.contexts.crawling.errors import IncompleteRecordError, TransportError
from jobtrawl.contexts.crawling.extraction import (
    ListingCandidate,
    extract_job_record,
    extract_listing,
    is_blocked_page,
)
from jobtrawl.contexts.crawling.failures import (
    FailureAction,
    FailureKind,
    backoff_delay,
    classify_transport_error,
    decide_action,
    random_delay,
)
from jobtrawl.contexts.crawling.frontier import Frontier
from jobtrawl.contexts.crawling.links import PageClass, classify, get_page_number, set_page_number
from jobtrawl.contexts.crawling.models import CrawlSummary, CrawlTarget, JobRecord
from jobtrawl.contexts.crawling.pagination import derived_page_number, resolve_next_page
from jobtrawl.contexts.crawling.parsing import parse
from jobtrawl.contexts.crawling.requests import (
    RequestRateLimiter,
    RequestsTransport,
    SessionIdentity,
    SessionPool,
    build_headers,
)
from jobtrawl.contexts.crawling.state import CancellationToken, CrawlState
from jobtrawl.contexts.storage import Sink, get_sink

load_dotenv()
LOGS_PATH = Path(os.getenv("LOGS_PATH", "outs/logs"))

STOP_QUOTA = "quota_reached"
STOP_PAGE_BUDGET = "page_budget_exhausted"
STOP_FRONTIER = "frontier_empty"
STOP_ERROR = "error"
STOP_INTERRUPTED = "interrupted"


def setup_logger(log_dir: Path = LOGS_PATH, console_level: str = "INFO") -> Path:
    """
    Configure loguru to write to a timestamped log file and the console.

    Args:
        log_dir: Directory for log files (default: LOGS_PATH from environment)
        console_level: Minimum level echoed to the console

    Returns:
        Path to the created log file
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"crawl_{timestamp}.txt"

    logger.remove()  # Remove default stderr handler
    logger.add(log_file, format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}", enqueue=True)
    logger.add(
        lambda msg: tqdm.write(msg, end=""),  # Keep log lines from tearing the progress bar
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        level=console_level,
    )

    return log_file


class Crawler:
    """
    One crawl run: owns the frontier, the shared state and the worker pool.

    Collaborators are injectable so tests can run without network or delays:
    ``transport`` (fetch), ``sessions`` (identity pool), ``sink`` (output),
    ``sleep`` (every pause goes through it) and ``rng`` (jitter).
    """

    def __init__(
        self,
        config: CrawlConfig,
        transport=None,
        sessions: Optional[SessionPool] = None,
        sink: Optional[Sink] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        rate_limiter: Optional[RequestRateLimiter] = None,
    ):
        self.config = config
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.state = CrawlState(config.target_record_count)
        self.frontier = Frontier()
        self.token = CancellationToken()

        self._owns_transport = transport is None
        self.transport = transport or RequestsTransport(timeout=config.request_timeout, verify_ssl=config.verify_ssl)
        self.sessions = sessions or SessionPool(
            max_pool_size=config.session_pool_size,
            max_usage_count=config.session_max_usage,
            max_error_score=config.session_max_error_score,
            rng=self.rng,
        )
        self._owns_sink = sink is None
        self.sink = sink or get_sink(config.sink, config.output)
        self.rate_limiter = rate_limiter or RequestRateLimiter(config.requests_per_minute, sleep=sleep)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._active_workers = 0
        self._workers_lock = threading.Lock()
        self._progress: Optional[tqdm] = None
        self._progress_lock = threading.Lock()
        self._page_budget_hit = False

    # =========================================================================
    # Run lifecycle
    # =========================================================================
    def seed(self, urls: Iterable[str]) -> int:
        """Queue start URLs (deduplicated). Returns how many were queued."""
        queued = 0
        for url in urls:
            page_class = classify(url)
            if page_class is PageClass.LISTING and self.state.claim_listing(url):
                queued += self.frontier.put(
                    CrawlTarget(url=url, page_class=PageClass.LISTING, page_number=get_page_number(url))
                )
            elif page_class is PageClass.DETAIL and self.state.claim_detail(url):
                queued += self.frontier.put(CrawlTarget(url=url, page_class=PageClass.DETAIL))
            else:
                logger.debug(f"Not queueing start URL {url} ({page_class.value}, or already queued)")
        return queued

    def run(self, start_urls: Optional[Sequence[str]] = None) -> CrawlSummary:
        start_time = time.time()
        urls = list(start_urls or self.config.start_urls)
        cfg = self.config

        logger.info(f"Crawl started with {len(urls)} start URL(s)")
        logger.info(
            f"Target: {cfg.target_record_count} jobs, max {cfg.max_pages} pages, collect_details: {cfg.collect_details}"
        )
        logger.info(f"Concurrency window: {cfg.min_concurrency}-{cfg.max_concurrency}, RPM limit: {cfg.requests_per_minute}")

        self.seed(urls)
        self._progress = tqdm(
            total=cfg.target_record_count, desc="saved", unit="job", disable=not cfg.show_progress
        )
        try:
            with ThreadPoolExecutor(max_workers=cfg.max_concurrency, thread_name_prefix="crawl") as executor:
                self._executor = executor
                for _ in range(cfg.min_concurrency):
                    self._spawn_worker()
                try:
                    self._wait_for_workers()
                except KeyboardInterrupt:
                    logger.warning("Interrupted, waiting for in-flight requests to finish")
                    self.stop(STOP_INTERRUPTED)
                    raise
        finally:
            self._progress.close()

        summary = self.state.summary(stop_reason=self.stop_reason, time_elapsed=time.time() - start_time)
        logger.success(
            f"Crawl finished ({summary.stop_reason}). Saved {summary.saved_count} jobs from {summary.pages_visited} pages."
        )
        return summary

    @property
    def stop_reason(self) -> str:
        if self.state.quota_reached:
            return STOP_QUOTA
        if self._page_budget_hit:
            return STOP_PAGE_BUDGET
        return STOP_FRONTIER

    def stop(self, reason: str = "stopped") -> None:
        """Best-effort stop: queued targets are dropped, in-flight ones finish."""
        self.token.cancel(reason)
        self.frontier.close()

    def close(self) -> None:
        self.sessions.close()
        if self._owns_transport and hasattr(self.transport, "close"):
            self.transport.close()
        if self._owns_sink:
            self.sink.close()

    # =========================================================================
    # Worker pool
    # =========================================================================
    def _spawn_worker(self) -> None:
        with self._workers_lock:
            self._active_workers += 1
            self._futures.append(self._executor.submit(self._worker))

    def _maybe_scale_up(self) -> None:
        if self._executor is None:
            return
        with self._workers_lock:
            should_spawn = (
                self._active_workers < self.config.max_concurrency
                and self.frontier.backlog > self._active_workers
            )
        if should_spawn:
            self._spawn_worker()

    def _wait_for_workers(self) -> None:
        # Workers may spawn more workers, so keep waiting until no future is pending
        while True:
            with self._workers_lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                break
            wait(pending)
        for future in self._futures:
            future.result()

    def _worker(self) -> None:
        try:
            while True:
                target = self.frontier.get()
                if target is None:
                    return
                try:
                    self._process(target)
                except Exception as e:
                    logger.exception(f"Unexpected error while processing {target.url}: {e!r}")
                    if target.is_detail:
                        self.state.mark_failed(target.url)
                finally:
                    self.frontier.task_done()
        except Exception:
            # Only bookkeeping bugs get here; stop everyone and let run() raise
            self.stop(STOP_ERROR)
            raise
        finally:
            with self._workers_lock:
                self._active_workers -= 1

    def _enqueue(self, target: CrawlTarget) -> bool:
        if self.token.cancelled:
            return False
        queued = self.frontier.put(target)
        if queued:
            self._maybe_scale_up()
        return queued

    # =========================================================================
    # Per-target processing
    # =========================================================================
    def _process(self, target: CrawlTarget) -> None:
        if self.token.cancelled or self.state.quota_reached:
            logger.debug(f"Results target reached, skipping {target.url}")
            return

        self._pause_before_fetch(target)
        identity = self.sessions.acquire()
        headers = build_headers(target.url, target.referer, identity.user_agent)
        try:
            result = self.transport.fetch(
                target.url, headers=headers, timeout=self.config.request_timeout, identity=identity
            )
            result.raise_for_status()
        except TransportError as error:
            self._handle_failure(target, error, identity)
            return

        self.sessions.mark_good(identity)
        if self.token.cancelled:
            logger.debug(f"Discarding {target.url}, crawl already stopped")
            return

        if target.is_listing:
            self._handle_listing(target, result.body, result.final_url or target.url)
        else:
            self._handle_detail(target, result.body)

    def _pause_before_fetch(self, target: CrawlTarget) -> None:
        cfg = self.config
        phase_delay = cfg.listing_delay if target.is_listing else cfg.detail_delay
        delay = random_delay(cfg.navigation_delay, self.rng) + random_delay(phase_delay, self.rng)
        delay += backoff_delay(target.retry_count, base=cfg.backoff_base, cap=cfg.backoff_cap, rng=self.rng)
        if delay > 0:
            self.sleep(delay)
        self.rate_limiter.acquire()

    # ---- listing pages ----
    def _handle_listing(self, target: CrawlTarget, body: str, loaded_url: str) -> None:
        pages_visited = self.state.record_page_visit()
        document = parse(body)
        extraction = extract_listing(document, loaded_url, is_known=self.state.is_known_job)

        logger.info(
            f"Found {len(extraction.candidates)} unique job links on page {target.page_number} "
            f"({pages_visited}/{self.config.max_pages}, {extraction.tier})"
        )
        self._show_pages(pages_visited)

        if self.config.collect_details:
            self._enqueue_details(target, extraction.candidates)
        else:
            self._save_seeds(extraction.candidates)

        if pages_visited >= self.config.max_pages:
            self._page_budget_hit = True
            logger.info(f"Reached max pages limit ({self.config.max_pages})")
            return
        if self.token.cancelled:
            return

        next_url = resolve_next_page(target.url, document, target.page_number, extraction.state)
        self._enqueue_listing_page(target, next_url)

    def _enqueue_listing_page(self, target: CrawlTarget, next_url: Optional[str]) -> bool:
        if not next_url or self.token.cancelled:
            return False

        next_number = derived_page_number(next_url, target.page_number)
        if next_number <= target.page_number:
            logger.debug(f"Rejecting next page {next_url}: page {next_number} is not after {target.page_number}")
            return False
        next_ordinal = target.page_ordinal + (next_number - target.page_number)
        if next_ordinal > self.config.max_pages or self.state.pages_visited >= self.config.max_pages:
            self._page_budget_hit = True
            logger.debug(f"Not enqueueing {next_url}: beyond the page budget")
            return False
        if not self.state.claim_listing(next_url):
            logger.debug(f"Next page already seen: {next_url}")
            return False

        queued = self._enqueue(
            CrawlTarget(
                url=next_url,
                page_class=PageClass.LISTING,
                referer=target.url,
                page_number=next_number,
                page_ordinal=next_ordinal,
            )
        )
        if queued:
            logger.info(f"Enqueued next page {next_number}: {next_url}")
        return queued

    def _enqueue_details(self, target: CrawlTarget, candidates: List[ListingCandidate]) -> int:
        if not candidates or self.token.cancelled:
            return 0
        needed = self.state.remaining
        # Over-enqueue a little to cover detail pages that fail without a usable seed
        limit = math.ceil(needed * self.config.detail_buffer_ratio)
        enqueued = 0
        for candidate in candidates:
            if enqueued >= limit:
                break
            if not self.state.claim_detail(candidate.url):
                continue
            if self._enqueue(
                CrawlTarget(url=candidate.url, page_class=PageClass.DETAIL, seed=candidate.seed, referer=target.url)
            ):
                enqueued += 1
        if enqueued:
            logger.info(f"Enqueued {enqueued} job detail pages (need {needed} more jobs)")
        return enqueued

    def _save_seeds(self, candidates: List[ListingCandidate]) -> int:
        saved = 0
        for candidate in candidates:
            if self.state.quota_reached:
                break
            if not self.state.claim_detail(candidate.url):
                continue
            saved += self._save(JobRecord.from_seed(candidate.seed, candidate.url), from_listing=True)
        return saved

    # ---- detail pages ----
    def _handle_detail(self, target: CrawlTarget, body: str) -> None:
        if is_blocked_page(body):
            self.state.record_blocked()
            logger.warning(f"Blocked or invalid page for {target.url}, using listing data")
            self._fallback_save(target)
            return

        document = parse(body)
        record = extract_job_record(document, target.url, target.seed)
        self._save(record)

    def _fallback_save(self, target: CrawlTarget) -> bool:
        """Save the listing seed in place of a detail record, then retire the URL for good."""
        saved = False
        seed = target.seed
        if seed is not None and seed.has_title and not self.state.quota_reached:
            saved = self._save(JobRecord.from_seed(seed, target.url, with_description=False), from_listing=True)
        self.state.mark_failed(target.url)
        return saved

    def _save(self, record: JobRecord, from_listing: bool = False) -> bool:
        try:
            record.validate()
        except IncompleteRecordError as e:
            logger.warning(f"Skipped incomplete job: {e}")
            return False

        saved_count = self.state.save(record, self.sink.append)
        if saved_count is None:
            logger.debug(f"Not saving {record.job_url}: duplicate or quota reached")
            return False

        with self._progress_lock:
            if self._progress is not None:
                self._progress.update(1)
        source = " (from listing data)" if from_listing else ""
        logger.info(f"Saved job #{saved_count}/{self.config.target_record_count}{source}: {record.title}")

        if saved_count >= self.config.target_record_count and self.token.cancel(STOP_QUOTA):
            logger.info(f"Results target of {self.config.target_record_count} reached, stopping")
        return True

    def _show_pages(self, pages_visited: int) -> None:
        with self._progress_lock:
            if self._progress is not None:
                self._progress.set_postfix(pages=f"{pages_visited}/{self.config.max_pages}")

    # ---- failures ----
    def _handle_failure(self, target: CrawlTarget, error: TransportError, identity: SessionIdentity) -> None:
        classification = classify_transport_error(error)
        attempt = target.retry_count + 1

        if classification.kind is FailureKind.RATE_LIMITED_OR_BLOCKED:
            self.state.record_blocked()
            logger.warning(f"Blocked ({error.status or error.message}) on {target.url} - rotating session")
        elif classification.kind is not FailureKind.UNCLASSIFIED:
            logger.warning(f"{classification.kind.value} on {target.url} (attempt {attempt}): {error.message}")

        if classification.rotate_session:
            self.sessions.rotate(identity)
        elif classification.degrade_session:
            self.sessions.mark_degraded(identity)

        if classification.kind is not FailureKind.UNCLASSIFIED:
            self.sleep(random_delay(classification.recovery_delay or self.config.block_delay, self.rng))

        action = decide_action(
            classification,
            target,
            max_retries=self.config.max_request_retries,
            listing_requeue_limit=self.config.listing_requeue_limit,
        )

        if action in (FailureAction.RETRY, FailureAction.ROTATE_AND_RETRY):
            self._enqueue(target.retried())
        elif action is FailureAction.REQUEUE_LISTING:
            self.sessions.rotate(identity)
            logger.warning(
                f"Listing page {target.page_number} failed, requeueing with a fresh session "
                f"({target.requeue_attempt + 1}/{self.config.listing_requeue_limit})"
            )
            self._enqueue(target.requeued())
        elif action is FailureAction.SKIP_PAGE:
            logger.warning(f"Giving up on listing page {target.page_number}, skipping to the next page")
            self._enqueue_listing_page(target, set_page_number(target.url, target.page_number + 1))
        elif action is FailureAction.FALLBACK_SAVE:
            logger.error(f"Failed {target.url} after {attempt} attempts ({error.message}), saving listing data")
            self._fallback_save(target)
        else:
            logger.error(f"Failed {target.url} after {attempt} attempts: {error.message}")
            self.state.mark_failed(target.url)


# =============================================================================
# Entry point
# =============================================================================
def summary_path_for(config: Optional[CrawlConfig], log_dir: Path = LOGS_PATH) -> Path:
    """``<output stem>.summary.json`` beside a JSON Lines output, else crawl_summary.json in the log dir."""
    if config is not None and config.sink == "jsonl" and config.output:
        output = Path(config.output)
        return output.with_name(f"{output.stem}.summary.json")
    return Path(log_dir) / "crawl_summary.json"


def write_summary(summary: CrawlSummary, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(summary.to_dict(), f, indent=2)
    return path


def run_crawl(
    config: Optional[CrawlConfig] = None,
    config_paths: Optional[Sequence[Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    transport=None,
    sink: Optional[Sink] = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    summary_path: Optional[Path] = None,
    write_summary_file: bool = True,
) -> CrawlSummary:
    """
    Run one crawl and always return a summary.

    Args:
        config: Ready CrawlConfig; when None it is loaded from ``config_paths`` + ``overrides``
        config_paths: YAML config files (see load_config)
        overrides: Highest-precedence config values
        transport, sink, sleep, rng: Injected collaborators (see Crawler)
        summary_path: Where to write the summary JSON (default: next to the output)
        write_summary_file: Set False to skip writing the summary JSON

    Returns:
        CrawlSummary with status "ok", or "failed" plus error/traceback when the run
        aborted (configuration errors included). Counters reflect whatever was done
        before the failure. A KeyboardInterrupt is re-raised once the summary is written.
    """
    start_time = time.time()
    crawler = None
    interrupted = None

    try:
        if config is None:
            config = load_config(config_paths, overrides)
        crawler = Crawler(config, transport=transport, sink=sink, sleep=sleep, rng=rng)
        summary = crawler.run()

    except KeyboardInterrupt as e:
        interrupted = e
        summary = _failed_summary(crawler, e, STOP_INTERRUPTED, "interrupted by user")
        logger.warning(f"Crawl interrupted after saving {summary.saved_count} jobs")

    except Exception as e:
        summary = _failed_summary(crawler, e, STOP_ERROR, str(e))
        if summary.saved_count > 0:
            logger.error(f"Crawl failed after saving {summary.saved_count} jobs: {e}")
        else:
            logger.error(f"Crawl failed: {e}")
        logger.debug(f"Traceback:\n{summary.traceback}")

    finally:
        if crawler is not None:
            crawler.close()

    summary.time_elapsed = time.time() - start_time
    logger.info(f"Summary: {json.dumps({k: v for k, v in summary.to_dict().items() if k != 'traceback'})}")

    if write_summary_file:
        path = summary_path or summary_path_for(config)
        try:
            write_summary(summary, path)
        except OSError as e:
            logger.error(f"Could not write summary to {path}: {e}")

    if interrupted is not None:
        raise interrupted
    return summary


def _failed_summary(crawler: Optional[Crawler], error: BaseException, stop_reason: str, message: str) -> CrawlSummary:
    summary = crawler.state.summary() if crawler is not None else CrawlSummary()
    summary.status = "failed"
    summary.stop_reason = stop_reason
    summary.error = f"{type(error).__name__}: {message}"
    summary.error_type = type(error).__name__
    summary.traceback = traceback.format_exc()
    return summary
