"""
Fetch Orchestrator.

The only boundary where external faults become typed failures. Every request
runs on its own task behind a shared concurrency bound, with a per-source
timeout, exponential-backoff retries for retryable faults and an optional
caller deadline. One source hanging or failing never affects another's
result.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp

from .errors import (
    ConfigurationError,
    IncompletePaginationError,
    MalformedRecordError,
    SourceError,
    redact,
)
from .metrics import LensMetrics
from .models import SourceFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff for one source."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


@dataclass
class RequestSpec:
    """One logical upstream request."""
    key: str
    source: str
    fetch: Callable[[], Awaitable[Any]]
    metric: Optional[str] = None
    timeout_seconds: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class FetchOutcome:
    """Result or failure of one RequestSpec."""
    key: str
    source: str
    result: Any = None
    failure: Optional[SourceFailure] = None
    attempts: int = 0
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None


class _AttemptTimeout(Exception):
    """One attempt exceeded its per-source timeout (as opposed to the caller deadline)."""


def classify_exception(error: BaseException) -> Tuple[str, bool, Optional[int]]:
    """
    Map an exception raised by a fetch into (kind, retryable, status).
    """
    if isinstance(error, IncompletePaginationError):
        return "incomplete", False, None
    if isinstance(error, SourceError):
        status = error.status
        if status == 429:
            return "rate_limited", True, status
        kind = error.kind or ("http" if status is not None else "error")
        return kind, error.retryable, status
    if isinstance(error, ConfigurationError):
        return "configuration", False, None
    if isinstance(error, (aiohttp.ContentTypeError, MalformedRecordError, ValueError, KeyError, TypeError)):
        return "malformed", False, None
    if isinstance(error, aiohttp.ClientResponseError):
        status = error.status
        if status == 429:
            return "rate_limited", True, status
        return "http", status >= 500, status
    if isinstance(error, aiohttp.ClientError):
        # Connection resets, DNS failures and the like
        return "error", True, None
    return "error", False, None


class FetchOrchestrator:
    """
    Bounded-concurrency fan-out over upstream requests.

    Args:
        max_concurrency: Maximum outstanding upstream requests
        metrics: Optional LensMetrics sink
        sleep: Awaitable sleep used for backoff (injectable for tests)
        clock: Monotonic clock used for deadlines
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        metrics: Optional[LensMetrics] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop = None

    def deadline_in(self, seconds: float) -> float:
        """Absolute deadline `seconds` from now on this orchestrator's clock."""
        return self._clock() + seconds

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    async def fetch_all(
        self,
        specs: Iterable[RequestSpec],
        deadline: Optional[float] = None,
    ) -> Dict[str, FetchOutcome]:
        """
        Dispatch every spec concurrently and collect outcomes by key.

        Never raises for upstream faults; each failure is isolated in its
        own FetchOutcome.
        """
        specs = list(specs)
        keys = [spec.key for spec in specs]
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate request keys: {keys}")

        outcomes = await asyncio.gather(*(self.fetch_one(spec, deadline) for spec in specs))
        return {outcome.key: outcome for outcome in outcomes}

    async def _attempt(self, spec: RequestSpec) -> Any:
        async with self._get_semaphore():
            try:
                return await asyncio.wait_for(spec.fetch(), spec.timeout_seconds)
            except asyncio.TimeoutError:
                raise _AttemptTimeout()

    async def fetch_one(self, spec: RequestSpec, deadline: Optional[float] = None) -> FetchOutcome:
        """
        Run one request with retries.

        The deadline covers the wait for a concurrency slot, every attempt
        and every backoff sleep.
        """
        started = self._clock()
        attempts = 0
        kind, message, status = "error", "", None

        while True:
            remaining = None if deadline is None else deadline - self._clock()
            if remaining is not None and remaining <= 0:
                kind, message = "deadline", f"deadline expired after {attempts} attempts"
                break

            attempts += 1
            if self.metrics:
                self.metrics.record_fetch_attempt(spec.source)

            try:
                if remaining is None:
                    result = await self._attempt(spec)
                else:
                    result = await asyncio.wait_for(self._attempt(spec), remaining)
            except asyncio.CancelledError:
                raise
            except _AttemptTimeout:
                kind, message, status = "timeout", f"timed out after {spec.timeout_seconds:.1f}s", None
                retryable = True
            except asyncio.TimeoutError:
                kind, message, status = "deadline", f"deadline expired during attempt {attempts}", None
                break
            except Exception as e:
                kind, retryable, status = classify_exception(e)
                message = redact(f"{type(e).__name__}: {e}")
            else:
                elapsed = self._clock() - started
                if self.metrics:
                    self.metrics.record_fetch_duration(spec.source, elapsed)
                return FetchOutcome(
                    key=spec.key,
                    source=spec.source,
                    result=result,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                )

            if not retryable or attempts >= spec.retry.max_attempts:
                break

            delay = spec.retry.delay_for(attempts)
            if deadline is not None and delay >= deadline - self._clock():
                kind, message = "deadline", f"no time left to retry after {kind}: {message}"
                break
            logger.warning(
                f"{spec.source} request {spec.key} failed ({kind}: {message}); "
                f"retrying in {delay:.1f}s (attempt {attempts}/{spec.retry.max_attempts})"
            )
            await self._sleep(delay)

        elapsed = self._clock() - started
        failure = SourceFailure(
            key=spec.key,
            source=spec.source,
            metric=spec.metric,
            kind=kind,
            message=message,
            attempts=attempts,
            status=status,
        )
        logger.warning(f"{spec.source} request {spec.key} failed after {attempts} attempts: {kind}: {message}")
        if self.metrics:
            self.metrics.record_fetch_failure(spec.source, kind)
            self.metrics.record_fetch_duration(spec.source, elapsed)
        return FetchOutcome(
            key=spec.key,
            source=spec.source,
            failure=failure,
            attempts=attempts,
            elapsed_seconds=elapsed,
        )


async def paginate_cursor(
    fetch_page: Callable[[Optional[str]], Awaitable[Tuple[List[Any], Optional[str]]]],
    max_pages: int,
    require_complete: bool = False,
    description: str = "pages",
) -> Tuple[List[Any], bool]:
    """
    Sequential cursor pagination.

    `fetch_page(cursor)` returns (items, next_cursor); a falsy cursor or an
    empty page ends the walk.

    Returns:
        (items, complete)

    Raises:
        IncompletePaginationError: cap reached and `require_complete` is set
    """
    items: List[Any] = []
    cursor: Optional[str] = None
    for _ in range(max_pages):
        page_items, cursor = await fetch_page(cursor)
        items.extend(page_items)
        if not page_items or not cursor:
            return items, True

    if require_complete:
        raise IncompletePaginationError(f"{description}: more than {max_pages} pages")
    logger.info(f"{description}: stopped at the {max_pages}-page cap with {len(items)} items")
    return items, False


async def paginate_pages(
    fetch_page: Callable[[int], Awaitable[Tuple[List[Any], Optional[int]]]],
    page_size: int,
    max_pages: int,
    max_concurrency: int = 4,
    require_complete: bool = True,
    description: str = "pages",
) -> Tuple[List[Any], bool]:
    """
    Page-number pagination (pages start at 1).

    `fetch_page(page)` returns (items, total_hint). When the first page
    reports a total, the remaining pages are fetched in parallel across the
    known page boundaries; otherwise pages are walked sequentially until a
    short page. Any page failure propagates; a census is never built from a
    partial walk.
    """
    first, total = await fetch_page(1)
    items: List[Any] = list(first)

    if total is not None:
        page_count = max(1, math.ceil(total / page_size))
        if page_count > max_pages:
            if require_complete:
                raise IncompletePaginationError(f"{description}: {page_count} pages exceeds cap of {max_pages}")
            page_count = max_pages
        if page_count == 1:
            return items, True

        semaphore = asyncio.Semaphore(max_concurrency)

        async def bounded(page: int):
            async with semaphore:
                page_items, _ = await fetch_page(page)
                return page_items

        tasks = [asyncio.ensure_future(bounded(page)) for page in range(2, page_count + 1)]
        try:
            pages = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        for page_items in pages:
            items.extend(page_items)
        return items, page_count * page_size >= total

    page = 1
    page_items = first
    while len(page_items) >= page_size:
        if page >= max_pages:
            if require_complete:
                raise IncompletePaginationError(f"{description}: more than {max_pages} pages")
            logger.info(f"{description}: stopped at the {max_pages}-page cap with {len(items)} items")
            return items, False
        page += 1
        page_items, _ = await fetch_page(page)
        items.extend(page_items)
    return items, True
