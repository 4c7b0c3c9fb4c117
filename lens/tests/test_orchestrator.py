"""
Tests for the Fetch Orchestrator and pagination helpers.
"""

import asyncio
import time

import aiohttp
import pytest

from lens.core.errors import ConfigurationError, IncompletePaginationError, SourceError
from lens.core.metrics import LensMetrics
from lens.core.orchestrator import (
    FetchOrchestrator,
    RequestSpec,
    RetryPolicy,
    classify_exception,
    paginate_cursor,
    paginate_pages,
)


class RecordingSleep:
    """Backoff sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def flaky(*outcomes):
    """Fetch callable that raises/returns the given outcomes in order."""
    remaining = list(outcomes)
    calls = []

    async def fetch():
        calls.append(1)
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    fetch.calls = calls
    return fetch


async def hang():
    await asyncio.sleep(3600)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def orchestrator(sleep):
    return FetchOrchestrator(max_concurrency=4, sleep=sleep)


class TestRetryPolicy:
    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(max_attempts=6, base_delay_seconds=1.0, max_delay_seconds=8.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]


class TestClassifyException:
    @pytest.mark.parametrize("error,expected", [
        (SourceError.from_status(429, "slow down"), ("rate_limited", True, 429)),
        (SourceError.from_status(503, "down"), ("http", True, 503)),
        (SourceError.from_status(404, "gone"), ("http", False, 404)),
        (SourceError("bad body", kind="malformed"), ("malformed", False, None)),
        (IncompletePaginationError("too many pages"), ("incomplete", False, None)),
        (ConfigurationError("no key"), ("configuration", False, None)),
        (ValueError("bad json"), ("malformed", False, None)),
        (aiohttp.ClientConnectionError("reset"), ("error", True, None)),
        (RuntimeError("boom"), ("error", False, None)),
    ])
    def test_classification(self, error, expected):
        assert classify_exception(error) == expected


class TestFetchOne:
    """Retry, timeout and deadline handling for one request."""

    def test_success_first_attempt(self, orchestrator):
        outcome = asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", flaky(["tx"]))))

        assert outcome.ok
        assert outcome.result == ["tx"]
        assert outcome.attempts == 1

    def test_retryable_failure_then_success(self, orchestrator, sleep):
        fetch = flaky(SourceError.from_status(429, "rate limited"), {"ok": True})
        outcome = asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", fetch)))

        assert outcome.ok
        assert outcome.attempts == 2
        assert sleep.delays == [1.0]

    def test_attempts_exhausted(self, orchestrator, sleep):
        fetch = flaky(SourceError.from_status(503, "unavailable"))
        spec = RequestSpec("k", "solscan", fetch, metric="holder_census")
        outcome = asyncio.run(orchestrator.fetch_one(spec))

        assert not outcome.ok
        assert outcome.failure.kind == "http"
        assert outcome.failure.status == 503
        assert outcome.failure.attempts == 3
        assert outcome.failure.metric == "holder_census"
        assert sleep.delays == [1.0, 2.0]

    def test_non_retryable_failure_not_retried(self, orchestrator, sleep):
        fetch = flaky(SourceError.from_status(404, "not found"))
        outcome = asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", fetch)))

        assert outcome.failure.kind == "http"
        assert len(fetch.calls) == 1
        assert sleep.delays == []

    def test_configuration_error_not_retried(self, orchestrator):
        fetch = flaky(ConfigurationError("HELIUS_API_KEY is not configured"))
        outcome = asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", fetch)))

        assert outcome.failure.kind == "configuration"
        assert outcome.attempts == 1

    def test_timeout_is_retried(self, orchestrator, sleep):
        spec = RequestSpec("k", "jupiter", hang, timeout_seconds=0.01, retry=RetryPolicy(max_attempts=2))
        outcome = asyncio.run(orchestrator.fetch_one(spec))

        assert outcome.failure.kind == "timeout"
        assert outcome.attempts == 2
        assert sleep.delays == [1.0]

    def test_deadline_stops_retries(self, orchestrator, sleep):
        spec = RequestSpec("k", "helius", hang, timeout_seconds=30)

        async def run():
            return await orchestrator.fetch_one(spec, orchestrator.deadline_in(0.05))

        outcome = asyncio.run(run())
        assert outcome.failure.kind == "deadline"
        assert outcome.attempts == 1
        assert sleep.delays == []

    def test_waiting_for_a_slot_counts_against_deadline(self, sleep):
        orchestrator = FetchOrchestrator(max_concurrency=1, sleep=sleep)
        specs = [RequestSpec(f"k{i}", "helius", hang, timeout_seconds=30) for i in range(3)]

        async def run():
            return await orchestrator.fetch_all(specs, orchestrator.deadline_in(0.3))

        started = time.monotonic()
        outcomes = asyncio.run(run())
        elapsed = time.monotonic() - started

        assert {key: o.failure.kind for key, o in outcomes.items()} == {
            "k0": "deadline", "k1": "deadline", "k2": "deadline",
        }
        assert elapsed < 0.6

    def test_backoff_past_deadline_gives_up(self, orchestrator, sleep):
        fetch = flaky(SourceError.from_status(503, "unavailable"))
        spec = RequestSpec("k", "helius", fetch, retry=RetryPolicy(base_delay_seconds=2.0))

        async def run():
            return await orchestrator.fetch_one(spec, orchestrator.deadline_in(0.5))

        outcome = asyncio.run(run())
        assert outcome.failure.kind == "deadline"
        assert outcome.failure.status == 503
        assert outcome.attempts == 1
        assert sleep.delays == []

    def test_expired_deadline_makes_no_attempt(self, orchestrator):
        fetch = flaky("never")
        outcome = asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", fetch), orchestrator.deadline_in(-1)))

        assert outcome.failure.kind == "deadline"
        assert fetch.calls == []

    def test_secrets_redacted_from_failure_message(self, orchestrator):
        fetch = flaky(RuntimeError("GET https://api.helius.xyz/v0/x?api-key=SECRET123 failed"))
        outcome = asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", fetch)))

        assert "SECRET123" not in outcome.failure.message
        assert "api-key=REDACTED" in outcome.failure.message

    def test_metrics_recorded(self, sleep):
        metrics = LensMetrics()
        orchestrator = FetchOrchestrator(metrics=metrics, sleep=sleep)
        fetch = flaky(SourceError.from_status(500, "oops"))
        asyncio.run(orchestrator.fetch_one(RequestSpec("k", "helius", fetch)))

        registry = metrics.registry
        assert registry.get_sample_value("lens_fetch_attempts_total", {"source": "helius"}) == 3
        assert registry.get_sample_value("lens_fetch_failures_total", {"source": "helius", "kind": "http"}) == 1


class TestFetchAll:
    def test_failures_are_isolated(self, orchestrator):
        specs = [
            RequestSpec("good", "jupiter", flaky({"a": 1})),
            RequestSpec("bad", "helius", flaky(SourceError.from_status(400, "bad request"))),
            RequestSpec("slow", "solscan", hang, timeout_seconds=0.01, retry=RetryPolicy(max_attempts=1)),
        ]
        outcomes = asyncio.run(orchestrator.fetch_all(specs))

        assert outcomes["good"].ok and outcomes["good"].result == {"a": 1}
        assert outcomes["bad"].failure.kind == "http"
        assert outcomes["slow"].failure.kind == "timeout"

    def test_duplicate_keys_rejected(self, orchestrator):
        specs = [RequestSpec("same", "helius", flaky(1)), RequestSpec("same", "helius", flaky(2))]
        with pytest.raises(ValueError):
            asyncio.run(orchestrator.fetch_all(specs))

    def test_concurrency_bound(self, sleep):
        orchestrator = FetchOrchestrator(max_concurrency=2, sleep=sleep)
        active = {"now": 0, "peak": 0}

        def tracked(i):
            async def fetch():
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
                await asyncio.sleep(0.01)
                active["now"] -= 1
                return i
            return fetch

        specs = [RequestSpec(f"k{i}", "helius", tracked(i)) for i in range(6)]
        outcomes = asyncio.run(orchestrator.fetch_all(specs))

        assert sorted(o.result for o in outcomes.values()) == list(range(6))
        assert active["peak"] == 2

    def test_invalid_concurrency(self):
        with pytest.raises(ConfigurationError):
            FetchOrchestrator(max_concurrency=0)


class TestPagination:
    def test_cursor_walk_until_empty_page(self):
        pages = {None: ([1, 2], "c1"), "c1": ([3], "c2"), "c2": ([], None)}
        seen = []

        async def fetch_page(cursor):
            seen.append(cursor)
            return pages[cursor]

        items, complete = asyncio.run(paginate_cursor(fetch_page, max_pages=10))
        assert items == [1, 2, 3]
        assert complete
        assert seen == [None, "c1", "c2"]

    def test_cursor_cap(self):
        async def fetch_page(cursor):
            return [cursor], f"{cursor}x"

        items, complete = asyncio.run(paginate_cursor(fetch_page, max_pages=3))
        assert len(items) == 3
        assert not complete

        with pytest.raises(IncompletePaginationError):
            asyncio.run(paginate_cursor(fetch_page, max_pages=3, require_complete=True))

    def test_pages_with_total_hint_fetched_in_parallel(self):
        requested = []

        async def fetch_page(page):
            requested.append(page)
            size = 40 if page < 3 else 15
            return [f"p{page}-{i}" for i in range(size)], 95

        items, complete = asyncio.run(paginate_pages(fetch_page, page_size=40, max_pages=10))
        assert len(items) == 95
        assert complete
        assert sorted(requested) == [1, 2, 3]
        assert items[0] == "p1-0" and items[-1] == "p3-14"

    def test_pages_without_hint_walk_until_short_page(self):
        async def fetch_page(page):
            return ([page] * (10 if page < 4 else 3)), None

        items, complete = asyncio.run(paginate_pages(fetch_page, page_size=10, max_pages=10))
        assert len(items) == 33
        assert complete

    def test_pages_over_cap_raise(self):
        async def fetch_page(page):
            return [page] * 10, 1000

        with pytest.raises(IncompletePaginationError):
            asyncio.run(paginate_pages(fetch_page, page_size=10, max_pages=5))

    def test_failed_page_fails_whole_walk(self):
        async def fetch_page(page):
            if page == 3:
                raise SourceError.from_status(500, "page 3 failed")
            return [page] * 10, 50

        with pytest.raises(SourceError):
            asyncio.run(paginate_pages(fetch_page, page_size=10, max_pages=10))
