import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import httpx
import pytest

from graph.models import Lead
from tools.rate_limiter import RateLimiter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def place_html(name: str, rating: Optional[str] = "4.6", count: Optional[str] = "128") -> str:
    """A listing page with a schema.org aggregateRating block."""
    block = ""
    if rating is not None:
        block = json.dumps({
            "@context": "https://schema.org",
            "@type": "LocalBusiness",
            "name": name,
            "aggregateRating": {"@type": "AggregateRating", "ratingValue": rating, "reviewCount": count},
        })
    return (
        f"<html><head><title>{name} - Google Maps</title>"
        f'<script type="application/ld+json">{block}</script></head>'
        f"<body><h1><span>{name}</span></h1></body></html>"
    )


def serp_html(listing_url: Optional[str]) -> str:
    if listing_url is None:
        return "<html><body>No results</body></html>"
    return f'<html><body><script>window.APP_INITIALIZATION_STATE=["{listing_url}"]</script></body></html>'


def directory_transport(places: Dict[str, str], on_request: Optional[Callable[[httpx.Request], None]] = None,
                        text_proxy: str = "") -> httpx.MockTransport:
    """
    Fake directory: ``places`` maps a company slug (``Alpine+Roofing+LLC``) to
    listing HTML. A search whose query mentions the slug's first word embeds
    that listing URL.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if on_request is not None:
            on_request(request)
        url = request.url
        if url.host == "r.jina.ai":
            return httpx.Response(200, text=text_proxy)
        if url.path.startswith("/maps/place/"):
            slug = url.path[len("/maps/place/"):].split("/")[0]
            html = places.get(slug)
            if html is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, html=html)
        if url.path.startswith("/maps/search"):
            haystack = str(url).lower()
            for slug in places:
                first = slug.split("+")[0].lower()
                if first in haystack:
                    return httpx.Response(200, html=serp_html(f"https://www.google.com/maps/place/{slug}/@39.7,-104.9,15z"))
            return httpx.Response(200, html=serp_html(None))
        if url.host.startswith("www.") and "example" in url.host:
            return httpx.Response(200, html="<html><body>Copyright 2019 Contact us</body></html>")
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fast_limiter():
    return RateLimiter(max_concurrency=4, min_delay=0.0, base_backoff=0.01, max_backoff=0.05, reset_after=0.1)


def make_leads(count: int, prefix: str = "lead") -> list:
    return [
        Lead(id=f"{prefix}-{i}", company=f"Company {i} Holdings", industry="Plumbing", location="Austin, TX")
        for i in range(count)
    ]


def build_orchestrator(transport, llm=None, limiter=None, max_concurrency=5):
    """Orchestrator wired to a fake directory and the offline scoring model."""
    from graph.orchestrator import EnrichmentOrchestrator
    from tools.llm import LLMClient
    from tools.maps_resolver import ListingResolver
    from tools.website import WebsiteClassifier

    client = httpx.AsyncClient(transport=transport, follow_redirects=True)
    resolver = ListingResolver(limiter or RateLimiter(max_concurrency=4, min_delay=0.0), client=client)
    website = WebsiteClassifier(client=client)
    return EnrichmentOrchestrator(
        resolver,
        website,
        llm or LLMClient(api_key=""),
        max_concurrency=max_concurrency,
        score_batch_size=5,
        score_flush_delay=0.01,
    )


class WallClock:
    """Manually advanced UTC wall clock for job timestamps."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
async def job_store(tmp_path, wall_clock):
    from jobs.store import JobStore

    store = JobStore(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}", clock=wall_clock)
    await store.create_schema()
    yield store
    await store.close()
