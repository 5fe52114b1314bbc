import math
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote, urlsplit

import httpx
from loguru import logger

from graph.models import ReviewSnapshot
from tools.errors import IdentityMismatch, NetworkTimeout, NotFound
from tools.extractors import DEFAULT_EXTRACTORS, Extractor, ListingPage, extract_listing_url, is_listing_url, run_extractors
from tools.identity import IdentityMatcher, MatchPolicy, normalize_key
from tools.rate_limiter import RateLimiter

CACHE_VERSION = "identity_v2"
MAX_REVIEW_COUNT = 100000
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
SEARCH_URL = "https://www.google.com/maps/search/{query}"
API_QUERY_URL = "https://www.google.com/maps/search/?api=1&query={query}"
TEXT_PROXY_URL = "https://r.jina.ai/https://maps.google.com/maps?q={query}"
TEXT_PATTERN = re.compile(r"([0-9](?:\.[0-9]+)?)\s*(?:★|stars?)?\s*\(([0-9,]+)\)", re.IGNORECASE)
THROTTLE_STATUSES = (403, 429, 503)
# malformed URLs surface as InvalidURL, or UnicodeError (a ValueError) for bad IDNA labels
FETCH_ERRORS = (NetworkTimeout, httpx.HTTPError, httpx.InvalidURL, ValueError)

_GOOGLE_HOST = re.compile(r"(^|\.)google\.", re.IGNORECASE)


@dataclass
class _CacheEntry:
    snapshot: ReviewSnapshot
    expires_at: float


@dataclass
class _TextStage:
    label: str
    tokens: List[str]
    required: List[str]
    min_required: int


@dataclass
class _TextCandidate:
    rating: float
    review_count: Optional[int]
    snippet: str
    matched: int = 0
    identity: int = 0
    primary: int = 0

    @property
    def token_score(self) -> int:
        return self.matched + self.primary


def sanitize_snapshot(url: Optional[str], rating: Optional[float], review_count: Optional[int], method: str) -> ReviewSnapshot:
    rating = round(rating, 1) if rating is not None and math.isfinite(rating) else None
    if review_count is not None:
        review_count = min(max(int(review_count), 0), MAX_REVIEW_COUNT)
    return ReviewSnapshot(average_rating=rating, review_count=review_count, source_url=url, method=method)


def is_google_host(url: str) -> bool:
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return False
    return bool(_GOOGLE_HOST.search(host))


class ListingResolver:
    """
    Finds a business's public directory listing and reads its rating signals.

    Every lookup runs as a single task on the shared RateLimiter. Inside it,
    strategies are tried in order and the first identity-verified result with
    a rating or review count wins:

    1. provided listing URL, then the listing URL remembered for the company
    2. headless rendering (when a renderer is configured)
    3. search results page -> embedded listing URL
    4. API-style redirect probe
    5. text-extraction proxy, with progressively relaxed token matching

    A lookup that finds nothing returns ``ReviewSnapshot.not_found()``.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        client: Optional[httpx.AsyncClient] = None,
        renderer=None,
        cache_ttl: float = 900.0,
        timeout: float = 15.0,
        policy: Optional[MatchPolicy] = None,
        extractors: Sequence[Extractor] = DEFAULT_EXTRACTORS,
        clock=time.monotonic,
    ):
        self.limiter = limiter
        self.renderer = renderer
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.policy = policy or MatchPolicy()
        self.extractors = tuple(extractors)
        self._clock = clock
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        self.network_calls = 0
        self._cache: Dict[str, _CacheEntry] = {}
        self._seen_urls: Dict[str, str] = {}

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def cache_key(self, query: str, provided_url: Optional[str], company: Optional[str]) -> str:
        return "::".join([CACHE_VERSION, normalize_key(query) or "", provided_url or "", normalize_key(company) or ""])

    def cached(self, query: str, provided_url: Optional[str] = None, company: Optional[str] = None) -> Optional[ReviewSnapshot]:
        key = self.cache_key(query, provided_url, company)
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._cache[key]
            return None
        return entry.snapshot

    async def resolve(self, query: str, provided_url: Optional[str] = None, company: Optional[str] = None) -> ReviewSnapshot:
        """
        Resolve a business listing into a ReviewSnapshot.

        Args:
            query: Search text, usually company plus location
            provided_url: Listing URL supplied with the lead, if any
            company: Company name used for identity verification

        Returns:
            ReviewSnapshot whose ``method`` names the winning strategy
        """
        hit = self.cached(query, provided_url, company)
        if hit is not None:
            logger.debug(f"Listing cache hit for '{query}' ({hit.method})")
            return hit

        snapshot = await self.limiter.schedule(
            lambda: self._resolve_uncached(query, provided_url, company),
            query=query,
            provided_url=provided_url,
        )

        # A negative answer keyed only by company/query is retried next time.
        if snapshot.found or provided_url:
            key = self.cache_key(query, provided_url, company)
            self._cache[key] = _CacheEntry(snapshot=snapshot, expires_at=self._clock() + self.cache_ttl)
        return snapshot

    async def _resolve_uncached(self, query: str, provided_url: Optional[str], company: Optional[str]) -> ReviewSnapshot:
        matcher = IdentityMatcher.for_company(query, company, self.policy)
        tried: List[str] = []
        company_key = normalize_key(company) or normalize_key(query)

        resolved_url = await self._follow_redirect(provided_url) if provided_url else None
        seen_url = self._seen_urls.get(company_key) if company_key else None

        for url, method in ((resolved_url, "provided"), (seen_url, "seen")):
            if method == "seen" and url == resolved_url:
                continue
            if is_listing_url(url):
                snapshot = await self._attempt_listing(url, method, matcher, tried)
                if snapshot is not None and snapshot.found:
                    return self._remember(company_key, snapshot)

        if self.renderer is not None:
            hint = next((url for url in (resolved_url, seen_url) if is_listing_url(url)), None)
            snapshot = await self._attempt_render(query, hint, matcher, tried)
            if snapshot is not None:
                return self._remember(company_key, snapshot)

        search = await self._fetch_page(SEARCH_URL.format(query=quote(query, safe="")))
        if search is None:
            tried.append("serp:fetch_failed")
        else:
            listing_url = extract_listing_url(search.html)
            if listing_url is None:
                tried.append("serp:no_listing")
            else:
                snapshot = await self._attempt_listing(listing_url, "serp_place", matcher, tried)
                if snapshot is not None and snapshot.found:
                    return self._remember(company_key, snapshot)

        api_url = await self._follow_redirect(API_QUERY_URL.format(query=quote(query, safe="")))
        if is_listing_url(api_url) and api_url != resolved_url:
            snapshot = await self._attempt_listing(api_url, "api_query", matcher, tried)
            if snapshot is not None and snapshot.found:
                return self._remember(company_key, snapshot)
        else:
            tried.append("api_query:no_redirect")

        snapshot = await self._attempt_text_proxy(query, matcher, tried)
        if snapshot is not None:
            return snapshot

        logger.info(f"No listing found for '{query}': {' -> '.join(tried) or 'none'}")
        return ReviewSnapshot.not_found()

    def _remember(self, company_key: Optional[str], snapshot: ReviewSnapshot) -> ReviewSnapshot:
        if company_key and is_listing_url(snapshot.source_url):
            self._seen_urls[company_key] = snapshot.source_url
        return snapshot

    async def _fetch(self, url: str) -> httpx.Response:
        google = is_google_host(url)
        self.network_calls += 1
        try:
            response = await self.client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            if google:
                self.limiter.register_throttle_signal("timeout", url=url)
            raise NetworkTimeout(f"Timed out fetching {url}") from e
        except httpx.HTTPError as e:
            if google:
                self.limiter.register_throttle_signal("fetch_error", url=url, error=str(e))
            raise

        if google:
            if response.status_code in THROTTLE_STATUSES or response.status_code >= 500:
                self.limiter.register_throttle_signal("http_status", status=response.status_code, url=url)
            else:
                self.limiter.register_success()
        return response

    async def _fetch_page(self, url: str) -> Optional[ListingPage]:
        try:
            response = await self._fetch(url)
        except FETCH_ERRORS as e:
            logger.warning(f"Fetch failed for {url}: {e}")
            return None
        if not response.is_success:
            logger.info(f"Fetch returned {response.status_code} for {url}")
            return None
        return ListingPage(str(response.url), response.text)

    async def _follow_redirect(self, url: str) -> str:
        try:
            response = await self._fetch(url)
        except FETCH_ERRORS as e:
            logger.warning(f"Redirect resolution failed for {url}: {e}")
            return url
        return str(response.url)

    async def _attempt_listing(self, url: str, method: str, matcher: IdentityMatcher, tried: List[str]) -> Optional[ReviewSnapshot]:
        page = await self._fetch_page(url)
        if page is None:
            tried.append(f"{method}:fetch_failed")
            return None

        prefix = page.prefix(self.policy.page_prefix_chars)
        if not matcher.matches_any(page.url, page.title, prefix):
            tried.append(f"{method}:nomatch")
            return sanitize_snapshot(page.url, None, None, f"{method}:nomatch")

        extracted = run_extractors(page, self.extractors)
        if extracted is None:
            tried.append(f"{method}:none")
            return sanitize_snapshot(page.url, None, None, f"{method}:none")

        name, candidate = extracted
        tried.append(f"{method}:{name}")
        return sanitize_snapshot(page.url, candidate.rating, candidate.review_count, f"{method}:{name}")

    async def _attempt_render(self, query: str, hint: Optional[str], matcher: IdentityMatcher, tried: List[str]) -> Optional[ReviewSnapshot]:
        rendered = await self.renderer.render_and_extract(query, hint)
        if rendered is None:
            tried.append("headless:none")
            return None
        if not matcher.matches(rendered.identity_text):
            tried.append(f"{rendered.strategy}:nomatch")
            return None
        tried.append(rendered.strategy)
        if not rendered.found:
            return None
        return sanitize_snapshot(rendered.url, rendered.rating, rendered.review_count, rendered.strategy)

    async def _attempt_text_proxy(self, query: str, matcher: IdentityMatcher, tried: List[str]) -> Optional[ReviewSnapshot]:
        proxy_url = TEXT_PROXY_URL.format(query=quote(query, safe=""))
        try:
            response = await self._fetch(proxy_url)
        except FETCH_ERRORS as e:
            logger.warning(f"Text proxy failed for '{query}': {e}")
            tried.append("text_proxy:fetch_failed")
            return None
        if not response.is_success:
            tried.append(f"text_proxy:http_{response.status_code}")
            return None

        text = response.text
        for stage in self._text_stages(matcher):
            try:
                candidate = self.pick_text_candidate(text, stage)
            except IdentityMismatch:
                tried.append(f"{stage.label}:nomatch")
                continue
            except NotFound:
                tried.append(f"{stage.label}:none")
                break
            tried.append(stage.label)
            return sanitize_snapshot(proxy_url, candidate.rating, candidate.review_count, stage.label)
        return None

    def _text_stages(self, matcher: IdentityMatcher) -> List[_TextStage]:
        tokens = matcher.identity_tokens or matcher.query_tokens
        stages = [_TextStage("text_proxy", tokens, matcher.required_tokens, matcher.min_required)]
        if matcher.min_required > 1:
            relaxed = matcher.required_tokens[: self.policy.relaxed_required_tokens]
            stages.append(_TextStage("text_proxy_relaxed", tokens, relaxed, len(relaxed)))
        loose = matcher.query_tokens or matcher.identity_tokens
        if loose:
            stages.append(_TextStage("text_proxy_loose", loose, [], 0))
        return stages

    def pick_text_candidate(self, text: str, stage: _TextStage) -> _TextCandidate:
        """
        Choose the best ``rating (count)`` tuple in a text snapshot.

        Raises:
            NotFound: the text holds no rating tuples at all
            IdentityMismatch: tuples exist but none sit near the identity tokens
        """
        if not stage.tokens:
            raise IdentityMismatch("no identity tokens to match against")

        matches = list(TEXT_PATTERN.finditer(text))
        if not matches:
            raise NotFound("no rating tuples in text snapshot")

        radius = self.policy.snippet_radius
        primary_tokens = stage.required or stage.tokens[:3]
        accepted: List[_TextCandidate] = []
        for match in matches[: self.policy.max_text_candidates]:
            start = max(0, match.start() - radius)
            snippet = re.sub(r"\s+", " ", text[start:match.end() + radius]).strip().lower()
            try:
                rating = float(match.group(1))
            except ValueError:
                continue
            count_digits = match.group(2).replace(",", "")
            candidate = _TextCandidate(
                rating=rating,
                review_count=int(count_digits) if count_digits.isdigit() else None,
                snippet=snippet,
            )
            matched = [token for token in stage.tokens if token in snippet]
            candidate.matched = len(matched)
            candidate.primary = sum(1 for token in primary_tokens if token in snippet)
            if stage.required:
                candidate.identity = sum(1 for token in stage.required if token in snippet)
                has_identity = candidate.identity >= max(1, stage.min_required)
            else:
                candidate.identity = len(matched)
                has_identity = len(matched) > 0
            if candidate.token_score > 0 and has_identity and candidate.review_count is not None:
                accepted.append(candidate)

        if not accepted:
            raise IdentityMismatch("no rating tuple near the identity tokens")

        accepted.sort(key=lambda c: (-c.identity, -c.primary, -c.token_score, -(c.review_count or 0)))
        return accepted[0]
