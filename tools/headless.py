import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple
from urllib.parse import quote

from bs4 import BeautifulSoup
from loguru import logger

from tools.extractors import is_listing_url

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
SEARCH_URL = "https://www.google.com/maps/search/{query}"
RATING_SELECTOR = (
    'span[aria-hidden="true"], span[role="img"][aria-label*="star"], '
    '[itemprop="ratingValue"], div[jslog*="rating"]'
)
MAX_RATING = 5.1

_NUMBER = re.compile(r"([0-9]+(?:\.[0-9]+)?)")
_REVIEW_COUNT = re.compile(r"([0-9][0-9,]*)\s+(?:Google\s+)?reviews?", re.IGNORECASE)
_RATING_LABEL = re.compile(r"(stars?|rated|rating)", re.IGNORECASE)
_TEXT_RATING_REVIEWS = re.compile(r"([0-9](?:\.[0-9]+)?)\s*(?:★|stars?)?\s*\(([0-9,]+)\s+reviews?\)", re.IGNORECASE)
_TEXT_OUT_OF_FIVE = re.compile(r"([0-9](?:\.[0-9]+)?)\s*out of 5\s*\(([0-9,]+)\s+Google reviews\)", re.IGNORECASE)


@dataclass
class RenderedListing:
    url: str
    rating: Optional[float]
    review_count: Optional[int]
    strategy: str
    name: Optional[str] = None
    title: Optional[str] = None
    address: Optional[str] = None

    @property
    def identity_text(self) -> str:
        return " | ".join(part for part in (self.name, self.title, self.address) if part)

    @property
    def found(self) -> bool:
        return self.rating is not None or self.review_count is not None


def clean_number(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    match = _NUMBER.search(raw.replace(",", ""))
    return float(match.group(1)) if match else None


class _Candidates:
    def __init__(self):
        self.ratings: List[float] = []
        self.reviews: List[int] = []

    def rating(self, value: Optional[float]) -> None:
        if value is None:
            return
        value = round(value, 2)
        if 0 < value <= MAX_RATING:
            self.ratings.append(value)

    def review(self, value: Optional[float]) -> None:
        if value is None:
            return
        value = int(round(value))
        if value > 0:
            self.reviews.append(value)


def _walk_json(node: Any, found: _Candidates) -> None:
    queue = list(node) if isinstance(node, list) else [node]
    while queue:
        item = queue.pop(0)
        if isinstance(item, list):
            queue.extend(item)
            continue
        if not isinstance(item, dict):
            continue
        aggregate = item.get("aggregateRating")
        if isinstance(aggregate, dict):
            found.rating(clean_number(str(aggregate.get("ratingValue") or aggregate.get("rating") or "")))
            found.review(clean_number(str(aggregate.get("reviewCount") or aggregate.get("ratingCount") or "")))
        queue.extend(value for value in item.values() if isinstance(value, (dict, list)))


def collect_candidates(html: str, body_text: Optional[str] = None) -> Tuple[List[float], List[int]]:
    """
    Gather every rating and review-count reading visible on a rendered page.

    Several redundant sources are consulted: ld+json blocks, star widgets,
    ARIA labels, itemprop meta tags, and finally the body text.

    Returns:
        Tuple of (rating candidates, review-count candidates)
    """
    soup = BeautifulSoup(html or "", "html.parser")
    found = _Candidates()

    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        text = script.string or script.get_text()
        if not text or not text.strip():
            continue
        try:
            _walk_json(json.loads(text), found)
        except json.JSONDecodeError:
            continue

    star = soup.select_one('[aria-label*="star"] span[aria-hidden="true"]') or soup.select_one(
        'span[role="img"][aria-label*="star"]'
    )
    if star is not None:
        found.rating(clean_number(star.get_text(strip=True)))

    for tag in soup.find_all(attrs={"aria-label": True}):
        label = tag.get("aria-label") or ""
        if _RATING_LABEL.search(label):
            found.rating(clean_number(label))

    for meta in soup.select('meta[itemprop="ratingValue"], meta[itemprop="rating"]'):
        found.rating(clean_number(meta.get("content") or meta.get_text()))

    for tag in soup.select('span[aria-label], button[aria-label], a[aria-label], div[jslog*="reviews"]'):
        label = tag.get("aria-label") or tag.get_text(" ", strip=True)
        match = _REVIEW_COUNT.search(label or "")
        if match:
            found.review(clean_number(match.group(1)))

    for meta in soup.select('meta[itemprop="reviewCount"], meta[itemprop="ratingCount"]'):
        found.review(clean_number(meta.get("content") or meta.get_text()))

    text = body_text if body_text is not None else soup.get_text(" ", strip=True)
    for pattern in (_TEXT_RATING_REVIEWS, _TEXT_OUT_OF_FIVE):
        match = pattern.search(text)
        if match:
            found.rating(float(match.group(1)))
            found.review(clean_number(match.group(2)))
    count = _REVIEW_COUNT.search(text)
    if count:
        found.review(clean_number(count.group(1)))

    return found.ratings, found.reviews


def summarize_candidates(ratings: List[float], reviews: List[int]) -> Tuple[Optional[float], Optional[int]]:
    """Keep the highest rating and the highest review count."""
    rating = round(max(ratings), 1) if ratings else None
    review_count = max(reviews) if reviews else None
    return rating, review_count


def read_identity(html: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Return (name, title, address) as displayed on the page."""
    soup = BeautifulSoup(html or "", "html.parser")

    def first_text(selectors: List[str]) -> Optional[str]:
        for selector in selectors:
            tag = soup.select_one(selector)
            if tag is not None:
                text = tag.get_text(" ", strip=True)
                if text:
                    return text
        return None

    name = first_text(['[role="heading"][aria-level="1"]', 'h1 span[role="heading"]', "h1 span", "h1"])
    if not name:
        meta = soup.select_one('meta[itemprop="name"]')
        if meta is not None:
            name = (meta.get("content") or meta.get_text(strip=True) or None)
    title = soup.title.get_text(strip=True) if soup.title else None
    address = first_text(['[data-item-id="address"]', 'button[data-item-id="address"]', '[aria-label*="address"]'])
    return name or None, title or None, address


class HeadlessRenderer:
    """
    Rendering fallback driven by a headless Chromium session (Playwright).

    Args:
        timeout: Navigation and selector timeout in seconds
        settle_delay: Pause after navigation so rating widgets can hydrate
    """

    def __init__(self, timeout: float = 15.0, settle_delay: float = 1.5):
        self.timeout = timeout
        self.settle_delay = settle_delay

    async def render_and_extract(self, query: str, candidate_url: Optional[str] = None) -> Optional[RenderedListing]:
        """
        Render a listing (or a search page) and read rating, reviews and identity.

        Args:
            query: Search text used when no canonical URL is known
            candidate_url: Canonical listing URL to open directly, if any

        Returns:
            RenderedListing, or None when nothing usable was rendered
        """
        try:
            from playwright.async_api import async_playwright

            async with async_playwright() as pw:
                browser = await pw.chromium.launch(
                    headless=True,
                    args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
                    timeout=self.timeout * 1000,
                )
                try:
                    page = await browser.new_page(user_agent=USER_AGENT)
                    return await self._drive(page, query, candidate_url)
                finally:
                    await self._close(browser)
        except Exception as e:
            logger.error(f"Headless rendering failed for '{query}': {e}")
            return None

    async def _close(self, browser) -> None:
        try:
            await browser.close()
        except Exception as e:
            logger.debug(f"Browser close failed: {e}")

    async def _drive(self, page, query: str, candidate_url: Optional[str]) -> Optional[RenderedListing]:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        if is_listing_url(candidate_url):
            return await self._capture(page, candidate_url, "headless_place")

        search_url = SEARCH_URL.format(query=quote(query, safe=""))
        await page.goto(search_url, wait_until="networkidle", timeout=self.timeout * 1000)
        if is_listing_url(page.url):
            return await self._capture(page, page.url, "headless_place")

        try:
            await page.wait_for_selector('a[href*="/maps/place"]', timeout=self.timeout * 1000)
        except PlaywrightTimeoutError:
            logger.debug(f"No listing link rendered for '{query}'")

        link = await page.evaluate(
            "() => { const a = document.querySelector('a[href*=\"/maps/place\"]'); return a ? a.href : null; }"
        )
        if is_listing_url(link):
            return await self._capture(page, link, "headless_serp_place")

        panel = await self._read(page, search_url, "headless_serp_panel")
        return panel if panel.found else None

    async def _capture(self, page, url: str, strategy: str) -> RenderedListing:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        if not page.url.startswith(url):
            await page.goto(url, wait_until="networkidle", timeout=self.timeout * 1000)
        await asyncio.sleep(self.settle_delay)
        try:
            await page.wait_for_selector(RATING_SELECTOR, timeout=self.timeout * 1000)
        except PlaywrightTimeoutError:
            logger.debug(f"Rating widget did not appear on {url}")
        return await self._read(page, url, strategy)

    async def _read(self, page, url: str, strategy: str) -> RenderedListing:
        html = await page.content()
        body_text = await page.inner_text("body")
        rating, review_count = summarize_candidates(*collect_candidates(html, body_text))
        name, title, address = read_identity(html)
        return RenderedListing(
            url=url,
            rating=rating,
            review_count=review_count,
            strategy=strategy,
            name=name,
            title=title,
            address=address,
        )
