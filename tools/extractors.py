import json
import math
import re
from typing import NamedTuple, Optional, Protocol, Sequence, Tuple

from bs4 import BeautifulSoup
from loguru import logger

LISTING_URL_PATTERN = re.compile(r"https://www\.google\.com/maps/place/[^\"\\\s<>]+")
STAR_PATTERN = re.compile(r"([0-9](?:\.[0-9]+)?)\s*★")
PAREN_COUNT_PATTERN = re.compile(r"\(([0-9][0-9,]*)\)")
ARIA_STARS_PATTERN = re.compile(r"^\s*([0-9](?:\.[0-9]+)?)\s+stars?\b", re.IGNORECASE)
ARIA_REVIEWS_PATTERN = re.compile(r"([0-9][0-9,]*)\s+reviews?\b", re.IGNORECASE)
LEADING_NUMBER_PATTERN = re.compile(r"^\s*([0-9](?:\.[0-9]+)?)\b")


class Candidate(NamedTuple):
    rating: Optional[float]
    review_count: Optional[int]


class ListingPage:
    """A fetched listing page; parsing happens lazily and at most once."""

    def __init__(self, url: str, html: str):
        self.url = url
        self.html = html or ""
        self._soup: Optional[BeautifulSoup] = None

    @property
    def soup(self) -> BeautifulSoup:
        if self._soup is None:
            self._soup = BeautifulSoup(self.html, "html.parser")
        return self._soup

    @property
    def title(self) -> Optional[str]:
        tag = self.soup.title
        if tag is None or not tag.string:
            return None
        return tag.string.strip() or None

    @property
    def text(self) -> str:
        return self.soup.get_text(" ", strip=True)

    def prefix(self, chars: int) -> str:
        return self.html[:chars]


class Extractor(Protocol):
    """Pulls a rating/review candidate out of a listing page."""

    name: str

    def try_extract(self, page: ListingPage) -> Optional[Candidate]:
        ...


def parse_rating(raw) -> Optional[float]:
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return round(value, 1)


def parse_count(raw) -> Optional[int]:
    if raw is None:
        return None
    digits = str(raw).replace(",", "").strip()
    if not digits:
        return None
    try:
        return int(float(digits))
    except ValueError:
        return None


def _candidate_or_none(rating: Optional[float], count: Optional[int]) -> Optional[Candidate]:
    if not rating and not count:
        return None
    return Candidate(rating=rating, review_count=count)


class JsonLdExtractor:
    """Reads schema.org ``aggregateRating`` from ld+json blocks."""

    name = "ldjson"

    def try_extract(self, page: ListingPage) -> Optional[Candidate]:
        for script in page.soup.find_all("script", attrs={"type": "application/ld+json"}):
            body = script.string or script.get_text()
            if not body or not body.strip():
                continue
            try:
                payload = json.loads(body)
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping malformed ld+json block on {page.url}: {e}")
                continue

            items = payload if isinstance(payload, list) else [payload]
            for item in items:
                if not isinstance(item, dict):
                    continue
                aggregate = item.get("aggregateRating")
                if not isinstance(aggregate, dict) or not aggregate.get("ratingValue"):
                    continue
                rating = parse_rating(aggregate.get("ratingValue"))
                if rating is None:
                    continue
                return Candidate(rating=rating, review_count=parse_count(aggregate.get("reviewCount")))
        return None


class AriaLabelExtractor:
    """Reads accessible labels such as ``aria-label="4.6 stars"``."""

    name = "aria"

    def try_extract(self, page: ListingPage) -> Optional[Candidate]:
        rating = None
        count = None
        for tag in page.soup.find_all(attrs={"aria-label": True}):
            label = tag.get("aria-label") or ""
            if rating is None:
                match = ARIA_STARS_PATTERN.search(label)
                if match:
                    rating = parse_rating(match.group(1))
            if count is None:
                match = ARIA_REVIEWS_PATTERN.search(label)
                if match:
                    count = parse_count(match.group(1))
            if rating is not None and count is not None:
                break

        if rating is None:
            for span in page.soup.find_all(attrs={"aria-hidden": "true"}):
                match = LEADING_NUMBER_PATTERN.match(span.get_text())
                if match:
                    rating = parse_rating(match.group(1))
                    break

        return _candidate_or_none(rating, count)


class TextRegexExtractor:
    """Last resort: ``4.6★`` and ``(128)`` anywhere in the visible text."""

    name = "regex"

    def try_extract(self, page: ListingPage) -> Optional[Candidate]:
        text = page.text
        star = STAR_PATTERN.search(text)
        paren = PAREN_COUNT_PATTERN.search(text)
        rating = parse_rating(star.group(1)) if star else None
        count = parse_count(paren.group(1)) if paren else None
        return _candidate_or_none(rating, count)


DEFAULT_EXTRACTORS: Sequence[Extractor] = (JsonLdExtractor(), AriaLabelExtractor(), TextRegexExtractor())


def run_extractors(page: ListingPage, extractors: Sequence[Extractor]) -> Optional[Tuple[str, Candidate]]:
    """Return ``(extractor_name, candidate)`` for the first extractor that yields a number."""
    for extractor in extractors:
        candidate = extractor.try_extract(page)
        if candidate is not None:
            return extractor.name, candidate
    return None


def is_listing_url(url: Optional[str]) -> bool:
    return bool(url) and "/maps/place" in url


def extract_listing_url(html: str) -> Optional[str]:
    """Find the first canonical listing URL embedded in a search results page."""
    decoded = (html or "").replace("\\u003d", "=").replace("\\u0026", "&")
    match = LISTING_URL_PATTERN.search(decoded)
    return match.group(0) if match else None

