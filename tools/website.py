import re
from datetime import date
from typing import Callable, Optional

import httpx
from loguru import logger

from graph.models import BonusFlags, WebsiteSignal
from tools.numbers import clamp, round_half_up

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

PRICING = re.compile(r"pricing|plans|subscription|per month|per year|rate card", re.IGNORECASE)
BOOKING = re.compile(r"schedule|book now|book online|calendly|appointments?|booking", re.IGNORECASE)
CTA = re.compile(r"request (?:a )?quote|sign up|buy now|get started|contact us|call now", re.IGNORECASE)

UNREACHABLE_BASE = 4
BONUS_POINTS = 5


def normalize_final_score(base: int, bonus: int) -> int:
    return int(clamp(round_half_up((base + bonus) / 2.5), 0, 10))


class WebsiteClassifier:
    """Fetches a company homepage once and grades how alive it looks."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0,
                 today: Callable[[], date] = date.today):
        self.timeout = timeout
        self._today = today
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def base_score(self, html: str) -> int:
        year = self._today().year
        if any(str(y) in html for y in (year, year - 1, year - 2)):
            return 10
        if "copyright" in html.lower():
            return 6
        return 5

    async def analyze(self, url: Optional[str]) -> Optional[WebsiteSignal]:
        """
        Classify a website. Never raises.

        Args:
            url: Normalized website URL

        Returns:
            WebsiteSignal, or None when there is no URL to check
        """
        if not url:
            return None

        variants = [url]
        if url.startswith("https://"):
            variants.append("http://" + url[len("https://"):])

        for variant in variants:
            try:
                response = await self.client.get(variant, timeout=self.timeout)
            except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
                logger.warning(f"Website fetch failed for {variant}: {e}")
                continue

            content_type = response.headers.get("content-type", "")
            if not response.is_success or "text" not in content_type:
                return WebsiteSignal(
                    url=variant,
                    reachable=False,
                    status=response.status_code,
                    base_score=UNREACHABLE_BASE,
                    final_score=normalize_final_score(UNREACHABLE_BASE, 0),
                    method="http_status",
                )

            html = response.text
            flags = BonusFlags(
                pricing=bool(PRICING.search(html)),
                booking=bool(BOOKING.search(html)),
                cta=bool(CTA.search(html)),
            )
            bonus = BONUS_POINTS * sum((flags.pricing, flags.booking, flags.cta))
            base = self.base_score(html)
            return WebsiteSignal(
                url=variant,
                reachable=True,
                status=response.status_code,
                base_score=base,
                bonus_flags=flags,
                final_score=normalize_final_score(base, bonus),
                method="http_fetch",
            )

        return WebsiteSignal(
            url=url,
            reachable=False,
            base_score=UNREACHABLE_BASE,
            final_score=normalize_final_score(UNREACHABLE_BASE, 0),
            method="fallback",
        )
