import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from graph.models import CleanedLead, Lead, ReviewSnapshot
from graph.state import LeadState
from tools.identity import normalize_key, normalize_url_key


def build_lookup_query(cleaned: CleanedLead, lead: Lead) -> str:
    parts = [part for part in (cleaned.company, cleaned.location) if part]
    return " ".join(parts) or cleaned.company or lead.company or ""


def lookup_keys(cleaned: CleanedLead, lead: Lead, query: str) -> List[str]:
    """Alternative dedup keys for one lookup, most specific first."""
    keys = []
    maps_key = normalize_url_key(cleaned.maps_url)
    if maps_key:
        keys.append(f"maps:{maps_key}")
    company_key = normalize_key(cleaned.company or lead.company)
    if company_key:
        keys.append(f"company:{company_key}")
    query_key = normalize_key(query)
    if query_key:
        keys.append(f"query:{query_key}")
    return keys


class InflightLookups:
    """
    Maps lookup keys to the future of a running listing lookup.

    A lead whose key set overlaps a running (or recently successful) lookup
    awaits that lookup instead of starting its own. Failed, cancelled and
    not-found lookups release their keys as soon as they settle; successful
    ones are kept for ``retain_for`` seconds.
    """

    def __init__(self, retain_for: float = 0.0):
        self.retain_for = retain_for
        self._futures: Dict[str, "asyncio.Future[ReviewSnapshot]"] = {}
        self.started = 0

    def __len__(self) -> int:
        return len(self._futures)

    def find(self, keys: List[str]) -> Optional[Tuple[str, "asyncio.Future[ReviewSnapshot]"]]:
        for key in keys:
            future = self._futures.get(key)
            if future is not None:
                return key, future
        return None

    async def run(
        self,
        keys: List[str],
        factory: Callable[[], Awaitable[ReviewSnapshot]],
    ) -> Tuple[ReviewSnapshot, Optional[str]]:
        """
        Join a matching lookup or start a new one.

        Returns:
            Tuple of (snapshot, key that was reused or None for a fresh lookup)
        """
        existing = self.find(keys)
        if existing is not None:
            key, future = existing
            logger.debug(f"Reusing in-flight listing lookup for {key}")
            return await asyncio.shield(future), key

        self.started += 1
        future = asyncio.ensure_future(factory())
        for key in keys:
            self._futures[key] = future
        future.add_done_callback(lambda done: self._settle(keys, done))
        return await asyncio.shield(future), None

    def _settle(self, keys: List[str], future: "asyncio.Future[ReviewSnapshot]") -> None:
        keep = not future.cancelled() and future.exception() is None and future.result().found
        if keep and self.retain_for > 0:
            asyncio.get_running_loop().call_later(self.retain_for, self._release, keys, future)
        else:
            self._release(keys, future)

    def _release(self, keys: List[str], future: "asyncio.Future[ReviewSnapshot]") -> None:
        for key in keys:
            if self._futures.get(key) is future:
                del self._futures[key]


async def enrich(state: LeadState, services) -> LeadState:
    """Look up the directory listing and classify the website concurrently."""
    services.check_cancelled()
    lead = state["lead"]
    cleaned = state["cleaned"]
    trace = state["trace"]

    query = build_lookup_query(cleaned, lead)
    keys = lookup_keys(cleaned, lead, query)
    company = cleaned.company or lead.company or None

    async def reviews() -> ReviewSnapshot:
        started = services.clock()
        snapshot, hit_key = await services.lookups.run(
            keys, lambda: services.resolver.resolve(query, cleaned.maps_url, company)
        )
        trace.reviews = snapshot
        trace.cache_hit_key = hit_key
        trace.timings["reviews"] = services.clock() - started
        return snapshot

    async def website():
        started = services.clock()
        signal = await services.website.analyze(cleaned.website or lead.website)
        trace.website = signal
        trace.timings["website"] = services.clock() - started
        return signal

    snapshot, signal = await asyncio.gather(reviews(), website())

    state["query"] = query
    state["lookup_keys"] = keys
    state["reviews"] = snapshot
    state["website"] = signal
    return state
