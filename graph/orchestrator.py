import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from graph.models import CleanedLead, EnrichedLead, Lead, LeadResult, ReviewSnapshot, UsageTotals
from graph.nodes.enrich import InflightLookups
from graph.nodes.score import fallback_score_result
from graph.pipeline import CancelSignal, PipelineServices, build_lead_workflow
from graph.state import LeadTrace
from tools.errors import JobCancelled
from tools.llm import LLMClient
from tools.maps_resolver import ListingResolver
from tools.score_batcher import ScoreBatcher
from tools.website import WebsiteClassifier

ProgressCallback = Callable[[LeadResult, int, int], Awaitable[None]]


@dataclass
class BatchResult:
    results: List[LeadResult]
    usage: UsageTotals = field(default_factory=UsageTotals)


class EnrichmentOrchestrator:
    """
    Runs clean -> enrich -> score for many leads with a fixed concurrency ceiling.

    Leads are admitted until ``max_concurrency`` are active, then the
    orchestrator waits for the first one to finish and refills the slot. A lead
    that fails is turned into a zero-score result; it never fails the batch.
    """

    def __init__(
        self,
        resolver: ListingResolver,
        website: WebsiteClassifier,
        llm: LLMClient,
        lookups: Optional[InflightLookups] = None,
        max_concurrency: int = 5,
        score_batch_size: int = 5,
        score_flush_delay: float = 0.05,
    ):
        self.resolver = resolver
        self.website = website
        self.llm = llm
        self.lookups = lookups or InflightLookups(retain_for=resolver.cache_ttl)
        self.max_concurrency = max(1, max_concurrency)
        self.score_batch_size = score_batch_size
        self.score_flush_delay = score_flush_delay

    def _services(self, cancel: CancelSignal) -> PipelineServices:
        usage = UsageTotals()
        batcher = ScoreBatcher(
            self.llm.score_batch,
            batch_size=self.score_batch_size,
            flush_delay=self.score_flush_delay,
            on_usage=lambda tokens: usage.add("scoring", tokens),
        )
        return PipelineServices(
            resolver=self.resolver,
            website=self.website,
            llm=self.llm,
            lookups=self.lookups,
            batcher=batcher,
            usage=usage,
            cancel=cancel,
        )

    async def process(
        self,
        leads: Sequence[Lead],
        use_cleaner: bool = False,
        max_concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelSignal] = None,
        indexes: Optional[Sequence[int]] = None,
    ) -> BatchResult:
        """
        Score a batch of leads.

        Args:
            leads: Leads to score
            use_cleaner: Let the model revise cleaned identity fields
            max_concurrency: Override for the number of leads in flight
            on_progress: Awaited with (result, completed_count, total) per lead
            cancel: Cooperative cancellation flag
            indexes: Original positions of ``leads``; defaults to 0..n-1

        Returns:
            BatchResult with results sorted by index and token usage totals

        Raises:
            JobCancelled: cancellation was requested; raised after in-flight leads settle
        """
        if indexes is not None and len(indexes) != len(leads):
            raise ValueError("indexes must match leads one to one")

        cancel = cancel or CancelSignal()
        services = self._services(cancel)
        workflow = build_lead_workflow(services)
        limit = max(1, max_concurrency or self.max_concurrency)
        total = len(leads)

        queue: Deque[Tuple[int, Lead]] = deque(zip(indexes if indexes is not None else range(total), leads))
        active: Dict["asyncio.Task[Optional[LeadResult]]", int] = {}
        results: List[LeadResult] = []
        progress_error: Optional[BaseException] = None

        logger.info(f"Processing {total} leads with concurrency {limit}")
        try:
            while queue or active:
                while queue and len(active) < limit and not cancel.is_set and progress_error is None:
                    index, lead = queue.popleft()
                    task = asyncio.ensure_future(self._run_lead(workflow, services, index, lead, use_cleaner))
                    active[task] = index
                if not active:
                    break

                done, _ = await asyncio.wait(active.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    active.pop(task)
                    result = task.result()
                    if result is None:
                        continue
                    results.append(result)
                    if on_progress is not None and progress_error is None:
                        try:
                            await on_progress(result, len(results), total)
                        except Exception as e:
                            logger.error(f"Progress callback failed, stopping batch: {e}")
                            progress_error = e
        except asyncio.CancelledError:
            for task in active:
                task.cancel()
            raise

        if progress_error is not None:
            raise progress_error
        if cancel.is_set:
            logger.warning(f"Batch cancelled after {len(results)}/{total} leads: {cancel.reason}")
            raise JobCancelled(cancel.reason)

        results.sort(key=lambda r: r.index)
        return BatchResult(results=results, usage=services.usage)

    async def _run_lead(
        self,
        workflow,
        services: PipelineServices,
        index: int,
        lead: Lead,
        use_cleaner: bool,
    ) -> Optional[LeadResult]:
        trace = LeadTrace()
        started = time.perf_counter()
        status = "success"
        try:
            final = await workflow.ainvoke({"index": index, "lead": lead, "use_cleaner": use_cleaner, "trace": trace})
            return LeadResult(
                index=index,
                lead=lead,
                score=final["score"],
                enriched=EnrichedLead(cleaned=final["cleaned"], reviews=final["reviews"], website=final.get("website")),
            )
        except JobCancelled:
            status = "cancelled"
            return None
        except Exception as e:
            status = "error"
            message = str(e) or e.__class__.__name__
            logger.error(f"Failed to score lead {lead.id}: {message}")
            cleaned = trace.cleaned or CleanedLead(
                lead_id=lead.id,
                company=lead.company or "Unknown Company",
                industry=lead.industry,
                website=lead.website,
                location=lead.location,
                notes=lead.notes,
                raw_fields=lead.raw_fields,
            )
            reviews = trace.reviews or ReviewSnapshot()
            return LeadResult(
                index=index,
                lead=lead,
                score=fallback_score_result(lead, cleaned, reviews, message),
                enriched=EnrichedLead(cleaned=cleaned, reviews=reviews, website=trace.website),
                error=message,
            )
        finally:
            timings = " ".join(f"{stage}={seconds * 1000:.0f}ms" for stage, seconds in trace.timings.items())
            method = trace.reviews.method if trace.reviews else "not_attempted"
            logger.info(
                f"Lead {lead.id} {status} in {(time.perf_counter() - started) * 1000:.0f}ms "
                f"[{timings}] reviews={method} cache_hit={trace.cache_hit_key or '-'}"
            )
