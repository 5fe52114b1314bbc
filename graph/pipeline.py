import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from langgraph.graph import END, START, StateGraph

from graph.models import UsageTotals
from graph.nodes.clean import clean
from graph.nodes.enrich import InflightLookups, enrich
from graph.nodes.score import score
from graph.state import LeadState
from tools.errors import JobCancelled
from tools.llm import LLMClient
from tools.maps_resolver import ListingResolver
from tools.score_batcher import ScoreBatcher
from tools.website import WebsiteClassifier


class CancelSignal:
    """Cooperative cancellation flag with the reason it was raised for."""

    def __init__(self):
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if self.reason is None:
            self.reason = reason or "Cancelled by user"

    @property
    def is_set(self) -> bool:
        return self.reason is not None


@dataclass
class PipelineServices:
    """Collaborators one batch run shares across its leads."""

    resolver: ListingResolver
    website: WebsiteClassifier
    llm: LLMClient
    lookups: InflightLookups
    batcher: ScoreBatcher
    usage: UsageTotals = field(default_factory=UsageTotals)
    cancel: CancelSignal = field(default_factory=CancelSignal)
    clock: Callable[[], float] = time.perf_counter

    def check_cancelled(self) -> None:
        if self.cancel.is_set:
            raise JobCancelled(self.cancel.reason)


def build_lead_workflow(services: PipelineServices):
    """Build the per-lead workflow: clean -> enrich -> score."""

    async def clean_node(state: LeadState) -> LeadState:
        return await clean(state, services)

    async def enrich_node(state: LeadState) -> LeadState:
        return await enrich(state, services)

    async def score_node(state: LeadState) -> LeadState:
        return await score(state, services)

    workflow = StateGraph(LeadState)

    workflow.add_node("clean", clean_node)
    workflow.add_node("enrich", enrich_node)
    workflow.add_node("score", score_node)

    workflow.add_edge(START, "clean")
    workflow.add_edge("clean", "enrich")
    workflow.add_edge("enrich", "score")
    workflow.add_edge("score", END)

    return workflow.compile()
