from dataclasses import dataclass, field
from typing import Dict, List, Optional, TypedDict

from graph.models import CleanedLead, Lead, ReviewSnapshot, ScoreResult, WebsiteSignal


@dataclass
class LeadTrace:
    """Side record of a lead's progress; survives when a later stage raises."""

    cleaned: Optional[CleanedLead] = None
    reviews: Optional[ReviewSnapshot] = None
    website: Optional[WebsiteSignal] = None
    cache_hit_key: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)


class LeadState(TypedDict, total=False):
    """State shape for the per-lead scoring workflow."""
    index: int                       # position in the submitted batch
    lead: Lead
    use_cleaner: bool
    cleaned: CleanedLead
    query: str                       # directory search text (company + location)
    lookup_keys: List[str]           # maps:/company:/query: dedup keys
    reviews: ReviewSnapshot
    website: Optional[WebsiteSignal]
    score: ScoreResult
    trace: LeadTrace
