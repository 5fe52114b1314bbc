import pytest
from unittest.mock import AsyncMock, MagicMock

from graph.models import BonusFlags, Lead, ReviewSnapshot, TokenUsage, WebsiteSignal
from graph.nodes.clean import clean
from graph.nodes.enrich import InflightLookups, enrich
from graph.nodes.score import score, select_weights
from graph.pipeline import CancelSignal, PipelineServices, build_lead_workflow
from graph.state import LeadTrace
from tools.errors import JobCancelled
from tools.llm import LLMClient
from tools.score_batcher import ScoreBatcher


class TestLeadScoringFlow:
    """Test the per-lead clean -> enrich -> score workflow."""

    def setup_method(self):
        """Set up test fixtures."""
        self.lead = Lead(
            id="lead-1",
            company="Alpine Roofing LLC",
            industry="Roofing",
            website="alpineroofing.com",
            location="Denver, CO",
            raw_fields={"year_founded": "2008", "phone": "(303) 555-0100"},
        )
        self.reviews = ReviewSnapshot(
            average_rating=4.6,
            review_count=128,
            source_url="https://www.google.com/maps/place/Alpine+Roofing+LLC",
            method="serp_place:ldjson",
        )
        self.website = WebsiteSignal(
            url="https://alpineroofing.com",
            reachable=True,
            status=200,
            base_score=10,
            bonus_flags=BonusFlags(pricing=True, booking=False, cta=True),
            final_score=8,
            method="http_fetch",
        )

        self.resolver = MagicMock()
        self.resolver.resolve = AsyncMock(return_value=self.reviews)
        self.site = MagicMock()
        self.site.analyze = AsyncMock(return_value=self.website)
        self.llm = LLMClient(api_key="")
        self.services = PipelineServices(
            resolver=self.resolver,
            website=self.site,
            llm=self.llm,
            lookups=InflightLookups(),
            batcher=ScoreBatcher(self.llm.score_batch, batch_size=1, flush_delay=0.0),
        )

    def initial_state(self, use_cleaner=False):
        return {"index": 0, "lead": self.lead, "use_cleaner": use_cleaner, "trace": LeadTrace()}

    async def test_clean_node(self):
        """Test the clean node normalizes the lead and records provenance."""
        result = await clean(self.initial_state(), self.services)

        cleaned = result["cleaned"]
        assert cleaned.lead_id == "lead-1"
        assert cleaned.company == "Alpine Roofing LLC"
        assert cleaned.website == "https://alpineroofing.com"
        assert cleaned.years_in_business is not None
        assert result["trace"].cleaned is cleaned
        assert "clean" in result["trace"].timings

    async def test_clean_node_with_ai_cleaner(self):
        """Test model-suggested fields are applied and tagged as derived."""
        self.llm.normalize_lead = AsyncMock(
            return_value=({"industry": "Commercial Roofing"}, TokenUsage(prompt_tokens=10, completion_tokens=2, total_tokens=12))
        )

        result = await clean(self.initial_state(use_cleaner=True), self.services)

        assert result["cleaned"].industry == "Commercial Roofing"
        assert result["cleaned"].provenance["industry"] == "derived"
        assert self.services.usage.cleaning.total_tokens == 12

    async def test_enrich_node(self):
        """Test the enrich node runs the listing lookup and website check."""
        state = await clean(self.initial_state(), self.services)
        result = await enrich(state, self.services)

        assert result["reviews"] == self.reviews
        assert result["website"] == self.website
        assert result["query"] == "Alpine Roofing LLC Denver, CO"
        assert result["lookup_keys"][0].startswith("company:")
        self.resolver.resolve.assert_awaited_once_with("Alpine Roofing LLC Denver, CO", None, "Alpine Roofing LLC")
        self.site.analyze.assert_awaited_once_with("https://alpineroofing.com")

    async def test_score_node(self):
        """Test the score node recomputes the reviews factor and final score."""
        state = await enrich(await clean(self.initial_state(), self.services), self.services)
        result = await score(state, self.services)

        scored = result["score"]
        assert scored.lead_id == "lead-1"
        assert scored.weights_applied == select_weights("Roofing")
        assert scored.scores.reviews.score == 10
        assert scored.scores.reviews.average_rating == 4.6
        assert 0 <= scored.final_score <= 10

    async def test_complete_workflow(self):
        """Test the compiled workflow end to end."""
        workflow = build_lead_workflow(self.services)

        final = await workflow.ainvoke(self.initial_state())

        assert final["cleaned"].company == "Alpine Roofing LLC"
        assert final["reviews"].method == "serp_place:ldjson"
        assert final["website"].final_score == 8
        assert final["score"].scores.website_activity == 8
        assert final["score"].interpretation is not None

    async def test_cancelled_before_start(self):
        """Test a raised cancel signal stops the workflow before any lookup."""
        self.services.cancel = CancelSignal()
        self.services.cancel.cancel("Stopped by operator")
        workflow = build_lead_workflow(self.services)

        with pytest.raises(JobCancelled, match="Stopped by operator"):
            await workflow.ainvoke(self.initial_state())

        self.resolver.resolve.assert_not_awaited()
