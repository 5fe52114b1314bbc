import pytest

from graph.models import (
    CleanedLead,
    Interpretation,
    Lead,
    ModelScore,
    ReviewSnapshot,
    ScoringInput,
    SubScores,
    ReviewSubScore,
    WebsiteSignal,
)
from graph.nodes.score import (
    INDUSTRY_WEIGHTS,
    build_score_result,
    clamp_score,
    compute_final_score,
    fallback_score_result,
    interpret_score,
    review_sub_score,
    select_weights,
)
from tools.llm import LLMClient


class TestWeights:

    @pytest.mark.parametrize("industry,expected", [
        ("Commercial Real Estate", "real_estate"),
        ("Digital Marketing Agency", "marketing_agency"),
        ("Plumbing", "local_services"),
        ("Insurance broker", "financial_services"),
        ("Bakery", "default"),
        (None, "default"),
    ])
    def test_select_weights(self, industry, expected):
        assert select_weights(industry) == INDUSTRY_WEIGHTS[expected]

    def test_weight_sets_sum_to_one(self):
        for weights in INDUSTRY_WEIGHTS.values():
            assert weights.total() == pytest.approx(1.0)


class TestSubScores:

    def test_clamp_score(self):
        assert clamp_score(7.5) == 8
        assert clamp_score("6") == 6
        assert clamp_score(14) == 10
        assert clamp_score(-3) == 0
        assert clamp_score({"score": 4}) == 4
        assert clamp_score("n/a") == 0
        assert clamp_score(float("nan")) == 0
        assert clamp_score(True) == 0

    def test_review_sub_score(self):
        assert review_sub_score(ReviewSnapshot(average_rating=4.6, review_count=128)) == 10
        assert review_sub_score(ReviewSnapshot(average_rating=3.5, review_count=12)) == 5
        assert review_sub_score(ReviewSnapshot(average_rating=4.2, review_count=3)) == 6
        assert review_sub_score(ReviewSnapshot.not_found()) == 0

    def test_interpretation_bands(self):
        assert interpret_score(8.0) == Interpretation.HOT
        assert interpret_score(6.5) == Interpretation.QUALIFIED
        assert interpret_score(4.0) == Interpretation.BORDERLINE
        assert interpret_score(3.99) == Interpretation.COLD_DEAD


class TestBuildScoreResult:

    def setup_method(self):
        self.cleaned = CleanedLead(lead_id="L1", company="Acme Plumbing", industry="Plumbing")
        self.reviews = ReviewSnapshot(average_rating=4.6, review_count=128, method="serp_place:ldjson")
        self.website = WebsiteSignal(url="https://acme.example", reachable=True, base_score=10,
                                     final_score=6, method="http_fetch")
        self.weights = select_weights("Plumbing")

    def test_final_score_is_recomputed(self):
        proposal = ModelScore(
            lead_id="L1",
            scores={"website_activity": 6, "reviews": 3, "years_in_business": 8,
                    "revenue_proxies": 5, "industry_fit": 9},
            final_score=9.9,
            reasoning="Strong local presence",
        )

        result = build_score_result(self.cleaned, self.reviews, self.website, self.weights, proposal)

        expected = compute_final_score(result.scores, self.weights)
        # 6*.2 + 10*.35 + 8*.25 + 5*.15 + 9*.05
        assert expected == pytest.approx(7.9)
        assert result.final_score == expected
        assert result.scores.reviews.score == 10
        assert result.interpretation == Interpretation.QUALIFIED
        assert "[System] Reviews score adjusted to 10 (model proposed 3)." in result.reasoning
        assert "[System] Final score recomputed to 7.9" in result.reasoning

    def test_agreeing_model_gets_no_notes(self):
        proposal = ModelScore(
            scores={"website_activity": 6, "reviews": 10, "years_in_business": 8,
                    "revenue_proxies": 5, "industry_fit": 9},
            final_score=7.92,
            reasoning="ok",
        )

        result = build_score_result(self.cleaned, self.reviews, self.website, self.weights, proposal)

        assert result.reasoning == "ok"
        assert result.lead_id == "L1"
        assert result.industry == "Plumbing"

    def test_missing_factor_defaults(self):
        result = build_score_result(self.cleaned, self.reviews, self.website, self.weights, ModelScore())

        assert result.scores.website_activity == 6
        assert result.scores.years_in_business == 0
        assert result.reasoning == "No reasoning returned"

    def test_null_website_factor_uses_website_signal(self):
        proposal = ModelScore(scores={"website_activity": None, "years_in_business": 8})

        result = build_score_result(self.cleaned, self.reviews, self.website, self.weights, proposal)

        assert result.scores.website_activity == 6
        assert result.scores.years_in_business == 8

    def test_fallback_result(self):
        result = fallback_score_result(Lead(id="L7", company="Broken"), None, None, "model timed out")

        assert result.final_score == 0
        assert result.interpretation == Interpretation.COLD_DEAD
        assert "model timed out" in result.reasoning
        assert result.scores == SubScores(reviews=ReviewSubScore(score=0))


class TestMockScoring:

    async def test_mock_client_scores_offline(self):
        client = LLMClient(api_key="")
        item = ScoringInput(
            cleaned=CleanedLead(lead_id="L1", company="Acme", industry="Plumbing", years_in_business=12),
            reviews=ReviewSnapshot(average_rating=4.6, review_count=128),
            website=None,
            weights=select_weights("Plumbing"),
        )

        scores, usage = await client.score_batch([item])

        assert client.mock
        assert usage.total_tokens == 0
        assert scores[0].lead_id == "L1"
        assert scores[0].scores["years_in_business"] == 10
        assert scores[0].scores["website_activity"] == 0

    async def test_mock_cleaner_is_noop(self):
        fields, usage = await LLMClient(api_key="").normalize_lead(CleanedLead(lead_id="1", company="A"))
        assert fields is None
