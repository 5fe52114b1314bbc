import math
from typing import Any, Optional

from loguru import logger

from graph.models import (
    CleanedLead,
    Interpretation,
    Lead,
    ModelScore,
    ReviewSnapshot,
    ReviewSubScore,
    ScoreResult,
    ScoringInput,
    SubScores,
    WebsiteSignal,
    WeightSet,
)
from graph.state import LeadState
from tools.numbers import clamp, round_half_up

INDUSTRY_WEIGHTS = {
    "real_estate": WeightSet(website_activity=0.3, reviews=0.3, years_in_business=0.15, revenue_proxies=0.15, industry_fit=0.1),
    "marketing_agency": WeightSet(website_activity=0.35, reviews=0.2, years_in_business=0.15, revenue_proxies=0.25, industry_fit=0.05),
    "local_services": WeightSet(website_activity=0.2, reviews=0.35, years_in_business=0.25, revenue_proxies=0.15, industry_fit=0.05),
    "financial_services": WeightSet(website_activity=0.25, reviews=0.3, years_in_business=0.3, revenue_proxies=0.1, industry_fit=0.05),
    "default": WeightSet(website_activity=0.25, reviews=0.25, years_in_business=0.2, revenue_proxies=0.2, industry_fit=0.1),
}

# Final score must differ by more than this before a correction note is added.
FINAL_SCORE_TOLERANCE = 0.05


def select_weights(industry: Optional[str]) -> WeightSet:
    """Pick the weight set for an industry by keyword."""
    if not industry:
        return INDUSTRY_WEIGHTS["default"]
    normalized = industry.strip().lower()
    if "real estate" in normalized:
        return INDUSTRY_WEIGHTS["real_estate"]
    if "agency" in normalized or "marketing" in normalized:
        return INDUSTRY_WEIGHTS["marketing_agency"]
    if any(word in normalized for word in ("plumb", "repair", "service")):
        return INDUSTRY_WEIGHTS["local_services"]
    if any(word in normalized for word in ("financial", "insurance", "advis")):
        return INDUSTRY_WEIGHTS["financial_services"]
    return INDUSTRY_WEIGHTS["default"]


def clamp_score(value: Any) -> int:
    """Coerce a proposed factor score into an integer 0-10; junk becomes 0."""
    if isinstance(value, dict):
        value = value.get("score")
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(clamp(round_half_up(number), 0, 10))


def review_sub_score(reviews: ReviewSnapshot) -> int:
    rating = reviews.average_rating or 0
    count = reviews.review_count or 0
    rating_score = 10 if rating >= 4 else 5 if rating >= 3 else 0
    count_score = 10 if count >= 50 else 5 if count >= 10 else 2 if count > 0 else 0
    return clamp_score((rating_score + count_score) / 2)


def compute_final_score(scores: SubScores, weights: WeightSet) -> float:
    weighted = (
        scores.website_activity * weights.website_activity
        + scores.reviews.score * weights.reviews
        + scores.years_in_business * weights.years_in_business
        + scores.revenue_proxies * weights.revenue_proxies
        + scores.industry_fit * weights.industry_fit
    )
    return round(weighted, 2)


def interpret_score(score: float) -> Interpretation:
    if score >= 8:
        return Interpretation.HOT
    if score >= 6:
        return Interpretation.QUALIFIED
    if score >= 4:
        return Interpretation.BORDERLINE
    return Interpretation.COLD_DEAD


def build_score_result(
    cleaned: CleanedLead,
    reviews: ReviewSnapshot,
    website: Optional[WebsiteSignal],
    weights: WeightSet,
    proposal: ModelScore,
) -> ScoreResult:
    """
    Turn the model's proposal into a ScoreResult.

    The reviews factor and the final score are always recomputed here; a
    ``[System]`` note records any disagreement with what the model proposed.
    """
    proposed = proposal.scores or {}
    deterministic_reviews = review_sub_score(reviews)
    website_activity = proposed.get("website_activity")
    if website_activity is None:
        website_activity = website.final_score if website else 0

    scores = SubScores(
        website_activity=clamp_score(website_activity),
        reviews=ReviewSubScore(
            average_rating=reviews.average_rating,
            review_count=reviews.review_count,
            score=deterministic_reviews,
        ),
        years_in_business=clamp_score(proposed.get("years_in_business")),
        revenue_proxies=clamp_score(proposed.get("revenue_proxies")),
        industry_fit=clamp_score(proposed.get("industry_fit")),
    )
    final_score = compute_final_score(scores, weights)

    reasoning = proposal.reasoning or "No reasoning returned"
    if "reviews" in proposed:
        model_reviews = clamp_score(proposed.get("reviews"))
        if model_reviews != deterministic_reviews:
            reasoning += f"\n[System] Reviews score adjusted to {deterministic_reviews} (model proposed {model_reviews})."
    if proposal.final_score is not None and abs(proposal.final_score - final_score) > FINAL_SCORE_TOLERANCE:
        reasoning += f"\n[System] Final score recomputed to {final_score} based on weighted sum."

    return ScoreResult(
        lead_id=proposal.lead_id or cleaned.lead_id,
        industry=proposal.industry or cleaned.industry or "default",
        weights_applied=weights,
        scores=scores,
        final_score=final_score,
        interpretation=interpret_score(final_score),
        reasoning=reasoning,
    )


def fallback_score_result(lead: Lead, cleaned: Optional[CleanedLead], reviews: Optional[ReviewSnapshot], error: str) -> ScoreResult:
    """Zero score used when a lead could not be scored at all."""
    industry = (cleaned.industry if cleaned else None) or lead.industry
    return ScoreResult(
        lead_id=cleaned.lead_id if cleaned else lead.id,
        industry=industry or "default",
        weights_applied=select_weights(industry),
        scores=SubScores(
            reviews=ReviewSubScore(
                average_rating=reviews.average_rating if reviews else None,
                review_count=reviews.review_count if reviews else None,
                score=0,
            )
        ),
        final_score=0,
        interpretation=Interpretation.COLD_DEAD,
        reasoning=f"Scoring failed: {error}",
    )


async def score(state: LeadState, services) -> LeadState:
    """Ask the model for factor scores, then recompute the final score locally."""
    services.check_cancelled()
    lead = state["lead"]
    cleaned = state["cleaned"]
    trace = state["trace"]
    started = services.clock()

    weights = select_weights(cleaned.industry or lead.industry)
    proposal = await services.batcher.submit(
        ScoringInput(cleaned=cleaned, reviews=state["reviews"], website=state.get("website"), weights=weights)
    )
    result = build_score_result(cleaned, state["reviews"], state.get("website"), weights, proposal)

    trace.timings["score"] = services.clock() - started
    logger.info(f"Final score: {result.final_score:.2f} ({result.interpretation.value}) for {lead.id}")
    state["score"] = result
    return state
