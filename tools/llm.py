import json
import os
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from graph.models import CleanedLead, ModelScore, ScoringInput, TokenUsage
from tools.errors import ScoringCollaboratorFailure

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-4o-mini"
CLEANER_FIELDS = ("company", "website", "email", "phone", "maps_url")

SCORING_GUIDANCE = {
    "website_activity": "Use website.final_score when provided. Mention method and bonuses in reasoning.",
    "reviews": "Use provided rating/review count. If null, score 0 and explain scraping attempts.",
    "years_in_business": "Map years_in_business to 10/>5, 5/2-4, 2/<1",
    "revenue_proxies": "Estimate from pricing signals, review volume, industry context.",
    "industry_fit": "Apply core alignment and bonus rules for the industry.",
}


class LLMClient:
    """OpenAI-compatible chat client used for lead scoring and lead cleanup."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else (os.getenv("OPENAI_API_KEY") or os.getenv("OPENROUTER_API_KEY"))
        self.model = model or os.getenv("OPENAI_MODEL", DEFAULT_MODEL)
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL)
        self._client = None

        if not self.api_key:
            logger.warning("No OpenAI API key provided, using mock mode")

    @property
    def mock(self) -> bool:
        return not self.api_key

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                default_headers={"X-Title": "Lead Score Genius"},
            )
        return self._client

    async def complete_json(self, messages: List[Dict[str, str]]) -> Tuple[Dict[str, Any], TokenUsage]:
        """
        Run a chat completion that must answer with a JSON object.

        Args:
            messages: Chat messages in OpenAI format

        Returns:
            Tuple of (parsed JSON object, token usage)

        Raises:
            ScoringCollaboratorFailure: transport error, empty or non-JSON answer
        """
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0,
            )
        except Exception as e:
            raise ScoringCollaboratorFailure(f"Model request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ScoringCollaboratorFailure("Model returned an empty response")

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise ScoringCollaboratorFailure(f"Unable to parse model JSON response: {content[:200]}") from e
        if not isinstance(parsed, dict):
            raise ScoringCollaboratorFailure("Model response is not a JSON object")
        return parsed, usage

    async def score_batch(self, items: List[ScoringInput]) -> Tuple[List[ModelScore], TokenUsage]:
        """
        Score a batch of leads in one model call.

        Args:
            items: Evidence for each lead

        Returns:
            Tuple of (one ModelScore per input, in input order; token usage)
        """
        if self.mock:
            logger.info(f"Using mock LLM scoring for {len(items)} lead(s)")
            return [self._mock_score(item) for item in items], TokenUsage()

        payload, usage = await self.complete_json(self._build_scoring_messages(items))
        raw_results = payload.get("results")
        if raw_results is None and len(items) == 1:
            raw_results = [payload]
        if not isinstance(raw_results, list) or len(raw_results) != len(items):
            raise ScoringCollaboratorFailure(
                f"Expected {len(items)} scoring result(s), got {len(raw_results) if isinstance(raw_results, list) else 0}"
            )

        try:
            scores = [ModelScore.model_validate(result) for result in raw_results]
        except ValidationError as e:
            raise ScoringCollaboratorFailure(f"Scoring result did not match schema: {e}") from e

        by_id = {score.lead_id: score for score in scores if score.lead_id}
        if len(by_id) == len(items) and all(item.cleaned.lead_id in by_id for item in items):
            scores = [by_id[item.cleaned.lead_id] for item in items]

        logger.info(f"LLM scoring completed for {len(items)} lead(s), {usage.total_tokens} tokens")
        return scores, usage

    async def normalize_lead(self, cleaned: CleanedLead) -> Tuple[Optional[Dict[str, str]], TokenUsage]:
        """
        Ask the model to tidy up identity fields of a cleaned lead.

        Returns:
            Tuple of (non-empty corrected fields or None, token usage). A model
            failure is logged and yields None so the deterministic record stands.
        """
        if self.mock:
            return None, TokenUsage()

        try:
            payload, usage = await self.complete_json(self._build_cleaning_messages(cleaned))
        except ScoringCollaboratorFailure as e:
            logger.warning(f"AI cleaner failed for lead {cleaned.lead_id}: {e}")
            return None, TokenUsage()

        fields = {
            key: value.strip()
            for key, value in payload.items()
            if key in CLEANER_FIELDS and isinstance(value, str) and value.strip()
        }
        return fields or None, usage

    def _build_scoring_messages(self, items: List[ScoringInput]) -> List[Dict[str, str]]:
        system = (
            "You are an AI lead scoring engine. Produce JSON only. Adhere strictly to the scoring matrix.\n"
            'Return {"results": [...]} with one object per lead, in the order given, each with keys '
            "lead_id, industry, scores, reasoning, final_score, interpretation.\n"
            "scores has keys website_activity, reviews, years_in_business, revenue_proxies, industry_fit; "
            "all factor scores must be integers 0-10.\n"
            "Provide detailed reasoning citing evidence provided. "
            "Do NOT perform weighted arithmetic; the caller will recompute final scores. "
            "If data is missing, set score to 0 and explain."
        )
        user = {
            "leads": [
                {
                    "lead": item.cleaned.model_dump(exclude={"raw_fields"}),
                    "reviews": item.reviews.model_dump(),
                    "website": item.website.model_dump() if item.website else None,
                    "weights": item.weights.model_dump(),
                }
                for item in items
            ],
            "guidance": SCORING_GUIDANCE,
        }
        return [{"role": "system", "content": system}, {"role": "user", "content": json.dumps(user)}]

    def _build_cleaning_messages(self, cleaned: CleanedLead) -> List[Dict[str, str]]:
        system = (
            "You normalize B2B lead records. Return a JSON object with keys "
            "company, website, email, phone, maps_url. Use an empty string when unknown. "
            "Do not invent data that is not present in the input."
        )
        user = {
            "company": cleaned.company,
            "website": cleaned.website,
            "email": cleaned.email,
            "phone": cleaned.phone,
            "maps_url": cleaned.maps_url,
            "notes": (cleaned.notes or "")[:300],
            "raw": cleaned.raw_fields,
        }
        return [{"role": "system", "content": system}, {"role": "user", "content": json.dumps(user)}]

    def _mock_score(self, item: ScoringInput) -> ModelScore:
        """Heuristic scoring from the same evidence, for offline runs."""
        reasons = []
        website = item.website
        website_score = website.final_score if website else 0
        reasons.append(
            f"Website {website.method} scored {website_score}" if website else "No website to evaluate"
        )

        years = item.cleaned.years_in_business
        if years is None:
            years_score = 0
            reasons.append("Years in business unknown")
        else:
            years_score = 10 if years > 5 else 5 if years >= 2 else 2
            reasons.append(f"{years} years in business")

        revenue = 0
        if website and website.bonus_flags.pricing:
            revenue += 4
        if website and website.reachable:
            revenue += 2
        count = item.reviews.review_count or 0
        revenue += 4 if count >= 50 else 2 if count >= 10 else 0

        industry = item.cleaned.industry
        industry_fit = 7 if industry else 0
        if item.reviews.found:
            reasons.append(f"Reviews: {item.reviews.average_rating} from {item.reviews.review_count} ({item.reviews.method})")
        else:
            reasons.append(f"No reviews found ({item.reviews.method})")

        return ModelScore(
            lead_id=item.cleaned.lead_id,
            industry=industry,
            scores={
                "website_activity": website_score,
                "years_in_business": years_score,
                "revenue_proxies": min(revenue, 10),
                "industry_fit": industry_fit,
            },
            reasoning="; ".join(reasons),
        )
