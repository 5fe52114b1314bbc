from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Lead(BaseModel):
    """A lead as handed over by the ingestion layer."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "lead_id"))
    company: str = ""
    industry: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    raw_fields: Dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("raw_fields", "rawFields", "normalized"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("raw_fields", mode="before")
    @classmethod
    def _stringify_raw(cls, value: Any) -> Dict[str, str]:
        if not value:
            return {}
        return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}


class CleanedLead(BaseModel):
    lead_id: str
    company: str
    industry: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    maps_url: Optional[str] = None
    years_in_business: Optional[int] = None
    raw_fields: Dict[str, str] = Field(default_factory=dict)
    # field name -> "csv" | "derived" | "unknown"
    provenance: Dict[str, str] = Field(default_factory=dict)


class ReviewSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    average_rating: Optional[float] = None
    review_count: Optional[int] = None
    source_url: Optional[str] = None
    method: str = "not_attempted"

    @classmethod
    def not_found(cls) -> "ReviewSnapshot":
        return cls(average_rating=None, review_count=None, source_url=None, method="not_found")

    @property
    def found(self) -> bool:
        return self.average_rating is not None or self.review_count is not None


class BonusFlags(BaseModel):
    pricing: bool = False
    booking: bool = False
    cta: bool = False


class WebsiteSignal(BaseModel):
    url: str
    reachable: bool
    status: Optional[int] = None
    base_score: int = Field(ge=0, le=10)
    bonus_flags: BonusFlags = Field(default_factory=BonusFlags)
    final_score: int = Field(ge=0, le=10)
    method: str


class WeightSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    website_activity: float
    reviews: float
    years_in_business: float
    revenue_proxies: float
    industry_fit: float

    def total(self) -> float:
        return self.website_activity + self.reviews + self.years_in_business + self.revenue_proxies + self.industry_fit


class ReviewSubScore(BaseModel):
    average_rating: Optional[float] = None
    review_count: Optional[int] = None
    score: int = Field(default=0, ge=0, le=10)


class SubScores(BaseModel):
    website_activity: int = Field(default=0, ge=0, le=10)
    reviews: ReviewSubScore = Field(default_factory=ReviewSubScore)
    years_in_business: int = Field(default=0, ge=0, le=10)
    revenue_proxies: int = Field(default=0, ge=0, le=10)
    industry_fit: int = Field(default=0, ge=0, le=10)


class Interpretation(str, Enum):
    HOT = "Hot"
    QUALIFIED = "Qualified"
    BORDERLINE = "Borderline"
    COLD_DEAD = "ColdDead"


class ScoreResult(BaseModel):
    lead_id: str
    industry: str = "default"
    weights_applied: WeightSet
    scores: SubScores
    final_score: float
    interpretation: Interpretation
    reasoning: str = ""


class ModelScore(BaseModel):
    """What the scoring model proposes; nothing here is trusted verbatim."""

    model_config = ConfigDict(extra="ignore")

    lead_id: Optional[str] = None
    industry: Optional[str] = None
    scores: Dict[str, Any] = Field(default_factory=dict)
    final_score: Optional[float] = None
    interpretation: Optional[str] = None
    reasoning: str = ""

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            return " ".join(str(v) for v in value)
        return str(value)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class UsageTotals(BaseModel):
    cleaning: TokenUsage = Field(default_factory=TokenUsage)
    scoring: TokenUsage = Field(default_factory=TokenUsage)

    def add(self, category: str, usage: Optional[TokenUsage]) -> None:
        if usage is None:
            return
        setattr(self, category, getattr(self, category) + usage)


class EnrichedLead(BaseModel):
    cleaned: CleanedLead
    reviews: ReviewSnapshot
    website: Optional[WebsiteSignal] = None


class LeadResult(BaseModel):
    index: int
    lead: Lead
    score: ScoreResult
    enriched: EnrichedLead
    error: Optional[str] = None


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    use_cleaner: bool = Field(default=False, validation_alias=AliasChoices("use_cleaner", "useCleaner"))
    save_results: bool = Field(default=False, validation_alias=AliasChoices("save_results", "saveResults"))
    max_concurrency: Optional[int] = Field(
        default=None, ge=1, le=50, validation_alias=AliasChoices("max_concurrency", "maxConcurrency")
    )


class Job(BaseModel):
    id: str
    user_id: Optional[str] = None
    status: JobStatus
    total: int
    processed: int = 0
    error: Optional[str] = None
    owner: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    options: JobOptions = Field(default_factory=JobOptions)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class JobItem(BaseModel):
    job_id: str
    index: int
    payload: Lead
    status: JobStatus = JobStatus.QUEUED
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class JobSnapshot(Job):
    """A job header plus the results completed so far, in upload order."""

    results: List[Dict[str, Any]] = Field(default_factory=list)


class ScoringInput(BaseModel):
    """Evidence bundle handed to the scoring model for one lead."""

    cleaned: CleanedLead
    reviews: ReviewSnapshot
    website: Optional[WebsiteSignal] = None
    weights: WeightSet
