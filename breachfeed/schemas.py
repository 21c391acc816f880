from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from breachfeed.models import AlertType, Severity, TargetType

FALLBACK_CONFIDENCE = 0.5


class FeedItem(BaseModel):
    """A candidate article parsed out of a feed document."""
    guid: str
    url: str
    title: str
    summary: Optional[str] = None
    published_at: datetime

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"not an http(s) link: {value!r}")
        return value


# ---------------------------------------------------------------------------
# Classification results. A positive classification and a fallback are
# separate variants so a "found nothing" default never reads as a result
# ---------------------------------------------------------------------------

class Classification(BaseModel):
    kind: Literal["classified"] = "classified"
    alert_type: AlertType
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    scores: dict[str, float] = Field(default_factory=dict)  # per-category detector totals, for audit
    tie: bool = False

    @property
    def fallback(self) -> bool:
        return False


class FallbackClassification(BaseModel):
    kind: Literal["fallback"] = "fallback"
    alert_type: Literal[AlertType.SECURITY_MENTION] = AlertType.SECURITY_MENTION
    severity: Literal[Severity.LOW] = Severity.LOW
    confidence: float = FALLBACK_CONFIDENCE
    scores: dict[str, float] = Field(default_factory=dict)

    @field_validator("confidence")
    @classmethod
    def confidence_is_fixed(cls, value: float) -> float:
        if value != FALLBACK_CONFIDENCE:
            raise ValueError(f"fallback confidence is always {FALLBACK_CONFIDENCE}")
        return value

    @property
    def fallback(self) -> bool:
        return True


ClassificationResult = Union[Classification, FallbackClassification]


# ---------------------------------------------------------------------------
# Per-unit results, aggregated into a PassReport
# ---------------------------------------------------------------------------

class SubscriptionSkip(BaseModel):
    subscription_id: int
    target_type: TargetType
    target_id: str
    reason: str


class ArticleOutcome(BaseModel):
    article_id: str
    has_full_content: bool = False
    classified: bool = False
    fallback: Optional[bool] = None
    alert_type: Optional[AlertType] = None
    matched_subscription_ids: List[int] = Field(default_factory=list)
    dispatched: int = 0
    skipped_subscriptions: List[SubscriptionSkip] = Field(default_factory=list)
    error: Optional[str] = None


class FeedResult(BaseModel):
    feed_id: int
    feed_name: str
    ok: bool
    items_seen: int = 0
    new_articles: int = 0
    skipped_items: int = 0
    articles: List[ArticleOutcome] = Field(default_factory=list)
    error: Optional[str] = None


class PassReport(BaseModel):
    feeds: List[FeedResult] = Field(default_factory=list)
    articles: List[ArticleOutcome] = Field(default_factory=list)  # outcomes outside any feed cycle (retry passes)

    @property
    def all_articles(self) -> List[ArticleOutcome]:
        outcomes = [a for f in self.feeds for a in f.articles]
        return outcomes + list(self.articles)

    @property
    def failed_feeds(self) -> List[FeedResult]:
        return [f for f in self.feeds if not f.ok]


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class ArticleResponse(BaseModel):
    id: str
    title: str
    url: str
    slug: Optional[str] = None
    summary: Optional[str] = None
    has_full_content: bool
    alert_type: Optional[AlertType] = None
    severity: Optional[Severity] = None
    classification_confidence: Optional[float] = None
    classification_fallback: Optional[bool] = None
    published_at: datetime
    created_at: Optional[datetime] = None

    # Allows Pydantic to read data directly from SQLAlchemy model instances
    model_config = ConfigDict(from_attributes=True)


class DeliveryPairResponse(BaseModel):
    subscription_id: int
    subscriber_id: str
    article_id: str
