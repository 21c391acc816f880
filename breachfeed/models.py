import enum
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from breachfeed.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back without tzinfo; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class AlertType(str, enum.Enum):
    CONFIRMED_BREACH = "CONFIRMED_BREACH"      # definitive, admitted breach
    SECURITY_INCIDENT = "SECURITY_INCIDENT"    # active investigation / potential compromise
    SECURITY_MENTION = "SECURITY_MENTION"      # general security coverage


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TargetType(str, enum.Enum):
    AGENCY = "AGENCY"
    COMPANY = "COMPANY"
    KEYWORD = "KEYWORD"
    LOCATION = "LOCATION"


# Lowest severity first; index doubles as rank
ALERT_TYPE_ORDER = [AlertType.SECURITY_MENTION, AlertType.SECURITY_INCIDENT, AlertType.CONFIRMED_BREACH]
SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

# Shared by every column that stores a target type
target_type_enum = Enum(TargetType, name="target_type")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class Feed(Base):
    __tablename__ = "feeds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)  # advanced only after a successful cycle
    fetch_interval_minutes = Column(Integer, nullable=True)           # None → settings default

    def interval(self, default_minutes: int) -> timedelta:
        return timedelta(minutes=self.fetch_interval_minutes or default_minutes)

    def is_due(self, now: datetime, default_minutes: int) -> bool:
        if self.last_fetched_at is None:
            return True
        return now - as_utc(self.last_fetched_at) >= self.interval(default_minutes)

    def mark_fetched(self, when: datetime) -> None:
        """Advance the fetch timestamp; never moves it backwards."""
        if self.last_fetched_at is None or as_utc(self.last_fetched_at) < when:
            self.last_fetched_at = when


class Article(Base):
    __tablename__ = "articles"
    __table_args__ = (
        CheckConstraint(
            "classification_confidence IS NULL OR "
            "(classification_confidence >= 0 AND classification_confidence <= 1)",
            name="ck_articles_confidence_range",
        ),
        CheckConstraint("(alert_type IS NULL) = (severity IS NULL)", name="ck_articles_alert_severity_pair"),
    )

    # ID is derived from the feed GUID (or URL), not auto-generated
    id = Column(String(16), primary_key=True, index=True)
    feed_id = Column(Integer, ForeignKey("feeds.id"), nullable=True)
    title = Column(String, nullable=False)
    url = Column(String, nullable=False, unique=True)
    guid = Column(String, nullable=True, unique=True)
    slug = Column(String, nullable=True)
    summary = Column(Text, nullable=True)
    full_content = Column(Text, nullable=True)
    has_full_content = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime(timezone=True), nullable=False)

    # --- Classification (set together by the classifier) ---
    alert_type = Column(Enum(AlertType, name="alert_type"), nullable=True, index=True)
    severity = Column(Enum(Severity, name="severity"), nullable=True)
    classification_confidence = Column(Float, nullable=True)
    classification_fallback = Column(Boolean, nullable=True)  # True when no detector cleared the threshold
    classified_at = Column(DateTime(timezone=True), nullable=True)
    classification_attempts = Column(Integer, nullable=False, default=0)
    classification_error = Column(Text, nullable=True)        # last classifier failure, cleared on success

    # --- Metadata ---
    created_at = Column(DateTime(timezone=True), default=utcnow)  # when we ingested it

    @property
    def is_classified(self) -> bool:
        return self.alert_type is not None

    @property
    def search_text(self) -> str:
        return " ".join(part for part in (self.title, self.summary, self.full_content) if part)

    def set_full_content(self, text) -> None:
        """Keeps has_full_content in lockstep with the content column."""
        text = (text or "").strip()
        self.full_content = text or None
        self.has_full_content = bool(text)

    def apply_classification(self, result) -> None:
        """Write every classification field in one step."""
        self.alert_type = result.alert_type
        self.severity = result.severity
        self.classification_confidence = result.confidence
        self.classification_fallback = result.fallback
        self.classified_at = utcnow()
        self.classification_error = None


class DeletedArticle(Base):
    """Tombstone for an article an operator removed; blocks re-ingestion."""
    __tablename__ = "deleted_articles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String, nullable=False, unique=True)
    guid = Column(String, nullable=True, index=True)
    reason = Column(Text, nullable=True)
    deleted_at = Column(DateTime(timezone=True), default=utcnow)


class ExclusionKeyword(Base):
    __tablename__ = "exclusion_keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    keyword = Column(String, nullable=False, index=True)
    feed_id = Column(Integer, ForeignKey("feeds.id"), nullable=True)  # None → applies to every feed
    is_active = Column(Boolean, nullable=False, default=True)


# ---------------------------------------------------------------------------
# Reference entities (managed elsewhere, read-only here)
# ---------------------------------------------------------------------------

class Company(Base):
    __tablename__ = "companies"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    aliases = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)

    @property
    def terms(self) -> list[str]:
        return [self.name, *(self.aliases or [])]


class Agency(Base):
    __tablename__ = "agencies"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    acronym = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    @property
    def terms(self) -> list[str]:
        return [t for t in (self.name, self.acronym) if t]


class Location(Base):
    __tablename__ = "locations"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    city = Column(String, nullable=True)
    region = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    @property
    def terms(self) -> list[str]:
        return [t for t in (self.name, self.city, self.region) if t]


class Keyword(Base):
    __tablename__ = "keywords"

    id = Column(String, primary_key=True, default=new_id)
    term = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    @property
    def terms(self) -> list[str]:
        return [self.term]


class Regulator(Base):
    __tablename__ = "regulators"

    id = Column(String, primary_key=True, default=new_id)
    acronym = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Regulation(Base):
    __tablename__ = "regulations"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)          # e.g. "HIPAA"
    full_name = Column(String, nullable=True)
    regulator_id = Column(String, ForeignKey("regulators.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


# Type-indexed lookup table for polymorphic subscription targets
TARGET_MODELS = {
    TargetType.AGENCY: Agency,
    TargetType.COMPANY: Company,
    TargetType.KEYWORD: Keyword,
    TargetType.LOCATION: Location,
}


class ArticleEntity(Base):
    """Tagged association between an article and a reference entity."""
    __tablename__ = "article_entities"
    __table_args__ = (UniqueConstraint("article_id", "target_type", "target_id", name="uq_article_entity"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(String(16), ForeignKey("articles.id"), nullable=False, index=True)
    target_type = Column(target_type_enum, nullable=False)
    target_id = Column(String, nullable=False)
    match_context = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Subscriptions & dispatch
# ---------------------------------------------------------------------------

class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(String, nullable=False, index=True)
    target_type = Column(target_type_enum, nullable=False)
    target_id = Column(String, nullable=False)                   # meaning depends on target_type
    alert_type_filter = Column(JSON, nullable=False, default=list)  # empty → every alert type
    is_active = Column(Boolean, nullable=False, default=True)      # soft delete

    def accepts(self, alert_type: AlertType) -> bool:
        if not self.alert_type_filter:
            return True
        return AlertType(alert_type).value in {AlertType(a).value for a in self.alert_type_filter}


class DispatchRecord(Base):
    """Ledger of (subscription, article) pairs already handed to the dispatcher."""
    __tablename__ = "dispatch_records"
    __table_args__ = (UniqueConstraint("subscription_id", "article_id", name="uq_dispatch_pair"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False)
    article_id = Column(String(16), ForeignKey("articles.id"), nullable=False)
    dispatched_at = Column(DateTime(timezone=True), default=utcnow)
