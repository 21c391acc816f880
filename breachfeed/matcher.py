import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol

from sqlalchemy.orm import Session

from breachfeed.entities import find_term
from breachfeed.exceptions import TargetResolutionError
from breachfeed.models import TARGET_MODELS, Article, Subscription, TargetType
from breachfeed.schemas import SubscriptionSkip

logger = logging.getLogger(__name__)

Associations = Iterable[tuple[TargetType, str]]


class ReferenceLookup(Protocol):
    """Read-only access to reference entities by (target type, id)."""

    def get(self, target_type: TargetType, target_id: str) -> Optional[object]:
        ...


class SqlReferenceLookup:
    def __init__(self, db: Session):
        self.db = db

    def get(self, target_type: TargetType, target_id: str) -> Optional[object]:
        model = TARGET_MODELS.get(target_type)
        if model is None:
            return None
        return self.db.get(model, target_id)


@dataclass(frozen=True)
class DeliveryPair:
    subscription: Subscription
    article: Article


@dataclass
class MatchResult:
    pairs: List[DeliveryPair] = field(default_factory=list)
    skipped: List[SubscriptionSkip] = field(default_factory=list)

    @property
    def subscription_ids(self) -> List[int]:
        return [pair.subscription.id for pair in self.pairs]


# ---------------------------------------------------------------------------
# Target resolution, one resolver per target type
# ---------------------------------------------------------------------------

def _keyword_target(entity, target_type: TargetType, article: Article, associations: set) -> bool:
    return find_term(entity.term, article.search_text) is not None


def _tagged_target(entity, target_type: TargetType, article: Article, associations: set) -> bool:
    return (target_type, entity.id) in associations


RESOLVERS: dict[TargetType, Callable] = {
    TargetType.KEYWORD: _keyword_target,
    TargetType.COMPANY: _tagged_target,
    TargetType.AGENCY: _tagged_target,
    TargetType.LOCATION: _tagged_target,
}


def load_active_subscriptions(db: Session) -> List[Subscription]:
    """Snapshot of active subscriptions, ordered by id."""
    return db.query(Subscription).filter(Subscription.is_active.is_(True)).order_by(Subscription.id).all()


class SubscriptionMatcher:
    """
    Matches a classified article against a subscription snapshot.
    A pure function of its inputs: it reads reference data but writes nothing.
    """

    def __init__(self, lookup: ReferenceLookup):
        self.lookup = lookup

    def _resolve(self, subscription: Subscription):
        target_type = TargetType(subscription.target_type)
        if target_type not in RESOLVERS:
            raise TargetResolutionError(target_type, subscription.target_id, "unsupported target type")

        entity = self.lookup.get(target_type, subscription.target_id)
        if entity is None:
            raise TargetResolutionError(target_type, subscription.target_id, "not found")
        if not getattr(entity, "is_active", True):
            raise TargetResolutionError(target_type, subscription.target_id, "inactive")
        return target_type, entity

    def match(
        self,
        article: Article,
        associations: Associations,
        subscriptions: Iterable[Subscription],
    ) -> MatchResult:
        """
        Return the (subscription, article) pairs whose filters match.

        A subscription matches when its alert-type filter is empty or contains
        the article's alert type, and its target resolves and applies to the
        article. Dangling targets are skipped and reported, never fatal.
        """
        result = MatchResult()
        if not article.is_classified:
            logger.warning(f"[{article.id}] Not classified yet — nothing to match")
            return result

        associations = set(associations)
        seen = set()

        for subscription in sorted(subscriptions, key=lambda s: s.id):
            if subscription.id in seen or not subscription.is_active:
                continue
            try:
                accepted = subscription.accepts(article.alert_type)
            except ValueError as e:
                logger.warning(f"[{article.id}] Skipping subscription {subscription.id}: {e}")
                result.skipped.append(SubscriptionSkip(
                    subscription_id=subscription.id,
                    target_type=subscription.target_type,
                    target_id=str(subscription.target_id),
                    reason="invalid alert-type filter",
                ))
                continue
            if not accepted:
                continue

            try:
                target_type, entity = self._resolve(subscription)
            except TargetResolutionError as e:
                logger.warning(f"[{article.id}] Skipping subscription {subscription.id}: {e}")
                result.skipped.append(SubscriptionSkip(
                    subscription_id=subscription.id,
                    target_type=e.target_type,
                    target_id=str(e.target_id),
                    reason=e.reason,
                ))
                continue

            if RESOLVERS[target_type](entity, target_type, article, associations):
                seen.add(subscription.id)
                result.pairs.append(DeliveryPair(subscription=subscription, article=article))

        if result.pairs:
            logger.info(f"[{article.id}] Matched {len(result.pairs)} subscriptions")
        return result
