import logging
from typing import List, Protocol, Sequence

from sqlalchemy.orm import Session

from breachfeed.matcher import DeliveryPair
from breachfeed.models import DispatchRecord

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    """
    Consumer of delivery pairs (email, push, webhook...).
    Fire-and-forget: the pipeline never waits on or inspects delivery success.
    """

    def dispatch(self, pairs: Sequence[DeliveryPair]) -> None:
        ...


class LoggingDispatcher:
    """Default dispatcher: records each delivery pair in the log only."""

    def dispatch(self, pairs: Sequence[DeliveryPair]) -> None:
        for pair in pairs:
            logger.info(
                f"[dispatch] subscription={pair.subscription.id} subscriber={pair.subscription.subscriber_id} "
                f"article={pair.article.id} alert_type={pair.article.alert_type.value}"
            )


# ---------------------------------------------------------------------------
# Dispatch ledger
# ---------------------------------------------------------------------------

def undispatched(pairs: Sequence[DeliveryPair], db: Session) -> List[DeliveryPair]:
    """Drop pairs already present in the ledger, keeping the input order."""
    if not pairs:
        return []
    article_ids = {pair.article.id for pair in pairs}
    done = {
        (subscription_id, article_id)
        for subscription_id, article_id in db.query(DispatchRecord.subscription_id, DispatchRecord.article_id)
        .filter(DispatchRecord.article_id.in_(article_ids))
    }
    return [pair for pair in pairs if (pair.subscription.id, pair.article.id) not in done]


def record_dispatch(pairs: Sequence[DeliveryPair], db: Session) -> None:
    for pair in pairs:
        db.add(DispatchRecord(subscription_id=pair.subscription.id, article_id=pair.article.id))
    db.commit()
