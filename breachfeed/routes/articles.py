import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from breachfeed.database import get_db
from breachfeed.entities import load_associations
from breachfeed.matcher import SqlReferenceLookup, SubscriptionMatcher, load_active_subscriptions
from breachfeed.models import AlertType, Article
from breachfeed.pipeline import Pipeline
from breachfeed.schemas import ArticleResponse, DeliveryPairResponse, PassReport

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> Pipeline:
    """The pipeline built at startup; overridden in tests."""
    return request.app.state.pipeline


@router.post("/poll", response_model=PassReport)
async def poll(pipeline: Pipeline = Depends(get_pipeline)):
    """Run one pass over every due feed immediately. Blocks until complete."""
    logger.info("[/poll] Manual pass requested")
    report = await pipeline.run_pass()
    logger.info(f"[/poll] {len(report.feeds)} feeds, {len(report.all_articles)} articles")
    return report


@router.post("/classify", response_model=PassReport)
def classify(reclassify: bool = False, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Retry articles whose classification failed.
    With ?reclassify=true every stored article is classified again; pairs
    already dispatched are not dispatched twice.
    """
    logger.info(f"[/classify] reclassify={reclassify}")
    return pipeline.classify_pending(reclassify=reclassify)


@router.get("/articles", response_model=List[ArticleResponse])
def list_articles(alert_type: Optional[AlertType] = None, limit: int = 100, db: Session = Depends(get_db)):
    """Classified articles, newest first, optionally filtered by alert type."""
    query = db.query(Article).filter(Article.alert_type.is_not(None))
    if alert_type is not None:
        query = query.filter(Article.alert_type == alert_type)
    articles = query.order_by(Article.published_at.desc()).limit(limit).all()
    logger.info(f"[/articles] Returning {len(articles)} articles")
    return articles


@router.get("/articles/{article_id}/matches", response_model=List[DeliveryPairResponse])
def article_matches(article_id: str, db: Session = Depends(get_db)):
    """Preview which active subscriptions the article matches. Dispatches nothing."""
    article = db.get(Article, article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found")

    matcher = SubscriptionMatcher(SqlReferenceLookup(db))
    result = matcher.match(article, load_associations(article.id, db), load_active_subscriptions(db))
    return [
        DeliveryPairResponse(
            subscription_id=pair.subscription.id,
            subscriber_id=pair.subscription.subscriber_id,
            article_id=pair.article.id,
        )
        for pair in result.pairs
    ]
