"""Entity tagging.

Links an article to the companies, agencies, locations and keywords it
mentions. The matcher reads these associations; it never scans entity
tables itself.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from breachfeed.models import TARGET_MODELS, Article, ArticleEntity, TargetType

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 100


def find_term(term: str, text: str) -> Optional[re.Match]:
    """Case-insensitive whole-word search; terms may start or end with symbols (C++, .NET)."""
    if not term or not term.strip():
        return None
    return re.search(rf"(?<!\w){re.escape(term.strip())}(?!\w)", text, re.IGNORECASE)


def match_confidence(match: re.Match, term: str) -> float:
    """
    Score a term match:
      0.5 base, +0.2 exact case, +0.2 near the start (title / lede), +0.1 for long terms.
    """
    confidence = 0.5
    if match.group(0) == term:
        confidence += 0.2
    if match.start() < 200:
        confidence += 0.2
    if len(term) > 10:
        confidence += 0.1
    return min(confidence, 1.0)


def match_context(match: re.Match, text: str) -> str:
    start = max(0, match.start() - CONTEXT_CHARS)
    end = min(len(text), match.end() + CONTEXT_CHARS)
    return text[start:end].strip()


def load_associations(article_id: str, db: Session) -> set[tuple[TargetType, str]]:
    rows = db.query(ArticleEntity.target_type, ArticleEntity.target_id).filter(
        ArticleEntity.article_id == article_id
    )
    return {(TargetType(target_type), target_id) for target_type, target_id in rows}


def tag_article(article: Article, db: Session) -> List[ArticleEntity]:
    """
    Create ArticleEntity rows for every active reference entity the article
    mentions. Existing associations are kept; running twice adds nothing.

    Returns:
        the associations created by this call
    """
    text = article.search_text
    existing = load_associations(article.id, db)
    created: List[ArticleEntity] = []

    for target_type, model in TARGET_MODELS.items():
        for entity in db.query(model).filter(model.is_active.is_(True)).all():
            if (target_type, entity.id) in existing:
                continue

            best = None
            for term in entity.terms:
                match = find_term(term, text)
                if match is None:
                    continue
                confidence = match_confidence(match, term)
                if best is None or confidence > best[1]:
                    best = (match, confidence)

            if best is None:
                continue

            association = ArticleEntity(
                article_id=article.id,
                target_type=target_type,
                target_id=entity.id,
                match_context=match_context(best[0], text),
                confidence=best[1],
            )
            db.add(association)
            created.append(association)

    try:
        db.commit()
    except IntegrityError:
        # Tagged concurrently by a retry pass; the stored associations win
        db.rollback()
        logger.info(f"[{article.id}] Entity associations already present")
        return []

    if created:
        logger.info(f"[{article.id}] Tagged {len(created)} entities")
    return created
