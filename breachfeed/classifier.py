import logging
import math
import re
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from breachfeed.exceptions import ClassifierUnavailableError
from breachfeed.models import (
    ALERT_TYPE_ORDER,
    SEVERITY_ORDER,
    AlertType,
    Article,
    Regulation,
    Regulator,
    Severity,
)
from breachfeed.schemas import Classification, ClassificationResult, FallbackClassification

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Detector weights. Each pattern contributes its weight once per article.
# Confirmed-breach language outweighs incident language, which outweighs
# generic security coverage.
# ---------------------------------------------------------------------------

DETECTORS: dict[AlertType, list[tuple[str, float]]] = {
    AlertType.CONFIRMED_BREACH: [
        (r"\bconfirm(?:s|ed|ing)?\b[^.]{0,60}?\b(?:breach|unauthori[sz]ed access|compromise|intrusion)", 3.0),
        (r"\b(?:suffered|disclosed|reported|announced) (?:a |an )?(?:data |security )?breach\b", 2.5),
        (r"\b(?:data|records|information) (?:was|were|has been|have been) (?:stolen|exposed|leaked|exfiltrated)\b", 2.5),
        (r"\b(?:encrypted by ransomware|ransomware (?:has |have )?encrypted)\b", 2.5),
        (r"\bunauthori[sz]ed (?:access|individuals|parties|actors?)\b", 2.0),
        (r"\b(?:exfiltrat\w+|stolen data|leaked data|exposed database)\b", 2.0),
        (r"\b(?:customer|patient|employee|user|personal) (?:records|data|information)\b", 1.5),
        (r"\b(?:breach notifications?|notif(?:y|ied|ying) (?:affected|impacted) (?:customers|individuals|users))\b", 1.5),
    ],
    AlertType.SECURITY_INCIDENT: [
        (r"\b(?:potential|possible|suspected|attempted) (?:security )?"
         r"(?:incident|breach|intrusion|compromise|attack|unauthori[sz]ed access)\b", 1.5),
        (r"\bsecurity incident\b", 1.5),
        (r"\b(?:suspicious|unusual) (?:network )?activity\b", 1.5),
        (r"\b(?:may|might|could) have been (?:accessed|compromised|exposed|affected)\b", 1.5),
        (r"\binvestigat(?:e|es|ed|ing|ion)\b", 1.0),
        (r"\bincident response\b", 1.0),
        (r"\b(?:took|taken|taking) (?:systems|servers|networks?) offline\b", 1.0),
        (r"\bpotential(?:ly)?\b", 0.5),
        (r"\b(?:reviewing|assessing|looking into)\b", 0.5),
    ],
    AlertType.SECURITY_MENTION: [
        (r"\bcyber ?security\b", 1.0),
        (r"\bcyber ?attacks?\b", 1.0),
        (r"\bdata (?:breach|breaches|protection|privacy)\b", 1.0),
        (r"\b(?:ransomware|malware|phishing|spyware|botnet|ddos)\b", 1.0),
        (r"\b(?:vulnerabilit(?:y|ies)|zero-day|exploit(?:s|ed)?|cve-\d{4}-\d+)\b", 1.0),
        (r"\bhack(?:er|ers|ed|ing)?\b", 1.0),
        (r"\bsecurity\b", 0.5),
    ],
}

_COMPILED = {
    alert_type: [(re.compile(pattern, re.IGNORECASE), weight) for pattern, weight in patterns]
    for alert_type, patterns in DETECTORS.items()
}

MIN_SCORE = 1.0          # top category must reach this or the result is a fallback
TIE_CONFIDENCE = 0.4     # reported when the top two categories score the same
SATURATION = 2.0         # score at which evidence strength reaches one half

# Regulators / regulations named in the text count toward general security coverage
REFERENCE_WEIGHT = 0.5

# ---------------------------------------------------------------------------
# Optional zero-shot model signal
# ---------------------------------------------------------------------------

MODEL_WEIGHT = 2.0
MODEL_WORD_LIMIT = 400
MODEL_LABELS: dict[AlertType, str] = {
    AlertType.CONFIRMED_BREACH: "confirmed data breach",
    AlertType.SECURITY_INCIDENT: "security incident under investigation",
    AlertType.SECURITY_MENTION: "general cybersecurity news",
}

# ---------------------------------------------------------------------------
# Severity: base per alert type, adjusted by secondary signals, capped
# ---------------------------------------------------------------------------

BASE_SEVERITY = {
    AlertType.CONFIRMED_BREACH: Severity.HIGH,
    AlertType.SECURITY_INCIDENT: Severity.MEDIUM,
    AlertType.SECURITY_MENTION: Severity.LOW,
}
SEVERITY_CAP = {
    AlertType.CONFIRMED_BREACH: Severity.CRITICAL,
    AlertType.SECURITY_INCIDENT: Severity.HIGH,
    AlertType.SECURITY_MENTION: Severity.MEDIUM,
}
SCALE_PATTERN = re.compile(
    r"\b\d[\d,.]*\s*(?:million|billion)\b|\b(?:millions|billions) of\b"
    r"|\bcritical infrastructure\b|\bhospitals?\b|\bpower grid\b|\bgovernment\b",
    re.IGNORECASE,
)
CONTAINMENT_PATTERN = re.compile(r"\b(?:minor|limited impact|resolved|patched|no evidence of)\b", re.IGNORECASE)


def build_input_text(article: Article) -> str:
    """Title plus the best body text available: full content if fetched, else the summary."""
    body = article.full_content if article.has_full_content else article.summary
    return " ".join(part for part in (article.title, body) if part)


def _term_pattern(term: str) -> re.Pattern:
    # Short all-caps terms are acronyms (SEC, FTC); match them case-sensitively
    flags = 0 if term.isupper() and len(term) <= 6 else re.IGNORECASE
    return re.compile(rf"\b{re.escape(term)}\b", flags)


def load_reference_terms(db: Session) -> list[str]:
    """Names of active regulators and regulations, used as named-entity signals."""
    terms = []
    for regulator in db.query(Regulator).filter(Regulator.is_active.is_(True)).all():
        terms.extend(t for t in (regulator.acronym, regulator.full_name) if t)
    for regulation in db.query(Regulation).filter(Regulation.is_active.is_(True)).all():
        terms.extend(t for t in (regulation.name, regulation.full_name) if t)
    return terms


class ClassifierService:
    """
    Assigns an alert type, severity and confidence to an article.
    Regex detectors always run; a zero-shot model adds a weighted signal when
    a model name is configured. The model is loaded lazily on first use.
    """

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name
        self._pipeline = None  # loaded on first use to keep startup fast

    def _get_pipeline(self):
        """Load and cache the zero-shot classification pipeline on first call."""
        if self._pipeline is None:
            from transformers import pipeline  # imported here to defer heavy load
            logger.info(f"Loading zero-shot model '{self.model_name}' (first use — this may take a moment)...")
            self._pipeline = pipeline("zero-shot-classification", model=self.model_name)
            logger.info("Model loaded successfully")
        return self._pipeline

    def _model_scores(self, text: str) -> dict[AlertType, float]:
        """
        Score the text against one label per alert type.

        Raises:
            ClassifierUnavailableError: the model could not be loaded or run
        """
        words = text.split()
        if len(words) > MODEL_WORD_LIMIT:
            text = " ".join(words[:MODEL_WORD_LIMIT])

        try:
            pipe = self._get_pipeline()
            result = pipe(text, candidate_labels=list(MODEL_LABELS.values()))
        except Exception as e:
            raise ClassifierUnavailableError(f"zero-shot model failed: {e}") from e

        by_label = dict(zip(result["labels"], result["scores"]))
        return {alert_type: by_label.get(label, 0.0) for alert_type, label in MODEL_LABELS.items()}

    def _detector_scores(self, text: str, reference_terms: Iterable[str] = ()) -> tuple[dict[AlertType, float], int]:
        """
        Run every detector over the text.

        Returns:
            scores: summed detector weight per alert type
            entity_hits: number of reference terms (regulators, regulations) found
        """
        scores = {alert_type: 0.0 for alert_type in ALERT_TYPE_ORDER}
        for alert_type, patterns in _COMPILED.items():
            for pattern, weight in patterns:
                if pattern.search(text):
                    scores[alert_type] += weight

        entity_hits = sum(1 for term in set(reference_terms) if _term_pattern(term).search(text))
        if entity_hits:
            scores[AlertType.SECURITY_MENTION] += REFERENCE_WEIGHT
        return scores, entity_hits

    def _compute_severity(self, alert_type: AlertType, text: str, entity_hits: int) -> Severity:
        rank = SEVERITY_ORDER.index(BASE_SEVERITY[alert_type])
        if SCALE_PATTERN.search(text):
            rank += 1
        if entity_hits and alert_type != AlertType.SECURITY_MENTION:
            rank += 1
        if CONTAINMENT_PATTERN.search(text):
            rank -= 1
        cap = SEVERITY_ORDER.index(SEVERITY_CAP[alert_type])
        return SEVERITY_ORDER[max(0, min(rank, cap))]

    def classify(self, text: str, reference_terms: Iterable[str] = ()) -> ClassificationResult:
        """
        Classify a block of text.

        Returns a FallbackClassification when no category reaches MIN_SCORE,
        otherwise a Classification whose confidence is derived from the margin
        between the winning category and the runner-up.

        Raises:
            ClassifierUnavailableError: the configured model signal failed
        """
        text = text or ""
        scores, entity_hits = self._detector_scores(text, reference_terms)

        if self.model_name and text.strip():
            for alert_type, score in self._model_scores(text).items():
                scores[alert_type] += MODEL_WEIGHT * score

        audit = {alert_type.value: round(score, 4) for alert_type, score in scores.items()}
        top = max(scores.values())
        if top < MIN_SCORE:
            return FallbackClassification(scores=audit)

        leaders = [a for a in ALERT_TYPE_ORDER if math.isclose(scores[a], top)]
        # ALERT_TYPE_ORDER is lowest severity first, so ties resolve conservatively
        alert_type = leaders[0]
        tie = len(leaders) > 1

        if tie:
            confidence = TIE_CONFIDENCE
        else:
            runner_up = max(score for a, score in scores.items() if a != alert_type)
            margin = (top - runner_up) / top
            strength = top / (top + SATURATION)
            confidence = TIE_CONFIDENCE + (1 - TIE_CONFIDENCE) * margin * strength

        return Classification(
            alert_type=alert_type,
            severity=self._compute_severity(alert_type, text, entity_hits),
            confidence=min(1.0, max(0.0, confidence)),
            scores=audit,
            tie=tie,
        )

    def classify_and_save(self, article: Article, db: Session) -> Optional[ClassificationResult]:
        """
        Classify an article and persist the result.

        On classification failure the article stays unclassified (no default is
        written) so a later pass can retry it.

        Args:
            article: the article to classify
            db: active SQLAlchemy session

        Returns:
            the classification result, or None if the classifier failed
        """
        article.classification_attempts = (article.classification_attempts or 0) + 1

        try:
            result = self.classify(build_input_text(article), load_reference_terms(db))
        except Exception as e:
            article.classification_error = str(e)
            db.commit()
            logger.error(f"[{article.id}] Classification failed, leaving unclassified: {e}")
            return None

        article.apply_classification(result)
        db.commit()

        status = "FALLBACK" if result.fallback else result.alert_type.value
        logger.info(
            f"[{article.id}] [{status}] '{article.title[:60]}' "
            f"(severity={result.severity.value}, confidence={result.confidence:.3f}, scores={result.scores})"
        )
        return result
