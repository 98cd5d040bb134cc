"""
Severity Classifier

Scores an indicator's severity (0-100) and confidence from its source,
type, description/tag keywords, observation count and any confidence
the feed supplied. Classification never raises: on any error the
indicator gets a neutral medium/50/50 result.
"""

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ioc_ingest.core.models import CanonicalIndicator, Classification, Severity

logger = logging.getLogger(__name__)

# Source reliability, keyed by normalized source name prefix
SOURCE_SCORES: Dict[str, int] = {
    "urlhaus": 90,
    "threatfox": 90,
    "spamhaus": 90,
    "otx": 85,
    "emergingthreats": 85,
    "ciarmy": 80,
    "phishtank": 75,
    "phishstats": 75,
    "malshare": 75,
    "bazaar": 70,
    "bazaaryara": 65,
    "dshieldopenioc": 60,
    "dshieldthreatfeeds": 60,
}
DEFAULT_SOURCE_SCORE = 50

TYPE_SCORES: Dict[str, int] = {
    "hash": 80,
    "file": 80,
    "url": 75,
    "domain": 65,
    "ip": 60,
    "email": 60,
}
DEFAULT_TYPE_SCORE = 50

TYPE_FAMILIES = {
    "md5": "hash",
    "sha1": "hash",
    "sha256": "hash",
    "ipv4": "ip",
    "ipv6": "ip",
}

CRITICAL_KEYWORDS = [
    "ransomware", "apt", "advanced persistent", "zero-day", "exploit",
    "backdoor", "trojan", "rat", "remote access", "c2", "command and control",
    "cryptominer", "miner", "botnet", "ddos",
]

HIGH_KEYWORDS = [
    "malware", "phishing", "phish", "scam", "fraud", "stealer",
    "banking", "credential", "keylogger", "spyware", "adware",
]

MEDIUM_KEYWORDS = [
    "suspicious", "potentially unwanted", "pua", "pup", "unwanted",
]

KEYWORD_BONUSES = (
    (CRITICAL_KEYWORDS, 20),
    (HIGH_KEYWORDS, 10),
    (MEDIUM_KEYWORDS, 5),
)

SEVERITY_THRESHOLDS = (
    (85, Severity.CRITICAL),
    (70, Severity.HIGH),
    (50, Severity.MEDIUM),
    (30, Severity.LOW),
)

_NON_ALNUM = re.compile(r"[^a-z0-9]")

IndicatorLike = Union[CanonicalIndicator, Mapping[str, Any]]


def _field(indicator: IndicatorLike, name: str, default: Any = None) -> Any:
    if isinstance(indicator, Mapping):
        return indicator.get(name, default)
    return getattr(indicator, name, default)


def _clamp_round(value: float) -> int:
    """Clamp to [0, 100] and round half up."""
    return int(math.floor(max(0.0, min(100.0, value)) + 0.5))


def source_score(source: Optional[str]) -> int:
    """
    Reliability score for a source name.

    The name is lowercased and stripped of non-alphanumerics, then the
    longest table key it starts with wins ("bazaar_yara" -> bazaaryara,
    "DShieldOpenIOC" -> dshieldopenioc).
    """
    normalized = _NON_ALNUM.sub("", (source or "").lower())
    if not normalized:
        return DEFAULT_SOURCE_SCORE

    best_key = None
    for key in SOURCE_SCORES:
        if normalized.startswith(key) and (best_key is None or len(key) > len(best_key)):
            best_key = key
    return SOURCE_SCORES[best_key] if best_key else DEFAULT_SOURCE_SCORE


def type_score(ioc_type: Any) -> int:
    """Severity score for an indicator type, via its family."""
    value = getattr(ioc_type, "value", ioc_type)
    value = str(value or "").lower()
    family = TYPE_FAMILIES.get(value, value)
    return TYPE_SCORES.get(family, DEFAULT_TYPE_SCORE)


def keyword_bonus(description: Optional[str], tags: Optional[Iterable[str]]) -> int:
    """Bonus for the highest-ranked keyword tier found in description and tags."""
    text = f"{description or ''} {' '.join(str(t) for t in tags or [])}".lower()
    for keywords, bonus in KEYWORD_BONUSES:
        if any(kw in text for kw in keywords):
            return bonus
    return 0


def score_to_severity(score: float) -> Severity:
    for threshold, severity in SEVERITY_THRESHOLDS:
        if score >= threshold:
            return severity
    return Severity.INFO


def calculate_severity_score(indicator: IndicatorLike, observed_count: int = 1) -> int:
    """
    Weighted severity score.

    Args:
        indicator: CanonicalIndicator or mapping with the same fields
        observed_count: Number of times the indicator has been seen

    Returns:
        Score in 0-100
    """
    score = 50.0
    score += (source_score(_field(indicator, "source")) - 50) * 0.3
    score += (type_score(_field(indicator, "type")) - 50) * 0.3
    score += keyword_bonus(_field(indicator, "description"), _field(indicator, "tags"))

    if observed_count and observed_count > 1:
        score += min(10.0, math.log(observed_count) * 2)

    confidence = _field(indicator, "confidence")
    if confidence is not None:
        score += (float(confidence) - 50) * 0.1

    return _clamp_round(score)


def calculate_confidence(indicator: IndicatorLike, observed_count: int = 1) -> int:
    """Confidence derived from source reliability and metadata richness."""
    confidence = float(source_score(_field(indicator, "source")))

    description = _field(indicator, "description") or ""
    if len(description) > 20:
        confidence += 5

    if _field(indicator, "tags"):
        confidence += 5

    if observed_count and observed_count > 3:
        confidence += min(10, observed_count * 2)

    return _clamp_round(confidence)


def classify(indicator: IndicatorLike, observed_count: int = 1) -> Classification:
    """
    Classify severity and confidence.

    A confidence supplied on the indicator is kept (rounded); otherwise
    it is derived from the source and metadata.

    Args:
        indicator: CanonicalIndicator or mapping
        observed_count: Observation count including the current one

    Returns:
        Classification(severity, severity_score, confidence)
    """
    try:
        score = calculate_severity_score(indicator, observed_count)
        supplied = _field(indicator, "confidence")
        if supplied is not None:
            confidence = _clamp_round(float(supplied))
        else:
            confidence = calculate_confidence(indicator, observed_count)
        return Classification(
            severity=score_to_severity(score),
            severity_score=score,
            confidence=confidence,
        )
    except Exception as e:
        logger.error(f"[SeverityClassifier] Error classifying IOC: {e}")
        return Classification(severity=Severity.MEDIUM, severity_score=50, confidence=50)


def batch_classify(indicators: Iterable[IndicatorLike]) -> List[Dict[str, Any]]:
    """Classify many indicators, returning each as a dict with its classification merged in."""
    results = []
    for indicator in indicators:
        classification = classify(indicator)
        if isinstance(indicator, CanonicalIndicator):
            record = indicator.model_dump(mode="json")
        else:
            record = dict(indicator)
        record.update(
            severity=classification.severity.value,
            severity_score=classification.severity_score,
            confidence=classification.confidence,
        )
        results.append(record)
    return results


def severity_stats(rows: Iterable[Any]) -> Dict[str, Any]:
    """
    Severity distribution with average score and confidence.

    Rows may be PersistedIndicator objects or dicts with severity,
    severity_score and confidence fields.
    """
    rows = list(rows)
    by_severity = {s.value: 0 for s in Severity}
    total_score = 0
    total_confidence = 0

    for row in rows:
        severity = _field(row, "severity")
        if severity:
            key = getattr(severity, "value", severity)
            if key in by_severity:
                by_severity[key] += 1
        total_score += _field(row, "severity_score") or 0
        total_confidence += _field(row, "confidence") or 0

    count = len(rows)
    return {
        "total": count,
        "by_severity": by_severity,
        "average_score": _clamp_round(total_score / count) if count else 0,
        "average_confidence": _clamp_round(total_confidence / count) if count else 0,
    }
