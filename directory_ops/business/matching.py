"""
Identity normalization, match predicates and the Confidence Scorer.

All predicates compare normalized values, so matching is symmetric and
``score_pair(a, b) == score_pair(b, a)`` for every pair of records.

Field weights (summed, capped at 100):
    abn 35, phone 30, website 25, exact_name 20, email 20, suburb 10

Recommendation:
    >= 80 merge, 50-79 review, otherwise ignore
"""

import re
from typing import Dict, FrozenSet, Optional, Tuple
from urllib.parse import urlsplit

from rapidfuzz.distance import Levenshtein

FIELD_WEIGHTS: Dict[str, int] = {
    'abn': 35,
    'phone': 30,
    'website': 25,
    'exact_name': 20,
    'email': 20,
    'suburb': 10,
}

STRONG_SIGNALS: FrozenSet[str] = frozenset({'phone', 'email', 'website', 'abn'})

MERGE_THRESHOLD = 80
REVIEW_THRESHOLD = 50
DEFAULT_NAME_SIMILARITY_THRESHOLD = 0.8

_NON_DIGIT = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """
    Normalize an Australian phone number to E.164.

    ``61XXXXXXXXX`` (11 digits) and ``0XXXXXXXXX`` (10 digits) are accepted;
    any other shape is unusable for matching and yields None.
    """
    if not value:
        return None
    digits = _NON_DIGIT.sub("", value)
    if len(digits) == 11 and digits.startswith("61"):
        return f"+{digits}"
    if len(digits) == 10 and digits.startswith("0"):
        return f"+61{digits[1:]}"
    return None


def normalize_website(value: Optional[str]) -> Optional[str]:
    """Lower-cased host name without scheme, path or leading ``www.``."""
    if not value or not value.strip():
        return None
    raw = value.strip().lower()
    if "://" not in raw:
        raw = f"http://{raw}"
    try:
        host = urlsplit(raw).hostname
    except ValueError:
        return None
    if not host:
        return None
    if host.startswith("www."):
        host = host[4:]
    return host or None


def normalize_text(value: Optional[str]) -> Optional[str]:
    """Lower-case alphanumerics separated by single spaces."""
    if not value:
        return None
    collapsed = _NON_ALNUM.sub(" ", value.lower()).strip()
    return collapsed or None


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    return value.strip().lower()


def normalize_abn(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = _NON_DIGIT.sub("", value)
    return digits or None


_NORMALIZERS = {
    'abn': lambda record: normalize_abn(record.abn),
    'phone': lambda record: normalize_phone(record.phone),
    'website': lambda record: normalize_website(record.website),
    'exact_name': lambda record: normalize_text(record.name),
    'email': lambda record: normalize_email(record.email),
    'suburb': lambda record: normalize_text(record.suburb),
}


def identity_key(record) -> Dict[str, Optional[str]]:
    """Normalized identity values of a record, keyed by scorer field name."""
    return {name: normalize(record) for name, normalize in _NORMALIZERS.items()}


def matched_fields(a, b) -> FrozenSet[str]:
    """Scorer fields on which both records carry the same normalized value."""
    key_a = identity_key(a)
    key_b = identity_key(b)
    return frozenset(
        name for name in FIELD_WEIGHTS
        if key_a[name] is not None and key_a[name] == key_b[name]
    )


def confidence_score(fields: FrozenSet[str]) -> int:
    return min(100, sum(FIELD_WEIGHTS[name] for name in fields))


def recommend(score: int) -> str:
    if score >= MERGE_THRESHOLD:
        return "merge"
    if score >= REVIEW_THRESHOLD:
        return "review"
    return "ignore"


def confidence_band(score: int) -> str:
    """Scan group label, on the same bands as ``recommend``."""
    if score >= MERGE_THRESHOLD:
        return "high"
    if score >= REVIEW_THRESHOLD:
        return "medium"
    return "low"


def score_pair(a, b) -> Tuple[FrozenSet[str], int, str]:
    """
    Score one candidate pair.

    Returns:
        Tuple of (matched fields, confidence score 0-100, recommendation)
    """
    fields = matched_fields(a, b)
    score = confidence_score(fields)
    return fields, score, recommend(score)


def name_similarity(a, b) -> float:
    """Normalized Levenshtein similarity (0.0-1.0) of the normalized names."""
    name_a = normalize_text(a.name) or ""
    name_b = normalize_text(b.name) or ""
    if not name_a or not name_b:
        return 0.0
    return Levenshtein.normalized_similarity(name_a, name_b)


def is_strict_match(a, b) -> bool:
    """True when the records share at least one strong identity signal."""
    return bool(matched_fields(a, b) & STRONG_SIGNALS)


def is_loose_match(a, b, threshold: float = DEFAULT_NAME_SIMILARITY_THRESHOLD) -> bool:
    """Strict match, or same suburb with names more similar than ``threshold``."""
    if is_strict_match(a, b):
        return True
    suburb_a = normalize_text(a.suburb)
    if suburb_a is None or suburb_a != normalize_text(b.suburb):
        return False
    return name_similarity(a, b) > threshold
