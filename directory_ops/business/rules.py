"""
Validation rules available to VALIDATION workflow stages.

Each rule is a predicate over a business record. A VALIDATION stage fails a
record with the names of every rule it did not satisfy. Stage configuration is
checked against ``VALIDATION_RULES`` when an operation is created, so an
unknown rule name never reaches execution.
"""

import re
from typing import Callable, Dict

from .matching import normalize_abn, normalize_phone, normalize_website

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
QUALITY_CHECK_MIN_SCORE = 50


def basic_validation(record) -> bool:
    """Record has a usable name and is not already rejected."""
    return bool(record.name and record.name.strip()) and record.approval_status.value != "REJECTED"


def quality_check(record) -> bool:
    return record.quality_score >= QUALITY_CHECK_MIN_SCORE


def abn_check(record) -> bool:
    abn = normalize_abn(record.abn)
    return abn is not None and len(abn) == 11


def completeness_check(record) -> bool:
    """Name, suburb and category present, plus at least one contact channel."""
    has_contact = any([record.phone, record.email, record.website])
    return bool(record.suburb and record.category and has_contact)


def format_validation(record) -> bool:
    """Every contact field that is present must be well formed."""
    if record.email and not EMAIL_PATTERN.match(record.email.strip()):
        return False
    if record.phone and normalize_phone(record.phone) is None:
        return False
    if record.website and normalize_website(record.website) is None:
        return False
    return True


def not_duplicate(record) -> bool:
    return record.duplicate_of_id is None


VALIDATION_RULES: Dict[str, Callable] = {
    'basic_validation': basic_validation,
    'quality_check': quality_check,
    'abn_check': abn_check,
    'completeness_check': completeness_check,
    'format_validation': format_validation,
    'not_duplicate': not_duplicate,
}
