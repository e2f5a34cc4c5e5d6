"""
Unit tests for identity normalization, match predicates and the confidence scorer.
"""

import pytest

from directory_ops.business.matching import (
    FIELD_WEIGHTS,
    confidence_score,
    is_loose_match,
    is_strict_match,
    matched_fields,
    name_similarity,
    normalize_abn,
    normalize_email,
    normalize_phone,
    normalize_text,
    normalize_website,
    recommend,
    score_pair,
)
from tests.fixtures.factory_fixtures import BusinessRecordFactory


# ============================================================================
# NORMALIZATION
# ============================================================================

class TestNormalization:
    """Normalizers reduce equivalent spellings to one comparable value."""

    @pytest.mark.parametrize("raw", ["(02) 9876 5432", "02 9876 5432", "+61 2 9876 5432", "61298765432"])
    def test_phone_variants_normalize_to_e164(self, raw):
        assert normalize_phone(raw) == "+61298765432"

    @pytest.mark.parametrize("raw", ["9876 5432", "1234567890", "", None, "phone"])
    def test_unusable_phone_yields_none(self, raw):
        assert normalize_phone(raw) is None

    @pytest.mark.parametrize("raw", [
        "https://www.cornercafe.com.au/menu",
        "http://cornercafe.com.au",
        "cornercafe.com.au",
        "WWW.CornerCafe.com.au",
    ])
    def test_website_reduces_to_host_without_www(self, raw):
        assert normalize_website(raw) == "cornercafe.com.au"

    def test_blank_website_yields_none(self):
        assert normalize_website("   ") is None
        assert normalize_website(None) is None

    def test_text_lowercases_and_collapses_punctuation(self):
        assert normalize_text("  Joe's   Corner-Cafe ") == "joe s corner cafe"
        assert normalize_text("!!!") is None

    def test_email_is_trimmed_and_lowercased(self):
        assert normalize_email("  Owner@CornerCafe.COM.au ") == "owner@cornercafe.com.au"
        assert normalize_email(" ") is None

    def test_abn_keeps_digits_only(self):
        assert normalize_abn("51 824 753 556") == "51824753556"
        assert normalize_abn("n/a") is None


# ============================================================================
# SCORING
# ============================================================================

class TestConfidenceScorer:
    """Weighted field matches, capped at 100, with merge/review/ignore bands."""

    def test_weights_sum_per_matched_field(self):
        assert confidence_score(frozenset({'phone', 'suburb'})) == 40
        assert confidence_score(frozenset({'website', 'exact_name'})) == 45

    def test_score_is_capped_at_100(self):
        assert confidence_score(frozenset(FIELD_WEIGHTS)) == 100

    @pytest.mark.parametrize("score, expected", [
        (100, "merge"), (80, "merge"), (79, "review"), (50, "review"), (49, "ignore"), (0, "ignore"),
    ])
    def test_recommendation_bands(self, score, expected):
        assert recommend(score) == expected

    def test_phone_suburb_match_scores_forty(self):
        a = BusinessRecordFactory(phone="(02) 9876 5432", suburb="Newtown")
        b = BusinessRecordFactory(phone="+61 2 9876 5432", suburb="newtown")

        fields, score, recommendation = score_pair(a, b)

        assert fields == frozenset({'phone', 'suburb'})
        assert score == 40
        assert recommendation == "ignore"

    def test_abn_phone_website_match_recommends_merge(self):
        a = BusinessRecordFactory(abn="51 824 753 556", phone="0298765432", website="www.joes.com.au")
        b = BusinessRecordFactory(abn="51824753556", phone="02 9876 5432", website="https://joes.com.au/")

        fields, score, recommendation = score_pair(a, b)

        assert {'abn', 'phone', 'website'} <= fields
        assert score >= 80
        assert recommendation == "merge"

    def test_missing_values_never_match(self):
        a = BusinessRecordFactory(phone=None, email=None, website=None, abn=None)
        b = BusinessRecordFactory(phone=None, email=None, website=None, abn=None)

        assert not {'phone', 'email', 'website', 'abn'} & matched_fields(a, b)

    def test_scoring_is_symmetric(self):
        records = [
            BusinessRecordFactory(name="Joe's Cafe", phone="0298765432", suburb="Newtown"),
            BusinessRecordFactory(name="Joes Cafe", phone="+61298765432", suburb="Newtown",
                                  email="hello@joes.com.au"),
            BusinessRecordFactory(name="Joe's Cafe", email="HELLO@joes.com.au", abn="51824753556"),
            BusinessRecordFactory(abn="51 824 753 556", website="joes.com.au"),
        ]
        for a in records:
            for b in records:
                assert score_pair(a, b) == score_pair(b, a)


# ============================================================================
# MATCH PREDICATES
# ============================================================================

class TestMatchPredicates:
    """Strict requires a strong signal; loose adds same-suburb similar names."""

    def test_strict_match_on_shared_abn_only(self):
        a = BusinessRecordFactory(abn="51824753556")
        b = BusinessRecordFactory(abn="51 824 753 556")

        assert is_strict_match(a, b)

    def test_same_name_and_suburb_is_not_a_strict_match(self):
        a = BusinessRecordFactory(name="Corner Cafe", suburb="Newtown")
        b = BusinessRecordFactory(name="Corner Cafe", suburb="Newtown")

        assert not is_strict_match(a, b)
        assert is_loose_match(a, b)

    def test_loose_match_requires_same_suburb(self):
        a = BusinessRecordFactory(name="Corner Cafe", suburb="Newtown")
        b = BusinessRecordFactory(name="Corner Cafe", suburb="Enmore")

        assert not is_loose_match(a, b)

    def test_loose_match_rejects_dissimilar_names(self):
        a = BusinessRecordFactory(name="Corner Cafe", suburb="Newtown")
        b = BusinessRecordFactory(name="Harbour Plumbing Services", suburb="Newtown")

        assert name_similarity(a, b) < 0.8
        assert not is_loose_match(a, b)

    def test_loose_match_respects_threshold(self):
        a = BusinessRecordFactory(name="Corner Cafe", suburb="Newtown")
        b = BusinessRecordFactory(name="Corner Cafes", suburb="Newtown")

        similarity = name_similarity(a, b)
        assert 0.8 < similarity < 1.0
        assert is_loose_match(a, b, threshold=0.8)
        assert not is_loose_match(a, b, threshold=similarity)

    def test_strict_implies_loose(self):
        a = BusinessRecordFactory(email="info@cafe.com.au", suburb="Newtown")
        b = BusinessRecordFactory(email="INFO@cafe.com.au", suburb="Glebe")

        assert is_strict_match(a, b)
        assert is_loose_match(a, b)
