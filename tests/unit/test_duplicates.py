"""
Unit tests for candidate retrieval, explicit duplicate marking and directory scans.
"""

import pytest

from directory_ops.business.duplicates import (
    DuplicateCandidateFinder,
    DuplicateMarker,
    DuplicateScanner,
    parse_mode,
)
from directory_ops.business.exceptions import NotFoundError, StorageError, ValidationError
from directory_ops.business.models import ApprovalStatus, MatchMode, Recommendation
from tests.fixtures import ADMIN_ACTOR


@pytest.fixture
def finder(store):
    return DuplicateCandidateFinder(store)


@pytest.fixture
def marker(store, audit):
    return DuplicateMarker(store, audit)


@pytest.fixture
def scanner(store, finder, marker):
    return DuplicateScanner(store, finder, marker)


class TestParseMode:

    def test_accepts_enum_and_string(self):
        assert parse_mode("loose") is MatchMode.LOOSE
        assert parse_mode(MatchMode.STRICT) is MatchMode.STRICT

    def test_unknown_mode_is_a_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_mode("fuzzy")
        assert exc_info.value.error_code == "INVALID_MATCH_MODE"


# ============================================================================
# CANDIDATE RETRIEVAL
# ============================================================================

class TestDuplicateCandidateFinder:
    """Candidate retrieval is read-only and ordered by confidence."""

    def test_strict_abn_match_is_found_and_scored(self, add_business, finder):
        """Shared ABN only: candidate with abn matched and a review-band score."""
        target = add_business(abn="51824753556", suburb="Newtown")
        other = add_business(abn="51 824 753 556", suburb="Newtown")
        add_business()

        candidates = finder.find_candidates(target.id, "strict")

        assert [c.candidate_id for c in candidates] == [other.id]
        candidate = candidates[0]
        assert 'abn' in candidate.matched_fields
        assert candidate.confidence_score == 45
        assert candidate.recommendation == Recommendation.IGNORE

    def test_candidates_sorted_by_score_then_id(self, add_business, finder):
        target = add_business(phone="0298765432", email="hi@joes.com.au", website="joes.com.au")
        weak = add_business(phone="02 9876 5432")
        strong = add_business(phone="0298765432", email="HI@joes.com.au", website="www.joes.com.au")
        tie = add_business(phone="(02) 9876 5432")

        candidates = finder.find_candidates(target.id, MatchMode.STRICT)

        assert [c.candidate_id for c in candidates] == [strong.id, weak.id, tie.id]
        assert candidates[0].confidence_score == 75
        assert candidates[0].recommendation == Recommendation.REVIEW

    def test_target_never_listed_as_its_own_candidate(self, add_business, finder):
        target = add_business(phone="0298765432")
        add_business(phone="0298765432")

        candidates = finder.find_candidates(target.id)

        assert target.id not in {c.candidate_id for c in candidates}

    def test_resolved_duplicates_excluded_unless_requested(self, add_business, finder):
        primary = add_business()
        target = add_business(phone="0298765432")
        resolved = add_business(phone="0298765432", duplicate_of_id=primary.id,
                                approval_status=ApprovalStatus.REJECTED)

        assert finder.find_candidates(target.id) == []
        included = finder.find_candidates(target.id, include_resolved=True)
        assert [c.candidate_id for c in included] == [resolved.id]
        assert included[0].candidate_duplicate_of_id == primary.id

    def test_loose_mode_finds_similar_names_in_same_suburb(self, add_business, finder):
        target = add_business(name="Corner Cafe", suburb="Newtown")
        similar = add_business(name="Corner Cafes", suburb="Newtown")
        add_business(name="Corner Cafe", suburb="Glebe")

        assert finder.find_candidates(target.id, "strict") == []
        candidates = finder.find_candidates(target.id, "loose")
        assert [c.candidate_id for c in candidates] == [similar.id]
        assert candidates[0].name_similarity > 0.8

    def test_unknown_target_raises_not_found(self, finder):
        with pytest.raises(NotFoundError) as exc_info:
            finder.find_candidates("biz-missing")
        assert exc_info.value.error_code == "BUSINESS_NOT_FOUND"

    def test_finding_candidates_mutates_nothing(self, store, add_business, finder):
        target = add_business(phone="0298765432")
        add_business(phone="0298765432")
        before = store.dump()['businesses']

        finder.find_candidates(target.id, "loose")

        assert store.dump()['businesses'] == before

    def test_summary_counts_confidence_bands(self, add_business, finder):
        target = add_business(phone="0298765432", email="hi@joes.com.au", website="joes.com.au",
                              abn="51824753556")
        add_business(phone="0298765432", email="hi@joes.com.au", website="joes.com.au",
                     abn="51824753556")
        add_business(phone="0298765432", email="hi@joes.com.au")
        add_business(abn="51824753556")

        summary = finder.summarize(finder.find_candidates(target.id))

        assert summary.total_found == 3
        assert summary.high_confidence == 1
        assert summary.medium_confidence == 1
        assert summary.low_confidence == 1
        assert summary.recommend_merge == 1


# ============================================================================
# MARKING
# ============================================================================

class TestDuplicateMarker:
    """Explicit marking reports each record independently."""

    def test_marks_records_and_rejects_them(self, store, add_business, marker, audit_sink):
        primary = add_business()
        first = add_business()
        second = add_business(approval_status=ApprovalStatus.APPROVED)

        outcomes = marker.mark_as_duplicate(ADMIN_ACTOR, primary.id, [first.id, second.id])

        assert [outcome.success for outcome in outcomes] == [True, True]
        assert outcomes[1].previous_state.approval_status == ApprovalStatus.APPROVED
        for business_id in (first.id, second.id):
            record = store.get_business(business_id)
            assert record.duplicate_of_id == primary.id
            assert record.approval_status == ApprovalStatus.REJECTED
        assert audit_sink.actions().count("DUPLICATE_MARKED") == 2

    def test_reports_per_record_failures(self, store, add_business, marker):
        primary = add_business()
        other_primary = add_business()
        already = add_business(duplicate_of_id=other_primary.id, approval_status=ApprovalStatus.REJECTED)
        fresh = add_business()

        outcomes = marker.mark_as_duplicate(
            ADMIN_ACTOR, primary.id, [primary.id, "biz-missing", already.id, fresh.id]
        )

        by_id = {outcome.business_id: outcome for outcome in outcomes}
        assert not by_id[primary.id].success
        assert by_id["biz-missing"].error == "Business not found"
        assert "already a duplicate" in by_id[already.id].error
        assert by_id[fresh.id].success
        assert store.get_business(already.id).duplicate_of_id == other_primary.id

    def test_primary_that_is_a_duplicate_is_rejected(self, add_business, marker):
        root = add_business()
        primary = add_business(duplicate_of_id=root.id, approval_status=ApprovalStatus.REJECTED)
        other = add_business()

        with pytest.raises(ValidationError) as exc_info:
            marker.mark_as_duplicate(ADMIN_ACTOR, primary.id, [other.id])
        assert exc_info.value.error_code == "PRIMARY_IS_DUPLICATE"

    def test_unknown_primary_raises_not_found(self, add_business, marker):
        other = add_business()
        with pytest.raises(NotFoundError):
            marker.mark_as_duplicate(ADMIN_ACTOR, "biz-missing", [other.id])

    def test_dependents_of_marked_record_are_repointed(self, store, add_business, marker):
        primary = add_business()
        middle = add_business()
        dependent = add_business(duplicate_of_id=middle.id, approval_status=ApprovalStatus.REJECTED)

        marker.mark_as_duplicate(ADMIN_ACTOR, primary.id, [middle.id])

        assert store.get_business(dependent.id).duplicate_of_id == primary.id

    def test_primary_marked_before_transaction_is_not_chained(self, store, add_business, marker, mocker):
        outer = add_business()
        primary = add_business()
        record = add_business()
        real_transaction = store.transaction
        competing = []

        def transaction_after_competing_mark():
            if not competing:
                competing.append(outer.id)
                marker.mark_as_duplicate(ADMIN_ACTOR, outer.id, [primary.id])
            return real_transaction()

        mocker.patch.object(store, 'transaction', side_effect=transaction_after_competing_mark)

        outcomes = marker.mark_as_duplicate(ADMIN_ACTOR, primary.id, [record.id])

        assert not outcomes[0].success
        assert "no longer a valid primary" in outcomes[0].error
        assert store.get_business(primary.id).duplicate_of_id == outer.id
        assert store.get_business(record.id).duplicate_of_id is None

    def test_write_conflict_is_a_per_record_failure(self, store, add_business, marker, mocker):
        primary = add_business()
        record = add_business()
        mocker.patch.object(store, 'update_businesses', side_effect=StorageError(
            message="changed", error_code="STORAGE_WRITE_CONFLICT", operation="update_businesses"))

        outcomes = marker.mark_as_duplicate(ADMIN_ACTOR, primary.id, [record.id])

        assert not outcomes[0].success
        assert outcomes[0].error == "Business or primary changed concurrently"
        assert store.get_business(record.id).duplicate_of_id is None


# ============================================================================
# SCAN
# ============================================================================

class TestDuplicateScanner:
    """Scans group records around the earliest-created canonical record."""

    def test_groups_by_earliest_record(self, add_business, scanner):
        first = add_business(phone="0298765432")
        second = add_business(phone="02 9876 5432")
        third = add_business(email="x@joes.com.au", phone="+61298765432")
        lonely = add_business()

        result = scanner.scan(ADMIN_ACTOR, "strict")

        assert result.processed_count == 4
        assert len(result.groups) == 1
        group = result.groups[0]
        assert group.canonical_id == first.id
        assert set(group.duplicate_ids) == {second.id, third.id}
        assert lonely.id not in group.duplicate_ids
        assert result.marked_count == 0

    def test_every_record_belongs_to_at_most_one_group(self, add_business, scanner):
        add_business(phone="0298765432")
        add_business(phone="0298765432", email="a@shop.com.au")
        add_business(email="a@shop.com.au")
        add_business(website="shop.com.au")
        add_business(website="www.shop.com.au")

        result = scanner.scan(ADMIN_ACTOR)

        members = [group.canonical_id for group in result.groups]
        for group in result.groups:
            members.extend(group.duplicate_ids)
        assert len(members) == len(set(members))

    def test_auto_mark_marks_grouped_duplicates(self, store, add_business, scanner):
        canonical = add_business(abn="51824753556", phone="0298765432", website="joes.com.au")
        duplicate = add_business(abn="51824753556", phone="0298765432", website="joes.com.au")

        result = scanner.scan(ADMIN_ACTOR, "strict", auto_mark=True)

        assert result.groups[0].confidence == 'high'
        assert result.marked_count == 1
        assert store.get_business(duplicate.id).duplicate_of_id == canonical.id
        assert store.get_business(canonical.id).duplicate_of_id is None

    @pytest.mark.parametrize("shared, band", [
        ({'email': "orders@harbourbakery.com.au"}, 'low'),
        ({'email': "orders@harbourbakery.com.au", 'phone': "0299990000"}, 'medium'),
    ])
    def test_group_confidence_uses_scorer_bands(self, add_business, scanner, shared, band):
        add_business(**shared)
        add_business(**shared)

        result = scanner.scan(ADMIN_ACTOR)

        assert [group.confidence for group in result.groups] == [band]

    def test_already_marked_records_are_not_scanned(self, add_business, scanner):
        primary = add_business(phone="0298765432")
        add_business(phone="0298765432", duplicate_of_id=primary.id,
                     approval_status=ApprovalStatus.REJECTED)

        result = scanner.scan(ADMIN_ACTOR)

        assert result.processed_count == 1
        assert result.groups == []
