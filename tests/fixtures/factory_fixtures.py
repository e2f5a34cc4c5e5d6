"""
Test Data Factories using factory_boy

Factories produce valid pydantic models with deterministic identity fields:
every generated business gets its own phone, email, website and suburb, so
two factory records never match as duplicates unless a test makes them share
a field explicitly. Creation times increase with the sequence number, which
keeps store ordering (created_at, id) predictable.
"""

from datetime import datetime, timedelta, timezone

import factory

from directory_ops.business.models import (
    AbnStatus,
    ApprovalStatus,
    BusinessRecord,
    ChildRecord,
    ChildRecordKind,
)

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class BusinessRecordFactory(factory.Factory):
    """Factory for BusinessRecord test data."""

    class Meta:
        model = BusinessRecord

    id = factory.Sequence(lambda n: f"biz-{n + 10000}")
    name = factory.Sequence(lambda n: f"Listing {n:05d} Trading")
    phone = factory.Sequence(lambda n: f"04{n + 10000000:08d}")
    email = factory.Sequence(lambda n: f"owner{n}@listing{n}.com.au")
    website = factory.Sequence(lambda n: f"https://www.listing{n}.com.au")
    abn = None
    suburb = factory.Sequence(lambda n: f"Suburb {n:05d}")
    category = "Cafe"
    bio = factory.Faker('catch_phrase')
    source = "manual"

    approval_status = ApprovalStatus.PENDING
    quality_score = 75
    abn_status = AbnStatus.UNVERIFIED
    ownership_verified = False
    duplicate_of_id = None

    created_at = factory.Sequence(lambda n: BASE_TIME + timedelta(minutes=n))
    updated_at = factory.LazyAttribute(lambda obj: obj.created_at)


class ChildRecordFactory(factory.Factory):
    class Meta:
        model = ChildRecord

    business_id = factory.Sequence(lambda n: f"biz-{n + 10000}")
    kind = ChildRecordKind.INQUIRY
