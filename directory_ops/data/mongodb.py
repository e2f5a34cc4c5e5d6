"""
MongoDB Record Store

PyMongo implementation of ``RecordStore``. Multi-document atomicity (batch
updates, merges, rollback batches) relies on client sessions and
multi-document transactions, which require a replica set or sharded cluster.
When the deployment cannot start a transaction the store raises
``StorageError`` with code ``STORAGE_TRANSACTION_UNSUPPORTED`` and applies
nothing.

Collections:
    businesses, child_records, bulk_operations, snapshots, audit_log
"""

import re
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pymongo
import pymongo.errors
import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient

from directory_ops.business.exceptions import StorageError
from directory_ops.business.models import (
    AuditEntry,
    BulkOperation,
    BusinessRecord,
    ChildRecord,
    CriterionOperator,
    FilterCriterion,
    OperationStatus,
    OperationType,
    Snapshot,
    utcnow,
)
from directory_ops.data.exceptions import (
    DEFAULT_RETRY_CONFIG,
    StorageRetryConfig,
    classify_pymongo_error,
    with_storage_retry,
)
from directory_ops.data.store import RecordStore, WriteDeadline

logger = structlog.get_logger(__name__)

DATETIME_FIELDS = frozenset({'created_at', 'updated_at', 'reviewed_at'})

# Server codes meaning the deployment cannot run multi-document transactions.
TRANSACTION_UNSUPPORTED_CODES = frozenset({20, 263})


def to_bson(value: Any) -> Any:
    """Recursively replace enums with their values for BSON encoding."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: to_bson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_bson(item) for item in value]
    return value


def _to_document(model) -> Dict[str, Any]:
    document = to_bson(model.model_dump())
    document['_id'] = document.pop('id')
    return document


def _from_document(document: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(document)
    data['id'] = data.pop('_id')
    return data


def _filter_value(field: str, value: Any) -> Any:
    if field in DATETIME_FIELDS and isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return to_bson(value)


def criteria_to_filter(criteria: Iterable[FilterCriterion]) -> Dict[str, Any]:
    """
    Translate filter criteria into a MongoDB query document.

    Args:
        criteria: Criteria to AND together

    Returns:
        Query document (``{}`` when there are no criteria)
    """
    clauses = []
    for criterion in criteria:
        field = '_id' if criterion.field == 'id' else criterion.field
        op = criterion.operator
        value = criterion.value

        if op == CriterionOperator.EQUALS:
            clause = {field: _filter_value(criterion.field, value)}
        elif op == CriterionOperator.CONTAINS:
            clause = {field: {'$regex': re.escape(value), '$options': 'i'}}
        elif op == CriterionOperator.GREATER_THAN:
            clause = {field: {'$gt': _filter_value(criterion.field, value)}}
        elif op == CriterionOperator.LESS_THAN:
            clause = {field: {'$lt': _filter_value(criterion.field, value)}}
        elif op == CriterionOperator.IN:
            clause = {field: {'$in': [_filter_value(criterion.field, item) for item in value]}}
        elif op == CriterionOperator.NOT_IN:
            clause = {field: {'$nin': [_filter_value(criterion.field, item) for item in value]}}
        else:
            low, high = value
            clause = {field: {
                '$gte': _filter_value(criterion.field, low),
                '$lte': _filter_value(criterion.field, high),
            }}
        clauses.append(clause)

    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {'$and': clauses}


class MongoRecordStore(RecordStore):
    """
    ``RecordStore`` backed by a MongoDB database.

    Example:
        store = MongoRecordStore.from_uri("mongodb://db:27017/?replicaSet=rs0", "directory")
        store.ensure_indexes()
    """

    def __init__(
        self,
        database,
        client: Optional[MongoClient] = None,
        retry_config: Optional[StorageRetryConfig] = None,
    ):
        self.database = database
        self.client = client
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._local = threading.local()

        self.businesses = database['businesses']
        self.children = database['child_records']
        self.operations = database['bulk_operations']
        self.snapshots = database['snapshots']
        self.audit_log = database['audit_log']

    @classmethod
    def from_uri(
        cls,
        uri: str,
        database_name: str,
        retry_attempts: int = 3,
    ) -> 'MongoRecordStore':
        client = MongoClient(uri, tz_aware=True)
        return cls(
            client[database_name],
            client=client,
            retry_config=StorageRetryConfig(max_attempts=retry_attempts),
        )

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, 'session', None) is not None

    @property
    def _session(self):
        return getattr(self._local, 'session', None)

    @with_storage_retry("ensure_indexes")
    def ensure_indexes(self) -> None:
        self.businesses.create_index([('created_at', ASCENDING), ('_id', ASCENDING)])
        self.businesses.create_index('duplicate_of_id')
        self.businesses.create_index('approval_status')
        self.children.create_index('business_id')
        self.operations.create_index([('created_at', DESCENDING)])
        self.snapshots.create_index('operation_id')
        self.audit_log.create_index('target_id')
        self.audit_log.create_index('operation_id')

    # Transactions

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self.in_transaction:
            yield
            return
        if self.client is None:
            raise StorageError(
                message="Transactions require a MongoClient",
                error_code="STORAGE_TRANSACTION_UNSUPPORTED",
                operation="transaction",
            )

        try:
            session = self.client.start_session()
        except pymongo.errors.PyMongoError as e:
            raise classify_pymongo_error(e, "start_session") from e

        try:
            with session.start_transaction():
                self._local.session = session
                try:
                    yield
                finally:
                    self._local.session = None
        except pymongo.errors.PyMongoError as e:
            raise self._transaction_error(e) from e
        except StorageError as e:
            if isinstance(e.cause, pymongo.errors.OperationFailure) \
                    and e.cause.code in TRANSACTION_UNSUPPORTED_CODES:
                raise self._transaction_error(e.cause) from e
            raise
        finally:
            session.end_session()

    def _transaction_error(self, error: pymongo.errors.PyMongoError) -> StorageError:
        if isinstance(error, pymongo.errors.OperationFailure) \
                and error.code in TRANSACTION_UNSUPPORTED_CODES:
            return StorageError(
                message="The MongoDB deployment does not support multi-document transactions",
                error_code="STORAGE_TRANSACTION_UNSUPPORTED",
                operation="transaction",
                cause=error,
            )
        return classify_pymongo_error(error, "transaction")

    # Businesses

    @with_storage_retry("get_business")
    def get_business(self, business_id: str) -> Optional[BusinessRecord]:
        document = self.businesses.find_one({'_id': business_id}, session=self._session)
        return BusinessRecord.parse(_from_document(document)) if document else None

    @with_storage_retry("get_businesses")
    def get_businesses(self, business_ids: Iterable[str]) -> Dict[str, BusinessRecord]:
        cursor = self.businesses.find({'_id': {'$in': list(business_ids)}}, session=self._session)
        records = (BusinessRecord.parse(_from_document(document)) for document in cursor)
        return {record.id: record for record in records}

    @with_storage_retry("find_businesses")
    def find_businesses(
        self,
        criteria: Iterable[FilterCriterion] = (),
        exclude_ids: Iterable[str] = (),
        include_duplicates: bool = True,
    ) -> List[BusinessRecord]:
        query = criteria_to_filter(criteria)
        extra = []
        excluded = list(exclude_ids)
        if excluded:
            extra.append({'_id': {'$nin': excluded}})
        if not include_duplicates:
            extra.append({'duplicate_of_id': None})
        if extra:
            query = {'$and': ([query] if query else []) + extra}

        cursor = self.businesses.find(query, session=self._session).sort(
            [('created_at', ASCENDING), ('_id', ASCENDING)]
        )
        return [BusinessRecord.parse(_from_document(document)) for document in cursor]

    @with_storage_retry("insert_business")
    def insert_business(self, record: BusinessRecord) -> BusinessRecord:
        self.businesses.insert_one(_to_document(record), session=self._session)
        return record

    def update_businesses(
        self,
        business_ids: List[str],
        changes: Dict[str, Any],
        deadline: Optional[WriteDeadline] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        stamped = dict(changes)
        stamped.setdefault('updated_at', utcnow())
        if deadline is None:
            with self.transaction():
                return self._update_many(business_ids, stamped, expected)

        remaining = deadline.remaining()
        if remaining <= 0:
            deadline.abandon()
            raise deadline.expired_error("update_businesses")
        # The timeout covers the commit issued when the transaction exits.
        with pymongo.timeout(remaining):
            with self.transaction():
                modified = self._update_many(business_ids, stamped, expected)
                if not deadline.claim():
                    raise deadline.expired_error("update_businesses")
        return modified

    @with_storage_retry("update_businesses")
    def _update_many(
        self,
        business_ids: List[str],
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        selector = {'_id': {'$in': list(business_ids)}}
        if expected:
            selector.update(to_bson(expected))
        result = self.businesses.update_many(selector, {'$set': to_bson(changes)}, session=self._session)
        if result.matched_count != len(business_ids):
            if expected:
                raise StorageError(
                    message=(
                        f"Batch update matched {result.matched_count} of {len(business_ids)} "
                        f"businesses holding {sorted(expected)}"
                    ),
                    error_code="STORAGE_WRITE_CONFLICT",
                    operation="update_businesses",
                )
            raise StorageError(
                message=(
                    f"Batch update matched {result.matched_count} of "
                    f"{len(business_ids)} businesses"
                ),
                error_code="STORAGE_RECORDS_MISSING",
                operation="update_businesses",
            )
        return result.modified_count

    # Child records

    @with_storage_retry("insert_child")
    def insert_child(self, child: ChildRecord) -> ChildRecord:
        self.children.insert_one(_to_document(child), session=self._session)
        return child

    @with_storage_retry("get_children")
    def get_children(self, business_id: str) -> List[ChildRecord]:
        cursor = self.children.find({'business_id': business_id}, session=self._session)
        return [ChildRecord.parse(_from_document(document)) for document in cursor]

    @with_storage_retry("relink_children")
    def relink_children(self, from_ids: List[str], to_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        pipeline = [
            {'$match': {'business_id': {'$in': list(from_ids)}}},
            {'$group': {'_id': '$kind', 'count': {'$sum': 1}}},
        ]
        for row in self.children.aggregate(pipeline, session=self._session):
            counts[row['_id']] = row['count']
        self.children.update_many(
            {'business_id': {'$in': list(from_ids)}},
            {'$set': {'business_id': to_id}},
            session=self._session,
        )
        return counts

    # Operations and snapshots

    @with_storage_retry("save_operation")
    def save_operation(self, operation: BulkOperation) -> None:
        document = _to_document(operation)
        self.operations.replace_one({'_id': document['_id']}, document, upsert=True,
                                    session=self._session)

    @with_storage_retry("get_operation")
    def get_operation(self, operation_id: str) -> Optional[BulkOperation]:
        document = self.operations.find_one({'_id': operation_id}, session=self._session)
        return BulkOperation.parse(_from_document(document)) if document else None

    @with_storage_retry("list_operations")
    def list_operations(
        self,
        status: Optional[OperationStatus] = None,
        operation_type: Optional[OperationType] = None,
        created_by: Optional[str] = None,
    ) -> List[BulkOperation]:
        query: Dict[str, Any] = {}
        if status is not None:
            query['status'] = status.value
        if operation_type is not None:
            query['type'] = operation_type.value
        if created_by is not None:
            query['created_by'] = created_by
        cursor = self.operations.find(query, session=self._session).sort(
            [('created_at', DESCENDING), ('_id', DESCENDING)]
        )
        return [BulkOperation.parse(_from_document(document)) for document in cursor]

    def delete_operation(self, operation_id: str) -> bool:
        with self.transaction():
            return self._delete_operation(operation_id)

    @with_storage_retry("delete_operation")
    def _delete_operation(self, operation_id: str) -> bool:
        result = self.operations.delete_one({'_id': operation_id}, session=self._session)
        self.snapshots.delete_many({'operation_id': operation_id}, session=self._session)
        return result.deleted_count > 0

    @with_storage_retry("save_snapshot")
    def save_snapshot(self, snapshot: Snapshot) -> None:
        self.snapshots.insert_one(_to_document(snapshot), session=self._session)

    @with_storage_retry("get_snapshot")
    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        document = self.snapshots.find_one({'_id': snapshot_id}, session=self._session)
        return Snapshot.parse(_from_document(document)) if document else None

    # Audit

    @with_storage_retry("append_audit")
    def append_audit(self, entry: AuditEntry) -> None:
        self.audit_log.insert_one(_to_document(entry), session=self._session)

    @with_storage_retry("list_audit")
    def list_audit(
        self,
        target_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        query: Dict[str, Any] = {}
        if target_id is not None:
            query['target_id'] = target_id
        if operation_id is not None:
            query['operation_id'] = operation_id
        if action is not None:
            query['action'] = action
        cursor = self.audit_log.find(query, session=self._session).sort('timestamp', ASCENDING)
        return [AuditEntry.parse(_from_document(document)) for document in cursor]
