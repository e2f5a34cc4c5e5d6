"""
Administrative Blueprint

Thin JSON surface over ``DirectoryAdminService`` under ``/api/admin``.
Request bodies are validated with marshmallow schemas; engine exceptions are
rendered by the application's error handlers. Authentication is handled
upstream; the acting administrator arrives in the ``X-Actor-Id`` header and
is authorized by the service.

Routes:
    POST   /duplicates/detect
    POST   /duplicates/merge
    POST   /duplicates/unmark
    POST   /duplicates/mark
    POST   /duplicates/scan
    POST   /bulk-operations
    GET    /bulk-operations
    GET    /bulk-operations/<operation_id>
    DELETE /bulk-operations/<operation_id>
    POST   /bulk-operations/<operation_id>/actions
    POST   /bulk-operations/<operation_id>/rollback
    GET    /bulk-operations/<operation_id>/rollback-status
"""

from functools import wraps

import structlog
from flask import Blueprint, current_app, g, jsonify, request
from marshmallow import EXCLUDE, INCLUDE, Schema, fields, validate
from marshmallow import ValidationError as SchemaValidationError

from directory_ops.business.exceptions import ValidationError
from directory_ops.business.models import (
    ApprovalStatus,
    CALLER_ACTIONS,
    MatchMode,
    MergeStrategy,
    OperationType,
)

logger = structlog.get_logger("blueprints.admin")

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

EXTENSION_KEY = 'directory_ops'
ACTOR_HEADER = 'X-Actor-Id'

MATCH_MODES = [mode.value for mode in MatchMode]


class DetectDuplicatesSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    business_id = fields.Str(required=True, data_key='businessId', validate=validate.Length(min=1))
    mode = fields.Str(load_default=MatchMode.STRICT.value, validate=validate.OneOf(MATCH_MODES))
    include_resolved = fields.Bool(load_default=False, data_key='includeResolved')


class MergeBusinessesSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    primary_id = fields.Str(required=True, data_key='primaryId', validate=validate.Length(min=1))
    duplicate_ids = fields.List(fields.Str(), required=True, data_key='duplicateIds')
    strategy = fields.Str(
        load_default=MergeStrategy.KEEP_PRIMARY.value,
        validate=validate.OneOf([strategy.value for strategy in MergeStrategy]),
    )


class UnmarkDuplicateSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    business_id = fields.Str(required=True, data_key='businessId', validate=validate.Length(min=1))
    restore_status = fields.Str(
        load_default=ApprovalStatus.PENDING.value,
        data_key='restoreStatus',
        validate=validate.OneOf([status.value for status in ApprovalStatus]),
    )


class MarkDuplicatesSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    primary_id = fields.Str(required=True, data_key='primaryId', validate=validate.Length(min=1))
    business_ids = fields.List(fields.Str(), required=True, data_key='businessIds',
                               validate=validate.Length(min=1))


class ScanDuplicatesSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    mode = fields.Str(load_default=MatchMode.STRICT.value, validate=validate.OneOf(MATCH_MODES))
    auto_mark = fields.Bool(load_default=False, data_key='autoMark')


class CreateOperationSchema(Schema):
    """Envelope check only; the operation model validates the full body."""

    class Meta:
        unknown = INCLUDE

    name = fields.Str(required=True, validate=validate.Length(min=1, max=200))
    type = fields.Str(required=True, validate=validate.OneOf([item.value for item in OperationType]))


class OperationActionSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    action = fields.Str(
        required=True,
        validate=validate.OneOf(sorted(action.value for action in CALLER_ACTIONS)),
    )


def _service():
    return current_app.extensions[EXTENSION_KEY]


def _actor():
    return request.headers.get(ACTOR_HEADER)


def validate_json(schema_class):
    """Load the JSON body with ``schema_class`` into ``g.validated_data``."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            body = request.get_json(silent=True)
            if not isinstance(body, dict):
                raise ValidationError(
                    message="Request body must be a JSON object",
                    error_code="INVALID_REQUEST_BODY",
                )
            try:
                g.validated_data = schema_class().load(body)
            except SchemaValidationError as e:
                raise ValidationError(
                    message="Invalid input data",
                    error_code="INVALID_REQUEST_BODY",
                    validation_errors=[
                        {'field': field, 'message': messages}
                        for field, messages in sorted(e.messages.items())
                    ],
                ) from e
            return func(*args, **kwargs)

        return wrapper
    return decorator


# Duplicates

@admin_bp.route('/duplicates/detect', methods=['POST'])
@validate_json(DetectDuplicatesSchema)
def detect_duplicates():
    data = g.validated_data
    result = _service().find_duplicates(
        _actor(), data['business_id'], data['mode'], data['include_resolved'],
    )
    return jsonify({'status': 'success', 'data': result})


@admin_bp.route('/duplicates/merge', methods=['POST'])
@validate_json(MergeBusinessesSchema)
def merge_businesses():
    data = g.validated_data
    result = _service().merge_businesses(
        _actor(), data['primary_id'], data['duplicate_ids'], data['strategy'],
    )
    return jsonify({'status': 'success', 'data': result.to_api_dict()})


@admin_bp.route('/duplicates/unmark', methods=['POST'])
@validate_json(UnmarkDuplicateSchema)
def unmark_duplicate():
    data = g.validated_data
    result = _service().unmark_duplicate(_actor(), data['business_id'], data['restore_status'])
    return jsonify({'status': 'success', 'data': result.to_api_dict()})


@admin_bp.route('/duplicates/mark', methods=['POST'])
@validate_json(MarkDuplicatesSchema)
def mark_duplicates():
    data = g.validated_data
    outcomes = _service().mark_as_duplicate(_actor(), data['primary_id'], data['business_ids'])
    return jsonify({
        'status': 'success',
        'data': {
            'results': [outcome.to_api_dict() for outcome in outcomes],
            'markedCount': sum(1 for outcome in outcomes if outcome.success),
        },
    })


@admin_bp.route('/duplicates/scan', methods=['POST'])
@validate_json(ScanDuplicatesSchema)
def scan_duplicates():
    data = g.validated_data
    result = _service().scan_duplicates(_actor(), data['mode'], data['auto_mark'])
    return jsonify({'status': 'success', 'data': result.to_api_dict()})


# Bulk operations

@admin_bp.route('/bulk-operations', methods=['POST'])
@validate_json(CreateOperationSchema)
def create_bulk_operation():
    operation = _service().create_bulk_operation(_actor(), request.get_json())
    return jsonify({'status': 'success', 'data': operation.summary()}), 201


@admin_bp.route('/bulk-operations', methods=['GET'])
def list_bulk_operations():
    result = _service().list_operations(
        status=request.args.get('status'),
        operation_type=request.args.get('type'),
        created_by=request.args.get('createdBy'),
        limit=request.args.get('limit', 20, type=int),
        offset=request.args.get('offset', 0, type=int),
    )
    return jsonify({'status': 'success', 'data': result})


@admin_bp.route('/bulk-operations/<operation_id>', methods=['GET'])
def get_bulk_operation(operation_id: str):
    operation = _service().get_operation(operation_id)
    return jsonify({'status': 'success', 'data': operation.summary()})


@admin_bp.route('/bulk-operations/<operation_id>', methods=['DELETE'])
def delete_bulk_operation(operation_id: str):
    _service().delete_operation(_actor(), operation_id)
    return '', 204


@admin_bp.route('/bulk-operations/<operation_id>/actions', methods=['POST'])
@validate_json(OperationActionSchema)
def transition_bulk_operation(operation_id: str):
    outcome = _service().transition_operation(_actor(), operation_id, g.validated_data['action'])
    payload = {
        'operation': outcome.operation.summary(),
        'pending': outcome.pending,
    }
    if outcome.execution is not None:
        payload['execution'] = outcome.execution.to_api_dict()
    return jsonify({'status': 'success', 'data': payload}), 202 if outcome.pending else 200


@admin_bp.route('/bulk-operations/<operation_id>/rollback', methods=['POST'])
def rollback_bulk_operation(operation_id: str):
    result = _service().rollback_operation(_actor(), operation_id)
    return jsonify({'status': 'success', 'data': result.to_api_dict()})


@admin_bp.route('/bulk-operations/<operation_id>/rollback-status', methods=['GET'])
def bulk_operation_rollback_status(operation_id: str):
    status = _service().get_rollback_status(operation_id)
    return jsonify({'status': 'success', 'data': status.to_api_dict()})
