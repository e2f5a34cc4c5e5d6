"""
Flask Application Factory

Builds the administrative API: configuration, structured logging, request
correlation, error handlers, Prometheus metrics and the admin blueprint. The
wired ``DirectoryAdminService`` is stored in ``app.extensions['directory_ops']``.

Usage:
    app = create_app('production')
    app = create_app('testing', store=InMemoryRecordStore(), ADMIN_ACTORS=['admin-1'])
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from flask import Flask, jsonify

from directory_ops import __version__
from directory_ops.blueprints.admin import EXTENSION_KEY, admin_bp
from directory_ops.business.exceptions import register_error_handlers
from directory_ops.business.services import create_admin_service
from directory_ops.config.settings import get_config
from directory_ops.data.store import RecordStore
from directory_ops.monitoring.logging import init_request_correlation, setup_structured_logging
from directory_ops.monitoring.metrics import DirectoryOpsMetrics

logger = structlog.get_logger(__name__)


def create_app(
    config_name: Optional[str] = None,
    store: Optional[RecordStore] = None,
    **config_overrides
) -> Flask:
    """
    Create the Flask application.

    Args:
        config_name: Environment configuration name (development, testing, production)
        store: Record store to use instead of the configured backend
        **config_overrides: Configuration values overriding the environment class

    Returns:
        Configured Flask application

    Raises:
        ConfigurationError: If the environment is unknown or the configuration invalid
    """
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    app.config.update(config_overrides)

    setup_structured_logging(app.config['LOG_LEVEL'], app.config['LOG_FORMAT'])

    metrics = DirectoryOpsMetrics()
    service = create_admin_service(dict(app.config), store=store, metrics=metrics)
    app.extensions[EXTENSION_KEY] = service
    app.extensions['directory_ops_metrics'] = metrics

    register_error_handlers(app)
    init_request_correlation(app)
    metrics.init_app(app)
    app.register_blueprint(admin_bp)

    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': app.config['APP_NAME'],
            'version': __version__,
            'store': type(service.store).__name__,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })

    logger.info("Application created",
                app_name=app.config['APP_NAME'],
                testing=app.config['TESTING'],
                store_backend=type(service.store).__name__)
    return app
