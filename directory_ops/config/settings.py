"""
Configuration Classes for the Directory Operations Engine

Environment-specific settings (Development, Testing, Production) selected by
name for the Flask application factory. Environment variables are loaded with
python-dotenv at import time; engine components never read the environment
directly and instead receive an immutable ``EngineSettings`` view.

Key Components:
- BaseConfig and its environment subclasses
- get_config: environment name to configuration class
- validate_configuration: list of problems for a configuration
- EngineSettings: engine-relevant settings handed to services
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import structlog
from dotenv import load_dotenv

from directory_ops.business.exceptions import ConfigurationError

load_dotenv()

logger = structlog.get_logger("config.settings")

HARD_MAX_BATCH_SIZE = 100


def _env_list(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


class BaseConfig:
    """Settings shared by every environment."""

    APP_NAME = os.getenv('APP_NAME', 'directory-ops')
    DEBUG = False
    TESTING = False
    JSON_SORT_KEYS = False

    # Persistence
    STORE_BACKEND = os.getenv('STORE_BACKEND', 'memory')
    MONGODB_URI = os.getenv('MONGODB_URI', 'mongodb://localhost:27017')
    MONGODB_DATABASE = os.getenv('MONGODB_DATABASE', 'directory')
    STORAGE_RETRY_ATTEMPTS = int(os.getenv('STORAGE_RETRY_ATTEMPTS', '3'))

    # Authorization
    ADMIN_ACTORS = _env_list('ADMIN_ACTORS')

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')

    # Engine
    MAX_BATCH_SIZE = int(os.getenv('MAX_BATCH_SIZE', '100'))
    BATCH_TIMEOUT_SECONDS = float(os.getenv('BATCH_TIMEOUT_SECONDS', '30'))
    ROLLBACK_WINDOW_HOURS = int(os.getenv('ROLLBACK_WINDOW_HOURS', '48'))
    MANUAL_REVIEW_QUALITY_THRESHOLD = int(os.getenv('MANUAL_REVIEW_QUALITY_THRESHOLD', '70'))
    LOOSE_NAME_SIMILARITY_THRESHOLD = float(os.getenv('LOOSE_NAME_SIMILARITY_THRESHOLD', '0.8'))
    AUDIT_FLUSH_TIMEOUT_SECONDS = float(os.getenv('AUDIT_FLUSH_TIMEOUT_SECONDS', '5'))

    # Applied when an operation is created without safety checks
    DEFAULT_SAFETY_CHECKS: Dict[str, Any] = {
        'max_records': 1000,
        'require_approval': True,
        'confirmation_required': True,
        'backup_required': True,
        'rollback_enabled': True,
        'staging_enabled': True,
        'checkpoint_frequency': 100,
    }


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'console')


class TestingConfig(BaseConfig):
    """In-memory store, short timeouts and a fixed admin actor."""

    TESTING = True
    DEBUG = True
    STORE_BACKEND = 'memory'
    ADMIN_ACTORS = ['admin-1']
    LOG_LEVEL = 'WARNING'
    LOG_FORMAT = 'console'
    BATCH_TIMEOUT_SECONDS = 5.0
    AUDIT_FLUSH_TIMEOUT_SECONDS = 2.0


class ProductionConfig(BaseConfig):
    STORE_BACKEND = os.getenv('STORE_BACKEND', 'mongodb')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')


config_map: Dict[str, Type[BaseConfig]] = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'dev': DevelopmentConfig,
    'test': TestingConfig,
    'prod': ProductionConfig,
}


def get_config(environment: Optional[str] = None) -> Type[BaseConfig]:
    """
    Get the configuration class for an environment.

    Args:
        environment: Environment name (defaults to ``FLASK_ENV``)

    Returns:
        Configuration class for the environment

    Raises:
        ConfigurationError: If the environment is not supported
    """
    if environment is None:
        environment = os.getenv('FLASK_ENV', 'development')
    environment = environment.lower()

    if environment not in config_map:
        raise ConfigurationError(
            message=f"Unsupported environment '{environment}'",
            configuration_key='FLASK_ENV',
            context={'supported': sorted(config_map)},
        )

    config_class = config_map[environment]
    logger.info("Configuration class selected",
                environment=environment,
                config_class=config_class.__name__)
    return config_class


def validate_configuration(config) -> List[str]:
    """
    Validate configuration settings.

    Args:
        config: Configuration class or instance

    Returns:
        List of problems (empty if valid)
    """
    issues = []

    if config.MAX_BATCH_SIZE <= 0:
        issues.append("MAX_BATCH_SIZE must be positive")
    elif config.MAX_BATCH_SIZE > HARD_MAX_BATCH_SIZE:
        issues.append(f"MAX_BATCH_SIZE must not exceed {HARD_MAX_BATCH_SIZE}")

    if config.BATCH_TIMEOUT_SECONDS <= 0:
        issues.append("BATCH_TIMEOUT_SECONDS must be positive")
    if config.AUDIT_FLUSH_TIMEOUT_SECONDS < 0:
        issues.append("AUDIT_FLUSH_TIMEOUT_SECONDS must not be negative")
    if config.ROLLBACK_WINDOW_HOURS < 0:
        issues.append("ROLLBACK_WINDOW_HOURS must not be negative")
    if not 0 <= config.MANUAL_REVIEW_QUALITY_THRESHOLD <= 100:
        issues.append("MANUAL_REVIEW_QUALITY_THRESHOLD must be between 0 and 100")
    if not 0 < config.LOOSE_NAME_SIMILARITY_THRESHOLD <= 1:
        issues.append("LOOSE_NAME_SIMILARITY_THRESHOLD must be in (0, 1]")
    if config.STORAGE_RETRY_ATTEMPTS < 1:
        issues.append("STORAGE_RETRY_ATTEMPTS must be at least 1")

    if config.STORE_BACKEND not in ('memory', 'mongodb'):
        issues.append(f"STORE_BACKEND '{config.STORE_BACKEND}' is not supported")
    elif config.STORE_BACKEND == 'mongodb' and not config.MONGODB_URI:
        issues.append("MONGODB_URI is required for the mongodb backend")

    if config.LOG_FORMAT not in ('json', 'console'):
        issues.append(f"LOG_FORMAT '{config.LOG_FORMAT}' is not supported")

    logger.info("Configuration validation completed",
                issues_found=len(issues),
                issues=issues)
    return issues


@dataclass(frozen=True)
class EngineSettings:
    """Immutable engine settings passed to services and processors."""

    max_batch_size: int = 100
    batch_timeout_seconds: float = 30.0
    rollback_window_hours: int = 48
    manual_review_quality_threshold: int = 70
    loose_name_similarity_threshold: float = 0.8
    audit_flush_timeout_seconds: float = 5.0
    storage_retry_attempts: int = 3
    default_safety_checks: Dict[str, Any] = field(
        default_factory=lambda: dict(BaseConfig.DEFAULT_SAFETY_CHECKS)
    )

    @classmethod
    def from_config(cls, config) -> 'EngineSettings':
        """
        Build settings from a configuration class, instance or Flask config mapping.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if isinstance(config, dict):
            config = type('MappingConfig', (BaseConfig,), dict(config))

        issues = validate_configuration(config)
        if issues:
            raise ConfigurationError(
                message=f"Configuration validation failed: {'; '.join(issues)}",
                context={'issues': issues},
            )

        return cls(
            max_batch_size=config.MAX_BATCH_SIZE,
            batch_timeout_seconds=config.BATCH_TIMEOUT_SECONDS,
            rollback_window_hours=config.ROLLBACK_WINDOW_HOURS,
            manual_review_quality_threshold=config.MANUAL_REVIEW_QUALITY_THRESHOLD,
            loose_name_similarity_threshold=config.LOOSE_NAME_SIMILARITY_THRESHOLD,
            audit_flush_timeout_seconds=config.AUDIT_FLUSH_TIMEOUT_SECONDS,
            storage_retry_attempts=config.STORAGE_RETRY_ATTEMPTS,
            default_safety_checks=dict(config.DEFAULT_SAFETY_CHECKS),
        )
