"""Live storage-pool drive replacement."""

from .context import MigrationContext, MigrationKind
from .errors import (
    DisconnectionError,
    MigrationCancelledError,
    MigrationError,
    MigrationErrorKind,
    MigrationInProgressError,
    MutationError,
    RollbackError,
    ValidationError,
)
from .validator import MigrationValidator
from .zpool_replace import ZpoolReplaceMigration, create_migration

__all__ = [
    'DisconnectionError',
    'MigrationCancelledError',
    'MigrationContext',
    'MigrationError',
    'MigrationErrorKind',
    'MigrationInProgressError',
    'MigrationKind',
    'MigrationValidator',
    'MutationError',
    'RollbackError',
    'ValidationError',
    'ZpoolReplaceMigration',
    'create_migration',
]
