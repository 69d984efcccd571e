"""Error kinds raised by pool migrations."""

from enum import Enum


class MigrationErrorKind(Enum):
    """Closed set of migration failure kinds."""
    VALIDATION = "validation"
    DISCONNECTION = "disconnection"
    MUTATION = "mutation"
    ROLLBACK = "rollback"
    CANCELLED = "cancelled"
    IN_PROGRESS = "in_progress"


class MigrationError(Exception):
    """Base class for migration failures. Branch on `kind`, not on the message."""
    kind = MigrationErrorKind.MUTATION


class ValidationError(MigrationError):
    """The drive mapping is inconsistent with the pool or the attached disks."""
    kind = MigrationErrorKind.VALIDATION


class DisconnectionError(MigrationError):
    """A drive taking part in an active replacement disappeared."""
    kind = MigrationErrorKind.DISCONNECTION


class MutationError(MigrationError):
    """A replace, detach or property change on the pool failed."""
    kind = MigrationErrorKind.MUTATION


class RollbackError(MigrationError):
    """Undoing a stage failed. Logged by the transaction, never propagated."""
    kind = MigrationErrorKind.ROLLBACK


class MigrationCancelledError(MigrationError):
    """The caller cancelled the migration."""
    kind = MigrationErrorKind.CANCELLED


class MigrationInProgressError(MigrationError):
    """Another migration holds the migration lock."""
    kind = MigrationErrorKind.IN_PROGRESS
