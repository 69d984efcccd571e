"""Pool-replace migration: swap every pool drive onto a new set of drives."""

import logging
from typing import List, Sequence

from storage.models import DriveID
from storage.protocols import MaintenanceControl, PoolInventory, PoolMutator
from storage.zpool_manager import ZpoolCommandError
from transaction import Stage, Transaction, TransactionResult

from .context import MigrationContext, MigrationKind
from .errors import MutationError, ValidationError
from .stages import AutoExpandStage, DriveReplaceStage
from .validator import MigrationValidator

logger = logging.getLogger(__name__)


class ZpoolReplaceMigration:
    """Builds and runs the stages of a pool-replace migration."""

    kind = MigrationKind.POOL_REPLACE

    def __init__(self,
                 pool_name: str,
                 inventory: PoolInventory,
                 mutator: PoolMutator,
                 validator: MigrationValidator,
                 maintenance: MaintenanceControl,
                 poll_interval_seconds: float = DriveReplaceStage.POLL_INTERVAL_SECONDS,
                 maintenance_window_seconds: int = DriveReplaceStage.MAINTENANCE_WINDOW_SECONDS):
        self.pool_name = pool_name
        self.inventory = inventory
        self.mutator = mutator
        self.validator = validator
        self.maintenance = maintenance
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_window_seconds = maintenance_window_seconds

    def validate(self, sources: Sequence[DriveID], destinations: Sequence[DriveID]) -> None:
        """
        Pre-flight check against the live pool. Nothing is mutated.

        Raises:
            ValidationError: If the migration cannot start
            MutationError: If the pool status cannot be read
        """
        if not sources or not destinations:
            raise ValidationError("At least one source and one destination drive are required")
        if len(sources) != len(destinations):
            raise ValidationError(
                f"Got {len(sources)} source drives but {len(destinations)} destination drives"
            )

        try:
            status = self.inventory.get_pool_status(self.pool_name)
        except ZpoolCommandError as e:
            raise MutationError(f"Unable to read pool status: {e}") from e

        self.validator.validate(sources, destinations, status)

    def create_context(self, sources: Sequence[DriveID], destinations: Sequence[DriveID],
                       maintenance_requested: bool = False) -> MigrationContext:
        return MigrationContext(
            sources=list(sources),
            destinations=list(destinations),
            pool_name=self.pool_name,
            maintenance_requested=maintenance_requested,
            kind=self.kind,
        )

    def create_stages(self, context: MigrationContext) -> List[Stage]:
        """Autoexpand must be on before the first replace is issued."""
        return [
            AutoExpandStage(self.mutator),
            DriveReplaceStage(
                self.inventory,
                self.mutator,
                self.validator,
                self.maintenance,
                poll_interval_seconds=self.poll_interval_seconds,
                maintenance_window_seconds=self.maintenance_window_seconds,
            ),
        ]

    def run(self, context: MigrationContext) -> TransactionResult:
        """Execute the migration in a fresh transaction."""
        stages = self.create_stages(context)
        transaction = Transaction(cancel_event=context.cancel_event)
        result = transaction.run(stages, context)

        if result.success:
            logger.info(f"MIG0034 Migration of pool {self.pool_name} finished")
        else:
            logger.error(f"MIG0100 Migration of pool {self.pool_name} failed in "
                         f"{result.failed_stage}: {result.error}")
        return result


def create_migration(kind: MigrationKind, **collaborators) -> ZpoolReplaceMigration:
    """
    Create the migration for a kind.

    Raises:
        ValueError: If the kind is not supported
    """
    if kind == MigrationKind.POOL_REPLACE:
        return ZpoolReplaceMigration(**collaborators)
    raise ValueError(f"Unsupported migration kind: {kind}")
