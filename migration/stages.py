"""Stages of the pool-replace migration."""

import logging
from typing import Tuple

from storage.maintenance import MaintenanceWindowError
from storage.models import DriveID, PoolStatus
from storage.protocols import MaintenanceControl, PoolInventory, PoolMutator
from storage.zpool_manager import ZpoolCommandError

from .context import MigrationContext
from .errors import (
    DisconnectionError,
    MigrationCancelledError,
    MutationError,
    RollbackError,
    ValidationError,
)
from .validator import MigrationValidator, unprocessed_destinations, unprocessed_sources

logger = logging.getLogger(__name__)


class AutoExpandStage:
    """Turns autoexpand on so larger replacement drives grow the pool."""

    def __init__(self, mutator: PoolMutator):
        self.mutator = mutator

    def commit(self, context: MigrationContext) -> None:
        logger.info(f"MIG0030 Enabling autoexpand on pool {context.pool_name}")
        try:
            self.mutator.set_auto_expand(context.pool_name, True)
        except ZpoolCommandError as e:
            raise MutationError(str(e)) from e
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def cleanup(self, context: MigrationContext) -> None:
        self.mutator.set_auto_expand(context.pool_name, False)

    def rollback(self, context: MigrationContext) -> None:
        try:
            self.mutator.set_auto_expand(context.pool_name, False)
        except (ZpoolCommandError, ValueError) as e:
            raise RollbackError(str(e)) from e


class DriveReplaceStage:
    """
    Replaces pool drives one pair at a time until every destination is in the pool.

    Each poll fetches a fresh pool status. A replacement pair whose drives
    vanished is detached and fails the stage before anything else is
    decided. While the pool resilvers nothing is mutated; otherwise the
    mapping is re-validated and the next (source, destination) pair is
    handed to the pool.

    Completed replacements are not undone on rollback: a resilvered drive
    is a durable step.
    """

    POLL_INTERVAL_SECONDS = 10
    MAINTENANCE_WINDOW_SECONDS = 300

    def __init__(self,
                 inventory: PoolInventory,
                 mutator: PoolMutator,
                 validator: MigrationValidator,
                 maintenance: MaintenanceControl,
                 poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
                 maintenance_window_seconds: int = MAINTENANCE_WINDOW_SECONDS):
        self.inventory = inventory
        self.mutator = mutator
        self.validator = validator
        self.maintenance = maintenance
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_window_seconds = maintenance_window_seconds

    def commit(self, context: MigrationContext) -> None:
        logger.info("MIG0018 Starting pool replace migration process...")
        logger.debug(f"MIG0040 Target devices: {context.destinations}")

        first = True
        while True:
            self._raise_if_cancelled(context)

            status = self._fetch_status(context.pool_name)
            if first:
                logger.info(f"MIG0019 Current pool status before migration:\n{status.summary()}")
                first = False
            else:
                logger.debug(f"MIG0023 Current pool status:\n{status.summary()}")

            self._handle_disconnected_drives(status, context)

            if status.is_resilvering:
                logger.info("MIG0022 Resilvering running...")
                self._enable_maintenance_if_requested(context)
            else:
                self.validator.validate(context.sources, context.destinations, status)

                if not unprocessed_destinations(context.destinations, status):
                    logger.info("MIG0026 There are no more drives to migrate.")
                    break

                logger.info("MIG0025 There are still drives to migrate, continuing...")
                self._enable_maintenance_if_requested(context)

                source, destination = self._next_pair(status, context)
                logger.info(f"MIG0021 Replacing source {source} with destination {destination}")
                try:
                    self.mutator.force_replace(context.pool_name, source, destination)
                except ZpoolCommandError as e:
                    raise MutationError(str(e)) from e
                except ValueError as e:
                    raise ValidationError(str(e)) from e

            if context.cancel_event.wait(self.poll_interval_seconds):
                self._raise_if_cancelled(context)

        logger.info("MIG0024 Pool replace complete.")

    def cleanup(self, context: MigrationContext) -> None:
        self._disable_maintenance_if_enabled(context)

    def rollback(self, context: MigrationContext) -> None:
        try:
            self._disable_maintenance_if_enabled(context)
        except MaintenanceWindowError as e:
            raise RollbackError(str(e)) from e

    def _fetch_status(self, pool_name: str) -> PoolStatus:
        try:
            return self.inventory.get_pool_status(pool_name)
        except ZpoolCommandError as e:
            raise MutationError(f"Unable to read pool status: {e}") from e

    def _handle_disconnected_drives(self, status: PoolStatus, context: MigrationContext) -> None:
        """Detach the destination of a replacement whose drives are gone, then fail."""
        pair = status.active_replacement
        if pair is None:
            return

        logger.debug("MIG0028 Detecting disconnected drives ...")
        missing = self.validator.find_detached([pair.source, pair.destination])
        if not missing:
            return

        logger.critical(f"MIG0029 Drives {missing} disconnected during replacement, "
                        f"detaching target drive {pair.destination}")
        try:
            self.mutator.detach(context.pool_name, pair.destination)
        except (ZpoolCommandError, ValueError) as e:
            logger.error(f"MIG0031 Unable to detach {pair.destination}: {e}")

        raise DisconnectionError(
            f"One or more drives being replaced is no longer connected: {', '.join(missing)}"
        )

    def _next_pair(self, status: PoolStatus, context: MigrationContext) -> Tuple[DriveID, DriveID]:
        sources = unprocessed_sources(context.sources, status)
        destinations = unprocessed_destinations(context.destinations, status)
        return sources[0], destinations[0]

    def _enable_maintenance_if_requested(self, context: MigrationContext) -> None:
        if not context.maintenance_requested:
            return

        # Re-enabling refreshes the window for as long as work remains.
        try:
            self.maintenance.enable_for_seconds(self.maintenance_window_seconds)
            if not context.maintenance_enabled:
                logger.info("MIG0017 Maintenance mode enabled")
            context.maintenance_enabled = True
        except MaintenanceWindowError as e:
            logger.warning(f"MIG0032 Unable to enable maintenance mode: {e}")

    def _disable_maintenance_if_enabled(self, context: MigrationContext) -> None:
        if not context.maintenance_enabled:
            return

        logger.info("MIG0017 Disabling maintenance mode...")
        self.maintenance.disable()
        context.maintenance_enabled = False

    def _raise_if_cancelled(self, context: MigrationContext) -> None:
        if context.cancelled:
            logger.warning("MIG0033 Migration cancelled")
            raise MigrationCancelledError("Migration cancelled")
