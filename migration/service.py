"""Entry point for running pool migrations with locking and history."""

import fcntl
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

from storage.models import DriveID
from storage.protocols import DiskLookup, MaintenanceControl, PoolInventory, PoolMutator
from transaction import TransactionCancelledError, TransactionResult

from .context import MigrationContext, MigrationKind
from .errors import (
    MigrationCancelledError,
    MigrationError,
    MigrationInProgressError,
    MutationError,
    ValidationError,
)
from .records import ERROR_KIND_INTERRUPTED, MigrationRecord, MigrationRecordStore
from .validator import MigrationValidator
from .zpool_replace import create_migration

logger = logging.getLogger(__name__)

# Minimum drive count per layout
LAYOUT_MIN_DRIVES = {
    'mirror': 2,
    'raidz': 3,
    'raidz2': 4,
}


class MigrationLock:
    """
    Host-wide migration lock.

    The lock is an exclusive `flock` on the lock file, held by an open file
    descriptor for as long as the migration runs, so the kernel drops it when
    the holding process dies. The file itself is never removed; it only
    carries the holder's pid for display.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """
        Take the lock for the current process.

        Raises:
            MigrationInProgressError: If another holder has the lock
        """
        if self._fd is not None:
            raise MigrationInProgressError("This process already runs a migration")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise MigrationInProgressError(
                f"A migration is already running (pid {self.holder_pid()})"
            )

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"MIG0003 Acquired migration lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        os.ftruncate(self._fd, 0)
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug(f"MIG0004 Released migration lock {self.path}")

    def holder_pid(self) -> Optional[int]:
        """Pid written by the holder, if that process is still alive."""
        try:
            pid = int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None
        return pid if psutil.pid_exists(pid) else None

    def is_held(self) -> bool:
        """Whether any process, this one included, holds the lock."""
        if self._fd is not None:
            return True
        try:
            fd = os.open(self.path, os.O_RDONLY)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)


class MigrationService:
    """
    Runs one migration at a time and keeps a record of every run.

    The service owns the host-wide lock, the pre-flight check and the
    record history; the stages themselves live in the migration objects
    built by `create_migration`.
    """

    def __init__(self,
                 pool_name: str,
                 inventory: PoolInventory,
                 mutator: PoolMutator,
                 disks: DiskLookup,
                 maintenance: MaintenanceControl,
                 store: MigrationRecordStore,
                 lock: MigrationLock,
                 poll_interval_seconds: float = 10,
                 maintenance_window_seconds: int = 300):
        self.pool_name = pool_name
        self.inventory = inventory
        self.mutator = mutator
        self.disks = disks
        self.maintenance = maintenance
        self.store = store
        self.lock = lock
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_window_seconds = maintenance_window_seconds

        self._context: Optional[MigrationContext] = None
        self._context_lock = threading.Lock()

    def _create_migration(self, kind: MigrationKind):
        return create_migration(
            kind,
            pool_name=self.pool_name,
            inventory=self.inventory,
            mutator=self.mutator,
            validator=MigrationValidator(self.disks),
            maintenance=self.maintenance,
            poll_interval_seconds=self.poll_interval_seconds,
            maintenance_window_seconds=self.maintenance_window_seconds,
        )

    def validate(self, sources: Sequence[DriveID], targets: Sequence[DriveID],
                 kind: MigrationKind = MigrationKind.POOL_REPLACE) -> None:
        """
        Check that a migration could start now, without changing anything.

        Raises:
            ValidationError: If the mapping is not feasible
            MutationError: If the pool cannot be queried
        """
        logger.info(f"MIG0005 Validating {kind.value} migration {list(sources)} -> {list(targets)}")
        self._create_migration(kind).validate(sources, targets)

    def run(self, sources: Sequence[DriveID], targets: Sequence[DriveID],
            kind: MigrationKind = MigrationKind.POOL_REPLACE,
            maintenance: bool = False) -> TransactionResult:
        """
        Run a migration to completion.

        Args:
            sources: Drives to move off
            targets: Drives to move onto, same count as sources
            kind: Migration variant
            maintenance: Keep the maintenance window open while work remains

        Returns:
            The successful TransactionResult

        Raises:
            MigrationInProgressError: If another migration holds the lock
            MigrationError: The failure of the run, after rollback and cleanup
        """
        self.lock.acquire()
        try:
            migration = self._create_migration(kind)
            migration.validate(sources, targets)

            record = MigrationRecord(
                sources=list(sources),
                targets=list(targets),
                kind=kind.value,
                maintenance=maintenance,
            )
            self.store.save(record)
            logger.info(f"MIG0006 Migration started at {record.started_at}")

            context = migration.create_context(sources, targets, maintenance_requested=maintenance)
            with self._context_lock:
                self._context = context
            try:
                result = migration.run(context)
            finally:
                with self._context_lock:
                    self._context = None

            if result.success:
                record.mark_done(result.committed_stage_names)
                self.store.save(record)
                logger.info("MIG0007 Migration completed successfully")
                return result

            error = self._as_migration_error(result.error)
            for failure in result.failures:
                logger.warning(f"MIG0008 {failure.phase} of {failure.stage} failed: {failure.error}")
            record.mark_error(str(error), error.kind.value, result.committed_stage_names)
            self.store.save(record)
            logger.error(f"MIG0009 Migration failed ({error.kind.value}): {error}")
            raise error
        finally:
            self.lock.release()

    def cancel(self) -> bool:
        """
        Ask the running migration to stop.

        Returns:
            True if a migration was running in this process
        """
        with self._context_lock:
            if self._context is None:
                return False
            logger.warning("MIG0010 Cancelling running migration")
            self._context.cancel()
            return True

    def is_running(self) -> bool:
        return self.lock.is_held()

    def get_status(self) -> Optional[MigrationRecord]:
        """Latest record, unless it has been dismissed."""
        self._fail_interrupted_records()
        record = self.store.get_latest()
        if record is None or record.dismissed:
            return None
        return record

    def get_history(self) -> List[MigrationRecord]:
        self._fail_interrupted_records()
        return self.store.list_all()

    def dismiss(self, started_at: Optional[str] = None) -> int:
        """Dismiss one finished record, or all of them when no start time is given."""
        self._fail_interrupted_records()
        if started_at is None:
            return self.store.dismiss_all()
        return 1 if self.store.dismiss(started_at) else 0

    def calculate_expansion_size(self, drive_ids: Sequence[DriveID], layout: str) -> int:
        """
        Usable capacity in bytes of a pool built from `drive_ids` with `layout`.

        Raises:
            ValueError: If the layout is unknown
            ValidationError: If there are too few drives or one is not connected
        """
        if layout not in LAYOUT_MIN_DRIVES:
            raise ValueError(f"Unknown pool layout: {layout}")

        count = len(drive_ids)
        if count < LAYOUT_MIN_DRIVES[layout]:
            raise ValidationError(
                f"Layout {layout} needs at least {LAYOUT_MIN_DRIVES[layout]} drives, got {count}"
            )

        smallest = min(self._capacity_of(drive_id) for drive_id in drive_ids)

        if layout == 'mirror':
            return smallest
        if layout == 'raidz':
            return (count - 1) * smallest
        return (count - 2) * smallest

    def calculate_all_expansion_sizes(self, drive_ids: Sequence[DriveID]) -> Dict[str, int]:
        """Expansion size for every layout the drive count allows."""
        return {
            layout: self.calculate_expansion_size(drive_ids, layout)
            for layout, minimum in LAYOUT_MIN_DRIVES.items()
            if len(drive_ids) >= minimum
        }

    def _fail_interrupted_records(self) -> None:
        """Mark running records as failed when no process holds the lock."""
        if self.lock.is_held():
            return

        for record in self.store.list_all():
            if record.is_running:
                logger.warning(f"MIG0011 Migration started at {record.started_at} was interrupted")
                record.mark_error("Migration was interrupted before it finished", ERROR_KIND_INTERRUPTED)
                self.store.save(record)

    def _capacity_of(self, drive_id: DriveID) -> int:
        disk = self.disks.get_physical_disk_by_id(drive_id)
        if disk is None or not disk.attached:
            raise ValidationError(f"Disk: {drive_id} is not connected.")
        return disk.capacity_bytes

    def _as_migration_error(self, error: Optional[BaseException]) -> MigrationError:
        if isinstance(error, MigrationError):
            return error
        if isinstance(error, TransactionCancelledError):
            cancelled = MigrationCancelledError(str(error))
            cancelled.__cause__ = error
            return cancelled
        wrapped = MutationError(f"Unexpected migration failure: {error}")
        wrapped.__cause__ = error
        return wrapped
