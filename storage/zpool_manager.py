"""Zpool queries and mutations used by pool migrations."""

import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .models import DriveID, PoolStatus, ReplacementPair
from .system_executor import SystemCommandExecutor
from .zpool_status import parse_zpool_status

logger = logging.getLogger(__name__)


class ZpoolCommandError(Exception):
    """A zpool command failed or returned output that could not be used."""
    pass


class ZpoolManager:
    """Reads pool state and issues replace/detach/property changes through zpool."""

    def __init__(self,
                 executor: SystemCommandExecutor,
                 replace_attempts: int = 3,
                 replace_retry_wait_seconds: float = 5,
                 sleep: Callable[[float], None] = time.sleep,
                 dry_run: bool = False):
        """
        Initialize the ZpoolManager.

        Args:
            executor: Command executor used for every zpool call
            replace_attempts: How many times `zpool replace` is tried
            replace_retry_wait_seconds: Pause between replace attempts
            sleep: Sleep function, replaced in tests
            dry_run: Pretend replaces and detaches took effect. Status queries
                then report the pool as if they had, so a planned migration
                walks every pair once and finishes
        """
        if replace_attempts < 1:
            raise ValueError("replace_attempts must be at least 1")
        self.executor = executor
        self.replace_attempts = replace_attempts
        self.replace_retry_wait_seconds = replace_retry_wait_seconds
        self._sleep = sleep
        self.dry_run = dry_run
        # pool name -> {source: destination} of replaces only pretended in dry run
        self._simulated: Dict[str, Dict[DriveID, DriveID]] = {}

    def get_pool_status(self, pool_name: str) -> PoolStatus:
        """
        Query a fresh status snapshot of the pool.

        Raises:
            ZpoolCommandError: If the status cannot be read or parsed
        """
        self._check_pool_name(pool_name)
        success, stdout, stderr = self.executor.execute_zpool_command('status', [pool_name])
        if not success:
            raise ZpoolCommandError(f"Unable to read status of pool {pool_name}: {stderr.strip()}")

        try:
            status = parse_zpool_status(stdout, pool_name)
        except ValueError as e:
            raise ZpoolCommandError(f"Unable to parse status of pool {pool_name}: {e}") from e

        if self._simulated.get(pool_name):
            status = self._apply_simulated(status, self._simulated[pool_name])
        return status

    def get_pool_drive_ids(self, pool_name: str) -> List[DriveID]:
        """Return the ids of all drives currently in the pool."""
        return list(self.get_pool_status(pool_name).member_drive_ids)

    def is_resilvering(self, pool_name: str) -> bool:
        """Return whether the pool is resilvering right now."""
        return self.get_pool_status(pool_name).is_resilvering

    def get_replacement_group(self, pool_name: str) -> Optional[ReplacementPair]:
        """Return the pair currently being replaced, if any."""
        return self.get_pool_status(pool_name).active_replacement

    def force_replace(self, pool_name: str, source_id: DriveID, destination_id: DriveID) -> None:
        """
        Replace source with destination, clearing stale labels on the destination first.

        The replace is attempted up to `replace_attempts` times.

        Raises:
            ZpoolCommandError: If every attempt fails
        """
        self._check_pool_name(pool_name)
        self._check_drive_id(source_id)
        self._check_drive_id(destination_id)

        self._clear_labels(destination_id)

        last_error = ""
        for attempt in range(1, self.replace_attempts + 1):
            logger.info(f"ZPS0006 Attempting to replace drive {source_id} with {destination_id} "
                        f"(attempt {attempt}/{self.replace_attempts})")
            success, _, stderr = self.executor.execute_zpool_command(
                'replace', ['-f', pool_name, source_id, destination_id]
            )
            if success:
                logger.info(f"ZPS0007 Drive {source_id} replaced, resilvering onto {destination_id} will start now")
                if self.dry_run:
                    self._simulated.setdefault(pool_name, {})[source_id] = destination_id
                return

            last_error = stderr.strip()
            logger.warning(f"ZPS0009 Replace attempt {attempt} failed: {last_error}")
            if attempt < self.replace_attempts:
                self._sleep(self.replace_retry_wait_seconds)

        raise ZpoolCommandError(
            f"Unable to replace {source_id} with {destination_id} in pool {pool_name}: {last_error}"
        )

    def detach(self, pool_name: str, drive_id: DriveID) -> None:
        """Detach a drive from the pool, cancelling an in-flight replace onto it."""
        self._check_pool_name(pool_name)
        self._check_drive_id(drive_id)

        logger.info(f"ZPS0008 Detaching drive {drive_id} from pool {pool_name}")
        success, _, stderr = self.executor.execute_zpool_command('detach', [pool_name, drive_id])
        if not success:
            raise ZpoolCommandError(f"Unable to detach {drive_id} from pool {pool_name}: {stderr.strip()}")

        if self.dry_run:
            simulated = self._simulated.get(pool_name, {})
            for source, destination in list(simulated.items()):
                if destination == drive_id:
                    del simulated[source]

    def set_auto_expand(self, pool_name: str, enabled: bool) -> None:
        """Turn the autoexpand pool property on or off."""
        self._check_pool_name(pool_name)
        value = 'on' if enabled else 'off'

        logger.info(f"ZPS0010 Setting autoexpand={value} on pool {pool_name}")
        success, _, stderr = self.executor.execute_zpool_command('set', [f'autoexpand={value}', pool_name])
        if not success:
            raise ZpoolCommandError(f"Unable to set autoexpand={value} on pool {pool_name}: {stderr.strip()}")

    def get_auto_expand(self, pool_name: str) -> bool:
        """Read the autoexpand pool property."""
        self._check_pool_name(pool_name)
        success, stdout, stderr = self.executor.execute_zpool_command(
            'get', ['-H', '-o', 'value', 'autoexpand', pool_name]
        )
        if not success:
            raise ZpoolCommandError(f"Unable to read autoexpand of pool {pool_name}: {stderr.strip()}")
        return stdout.strip() == 'on'

    def _apply_simulated(self, status: PoolStatus, simulated: Dict[DriveID, DriveID]) -> PoolStatus:
        """Report pretended replaces as finished: each source swapped for its destination."""
        members = []
        for drive_id in status.member_drive_ids:
            drive_id = simulated.get(drive_id, drive_id)
            if drive_id not in members:
                members.append(drive_id)
        logger.debug(f"ZPS0012 DRY RUN: reporting simulated replacements {simulated}")
        return replace(status, member_drive_ids=tuple(members))

    def _clear_labels(self, drive_id: DriveID) -> None:
        # A disk that never belonged to a pool has no label; that failure is expected.
        device = drive_id if drive_id.startswith('/dev/') else f'/dev/disk/by-id/{drive_id}'
        success, _, stderr = self.executor.execute_zpool_command('labelclear', ['-f', device])
        if not success:
            logger.debug(f"ZPS0011 No label cleared on {device}: {stderr.strip()}")

    def _check_pool_name(self, pool_name: str) -> None:
        if not self.executor.validate_pool_name(pool_name):
            raise ValueError(f"Invalid pool name: {pool_name}")

    def _check_drive_id(self, drive_id: DriveID) -> None:
        if not self.executor.validate_drive_id(drive_id):
            raise ValueError(f"Invalid drive id: {drive_id}")
