"""Feasibility checks for pool drive-replacement migrations."""

import logging
from typing import Dict, Iterable, List, Sequence

from storage.models import DriveID, PhysicalDisk, PoolStatus
from storage.protocols import DiskLookup

from .errors import ValidationError

logger = logging.getLogger(__name__)


def unprocessed_sources(sources: Sequence[DriveID], pool: PoolStatus) -> List[DriveID]:
    """Sources still in the pool, in argument order."""
    members = pool.members
    return [drive_id for drive_id in sources if drive_id in members]


def unprocessed_destinations(destinations: Sequence[DriveID], pool: PoolStatus) -> List[DriveID]:
    """Destinations not yet absorbed into the pool, in argument order."""
    members = pool.members
    return [drive_id for drive_id in destinations if drive_id not in members]


def drives_left_to_migrate(destinations: Sequence[DriveID], pool: PoolStatus) -> bool:
    return bool(unprocessed_destinations(destinations, pool))


class MigrationValidator:
    """Checks a (sources, destinations) mapping against the live pool and disks."""

    def __init__(self, disks: DiskLookup):
        """
        Args:
            disks: Physical disk lookup, queried fresh on every call
        """
        self.disks = disks

    def validate(self, sources: Sequence[DriveID], destinations: Sequence[DriveID],
                 pool: PoolStatus) -> None:
        """
        Validate the mapping against a pool snapshot.

        Raises:
            ValidationError: On a count mismatch, a detached destination, a
                missing unprocessed source, or a destination smaller than any
                unprocessed source
        """
        logger.debug("ZMV0000 Validating migration...")
        self._check_lists(sources, destinations)

        remaining_sources = unprocessed_sources(sources, pool)
        remaining_destinations = unprocessed_destinations(destinations, pool)

        if len(remaining_sources) != len(remaining_destinations):
            logger.error(f"ZMV0001 Unprocessed source and destination counts differ: "
                         f"sources={remaining_sources} destinations={remaining_destinations}")
            raise ValidationError(
                f"There are not the same number of unprocessed source and destination drives: "
                f"sources {remaining_sources}, destinations {remaining_destinations}"
            )

        destination_disks = self._require_destinations_attached(destinations)
        source_disks = self._require_sources_present(remaining_sources)

        logger.info("ZMV0006 Validating source-destination disk sizes...")
        self._check_capacities(
            source_disks,
            [destination_disks[drive_id] for drive_id in remaining_destinations],
        )

    def find_detached(self, drive_ids: Iterable[DriveID]) -> List[DriveID]:
        """Return the ids that have no attached physical disk."""
        detached = []
        for drive_id in drive_ids:
            disk = self.disks.get_physical_disk_by_id(drive_id)
            if disk is None or not disk.attached:
                detached.append(drive_id)
        return detached

    def _check_lists(self, sources: Sequence[DriveID], destinations: Sequence[DriveID]) -> None:
        if len(set(sources)) != len(sources):
            raise ValidationError(f"Source drives contain duplicates: {list(sources)}")
        if len(set(destinations)) != len(destinations):
            raise ValidationError(f"Destination drives contain duplicates: {list(destinations)}")
        overlap = sorted(set(sources) & set(destinations))
        if overlap:
            raise ValidationError(f"Drives cannot be both source and destination: {overlap}")

    def _require_destinations_attached(self, destinations: Sequence[DriveID]) -> Dict[DriveID, PhysicalDisk]:
        logger.info("ZMV0002 Validating that all destination drives are properly connected...")
        found = {}
        for drive_id in destinations:
            disk = self.disks.get_physical_disk_by_id(drive_id)
            if disk is None or not disk.attached:
                logger.error(f"ZMV0010 Destination disk {drive_id} is not connected")
                raise ValidationError(f"Disk: {drive_id} is not connected.")
            logger.debug(f"ZMV0003 Disk {drive_id} is properly connected")
            found[drive_id] = disk
        return found

    def _require_sources_present(self, sources: Sequence[DriveID]) -> List[PhysicalDisk]:
        logger.info("ZMV0004 Getting source drives information...")
        found = []
        for drive_id in sources:
            disk = self.disks.get_physical_disk_by_id(drive_id)
            if disk is None or not disk.attached:
                logger.critical(f"ZMV0005 Source disk {drive_id} is not connected")
                raise ValidationError(f"Source disk: {drive_id} is not connected.")
            found.append(disk)
        return found

    def _check_capacities(self, sources: List[PhysicalDisk], destinations: List[PhysicalDisk]) -> None:
        # Every remaining destination must fit every remaining source: the
        # pairing order is decided later, pair by pair.
        for destination in destinations:
            for source in sources:
                if destination.capacity_bytes < source.capacity_bytes:
                    logger.error(f"ZMV0007 Destination {destination.id} ({destination.capacity_bytes} bytes) "
                                 f"is smaller than source {source.id} ({source.capacity_bytes} bytes)")
                    raise ValidationError(
                        f"Destination drive: {destination.id} has smaller capacity than {source.id}"
                    )
            logger.debug(f"ZMV0008 Destination drive {destination.id} has a valid capacity")
        logger.info("ZMV0009 All drives have valid capacity, migration can continue.")
