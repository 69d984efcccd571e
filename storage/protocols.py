"""Interfaces of the storage collaborators a migration depends on.

ZpoolManager, DiskInventory and MaintenanceWindow satisfy these
structurally; tests substitute in-memory fakes.
"""

from typing import Optional, Protocol

from .models import DriveID, PhysicalDisk, PoolStatus


class PoolInventory(Protocol):
    """Read-only pool queries."""

    def get_pool_status(self, pool_name: str) -> PoolStatus:
        ...


class DiskLookup(Protocol):
    """Read-only physical disk queries."""

    def get_physical_disk_by_id(self, drive_id: DriveID) -> Optional[PhysicalDisk]:
        ...


class PoolMutator(Protocol):
    """Side-effecting pool operations."""

    def force_replace(self, pool_name: str, source_id: DriveID, destination_id: DriveID) -> None:
        ...

    def detach(self, pool_name: str, drive_id: DriveID) -> None:
        ...

    def set_auto_expand(self, pool_name: str, enabled: bool) -> None:
        ...


class MaintenanceControl(Protocol):
    """Bounded maintenance window."""

    def enable_for_seconds(self, seconds: int) -> None:
        ...

    def disable(self) -> None:
        ...
