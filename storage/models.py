"""Data models for storage pool and physical disk state."""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple


# Drive identifiers are the names the pool reports for its leaf vdevs,
# usually /dev/disk/by-id entries such as "ata-WDC_WD40EFRX-68N32N0_WD-WCC7K0XXXXXX".
DriveID = str


@dataclass(frozen=True)
class ReplacementPair:
    """A (source, destination) pair the pool is currently replacing."""
    source: DriveID
    destination: DriveID


@dataclass(frozen=True)
class PoolStatus:
    """Snapshot of a storage pool. Never mutated; re-query for fresh state."""
    pool_name: str
    member_drive_ids: Tuple[DriveID, ...]
    is_resilvering: bool
    active_replacement: Optional[ReplacementPair] = None
    state: str = ""
    scan: str = ""
    status: str = ""

    @property
    def members(self) -> FrozenSet[DriveID]:
        """Member drive ids as a set."""
        return frozenset(self.member_drive_ids)

    def summary(self) -> str:
        """Human readable one-pool summary used in migration logs."""
        lines = [
            f"Pool: {self.pool_name}",
            f"State: {self.state}",
            f"Scan: {self.scan}",
        ]
        if self.status:
            lines.append(f"Status: {self.status}")
        if self.is_resilvering:
            lines.append("- The pool is resilvering")
            if self.active_replacement:
                lines.append(f"- Old drive being replaced:   {self.active_replacement.source}")
                lines.append(f"- New drive being resilvered: {self.active_replacement.destination}")
        lines.append(f"-- Drives in pool: {', '.join(self.member_drive_ids)}")
        return "\n".join(lines)


@dataclass(frozen=True)
class PhysicalDisk:
    """A physical disk as currently seen by the kernel."""
    id: DriveID
    capacity_bytes: int
    attached: bool = True
    device_path: Optional[str] = None
    model: Optional[str] = None
    serial: Optional[str] = None


@dataclass
class DriveTreeNode:
    """One row of the `zpool status` config tree."""
    name: str
    state: str = ""
    note: str = ""
    children: list = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children
