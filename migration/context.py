"""Shared state of one migration run."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from storage.models import DriveID


class MigrationKind(Enum):
    """Supported migration variants."""
    POOL_REPLACE = "pool_replace"


@dataclass
class MigrationContext:
    """Passed to every stage of a migration run."""
    sources: List[DriveID]
    destinations: List[DriveID]
    pool_name: str
    maintenance_requested: bool = False
    kind: MigrationKind = MigrationKind.POOL_REPLACE
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    # Set by DriveReplaceStage once it has turned the maintenance window on
    maintenance_enabled: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Ask the running migration to stop at its next checkpoint."""
        self.cancel_event.set()
