"""Persistent history of migration runs."""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERROR = "error"

# error_kind of a run whose process died before it could record an outcome
ERROR_KIND_INTERRUPTED = "interrupted"

_FILE_STAMP = "%Y%m%dT%H%M%S%f"


@dataclass
class MigrationRecord:
    """One migration run as stored on disk."""
    sources: List[str]
    targets: List[str]
    kind: str
    maintenance: bool = False
    status: str = STATUS_RUNNING
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None
    committed_stages: List[str] = field(default_factory=list)
    dismissed: bool = False

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    def mark_done(self, committed_stages: List[str]) -> None:
        self.status = STATUS_DONE
        self.committed_stages = list(committed_stages)
        self.finished_at = datetime.now().isoformat()

    def mark_error(self, message: str, kind: Optional[str],
                   committed_stages: Optional[List[str]] = None) -> None:
        self.status = STATUS_ERROR
        self.error_message = message
        self.error_kind = kind
        if committed_stages is not None:
            self.committed_stages = list(committed_stages)
        self.finished_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MigrationRecord':
        return cls(
            sources=list(data.get('sources', [])),
            targets=list(data.get('targets', [])),
            kind=data.get('kind', ''),
            maintenance=bool(data.get('maintenance', False)),
            status=data.get('status', STATUS_RUNNING),
            error_message=data.get('error_message'),
            error_kind=data.get('error_kind'),
            started_at=data.get('started_at') or datetime.now().isoformat(),
            finished_at=data.get('finished_at'),
            committed_stages=list(data.get('committed_stages', [])),
            dismissed=bool(data.get('dismissed', False)),
        )


class MigrationRecordStore:
    """Stores one JSON file per migration under `<state_dir>/migrations`."""

    def __init__(self, state_dir: str):
        self.directory = Path(state_dir) / "migrations"

    def path_for(self, record: MigrationRecord) -> Path:
        stamp = datetime.fromisoformat(record.started_at).strftime(_FILE_STAMP)
        return self.directory / f"migration-{stamp}.json"

    def save(self, record: MigrationRecord) -> Path:
        """Write the record, replacing any earlier version of the same run."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(record)
        tmp_path = path.with_suffix('.json.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(record.to_dict(), f, indent=2)
        tmp_path.replace(path)
        logger.debug(f"MIG0050 Saved migration record {path}")
        return path

    def list_all(self) -> List[MigrationRecord]:
        """All readable records, newest first."""
        if not self.directory.is_dir():
            return []

        records = []
        for path in self.directory.glob("migration-*.json"):
            try:
                with open(path, 'r') as f:
                    records.append(MigrationRecord.from_dict(json.load(f)))
            except (OSError, ValueError) as e:
                logger.warning(f"MIG0051 Skipping unreadable migration record {path}: {e}")

        records.sort(key=lambda record: record.started_at, reverse=True)
        return records

    def get_latest(self) -> Optional[MigrationRecord]:
        records = self.list_all()
        return records[0] if records else None

    def dismiss(self, started_at: str) -> bool:
        """
        Hide one finished record from status reports.

        Returns:
            True if a matching finished record was dismissed
        """
        for record in self.list_all():
            if record.started_at == started_at and not record.is_running:
                record.dismissed = True
                self.save(record)
                return True
        return False

    def dismiss_all(self) -> int:
        """Dismiss every finished record. Returns how many were changed."""
        count = 0
        for record in self.list_all():
            if not record.dismissed and not record.is_running:
                record.dismissed = True
                self.save(record)
                count += 1
        return count
