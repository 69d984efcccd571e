"""Physical disk detection for pool migrations."""

import os
import json
import logging
from typing import Dict, List, Optional

from .models import DriveID, PhysicalDisk
from .system_executor import SystemCommandExecutor

logger = logging.getLogger(__name__)


class DiskInventory:
    """Looks up physical disks by the ids the pool uses for them."""

    BY_ID_DIR = '/dev/disk/by-id'

    # by-id aliases that never name a whole disk or duplicate a better name
    IGNORED_ALIAS_PREFIXES = ('wwn-', 'nvme-eui.', 'dm-', 'md-', 'lvm-')

    def __init__(self, executor: SystemCommandExecutor, by_id_dir: Optional[str] = None):
        """
        Initialize the DiskInventory.

        Args:
            executor: Command executor used for lsblk
            by_id_dir: Directory holding the by-id symlinks
        """
        self.executor = executor
        self.by_id_dir = by_id_dir or self.BY_ID_DIR

    def get_physical_disk_by_id(self, drive_id: DriveID) -> Optional[PhysicalDisk]:
        """
        Get a physical disk by id. Always queried fresh, never cached.

        Args:
            drive_id: by-id name, kernel name (e.g. 'sdb') or /dev path

        Returns:
            PhysicalDisk if the id resolves to a device node, None otherwise
        """
        path = self._resolve_path(drive_id)
        if path is None:
            logger.debug(f"Disk {drive_id} has no device node")
            return None

        device_path = os.path.realpath(path)
        success, stdout, stderr = self.executor.execute_lsblk_command(device_path)
        if not success:
            logger.warning(f"Disk {drive_id} ({device_path}) is present but unreadable: {stderr.strip()}")
            return PhysicalDisk(id=drive_id, capacity_bytes=0, attached=False, device_path=device_path)

        devices = self._parse_lsblk(stdout)
        if not devices:
            return PhysicalDisk(id=drive_id, capacity_bytes=0, attached=False, device_path=device_path)

        info = devices[0]
        return PhysicalDisk(
            id=drive_id,
            capacity_bytes=self._to_int(info.get('size')),
            attached=True,
            device_path=device_path,
            model=(info.get('model') or '').strip() or None,
            serial=(info.get('serial') or '').strip() or None,
        )

    def list_physical_disks(self) -> List[PhysicalDisk]:
        """
        Enumerate whole disks, named by their preferred by-id alias.

        Returns:
            List of PhysicalDisk objects
        """
        success, stdout, stderr = self.executor.execute_lsblk_command()
        if not success:
            logger.error(f"Error listing disks: {stderr.strip()}")
            return []

        aliases = self._by_id_aliases()
        disks = []
        for info in self._parse_lsblk(stdout):
            if info.get('type') != 'disk':
                continue
            device_path = f"/dev/{info.get('name')}"
            disks.append(PhysicalDisk(
                id=aliases.get(device_path, info.get('name')),
                capacity_bytes=self._to_int(info.get('size')),
                attached=True,
                device_path=device_path,
                model=(info.get('model') or '').strip() or None,
                serial=(info.get('serial') or '').strip() or None,
            ))
        return disks

    def _resolve_path(self, drive_id: DriveID) -> Optional[str]:
        if drive_id.startswith('/dev/'):
            candidates = [drive_id]
        else:
            candidates = [os.path.join(self.by_id_dir, drive_id), f"/dev/{drive_id}"]

        for candidate in candidates:
            if os.path.exists(candidate):
                return candidate
        return None

    def _by_id_aliases(self) -> Dict[str, str]:
        """Map /dev/sdX to its first suitable by-id name."""
        aliases: Dict[str, str] = {}
        if not os.path.isdir(self.by_id_dir):
            return aliases

        for name in sorted(os.listdir(self.by_id_dir)):
            if '-part' in name or name.startswith(self.IGNORED_ALIAS_PREFIXES):
                continue
            target = os.path.realpath(os.path.join(self.by_id_dir, name))
            aliases.setdefault(target, name)
        return aliases

    def _parse_lsblk(self, output: str) -> List[dict]:
        try:
            return json.loads(output).get('blockdevices', [])
        except (json.JSONDecodeError, AttributeError):
            logger.error("Failed to parse lsblk output")
            return []

    def _to_int(self, value) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0
