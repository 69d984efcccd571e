"""Maintenance window that inhibits scheduled jobs while risky work runs."""

import os
import time
import logging
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MaintenanceWindowError(Exception):
    """The maintenance window could not be changed."""
    pass


class MaintenanceWindow:
    """
    File based maintenance window.

    The inhibit file holds the epoch second at which the window ends.
    Schedulers on the appliance skip their jobs while the file exists and
    its end time lies in the future.
    """

    MAX_ENABLED_SECONDS = 48 * 60 * 60

    def __init__(self, maintenance_file: str, clock: Callable[[], float] = time.time):
        """
        Initialize the MaintenanceWindow.

        Args:
            maintenance_file: Path of the inhibit file
            clock: Time source, replaced in tests
        """
        self.maintenance_file = maintenance_file
        self._clock = clock

    def enable_for_seconds(self, seconds: int, user: Optional[str] = None) -> None:
        """
        Enable (or extend) the window so that it ends `seconds` from now.

        Args:
            seconds: Window length, capped at 48 hours
            user: Who asked for it, only used for auditing
        """
        if seconds <= 0:
            raise ValueError("Maintenance window length must be positive")

        seconds = min(int(seconds), self.MAX_ENABLED_SECONDS)
        end_time = int(self._clock()) + seconds

        try:
            Path(self.maintenance_file).parent.mkdir(parents=True, exist_ok=True)
            with open(self.maintenance_file, 'w') as f:
                f.write(str(end_time))
        except OSError as e:
            logger.error(f"MMS0003 Failed to write {self.maintenance_file}: {e}")
            raise MaintenanceWindowError("Cannot enable maintenance mode.") from e

        if user:
            logger.info(f"MMS0001 Maintenance mode enabled for {seconds}s by user {user}")
        else:
            logger.info(f"MMS0002 Maintenance mode enabled for {seconds}s by a system service")

    def disable(self, user: Optional[str] = None) -> None:
        """Disable the window. Does nothing when it is not enabled."""
        if not os.path.exists(self.maintenance_file):
            return

        try:
            os.unlink(self.maintenance_file)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(f"MMS0013 Failed to remove {self.maintenance_file}: {e}")
            raise MaintenanceWindowError("Cannot disable maintenance mode.") from e

        if user:
            logger.info(f"MMS0011 Maintenance mode disabled by user {user}")
        else:
            logger.info("MMS0012 Maintenance mode disabled by a system service")

    def get_end_time(self) -> int:
        """Epoch second at which the window ends, 0 when not enabled."""
        try:
            with open(self.maintenance_file, 'r') as f:
                return int(f.read().strip() or 0)
        except FileNotFoundError:
            return 0
        except ValueError:
            logger.warning(f"MMS0014 Ignoring malformed maintenance file {self.maintenance_file}")
            return 0

    def is_enabled(self) -> bool:
        """Whether the window is currently in effect."""
        return self.get_end_time() > self._clock()
