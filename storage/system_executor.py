"""Secure system command execution for pool and disk operations."""

import subprocess
import logging
import shlex
from typing import List, Dict, Optional, Tuple
from enum import Enum
import re


logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Supported command types for validation."""
    ZPOOL = "zpool"
    LSBLK = "lsblk"


class SystemCommandExecutor:
    """Secure system command executor with privilege escalation and validation."""

    # Allowed commands and their argument patterns
    ALLOWED_COMMANDS = {
        CommandType.ZPOOL: {
            'binary': 'zpool',
            'allowed_args': {
                'status', 'replace', 'detach', 'set', 'get', 'labelclear', 'list',
                '-f', '-H', '-p', '-o', '-P', '-L'
            },
            'requires_sudo': True
        },
        CommandType.LSBLK: {
            'binary': 'lsblk',
            'allowed_args': {
                '-J', '--json', '-b', '--bytes', '-d', '--nodeps', '-o', '--output'
            },
            'requires_sudo': False
        }
    }

    # zpool sub-commands that never change pool state
    READ_ONLY_ZPOOL_OPERATIONS = {'status', 'get', 'list'}

    # Options whose following argument is a free-form value
    VALUE_OPTIONS = {'-o', '--output'}

    # Device path validation pattern
    DEVICE_PATH_PATTERN = re.compile(r'^/dev/[a-zA-Z0-9][a-zA-Z0-9/_.:+-]*$')

    # Pool names must start with a letter (zpool naming rules)
    POOL_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_.:-]*$')

    # Drive ids as reported by the pool or /dev/disk/by-id
    DRIVE_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.:+-]*$')

    # Pool property assignments such as autoexpand=on
    PROPERTY_PATTERN = re.compile(r'^[a-z]+=(on|off)$')

    # lsblk column list
    COLUMNS_PATTERN = re.compile(r'^[A-Z:-]+(,[A-Z:-]+)*$')

    # Values following -o (column or field lists)
    OPTION_VALUE_PATTERN = re.compile(r'^[A-Za-z][A-Za-z:_-]*(,[A-Za-z][A-Za-z:_-]*)*$')

    def __init__(self, dry_run: bool = False, timeout: int = 900):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            timeout: Maximum seconds a single command may run
        """
        self.dry_run = dry_run
        self.timeout = timeout
        self._command_history: List[Dict] = []

    def execute_zpool_command(self,
                              operation: str,
                              args: Optional[List[str]] = None) -> Tuple[bool, str, str]:
        """
        Execute a zpool command safely.

        Args:
            operation: zpool sub-command (status, replace, detach, set, ...)
            args: Options, pool name, property assignments and drive ids

        Returns:
            Tuple of (success, stdout, stderr)
        """
        if operation not in {'status', 'replace', 'detach', 'set', 'get', 'labelclear', 'list'}:
            raise ValueError(f"Unsupported zpool operation: {operation}")

        cmd_args = [operation]
        if args:
            cmd_args.extend(args)

        return self._execute_command(CommandType.ZPOOL, cmd_args)

    def execute_lsblk_command(self,
                              device_path: Optional[str] = None,
                              columns: str = 'NAME,SIZE,TYPE,SERIAL,MODEL') -> Tuple[bool, str, str]:
        """
        Execute an lsblk command returning JSON with sizes in bytes.

        Args:
            device_path: Optional device to restrict the listing to
            columns: Comma separated lsblk output columns

        Returns:
            Tuple of (success, stdout, stderr)
        """
        if not self.COLUMNS_PATTERN.match(columns):
            raise ValueError(f"Invalid lsblk columns: {columns}")

        cmd_args = ['-J', '-b', '-d', '-o', columns]

        if device_path:
            if not self._validate_device_path(device_path):
                raise ValueError(f"Invalid device path: {device_path}")
            cmd_args.append(device_path)

        return self._execute_command(CommandType.LSBLK, cmd_args)

    def _execute_command(self,
                        command_type: CommandType,
                        args: List[str]) -> Tuple[bool, str, str]:
        """
        Execute a validated command with proper logging and error handling.

        Args:
            command_type: Type of command to execute
            args: Command arguments

        Returns:
            Tuple of (success, stdout, stderr)
        """
        command_config = self.ALLOWED_COMMANDS[command_type]
        binary = command_config['binary']
        requires_sudo = command_config['requires_sudo']

        # Validate all arguments
        self._validate_command_args(command_type, args)

        if requires_sudo:
            full_command = ['sudo', binary] + args
        else:
            full_command = [binary] + args

        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        logger.info(f"Executing command: {command_str}")

        self._command_history.append({
            'command': command_str,
            'type': command_type.value,
            'dry_run': self.dry_run
        })

        if self.dry_run and not self._is_read_only(command_type, args):
            logger.info("DRY RUN: Command would be executed")
            return True, "DRY RUN", ""

        try:
            result = subprocess.run(
                full_command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )

            success = result.returncode == 0

            if success:
                logger.debug(f"Command executed successfully: {command_str}")
            else:
                logger.error(f"Command failed with return code {result.returncode}: {command_str}")
                logger.error(f"Error output: {result.stderr}")

            return success, result.stdout, result.stderr

        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out: {command_str}")
            return False, "", "Command timed out"

        except OSError as e:
            logger.error(f"Error executing command {command_str}: {e}")
            return False, "", str(e)

    def _validate_command_args(self, command_type: CommandType, args: List[str]) -> None:
        """
        Validate command arguments against allowed patterns.

        Args:
            command_type: Type of command
            args: Arguments to validate

        Raises:
            ValueError: If any argument is not allowed
        """
        allowed_args = self.ALLOWED_COMMANDS[command_type]['allowed_args']

        for index, arg in enumerate(args):
            if arg in allowed_args:
                continue

            # Value of a preceding option flag
            if index > 0 and args[index - 1] in self.VALUE_OPTIONS:
                if self.OPTION_VALUE_PATTERN.match(arg):
                    continue
                raise ValueError(f"Invalid option value for {command_type.value}: {arg}")

            if (self.DEVICE_PATH_PATTERN.match(arg) or
                    self.PROPERTY_PATTERN.match(arg) or
                    self.POOL_NAME_PATTERN.match(arg) or
                    self.DRIVE_ID_PATTERN.match(arg)):
                if '..' in arg:
                    raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")
                continue

            raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")

    def _is_read_only(self, command_type: CommandType, args: List[str]) -> bool:
        """Queries still run in dry-run mode; only mutations are skipped."""
        if command_type == CommandType.LSBLK:
            return True
        return bool(args) and args[0] in self.READ_ONLY_ZPOOL_OPERATIONS

    def _validate_device_path(self, path: str) -> bool:
        """Validate device path format."""
        return bool(self.DEVICE_PATH_PATTERN.match(path)) and '..' not in path

    def validate_pool_name(self, pool_name: str) -> bool:
        """Validate a pool name against zpool naming rules."""
        return bool(self.POOL_NAME_PATTERN.match(pool_name or ''))

    def validate_drive_id(self, drive_id: str) -> bool:
        """Validate a drive id or device path."""
        if not drive_id:
            return False
        if drive_id.startswith('/dev/'):
            return self._validate_device_path(drive_id)
        return bool(self.DRIVE_ID_PATTERN.match(drive_id))

    def get_command_history(self) -> List[Dict]:
        """Get the history of executed commands."""
        return self._command_history.copy()

    def clear_command_history(self) -> None:
        """Clear the command history."""
        self._command_history.clear()
