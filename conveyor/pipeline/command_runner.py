"""Command runner: executes one external command with cwd, timeout and cancellation.

The command line runs through the platform shell in its own process group,
so timeouts and cancellation can terminate the command together with any
children it spawned.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from conveyor.errors import (
    CommandCancelledError,
    CommandError,
    CommandNotAllowedError,
    CommandTimeoutError,
)
from conveyor.utils.helpers import build_command_line

logger = logging.getLogger(__name__)

_IS_POSIX = os.name == "posix"


@dataclass
class CommandResult:
    """Output of a successful command."""
    stdout: str
    stderr: str
    exit_code: int = 0


class CommandRunner:
    """Run shell commands with timeout, cancellation and an optional allowlist."""

    def __init__(
        self,
        allowlist: Optional[Iterable[str]] = None,
        kill_grace_seconds: float = 5.0,
        poll_interval: float = 0.1,
        env: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize command runner.

        Args:
            allowlist: Allowed command names (basename, case-insensitive); None allows all
            kill_grace_seconds: Time between SIGTERM and SIGKILL when terminating
            poll_interval: How often to check timeout and cancellation while waiting
            env: Extra environment variables for every command
        """
        self.allowlist = (
            {entry.lower() for entry in allowlist} if allowlist is not None else None
        )
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval = poll_interval
        self.env = env or {}

    def is_allowed(self, command: str) -> bool:
        if self.allowlist is None:
            return True
        command_key = os.path.basename(command.strip()).lower()
        return command_key in self.allowlist or command.strip().lower() in self.allowlist

    def run(
        self,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        label: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command to completion.

        Args:
            command: Command to run
            args: Arguments appended to the command with single spaces
            cwd: Working directory (None uses the current directory)
            timeout_ms: Timeout in milliseconds (None or 0 disables)
            cancel_event: Event that aborts the command when set
            label: Caller label for log messages

        Returns:
            CommandResult for a zero exit code

        Raises:
            CommandNotAllowedError: Command is not in the allowlist
            CommandTimeoutError: Command exceeded its timeout and was killed
            CommandCancelledError: cancel_event was set and the command was killed
            CommandError: Non-zero exit or the process could not be spawned
        """
        if not self.is_allowed(command):
            logger.warning(f"[{label or 'command'}] rejected command not in allowlist: {command}")
            raise CommandNotAllowedError(command, label=label)

        if cancel_event is not None and cancel_event.is_set():
            raise CommandCancelledError()

        command_line = build_command_line(command, args)
        logger.info(f"[{label or 'command'}] running: {command_line} (cwd={cwd}, timeout_ms={timeout_ms})")

        try:
            process = subprocess.Popen(
                command_line,
                shell=True,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                env={**os.environ, **self.env},
                start_new_session=_IS_POSIX,
            )
        except OSError as e:
            raise CommandError(f"Failed to start command '{command_line}': {e}", exit_code=1) from e

        deadline = time.monotonic() + timeout_ms / 1000.0 if timeout_ms else None

        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    self._terminate(process)
                    logger.info(f"[{label or 'command'}] cancelled: {command_line}")
                    raise CommandCancelledError()
                if deadline is not None and time.monotonic() >= deadline:
                    stdout, stderr = self._terminate(process)
                    logger.warning(f"[{label or 'command'}] timed out after {timeout_ms}ms: {command_line}")
                    raise CommandTimeoutError(command_line, timeout_ms, stdout=stdout, stderr=stderr)

        if process.returncode != 0:
            message = stderr.strip() or f"Command exited with code {process.returncode}"
            raise CommandError(
                message,
                exit_code=process.returncode,
                stdout=stdout,
                stderr=stderr,
            )

        return CommandResult(stdout=stdout, stderr=stderr, exit_code=0)

    def _terminate(self, process: subprocess.Popen) -> tuple:
        """Terminate the process group: SIGTERM, then SIGKILL after the grace period."""
        self._signal(process, signal.SIGTERM if _IS_POSIX else None)
        try:
            stdout, stderr = process.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal(process, signal.SIGKILL if _IS_POSIX else None)
            stdout, stderr = process.communicate()
        return stdout or "", stderr or ""

    def _signal(self, process: subprocess.Popen, sig) -> None:
        try:
            if _IS_POSIX:
                os.killpg(process.pid, sig)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            # Group already gone
            pass
