"""
Subprocess plumbing for the serial port driver.

All OS utilities (stty, the duplex shell, PowerShell, listing commands) go
through a runner so the driver can be exercised without spawning anything.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from .transport_base import UtilityNotFoundError


logger = logging.getLogger(__name__)

IS_POSIX = sys.platform != "win32"


@dataclass
class CommandResult:
    """Outcome of a short-lived command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class SubprocessRunner:
    """Runs and supervises OS utility processes with asyncio."""

    async def run(self, args: list[str], timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command to completion.

        Args:
            args: Command line
            timeout: Seconds before the command is killed

        Raises:
            UtilityNotFoundError: If the executable does not exist
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise UtilityNotFoundError(f"Command not found: {args[0]}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.debug(f"Command timed out after {timeout}s: {args[0]}")
            return CommandResult(returncode=-1, timed_out=True)

        return CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        """
        Start a long-running utility with piped stdio.

        On POSIX the process leads its own session so that terminate/kill
        reach every child it started.

        Raises:
            UtilityNotFoundError: If the executable does not exist
        """
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=IS_POSIX,
            )
        except FileNotFoundError as e:
            raise UtilityNotFoundError(f"Command not found: {args[0]}") from e

    def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Ask the process (group) to exit."""
        if IS_POSIX:
            self._signal_group(process, signal.SIGTERM)
        elif process.returncode is None:
            process.terminate()

    def kill(self, process: asyncio.subprocess.Process) -> None:
        """Force the process (group) to exit."""
        if IS_POSIX:
            self._signal_group(process, signal.SIGKILL)
        elif process.returncode is None:
            process.kill()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
