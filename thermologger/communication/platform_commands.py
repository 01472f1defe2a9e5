"""
Per-platform serial port commands.

The driver never opens the device itself. It configures the line discipline
with the OS utility (stty on Unix) and then attaches a long-running utility
process whose stdout is the device's inbound stream and whose stdin is the
outbound stream.
"""

import sys
from pathlib import Path
from typing import Optional

from .transport_base import SerialOptions, UnsupportedPlatformError


# Reader in the foreground so the shell's exit status tracks the device.
# The writer inherits the original stdin through fd 3 because background
# jobs of a non-interactive shell get /dev/null as stdin.
UNIX_DUPLEX_SCRIPT = (
    'exec 3<&0; '
    'cat <&3 > "$1" & writer=$!; '
    'trap \'kill "$writer" 2>/dev/null\' EXIT; '
    'cat "$1"'
)

WINDOWS_READ_SCRIPT = """
$port = New-Object System.IO.Ports.SerialPort '{path}', {baud}, '{parity}', {data_bits}, '{stop_bits}'
$port.ReadTimeout = 1000
$port.Open()
try {{
    while ($true) {{
        try {{
            $data = $port.ReadExisting()
            if ($data) {{ [Console]::Out.Write($data); [Console]::Out.Flush() }}
            Start-Sleep -Milliseconds 10
        }} catch [System.TimeoutException] {{ }}
    }}
}} finally {{
    $port.Close()
}}
"""

WINDOWS_LIST_SCRIPT = "[System.IO.Ports.SerialPort]::GetPortNames()"

_PARITY_STTY = {
    "none": ["-parenb"],
    "even": ["parenb", "-parodd"],
    "odd": ["parenb", "parodd"],
}

_PARITY_DOTNET = {"none": "None", "even": "Even", "odd": "Odd"}
_STOP_BITS_DOTNET = {1: "One", 2: "Two"}


class PlatformCommands:
    """Command lines for one operating system."""

    name = ""
    lock_dir: Optional[Path] = None

    def configure_args(self, path: str, options: SerialOptions) -> Optional[list[str]]:
        """Command that sets the line discipline, or None if not needed."""
        return None

    def connect_args(self, path: str, options: SerialOptions) -> list[str]:
        raise NotImplementedError

    def fallback_connect_args(self, path: str, options: SerialOptions) -> Optional[list[str]]:
        """Alternative connect command used when configuring fails."""
        return None

    def list_args(self) -> list[str]:
        raise NotImplementedError

    def signal_args(self, path: str, dtr: Optional[bool], rts: Optional[bool]) -> Optional[list[str]]:
        return None

    def availability_args(self, path: str) -> Optional[list[str]]:
        """Command whose zero exit status means the path is a character device."""
        return None

    def lock_file(self, path: str) -> Optional[Path]:
        """UUCP-style lock artifact for the device, if the platform uses one."""
        if self.lock_dir is None:
            return None
        return self.lock_dir / f"LCK..{Path(path).name}"


class _UnixCommands(PlatformCommands):
    stty_device_flag = "-F"

    def _line_flags(self, options: SerialOptions) -> list[str]:
        return [
            "-cstopb" if options.stop_bits == 1 else "cstopb",
            *_PARITY_STTY[options.parity],
            f"cs{options.data_bits}",
        ]

    def connect_args(self, path: str, options: SerialOptions) -> list[str]:
        return ["sh", "-c", UNIX_DUPLEX_SCRIPT, "sh", path]

    def signal_args(self, path: str, dtr: Optional[bool], rts: Optional[bool]) -> Optional[list[str]]:
        flags = []
        if dtr is not None:
            flags.append("dtr" if dtr else "-dtr")
        if rts is not None:
            flags.append("rts" if rts else "-rts")
        if not flags:
            return None
        return ["stty", self.stty_device_flag, path, *flags]

    def availability_args(self, path: str) -> Optional[list[str]]:
        return ["test", "-c", path]


class LinuxCommands(_UnixCommands):
    name = "linux"

    def configure_args(self, path: str, options: SerialOptions) -> Optional[list[str]]:
        return [
            "stty", "-F", path, str(options.baud_rate),
            "raw", "-echo", "-echoe", "-echok",
            *self._line_flags(options),
        ]

    def list_args(self) -> list[str]:
        return ["sh", "-c", "ls /dev/ttyUSB* /dev/ttyACM* 2>/dev/null"]


class DarwinCommands(_UnixCommands):
    name = "darwin"
    stty_device_flag = "-f"
    lock_dir = Path("/var/spool/uucp")

    def configure_args(self, path: str, options: SerialOptions) -> Optional[list[str]]:
        return [
            "stty", "-f", path, str(options.baud_rate),
            "raw", "-echo",
            *self._line_flags(options),
        ]

    def fallback_connect_args(self, path: str, options: SerialOptions) -> Optional[list[str]]:
        return ["cu", "-l", path, "-s", str(options.baud_rate)]

    def list_args(self) -> list[str]:
        return ["sh", "-c", "ls /dev/cu.* 2>/dev/null"]

    def availability_args(self, path: str) -> Optional[list[str]]:
        # Lock files decide availability on macOS
        return None


class WindowsCommands(PlatformCommands):
    name = "win32"

    def connect_args(self, path: str, options: SerialOptions) -> list[str]:
        script = WINDOWS_READ_SCRIPT.format(
            path=path,
            baud=options.baud_rate,
            parity=_PARITY_DOTNET[options.parity],
            data_bits=options.data_bits,
            stop_bits=_STOP_BITS_DOTNET[options.stop_bits],
        )
        return ["powershell", "-NoProfile", "-Command", script]

    def list_args(self) -> list[str]:
        return ["powershell", "-NoProfile", "-Command", WINDOWS_LIST_SCRIPT]


_PLATFORMS = {
    "linux": LinuxCommands,
    "darwin": DarwinCommands,
    "win32": WindowsCommands,
}


def get_platform_commands(platform_name: Optional[str] = None) -> PlatformCommands:
    """
    Get the command set for a platform.

    Args:
        platform_name: sys.platform-style name, current platform if None

    Raises:
        UnsupportedPlatformError: For platforms without a command set
    """
    name = platform_name or sys.platform
    if name.startswith("linux"):
        name = "linux"
    commands_class = _PLATFORMS.get(name)
    if commands_class is None:
        raise UnsupportedPlatformError(f"Unsupported platform: {name}")
    return commands_class()
