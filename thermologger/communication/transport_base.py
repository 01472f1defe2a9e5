"""
Serial Transport Types

Shared types for the port driver: line options, port descriptors, the
per-driver event record, and the transport error taxonomy including the
classification of diagnostic text emitted by the OS serial utilities.
"""

import os
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional


# ============================================================================
# Errors
# ============================================================================

class TransportError(Exception):
    """Base exception for transport errors."""
    pass


class SerialPortError(TransportError):
    """
    Error raised or emitted by a serial port driver.

    Attributes:
        path: Device path the error refers to
        transient: True if retrying the open may succeed
        user_action: Suggested remediation for the operator
    """
    transient = False
    user_action = ""

    def __init__(self, message: str, path: str = "", user_action: Optional[str] = None):
        super().__init__(message)
        self.path = path
        if user_action is not None:
            self.user_action = user_action


class PermissionDeniedError(SerialPortError):
    transient = True
    user_action = "Add your user to the dialout/uucp group or run with sufficient privileges"


class DeviceBusyError(SerialPortError):
    transient = True
    user_action = "Close other programs using the serial port"


class DeviceNotFoundError(SerialPortError):
    transient = True
    user_action = "Check that the datalogger is plugged in and the device path is correct"


class DeviceIOError(SerialPortError):
    transient = True
    user_action = "Check the USB cable; the device may have been disconnected"


class ProcessExitedError(SerialPortError):
    """The utility process attached to the device exited."""
    transient = True


class UnsupportedPlatformError(SerialPortError):
    pass


class UtilityNotFoundError(SerialPortError):
    """A required OS utility (stty, sh, powershell...) is not installed."""
    pass


class PortAlreadyOpenError(SerialPortError):
    pass


class PortUnavailableError(SerialPortError):
    """A uucp lock file shows another process holds the device."""
    user_action = "Close other programs using the serial port"


class PortClosedError(SerialPortError):
    pass


class WriteBufferOverflowError(SerialPortError):
    pass


_DIAGNOSTIC_RULES = (
    (("Permission denied", "Operation not permitted"), PermissionDeniedError, "Permission denied"),
    (("Line in use", "Device or resource busy"), DeviceBusyError, "Port is in use"),
    (("No such file or directory", "cannot open"), DeviceNotFoundError, "Port not found"),
    (("Input/output error",), DeviceIOError, "I/O error, device disconnected"),
)


def classify_diagnostic(text: str, path: str = "") -> Optional[SerialPortError]:
    """
    Map diagnostic text from a serial utility to a typed error.

    Args:
        text: stderr output of the utility process
        path: Device path, included in the message

    Returns:
        A SerialPortError subclass instance, or None for blank text
    """
    text = (text or "").strip()
    if not text:
        return None

    for needles, error_class, summary in _DIAGNOSTIC_RULES:
        if any(needle in text for needle in needles):
            return error_class(f"{summary}: {path}", path=path)

    return SerialPortError(f"Serial port error: {text}", path=path)


# ============================================================================
# Options and descriptors
# ============================================================================

BAUD_RATE_MIN = 50
BAUD_RATE_MAX = 4_000_000
DEFAULT_BAUD_RATE = 9600

PARITIES = ("none", "even", "odd")
FLOW_CONTROLS = ("none", "hardware", "software")


@dataclass
class SerialOptions:
    """Serial line configuration (HH-4208SD default: 9600 8N1)."""
    baud_rate: int = DEFAULT_BAUD_RATE
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "none"
    buffer_size: int = 1024
    flow_control: str = "none"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValueError if any option is outside what the line supports."""
        if not isinstance(self.baud_rate, int) or not BAUD_RATE_MIN <= self.baud_rate <= BAUD_RATE_MAX:
            raise ValueError(f"Invalid baud rate: {self.baud_rate}")
        if self.data_bits not in (5, 6, 7, 8):
            raise ValueError(f"Invalid data bits: {self.data_bits}")
        if self.stop_bits not in (1, 2):
            raise ValueError(f"Invalid stop bits: {self.stop_bits}")
        if self.parity not in PARITIES:
            raise ValueError(f"Invalid parity: {self.parity}")
        if self.flow_control not in FLOW_CONTROLS:
            raise ValueError(f"Invalid flow control: {self.flow_control}")
        if self.buffer_size <= 0:
            raise ValueError(f"Invalid buffer size: {self.buffer_size}")


@dataclass
class PortInfo:
    """Information about a serial port endpoint."""
    path: str
    manufacturer: str = "Unknown"
    vendor_id: Optional[int] = None
    product_id: Optional[int] = None
    serial_number: str = ""
    description: str = ""

    # Runtime status (filled by a driver's get_info)
    is_healthy: Optional[bool] = None
    last_data_time: Optional[float] = None
    reconnect_attempts: int = 0

    @property
    def name(self) -> str:
        """Short device name, e.g. "ttyUSB0" or "COM3"."""
        return os.path.basename(self.path)

    @property
    def vendor_id_hex(self) -> str:
        return f"{self.vendor_id:04x}" if self.vendor_id is not None else ""


# ============================================================================
# Events
# ============================================================================

class PortState(Enum):
    """Driver connection state."""
    CLOSED = auto()
    OPENING = auto()
    OPEN = auto()
    CLOSING = auto()


class PortEventType(Enum):
    """Kinds of event a driver emits on its own stream."""
    OPEN = auto()
    DATA = auto()
    ERROR = auto()
    CLOSE = auto()
    HEALTH_CHANGED = auto()


@dataclass(frozen=True)
class PortEvent:
    """One event from a port driver."""
    type: PortEventType
    path: str
    data: bytes = b""
    error: Optional[SerialPortError] = None
    healthy: Optional[bool] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_lifecycle(self) -> bool:
        return self.type is not PortEventType.DATA
