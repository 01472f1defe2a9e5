"""
Datalogger auto-detection.

Enumerates serial ports, ranks them with the port scorer and live-tests the
promising ones by listening for HH-4208SD frames.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..communication.protocol import CHANNEL_COUNT, FrameAssembler, ParsedReading
from ..communication.serial_port import ProcessSerialPort
from ..communication.transport_base import (
    DEFAULT_BAUD_RATE,
    PortEvent,
    PortEventType,
    PortInfo,
    SerialPortError,
)
from ..models.config import DataloggerDescriptor, create_default_datalogger_config
from .connection_recovery import RetryPolicy
from .port_scoring import HIGH_CONFIDENCE_SCORE, rank_ports

logger = logging.getLogger(__name__)


DEFAULT_PROBE_TIMEOUT = 10.0  # seconds

SETUP_HINTS = (
    "Set the sampling rate to 1 second",
    "Set the USB switch to position 2",
    "Enable data logging on the device",
    "Check that the datalogger is powered on and the USB cable is connected",
)


class DiscoveryErrorKind(Enum):
    OPEN_FAILED = auto()
    NO_DATA = auto()
    UNRECOGNIZED_PROTOCOL = auto()
    NO_DATALOGGERS = auto()


class DiscoveryError(Exception):
    """Discovery failure with operator remediation hints."""

    def __init__(self, kind: DiscoveryErrorKind, message: str, hints: Tuple[str, ...] = SETUP_HINTS):
        super().__init__(message)
        self.kind = kind
        self.hints = hints


@dataclass(frozen=True)
class DetectedChannel:
    channel_code: str
    channel_number: int
    temperature: float


@dataclass
class PortTestResult:
    """Outcome of listening on one port."""
    path: str
    channels: List[DetectedChannel] = field(default_factory=list)
    observed_codes: Set[str] = field(default_factory=set)
    bytes_received: int = 0
    frames_seen: int = 0
    invalid_frames: int = 0

    @property
    def complete(self) -> bool:
        """Every channel reported at least once."""
        return len(self.observed_codes) == CHANNEL_COUNT


@dataclass(frozen=True)
class DetectedDatalogger:
    path: str
    channels: Tuple[DetectedChannel, ...]
    score: int
    rationale: str


DriverFactory = Callable[[str, int], ProcessSerialPort]
PortTester = Callable[[str, float], Awaitable[PortTestResult]]
PortLister = Callable[[], Awaitable[List[PortInfo]]]


def _probe_driver(path: str, baud_rate: int) -> ProcessSerialPort:
    # Discovery must stay bounded, so probes never retry
    return ProcessSerialPort(path, baud_rate, retry_policy=RetryPolicy.no_retry())


async def test_port_for_data(
    path: str,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    baud_rate: int = DEFAULT_BAUD_RATE,
    driver_factory: Optional[DriverFactory] = None,
) -> PortTestResult:
    """
    Listen on a port for HH-4208SD frames.

    Returns early once all 12 channels were seen. Channels that only ever
    reported 0.0 are observed but left out of the result.

    Raises:
        DiscoveryError: OPEN_FAILED, NO_DATA or UNRECOGNIZED_PROTOCOL
    """
    driver = (driver_factory or _probe_driver)(path, baud_rate)
    assembler = FrameAssembler()
    result = PortTestResult(path=path)
    first_nonzero: Dict[str, ParsedReading] = {}
    all_seen = asyncio.Event()

    def on_event(event: PortEvent) -> None:
        if event.type is not PortEventType.DATA:
            return
        result.bytes_received += len(event.data)
        for parsed in assembler.feed(event.data):
            if not isinstance(parsed, ParsedReading):
                result.invalid_frames += 1
                continue
            result.frames_seen += 1
            result.observed_codes.add(parsed.channel_code)
            if not parsed.is_zero and parsed.channel_code not in first_nonzero:
                first_nonzero[parsed.channel_code] = parsed
            if result.complete:
                all_seen.set()

    driver.add_event_callback(on_event)
    try:
        try:
            await driver.open()
        except SerialPortError as e:
            raise DiscoveryError(DiscoveryErrorKind.OPEN_FAILED, f"Could not open {path}: {e}") from e

        try:
            await asyncio.wait_for(all_seen.wait(), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"[{path}] Probe window closed with {len(result.observed_codes)} channels seen")
    finally:
        driver.remove_event_callback(on_event)
        await driver.close()

    if not result.observed_codes:
        if result.bytes_received:
            raise DiscoveryError(
                DiscoveryErrorKind.UNRECOGNIZED_PROTOCOL,
                f"{path} sent {result.bytes_received} bytes but no HH-4208SD frames",
            )
        raise DiscoveryError(DiscoveryErrorKind.NO_DATA, f"No data received from {path} within {timeout:.0f}s")

    result.channels = sorted(
        (
            DetectedChannel(reading.channel_code, reading.channel_number, reading.temperature)
            for reading in first_nonzero.values()
        ),
        key=lambda channel: channel.channel_number,
    )
    return result


async def auto_detect_dataloggers(
    list_ports: Optional[PortLister] = None,
    tester: Optional[PortTester] = None,
    min_score: int = HIGH_CONFIDENCE_SCORE,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> List[DetectedDatalogger]:
    """
    Find ports that carry live HH-4208SD data.

    Ports are tried one at a time, best score first. A failing candidate is
    logged with setup hints and skipped.

    Returns:
        Dataloggers with at least one non-zero channel, best score first
    """
    list_ports = list_ports or ProcessSerialPort.list_ports
    tester = tester or test_port_for_data

    ports = await list_ports()
    if not ports:
        logger.warning("No serial ports found")
        return []

    candidates = [(port, score) for port, score in rank_ports(ports) if score.is_candidate]
    if not candidates:
        logger.warning(f"None of {len(ports)} serial ports looks like a datalogger")
        return []

    detected = []
    for port, score in candidates:
        if score.score < min_score:
            logger.debug(f"Skipping {port.path}: score {score.score} ({score.describe()})")
            continue

        logger.info(f"Testing {port.path}: score {score.score} ({score.describe()})")
        try:
            result = await tester(port.path, timeout)
        except DiscoveryError as e:
            logger.warning(f"{e}")
            for hint in e.hints:
                logger.info(f"  - {hint}")
            continue

        if not result.channels:
            logger.info(f"{port.path} is an HH-4208SD but no channel reports a temperature")
            continue

        numbers = ", ".join(str(c.channel_number) for c in result.channels)
        logger.info(f"Found datalogger at {port.path} (channels {numbers})")
        detected.append(DetectedDatalogger(
            path=port.path,
            channels=tuple(result.channels),
            score=score.score,
            rationale=score.describe(),
        ))

    return detected


def descriptors_from_detection(detected: List[DetectedDatalogger]) -> List[DataloggerDescriptor]:
    """
    Number detected dataloggers 1..N and build their descriptors.

    Raises:
        DiscoveryError: NO_DATALOGGERS if nothing was detected
    """
    if not detected:
        raise DiscoveryError(DiscoveryErrorKind.NO_DATALOGGERS, "No dataloggers detected")
    return [
        create_default_datalogger_config(number, datalogger.path)
        for number, datalogger in enumerate(detected, start=1)
    ]
