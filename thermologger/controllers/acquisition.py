"""
Acquisition Supervisor

Runs one port driver per configured datalogger, routes each driver's bytes
through its own frame assembler into the channel state store, and keeps the
links alive:

- Parallel startup; the run is fatal only if no datalogger opens
- Per-datalogger isolation: one failing port never affects the others
- Automatic reopen when a running port goes down
- Lifecycle events re-emitted to the reporting layer
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from functools import partial
from typing import Callable, Dict, List, Optional

from ..communication.protocol import FrameAssembler, ParsedReading
from ..communication.serial_port import ProcessSerialPort
from ..communication.transport_base import PortEvent, PortEventType, TransportError
from ..models.channel_store import ChannelSnapshot, ChannelStateStore
from ..models.config import AppConfig, DataloggerDescriptor
from ..utils.error_handler import ErrorCategory, ErrorHandler, ErrorInfo, ErrorSeverity

logger = logging.getLogger(__name__)


class AcquisitionError(Exception):
    """No datalogger could be brought up."""
    pass


class LinkState(Enum):
    """State of one datalogger link."""
    IDLE = auto()
    STARTING = auto()
    RUNNING = auto()
    RESTARTING = auto()
    FAILED = auto()       # Open failed permanently
    STOPPED = auto()


@dataclass
class DataloggerHealth:
    """Health of one datalogger link for the reporting layer."""
    datalogger_id: str
    display_name: str
    device_path: str
    state: LinkState
    is_open: bool
    is_healthy: bool
    frames_parsed: int
    parse_errors: int
    restarts: int
    channel_count: int
    connected_channels: int
    last_error: Optional[str] = None


@dataclass
class _DataloggerLink:
    descriptor: DataloggerDescriptor
    driver: ProcessSerialPort
    assembler: FrameAssembler = field(default_factory=FrameAssembler)
    state: LinkState = LinkState.IDLE
    frames_parsed: int = 0
    parse_errors: int = 0
    restarts: int = 0
    last_error: Optional[Exception] = None
    restart_task: Optional[asyncio.Task] = None


DriverFactory = Callable[[DataloggerDescriptor], ProcessSerialPort]
SupervisorEventCallback = Callable[[str, PortEvent], None]


def default_driver_factory(descriptor: DataloggerDescriptor) -> ProcessSerialPort:
    return ProcessSerialPort(descriptor.device_path, descriptor.baud_rate)


class AcquisitionSupervisor:
    """
    Owns the drivers, assemblers and store for a set of dataloggers.

    Usage:
        supervisor = AcquisitionSupervisor(config)
        await supervisor.start()
        ...
        readings = supervisor.snapshot()
        await supervisor.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        store: Optional[ChannelStateStore] = None,
        driver_factory: Optional[DriverFactory] = None,
        error_handler: Optional[ErrorHandler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store or ChannelStateStore(config.dataloggers, config.global_settings, clock=clock)
        self._driver_factory = driver_factory or default_driver_factory
        self._error_handler = error_handler or ErrorHandler()
        self._links: Dict[str, _DataloggerLink] = {}
        self._event_callbacks: List[SupervisorEventCallback] = []
        self._running = False

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def store(self) -> ChannelStateStore:
        return self._store

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_dataloggers(self) -> List[str]:
        """IDs of dataloggers whose port is currently open."""
        return [link.descriptor.id for link in self._links.values() if link.driver.is_open]

    def link_state(self, datalogger_id: str) -> LinkState:
        return self._links[datalogger_id].state

    def add_event_callback(self, callback: SupervisorEventCallback) -> None:
        """Receive (datalogger_id, event) for OPEN/CLOSE/ERROR/HEALTH_CHANGED."""
        self._event_callbacks.append(callback)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> List[str]:
        """
        Open every configured datalogger concurrently.

        Returns:
            IDs of the dataloggers that opened

        Raises:
            AcquisitionError: If no datalogger is configured or none opened
        """
        if self._running:
            return self.active_dataloggers
        if not self._config.dataloggers:
            raise AcquisitionError("No dataloggers configured")

        for descriptor in self._config.dataloggers:
            driver = self._driver_factory(descriptor)
            link = _DataloggerLink(descriptor=descriptor, driver=driver)
            driver.add_event_callback(partial(self._on_port_event, link))
            self._links[descriptor.id] = link

        self._running = True
        opened = await asyncio.gather(*(self._open_link(link) for link in self._links.values()))

        started = [link.descriptor.id for link, ok in zip(self._links.values(), opened) if ok]
        if not started:
            await self.stop()
            raise AcquisitionError("No dataloggers connected")

        logger.info(f"Acquisition running on {len(started)}/{len(self._links)} dataloggers")
        return started

    async def _open_link(self, link: _DataloggerLink) -> bool:
        descriptor = link.descriptor
        link.state = LinkState.STARTING
        logger.info(f"[{descriptor.display_name}] Connecting to {descriptor.device_path}")
        try:
            await link.driver.open()
        except TransportError as e:
            link.state = LinkState.FAILED
            link.last_error = e
            self._error_handler.handle_exception(
                e,
                f"Failed to connect to {descriptor.device_path}: {e}",
                category=ErrorCategory.TRANSPORT,
                source=descriptor.id,
                recoverable=False,
            )
            return False

        link.state = LinkState.RUNNING
        return True

    async def stop(self) -> None:
        """Close every driver and cancel pending restarts."""
        self._running = False

        restarts = [link.restart_task for link in self._links.values()
                    if link.restart_task is not None and not link.restart_task.done()]
        for task in restarts:
            task.cancel()
        if restarts:
            await asyncio.gather(*restarts, return_exceptions=True)

        await asyncio.gather(*(link.driver.close() for link in self._links.values()))
        for link in self._links.values():
            link.state = LinkState.STOPPED
        logger.info("Acquisition stopped")

    # ========================================================================
    # Event routing
    # ========================================================================

    def _on_port_event(self, link: _DataloggerLink, event: PortEvent) -> None:
        if event.type is PortEventType.DATA:
            self._route_data(link, event.data)
            return

        if event.type is PortEventType.ERROR and event.error is not None:
            link.last_error = event.error
            self._error_handler.handle_exception(
                event.error,
                category=ErrorCategory.TRANSPORT,
                severity=ErrorSeverity.WARNING,
                source=link.descriptor.id,
            )

        self._notify(link.descriptor.id, event)

        went_down = event.type in (PortEventType.ERROR, PortEventType.CLOSE) and not link.driver.is_open
        if went_down and link.state is LinkState.RUNNING and self._running:
            self._schedule_restart(link)

    def _route_data(self, link: _DataloggerLink, data: bytes) -> None:
        datalogger_id = link.descriptor.id
        for result in link.assembler.feed(data):
            if isinstance(result, ParsedReading):
                self._store.record(datalogger_id, result)
                link.frames_parsed += 1
                continue

            link.parse_errors += 1
            self._error_handler.handle(ErrorInfo(
                message=f"Invalid data: {result.message}",
                severity=ErrorSeverity.DEBUG,
                category=ErrorCategory.PROTOCOL,
                source=datalogger_id,
            ))

    def _notify(self, datalogger_id: str, event: PortEvent) -> None:
        for callback in list(self._event_callbacks):
            try:
                callback(datalogger_id, event)
            except Exception as e:
                logger.error(f"Supervisor event callback failed: {e}", exc_info=True)

    # ========================================================================
    # Restart
    # ========================================================================

    def _schedule_restart(self, link: _DataloggerLink) -> None:
        if link.restart_task is not None and not link.restart_task.done():
            return
        link.state = LinkState.RESTARTING
        link.restart_task = asyncio.create_task(self._restart_link(link))

    async def _restart_link(self, link: _DataloggerLink) -> None:
        descriptor = link.descriptor
        link.restarts += 1
        # Bytes before the interruption can't complete a frame
        link.assembler.reset()
        logger.warning(f"[{descriptor.display_name}] Connection lost, reopening {descriptor.device_path}")

        await link.driver.close()
        try:
            await link.driver.open()
        except TransportError as e:
            link.state = LinkState.FAILED
            link.last_error = e
            self._error_handler.handle_exception(
                e,
                f"Giving up on {descriptor.device_path}: {e}",
                category=ErrorCategory.TRANSPORT,
                source=descriptor.id,
                recoverable=False,
            )
            return

        link.state = LinkState.RUNNING
        logger.info(f"[{descriptor.display_name}] Reconnected to {descriptor.device_path}")

    # ========================================================================
    # Queries
    # ========================================================================

    def snapshot(self, now: Optional[float] = None) -> List[ChannelSnapshot]:
        """Current readings of every channel seen so far."""
        return self._store.snapshot(now)

    def datalogger_health(self, datalogger_id: str, now: Optional[float] = None) -> DataloggerHealth:
        """
        Health of one datalogger.

        Raises:
            KeyError: If the datalogger is not part of this run
        """
        link = self._links[datalogger_id]
        summary = self._store.datalogger_summary(datalogger_id, now)
        return DataloggerHealth(
            datalogger_id=datalogger_id,
            display_name=link.descriptor.display_name,
            device_path=link.descriptor.device_path,
            state=link.state,
            is_open=link.driver.is_open,
            is_healthy=link.driver.is_healthy(),
            frames_parsed=link.frames_parsed,
            parse_errors=link.parse_errors,
            restarts=link.restarts,
            channel_count=summary.channel_count,
            connected_channels=summary.connected_channels,
            last_error=str(link.last_error) if link.last_error else None,
        )

    def health(self, now: Optional[float] = None) -> List[DataloggerHealth]:
        return [self.datalogger_health(datalogger_id, now) for datalogger_id in self._links]
