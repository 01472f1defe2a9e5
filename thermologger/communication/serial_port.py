"""
Process-backed serial port driver.

The driver delegates device I/O to an OS utility process: the line
discipline is set with stty (Unix), then a long-running utility is attached
to the device. Its stdout is the inbound byte stream, its stdin the outbound
stream, and its stderr is classified into typed errors.

Lifecycle:
    CLOSED -> OPENING -> OPEN -> CLOSING -> CLOSED
                      -> CLOSED (open failed)
              OPEN -> CLOSED (utility exited unexpectedly)
"""

import asyncio
import dataclasses
import logging
import re
import time
from collections import deque
from typing import AsyncIterator, Awaitable, Callable, Optional

import serial.tools.list_ports

from ..controllers.connection_recovery import RecoveryDecision, RetryPolicy
from .platform_commands import PlatformCommands, get_platform_commands
from .process_runner import SubprocessRunner
from .transport_base import (
    DEFAULT_BAUD_RATE,
    DeviceNotFoundError,
    PortAlreadyOpenError,
    PortClosedError,
    PortEvent,
    PortEventType,
    PortInfo,
    PortState,
    PortUnavailableError,
    ProcessExitedError,
    SerialOptions,
    SerialPortError,
    WriteBufferOverflowError,
    classify_diagnostic,
)


logger = logging.getLogger(__name__)


# Timing defaults
SETTLE_DELAY = 0.1              # seconds after spawn before declaring open
HEALTH_CHECK_INTERVAL = 10.0    # seconds
HEALTH_TIMEOUT = 60.0           # seconds of silence before unhealthy
CLOSE_GRACE_PERIOD = 5.0        # seconds between terminate and kill
AVAILABILITY_TIMEOUT = 1.0      # seconds for the character-device probe
COMMAND_TIMEOUT = 5.0           # seconds for stty / listing commands
DIAGNOSTIC_WAIT = 1.0           # seconds to collect stderr of an exited utility

# Write path
MAX_WRITE_BUFFER = 1000
WRITE_DELAY = 0.001             # seconds between consecutive writes

_COM_PORT = re.compile(r"COM\d+", re.IGNORECASE)

EventCallback = Callable[[PortEvent], None]


def guess_manufacturer(path: str) -> str:
    """Best-effort manufacturer hint from the device path alone."""
    if "usbserial" in path or "usbmodem" in path:
        return "USB Serial Device"
    if "Bluetooth" in path:
        return "Bluetooth"
    if "debug" in path.lower():
        return "Debug Console"
    return "Unknown"


def parse_port_listing(output: str) -> list[str]:
    """Keep device paths (/dev/... or COMn) from a listing command's output."""
    paths = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("/dev/") or _COM_PORT.fullmatch(line):
            if line not in paths:
                paths.append(line)
    return paths


def enrich_port_info(ports: list[PortInfo]) -> list[PortInfo]:
    """
    Fill USB metadata (VID/PID, manufacturer, serial) from pyserial.

    Ports pyserial does not know about are returned unchanged.
    """
    try:
        known = {port.device: port for port in serial.tools.list_ports.comports()}
    except Exception as e:
        logger.debug(f"pyserial port enumeration failed: {e}")
        return ports

    for info in ports:
        match = known.get(info.path)
        if match is None:
            continue
        info.vendor_id = match.vid
        info.product_id = match.pid
        info.serial_number = match.serial_number or ""
        info.description = match.description or ""
        if match.manufacturer:
            info.manufacturer = match.manufacturer
    return ports


class ProcessSerialPort:
    """
    Serial port driver backed by an OS utility process.

    Emits OPEN, DATA, ERROR, CLOSE and HEALTH_CHANGED events to registered
    callbacks; inbound chunks are also available via receive_stream().
    """

    def __init__(
        self,
        path: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        *,
        options: Optional[SerialOptions] = None,
        port_info: Optional[PortInfo] = None,
        platform_name: Optional[str] = None,
        commands: Optional[PlatformCommands] = None,
        runner: Optional[SubprocessRunner] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        settle_delay: float = SETTLE_DELAY,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        health_timeout: float = HEALTH_TIMEOUT,
        max_write_buffer: int = MAX_WRITE_BUFFER,
        write_delay: float = WRITE_DELAY,
        close_grace_period: float = CLOSE_GRACE_PERIOD,
    ):
        self._path = path
        self._options = options or SerialOptions(baud_rate=baud_rate)
        self._port_info = port_info or PortInfo(path=path, manufacturer=guess_manufacturer(path))
        self._platform_name = platform_name
        self._commands = commands
        self._runner = runner or SubprocessRunner()
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._settle_delay = settle_delay
        self._health_check_interval = health_check_interval
        self._health_timeout = health_timeout
        self._max_write_buffer = max_write_buffer
        self._write_delay = write_delay
        self._close_grace_period = close_grace_period

        self._state = PortState.CLOSED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._open_error: Optional[SerialPortError] = None
        self._abort_open = False
        self._forgotten = False

        self._last_data_time = 0.0
        self._healthy = False
        self._reconnect_attempts = 0
        self._bytes_received = 0

        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

        self._write_queue: deque = deque()
        self._streams: list[asyncio.Queue] = []
        self._event_callbacks: list[EventCallback] = []

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def path(self) -> str:
        return self._path

    @property
    def baud_rate(self) -> int:
        return self._options.baud_rate

    @property
    def options(self) -> SerialOptions:
        return self._options

    @property
    def state(self) -> PortState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is PortState.OPEN

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def last_data_time(self) -> float:
        return self._last_data_time

    @property
    def bytes_received(self) -> int:
        return self._bytes_received

    @property
    def pending_writes(self) -> int:
        return len(self._write_queue)

    @property
    def commands(self) -> PlatformCommands:
        """Platform command set (raises UnsupportedPlatformError)."""
        if self._commands is None:
            self._commands = get_platform_commands(self._platform_name)
        return self._commands

    # ========================================================================
    # Events
    # ========================================================================

    def add_event_callback(self, callback: EventCallback) -> None:
        """Register a callback for this driver's events."""
        if callback not in self._event_callbacks:
            self._event_callbacks.append(callback)

    def remove_event_callback(self, callback: EventCallback) -> None:
        if callback in self._event_callbacks:
            self._event_callbacks.remove(callback)

    def _emit(self, event_type: PortEventType, **kwargs) -> None:
        event = PortEvent(type=event_type, path=self._path, timestamp=self._clock(), **kwargs)
        for callback in list(self._event_callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"[{self._path}] Event callback failed: {e}", exc_info=True)

    # ========================================================================
    # Open
    # ========================================================================

    async def open(self, options: Optional[SerialOptions] = None) -> None:
        """
        Open the port, retrying transient failures with backoff.

        Args:
            options: Line options merged over the current ones

        Raises:
            PortAlreadyOpenError: If the port is open or opening
            PortUnavailableError: If another process holds the lock file
            PortClosedError: If close() was called before the open settled
            SerialPortError: Error of the last attempt once retries are
                exhausted, or the first non-transient error
        """
        if self._state in (PortState.OPEN, PortState.OPENING):
            raise PortAlreadyOpenError("Port already open", path=self._path)
        if self._forgotten:
            raise PortClosedError(f"Port {self._path} has been forgotten", path=self._path)

        if options is not None:
            options.validate()
            self._options = options

        commands = self.commands
        self._state = PortState.OPENING
        self._abort_open = False
        try:
            if self._is_locked(commands):
                raise PortUnavailableError(
                    f"Serial port {self._path} is locked by another process", path=self._path
                )
            await self._connect_with_retry(commands)
        finally:
            if self._state is PortState.OPENING:
                self._state = PortState.CLOSED

    def _is_locked(self, commands: PlatformCommands) -> bool:
        """Advisory check; another process may still grab the device afterwards."""
        lock_file = commands.lock_file(self._path)
        return lock_file is not None and lock_file.exists()

    async def _check_device(self, commands: PlatformCommands) -> None:
        """Raise DeviceNotFoundError while the device node is missing."""
        args = commands.availability_args(self._path)
        if args is None:
            return
        try:
            result = await self._runner.run(args, timeout=AVAILABILITY_TIMEOUT)
        except SerialPortError as e:
            logger.debug(f"[{self._path}] Availability probe unavailable: {e}")
            return
        if not result.ok:
            raise DeviceNotFoundError(f"Port not found: {self._path}", path=self._path)

    def _check_abort(self) -> None:
        if self._abort_open:
            raise PortClosedError("Open aborted by close()", path=self._path)

    async def _connect_with_retry(self, commands: PlatformCommands) -> None:
        self._reconnect_attempts = 0
        while True:
            try:
                await self._attempt_open(commands)
                return
            except PortClosedError:
                raise
            except SerialPortError as e:
                if self._abort_open:
                    raise PortClosedError("Open aborted by close()", path=self._path) from e
                self._emit(PortEventType.ERROR, error=e)
                decision = self._retry_policy.decide(e, self._reconnect_attempts)
                if decision is RecoveryDecision.FAIL:
                    logger.error(f"[{self._path}] Open failed: {e}")
                    raise
                if decision is RecoveryDecision.GIVE_UP:
                    logger.error(
                        f"[{self._path}] Giving up after {self._reconnect_attempts} "
                        f"reconnection attempts: {e}"
                    )
                    raise

                self._reconnect_attempts += 1
                delay = self._retry_policy.delay_for(self._reconnect_attempts)
                logger.warning(
                    f"[{self._path}] {e}; reconnection attempt "
                    f"{self._reconnect_attempts}/{self._retry_policy.max_attempts} in {delay:.1f}s"
                )
                await self._sleep(delay)
                if self._abort_open:
                    raise PortClosedError("Open aborted by close()", path=self._path) from e

    async def _attempt_open(self, commands: PlatformCommands) -> None:
        await self._check_device(commands)
        connect_args = commands.connect_args(self._path, self._options)

        configure_args = commands.configure_args(self._path, self._options)
        if configure_args:
            result = await self._runner.run(configure_args, timeout=COMMAND_TIMEOUT)
            if not result.ok:
                fallback = commands.fallback_connect_args(self._path, self._options)
                if fallback is None:
                    raise classify_diagnostic(result.stderr, self._path) or SerialPortError(
                        f"Failed to configure {self._path} (exit code {result.returncode})",
                        path=self._path,
                    )
                logger.warning(
                    f"[{self._path}] {configure_args[0]} failed, falling back to {fallback[0]}"
                )
                connect_args = fallback

        self._check_abort()
        process = await self._runner.spawn(connect_args)
        self._process = process
        self._open_error = None
        self._stderr_task = asyncio.create_task(self._read_stderr(process))

        await asyncio.sleep(self._settle_delay)

        error = None
        if process.returncode is not None:
            await asyncio.wait({self._stderr_task}, timeout=DIAGNOSTIC_WAIT)
            error = self._open_error or ProcessExitedError(
                f"Process exited with code {process.returncode}", path=self._path
            )
        elif self._open_error is not None:
            error = self._open_error
        elif self._abort_open:
            error = PortClosedError("Open aborted by close()", path=self._path)

        if error is not None:
            await self._cancel_tasks(self._stderr_task)
            await self._terminate_process()
            raise error

        self._state = PortState.OPEN
        self._last_data_time = self._clock()
        self._healthy = True
        self._stdout_task = asyncio.create_task(self._read_stdout(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process))
        self._health_task = asyncio.create_task(self._health_loop())

        logger.info(f"Opened {self._path} at {self._options.baud_rate} baud")
        self._emit(PortEventType.OPEN)

    # ========================================================================
    # Background tasks
    # ========================================================================

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                chunk = await process.stdout.read(self._options.buffer_size)
            except OSError as e:
                logger.error(f"[{self._path}] Read error: {e}")
                break
            if not chunk:
                break
            self._on_data(chunk)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                chunk = await process.stderr.read(1024)
            except OSError:
                break
            if not chunk:
                break

            error = classify_diagnostic(chunk.decode(errors="replace"), self._path)
            if error is None:
                continue
            if self._state is PortState.OPEN:
                logger.error(f"[{self._path}] {error}")
                self._emit(PortEventType.ERROR, error=error)
            elif self._open_error is None:
                self._open_error = error

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._state is not PortState.OPEN:
            return

        # Let the reader flush whatever the utility wrote before exiting
        if self._stdout_task is not None:
            await asyncio.wait({self._stdout_task}, timeout=DIAGNOSTIC_WAIT)

        self._state = PortState.CLOSED
        self._healthy = False
        self._process = None
        await self._cancel_tasks(self._stdout_task, self._stderr_task, self._health_task, self._drain_task)
        self._reject_pending_writes(PortClosedError("Port closed", path=self._path))
        self._end_streams()

        if returncode == 0:
            logger.info(f"[{self._path}] Utility process exited")
            self._emit(PortEventType.CLOSE)
            return

        if returncode < 0:
            message = f"Process killed by signal {-returncode}"
        else:
            message = f"Process exited with code {returncode}"
        error = ProcessExitedError(message, path=self._path)
        logger.error(f"[{self._path}] {message}")
        self._emit(PortEventType.ERROR, error=error)

    async def _health_loop(self) -> None:
        while self._state is PortState.OPEN:
            await asyncio.sleep(self._health_check_interval)
            self.check_health()

    def _on_data(self, chunk: bytes) -> None:
        self._last_data_time = self._clock()
        self._bytes_received += len(chunk)

        for queue in list(self._streams):
            queue.put_nowait(chunk)
        self._emit(PortEventType.DATA, data=chunk)

        if not self._healthy:
            self._healthy = True
            logger.info(f"[{self._path}] Data flow resumed")
            self._emit(PortEventType.HEALTH_CHANGED, healthy=True)

    # ========================================================================
    # Health
    # ========================================================================

    def is_healthy(self) -> bool:
        """
        True only while open and data arrived within the health timeout.

        Opening counts as activity: a freshly opened port is healthy until
        the timeout passes without any byte arriving.
        """
        if self._state is not PortState.OPEN:
            return False
        return (self._clock() - self._last_data_time) < self._health_timeout

    def check_health(self) -> bool:
        """Demote health and emit HEALTH_CHANGED once the port goes silent."""
        healthy = self.is_healthy()
        if self._healthy and not healthy and self._state is PortState.OPEN:
            self._healthy = False
            silence = self._clock() - self._last_data_time
            logger.warning(f"[{self._path}] No data for {silence:.0f}s, marking unhealthy")
            self._emit(PortEventType.HEALTH_CHANGED, healthy=False)
        return healthy

    # ========================================================================
    # Write
    # ========================================================================

    def enqueue_write(self, data: bytes) -> asyncio.Future:
        """
        Queue bytes for the device.

        Returns:
            Future resolved when the bytes were handed to the utility

        Raises:
            PortClosedError: If the port is not open
            WriteBufferOverflowError: If MAX_WRITE_BUFFER writes are pending
        """
        if self._state is not PortState.OPEN:
            raise PortClosedError("Port not open", path=self._path)
        if len(self._write_queue) >= self._max_write_buffer:
            raise WriteBufferOverflowError("Write buffer overflow", path=self._path)

        future = asyncio.get_running_loop().create_future()
        self._write_queue.append((bytes(data), future))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_writes())
        return future

    async def write(self, data: bytes) -> None:
        """Write bytes and wait until they were delivered to the utility."""
        await self.enqueue_write(data)

    async def _drain_writes(self) -> None:
        while self._write_queue and self._state is PortState.OPEN:
            data, future = self._write_queue.popleft()
            if future.done():
                continue
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except OSError as e:
                error = SerialPortError(f"Write failed: {e}", path=self._path)
                logger.error(f"[{self._path}] {error}")
                if not future.done():
                    future.set_exception(error)
                self._emit(PortEventType.ERROR, error=error)
                continue
            if not future.done():
                future.set_result(None)
            await asyncio.sleep(self._write_delay)

    def _reject_pending_writes(self, error: SerialPortError) -> None:
        while self._write_queue:
            _, future = self._write_queue.popleft()
            if not future.done():
                future.set_exception(error)

    # ========================================================================
    # Read stream
    # ========================================================================

    async def receive_stream(self) -> AsyncIterator[bytes]:
        """
        Iterate over inbound chunks until the port closes.

        Raises:
            PortClosedError: If the port is not open
        """
        if self._state is not PortState.OPEN:
            raise PortClosedError("Port not open", path=self._path)

        queue: asyncio.Queue = asyncio.Queue()
        self._streams.append(queue)
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk
        finally:
            if queue in self._streams:
                self._streams.remove(queue)

    def _end_streams(self) -> None:
        for queue in self._streams:
            queue.put_nowait(None)
        self._streams = []

    # ========================================================================
    # Close
    # ========================================================================

    async def close(self) -> None:
        """
        Close the port. Safe to call repeatedly.

        Pending writes fail with PortClosedError; the utility process is
        terminated, then killed after the grace period.
        """
        if self._state is PortState.OPENING:
            self._abort_open = True
            return
        if self._state is not PortState.OPEN and self._process is None:
            return

        self._state = PortState.CLOSING
        await self._cancel_tasks(
            self._health_task, self._stdout_task, self._stderr_task, self._exit_task, self._drain_task
        )
        self._reject_pending_writes(PortClosedError("Port closed", path=self._path))
        await self._terminate_process()
        self._remove_lock_file()
        self._end_streams()

        self._state = PortState.CLOSED
        self._healthy = False
        logger.info(f"Closed {self._path}")
        self._emit(PortEventType.CLOSE)

    async def forget(self) -> None:
        """Close the port, drop all callbacks and refuse further opens."""
        self._forgotten = True
        await self.close()
        self._event_callbacks.clear()

    async def _terminate_process(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return

        if process.stdin is not None:
            process.stdin.close()

        if process.returncode is not None:
            return

        self._runner.terminate(process)
        try:
            await asyncio.wait_for(process.wait(), self._close_grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                f"[{self._path}] Utility did not exit within {self._close_grace_period}s, killing"
            )
            self._runner.kill(process)
            await process.wait()

    def _remove_lock_file(self) -> None:
        lock_file = self.commands.lock_file(self._path)
        if lock_file is None or not lock_file.exists():
            return
        try:
            lock_file.unlink()
            logger.debug(f"Removed lock file {lock_file}")
        except OSError as e:
            logger.warning(f"Could not remove lock file {lock_file}: {e}")

    @staticmethod
    async def _cancel_tasks(*tasks: Optional[asyncio.Task]) -> None:
        current = asyncio.current_task()
        pending = [task for task in tasks if task is not None and task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ========================================================================
    # Info and control
    # ========================================================================

    def get_info(self) -> PortInfo:
        """Port descriptor with current health and retry counters."""
        return dataclasses.replace(
            self._port_info,
            is_healthy=self.is_healthy(),
            last_data_time=self._last_data_time or None,
            reconnect_attempts=self._reconnect_attempts,
        )

    async def reconfigure(self, **changes) -> None:
        """
        Change line options, reopening the port if it is open.

        Raises:
            ValueError: If the new options are invalid (e.g. baud out of range)
        """
        options = dataclasses.replace(self._options, **changes)
        was_open = self.is_open
        if was_open:
            await self.close()
        self._options = options
        logger.info(f"[{self._path}] Reconfigured: {options}")
        if was_open:
            await self.open()

    async def set_signals(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> bool:
        """
        Best-effort control of the DTR/RTS modem lines.

        Returns:
            True if the utility accepted the change
        """
        args = self.commands.signal_args(self._path, dtr, rts)
        if args is None:
            logger.debug(f"[{self._path}] Modem line control not supported here")
            return False
        result = await self._runner.run(args, timeout=COMMAND_TIMEOUT)
        if not result.ok:
            logger.debug(f"[{self._path}] Could not set modem lines: {result.stderr.strip()}")
            return False
        return True

    @staticmethod
    async def list_ports(
        platform_name: Optional[str] = None,
        runner: Optional[SubprocessRunner] = None,
    ) -> list[PortInfo]:
        """
        List serial ports present on the system.

        Returns:
            PortInfo per device; an empty list if listing fails
        """
        runner = runner or SubprocessRunner()
        try:
            commands = get_platform_commands(platform_name)
            result = await runner.run(commands.list_args(), timeout=COMMAND_TIMEOUT)
        except SerialPortError as e:
            logger.warning(f"Failed to list serial ports: {e}")
            return []

        ports = [
            PortInfo(path=path, manufacturer=guess_manufacturer(path))
            for path in parse_port_listing(result.stdout)
        ]
        return enrich_port_info(ports)
