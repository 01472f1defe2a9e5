"""
Shared fakes for thermologger tests.

Nothing here spawns processes or touches serial hardware: FakeRunner and
FakeProcess stand in for the OS utilities, FakeDriver for a whole port.
"""

import asyncio
from typing import Callable, List, Optional

from thermologger.communication.process_runner import CommandResult
from thermologger.communication.transport_base import (
    DeviceBusyError,
    PortEvent,
    PortEventType,
    ProcessExitedError,
    SerialPortError,
)


STX = b"\x02"


def make_frame(
    channel_code: str = "41",
    tenths: int = 123,
    unit: str = "01",
    polarity: str = "0",
    decimal: str = "1",
    payload: Optional[bytes] = None,
    terminated: bool = True,
) -> bytes:
    """Build an HH-4208SD frame; the temperature is `tenths` / 10."""
    if payload is None:
        payload = f"{tenths:08d}".encode()
    frame = STX + channel_code.encode() + unit.encode() + polarity.encode() + decimal.encode() + payload
    return frame + b"\r" if terminated else frame


ALL_CODES = ["41", "42", "43", "44", "45", "46", "47", "48", "49", "4A", "4B", "4C"]


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Drop-in for asyncio.sleep that returns at once and records delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ============================================================================
# Process fakes
# ============================================================================

class FakeStream:
    """Readable pipe end of a fake process."""

    def __init__(self):
        self._chunks: asyncio.Queue = asyncio.Queue()

    def feed_data(self, data: bytes) -> None:
        self._chunks.put_nowait(data)

    def feed_eof(self) -> None:
        self._chunks.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        return await self._chunks.get()


class FakeStdin:
    """Writable pipe end of a fake process."""

    def __init__(self):
        self.written: List[bytes] = []
        self.closed = False
        self.fail_with: Optional[Exception] = None

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.written.append(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    _next_pid = 40000

    def __init__(self, returncode: Optional[int] = None, stderr: bytes = b"", exit_on_terminate: bool = True):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self.stdin = FakeStdin()
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.exit_on_terminate = exit_on_terminate
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

        if stderr:
            self.stderr.feed_data(stderr)
        if returncode is not None:
            self.exit(returncode)

    def exit(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


def failing_process(message: bytes = b"cat: /dev/ttyUSB0: Device or resource busy\n", code: int = 1) -> FakeProcess:
    """A utility that printed a diagnostic and exited."""
    return FakeProcess(returncode=code, stderr=message)


class FakeRunner:
    """
    Scriptable SubprocessRunner.

    spawn() hands out the queued processes in order, then falls back to
    process_factory(). run() answers from `results`, keyed by the command
    name, defaulting to success. A list value is consumed one result per
    call, the last entry repeating.
    """

    def __init__(
        self,
        processes: Optional[list] = None,
        results: Optional[dict] = None,
        process_factory: Callable[[], FakeProcess] = FakeProcess,
    ):
        self.processes = list(processes or [])
        self.results = dict(results or {})
        self.process_factory = process_factory
        self.commands: List[List[str]] = []
        self.spawned: List[List[str]] = []
        self.spawned_processes: List[FakeProcess] = []
        self.terminated: List[FakeProcess] = []
        self.killed: List[FakeProcess] = []

    async def run(self, args, timeout=None) -> CommandResult:
        self.commands.append(list(args))
        result = self.results.get(args[0], CommandResult(returncode=0))
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def spawn(self, args) -> FakeProcess:
        self.spawned.append(list(args))
        item = self.processes.pop(0) if self.processes else self.process_factory()
        if isinstance(item, Exception):
            raise item
        self.spawned_processes.append(item)
        return item

    def terminate(self, process: FakeProcess) -> None:
        self.terminated.append(process)
        process.terminated = True
        if process.exit_on_terminate:
            process.exit(-15)

    def kill(self, process: FakeProcess) -> None:
        self.killed.append(process)
        process.killed = True
        process.exit(-9)


# ============================================================================
# Driver fake
# ============================================================================

class FakeDriver:
    """
    In-memory port driver with the ProcessSerialPort event surface.

    `open_errors` are raised by successive open() calls (None = succeed);
    `chunks` are delivered as DATA events right after a successful open.
    """

    def __init__(self, path: str, baud_rate: int = 9600, open_errors=None, chunks=()):
        self.path = path
        self.baud_rate = baud_rate
        self.open_errors = list(open_errors or [])
        self.chunks = list(chunks)
        self.is_open = False
        self.healthy = True
        self.open_calls = 0
        self.close_calls = 0
        self._callbacks = []

    def add_event_callback(self, callback) -> None:
        self._callbacks.append(callback)

    def remove_event_callback(self, callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def emit(self, event_type: PortEventType, **kwargs) -> None:
        event = PortEvent(type=event_type, path=self.path, **kwargs)
        for callback in list(self._callbacks):
            callback(event)

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_errors:
            error = self.open_errors.pop(0)
            if error is not None:
                raise error
        self.is_open = True
        self.emit(PortEventType.OPEN)
        for chunk in self.chunks:
            self.emit_data(chunk)

    async def close(self) -> None:
        self.close_calls += 1
        if not self.is_open:
            return
        self.is_open = False
        self.emit(PortEventType.CLOSE)

    def is_healthy(self) -> bool:
        return self.is_open and self.healthy

    def emit_data(self, data: bytes) -> None:
        self.emit(PortEventType.DATA, data=data)

    def crash(self, code: int = 1) -> None:
        """Simulate the utility process dying."""
        self.is_open = False
        self.emit(
            PortEventType.ERROR,
            error=ProcessExitedError(f"Process exited with code {code}", path=self.path),
        )


def busy_error(path: str = "/dev/ttyUSB0") -> SerialPortError:
    return DeviceBusyError(f"Port is in use: {path}", path=path)
