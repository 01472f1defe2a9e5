"""
Shared fixtures for thermologger tests.
"""

import pytest

from thermologger.controllers.connection_recovery import RetryPolicy
from thermologger.communication.serial_port import ProcessSerialPort
from thermologger.utils.error_handler import ErrorHandler

from .helpers import FakeClock, FakeRunner, RecordingSleep


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def error_handler():
    return ErrorHandler()


@pytest.fixture
async def make_port(fake_runner, fake_clock, recording_sleep):
    """
    Factory for ProcessSerialPort instances wired to fakes.

    Ports created through the factory are closed after the test.
    """
    ports = []

    def factory(path="/dev/ttyUSB0", **kwargs):
        kwargs.setdefault("platform_name", "linux")
        kwargs.setdefault("runner", fake_runner)
        kwargs.setdefault("clock", fake_clock)
        kwargs.setdefault("sleep", recording_sleep)
        kwargs.setdefault("settle_delay", 0)
        kwargs.setdefault("write_delay", 0)
        kwargs.setdefault("retry_policy", RetryPolicy())
        port = ProcessSerialPort(path, **kwargs)
        ports.append(port)
        return port

    yield factory

    for port in ports:
        await port.close()


@pytest.fixture
async def open_port(make_port):
    """An open port on /dev/ttyUSB0, closed on teardown."""
    port = make_port()
    await port.open()
    return port
