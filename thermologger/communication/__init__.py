"""
Thermologger Communication Package

Byte-level communication with HH-4208SD dataloggers.

Modules:
    protocol: Frame parsing and stream reassembly
    transport_base: Port types, events and the transport error taxonomy
    platform_commands: Per-OS serial utility command lines
    process_runner: Subprocess spawning and termination
    serial_port: Process-backed serial port driver

Example usage:
    from thermologger.communication import ProcessSerialPort, FrameAssembler

    port = ProcessSerialPort("/dev/ttyUSB0")
    assembler = FrameAssembler()
    await port.open()

    async for chunk in port.receive_stream():
        for reading in assembler.feed(chunk):
            print(reading)
"""

from .protocol import (
    FrameAssembler,
    ParsedReading,
    ParseError,
    ParseErrorKind,
    ProtocolError,
    feed,
    parse_frame,
)
from .transport_base import (
    PortEvent,
    PortEventType,
    PortInfo,
    SerialOptions,
    SerialPortError,
    TransportError,
)
from .serial_port import ProcessSerialPort

__all__ = [
    # Protocol
    "FrameAssembler",
    "ParsedReading",
    "ParseError",
    "ParseErrorKind",
    "ProtocolError",
    "feed",
    "parse_frame",
    # Transport
    "PortEvent",
    "PortEventType",
    "PortInfo",
    "SerialOptions",
    "SerialPortError",
    "TransportError",
    "ProcessSerialPort",
]
