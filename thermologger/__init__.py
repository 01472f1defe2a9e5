"""
HH-4208SD Thermocouple Logger

Acquisition core for one or more HH-4208SD 12-channel thermocouple
dataloggers: frame parsing, process-backed serial ports, port discovery and
the live channel state store.
"""

__version__ = "1.0.0"
