"""
HH-4208SD Frame Protocol

This module turns the raw byte stream of an HH-4208SD 12-channel thermocouple
datalogger into validated temperature readings.

Frame Format:
    +------+---------+--------+--------+----------+---------+---------+------+
    | STX  | Channel | Prefix | Unit   | Polarity | Decimal | Payload | CR   |
    | 0x02 | 2 hex   | 1 char | 2 char | 1 char   | 1 char  | N char  | 0x0D |
    +------+---------+--------+--------+----------+---------+---------+------+

    The two channel characters after STX double as the first two bytes of the
    body, so the body (everything after STX) reads:
        prefix(1) channelDigit(1) unitCode(2) polarity(1) decimalPos(1) payload

Channel codes "41".."49", "4A", "4B", "4C" map to channels 1..12.
Unit "01" is Celsius, "02" Fahrenheit. Polarity "1" is negative.
The temperature is the last three digits of the payload divided by ten.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


# Frame constants
STX = 0x02
FRAME_TERMINATOR = b"\r"
FRAME_MIN_LENGTH = 3          # STX + 2-char channel code
FRAME_BODY_MIN = 6            # prefix, channel digit, unit(2), polarity, decimal

# Physical range of the K/J/T/E family probes
TEMPERATURE_MIN = -200.0
TEMPERATURE_MAX = 2000.0

TEMPERATURE_DIGITS = 3

CHANNEL_MAP = {
    "41": 1,
    "42": 2,
    "43": 3,
    "44": 4,
    "45": 5,
    "46": 6,
    "47": 7,
    "48": 8,
    "49": 9,
    "4A": 10,
    "4B": 11,
    "4C": 12,
}

CHANNEL_CODES = {number: code for code, number in CHANNEL_MAP.items()}

CHANNEL_COUNT = len(CHANNEL_MAP)


class ProtocolError(Exception):
    """Raised when the parser is misused (not for malformed frames)."""
    pass


class TemperatureUnit(Enum):
    """Unit reported in the frame's unit field."""
    CELSIUS = "C"
    FAHRENHEIT = "F"
    UNKNOWN = "Unknown"


class Polarity(Enum):
    """Sign of the reported temperature."""
    POSITIVE = "+"
    NEGATIVE = "-"


class ParseErrorKind(Enum):
    """Why a frame was rejected."""
    TOO_SHORT = "too_short"
    MISSING_STX = "missing_stx"
    INVALID_CHANNEL = "invalid_channel"
    BODY_TOO_SHORT = "body_too_short"
    NO_TEMPERATURE_DIGITS = "no_temperature_digits"
    OUT_OF_RANGE = "out_of_range"


UNIT_CODES = {
    "01": TemperatureUnit.CELSIUS,
    "02": TemperatureUnit.FAHRENHEIT,
}


@dataclass(frozen=True)
class ParsedReading:
    """A validated temperature reading from one frame."""
    channel_code: str
    channel_number: int
    temperature: float
    unit: TemperatureUnit
    polarity: Polarity
    decimal_point: Optional[int] = None
    raw_payload: bytes = b""

    @property
    def is_zero(self) -> bool:
        """True for the 0.0 value an idle channel reports."""
        return self.temperature == 0.0


@dataclass(frozen=True)
class ParseError:
    """A rejected frame. Never carries a partial reading."""
    kind: ParseErrorKind
    message: str
    channel_code: Optional[str] = None


ParseResult = Union[ParsedReading, ParseError]


# ============================================================================
# Channel helpers
# ============================================================================

def channel_number_for(code: str) -> Optional[int]:
    """Map a channel code ("41".."4C", any case) to 1..12."""
    return CHANNEL_MAP.get(code.upper())


def channel_code_for(number: int) -> Optional[str]:
    """Map a channel number 1..12 back to its wire code."""
    return CHANNEL_CODES.get(number)


def default_thermocouple_name(datalogger_number: int, channel_number: int) -> str:
    """Default display name for an unconfigured channel, e.g. "D2-T7"."""
    return f"D{datalogger_number}-T{channel_number}"


def default_datalogger_name(datalogger_number: int) -> str:
    return f"Datalogger {datalogger_number}"


_DATALOGGER_NAME_PATTERNS = (
    re.compile(r"Datalogger (\d+)"),
    re.compile(r"D(\d+)"),
    re.compile(r"(\d+)"),
)


def extract_datalogger_number(name: str) -> str:
    """
    Recover the datalogger number from a display name.

    Tries "Datalogger N", then "DN", then any run of digits. Falls back to "1".
    """
    for pattern in _DATALOGGER_NAME_PATTERNS:
        match = pattern.search(name or "")
        if match:
            return match.group(1)
    return "1"


# ============================================================================
# Frame parsing
# ============================================================================

def _decode(data: bytes) -> str:
    return data.decode("ascii", errors="replace")


def reading_from_fields(
    channel_code: str,
    temperature: float,
    unit: TemperatureUnit = TemperatureUnit.CELSIUS,
    polarity: Polarity = Polarity.POSITIVE,
    decimal_point: Optional[int] = None,
    raw_payload: bytes = b"",
) -> ParseResult:
    """
    Validate decoded frame fields and build a reading.

    Checks the channel code against the channel map and the temperature
    against [TEMPERATURE_MIN, TEMPERATURE_MAX] inclusive.
    """
    code = channel_code.upper()
    channel_number = CHANNEL_MAP.get(code)
    if channel_number is None:
        return ParseError(
            ParseErrorKind.INVALID_CHANNEL,
            f"Invalid channel identifier: {channel_code!r}",
        )

    if not TEMPERATURE_MIN <= temperature <= TEMPERATURE_MAX:
        return ParseError(
            ParseErrorKind.OUT_OF_RANGE,
            f"Invalid temperature value: {temperature}",
            channel_code=code,
        )

    return ParsedReading(
        channel_code=code,
        channel_number=channel_number,
        temperature=temperature,
        unit=unit,
        polarity=polarity,
        decimal_point=decimal_point,
        raw_payload=raw_payload,
    )


def parse_frame(frame: bytes) -> ParseResult:
    """
    Parse one delimiter-free frame.

    Args:
        frame: Bytes of one frame, STX included, CR excluded

    Returns:
        ParsedReading on success, ParseError otherwise
    """
    if not isinstance(frame, (bytes, bytearray)):
        raise ProtocolError(f"Frame must be bytes, got {type(frame).__name__}")

    if len(frame) < FRAME_MIN_LENGTH:
        return ParseError(
            ParseErrorKind.TOO_SHORT,
            f"Message too short: {len(frame)} bytes",
        )

    if frame[0] != STX:
        return ParseError(
            ParseErrorKind.MISSING_STX,
            f"Missing STX header (got 0x{frame[0]:02X})",
        )

    channel_code = _decode(frame[1:3]).upper()
    if channel_code not in CHANNEL_MAP:
        return ParseError(
            ParseErrorKind.INVALID_CHANNEL,
            f"Invalid channel identifier: {channel_code!r}",
        )

    body = bytes(frame[1:])
    if len(body) < FRAME_BODY_MIN:
        return ParseError(
            ParseErrorKind.BODY_TOO_SHORT,
            f"Message too short: {len(body)} chars, need at least {FRAME_BODY_MIN}",
            channel_code=channel_code,
        )

    unit = UNIT_CODES.get(_decode(body[2:4]), TemperatureUnit.UNKNOWN)
    polarity = Polarity.NEGATIVE if body[4:5] == b"1" else Polarity.POSITIVE

    decimal_char = body[5:6]
    decimal_point = int(decimal_char) if decimal_char.isdigit() else None

    payload = body[FRAME_BODY_MIN:]
    digits = bytes(b for b in payload if 0x30 <= b <= 0x39)
    if len(digits) < TEMPERATURE_DIGITS:
        return ParseError(
            ParseErrorKind.NO_TEMPERATURE_DIGITS,
            f"No temperature digits found in {_decode(payload)!r}",
            channel_code=channel_code,
        )

    magnitude = int(digits[-TEMPERATURE_DIGITS:]) / 10
    # 0.0 stays positive so zero detection is sign-agnostic
    temperature = -magnitude if polarity is Polarity.NEGATIVE and magnitude else magnitude

    return reading_from_fields(
        channel_code,
        temperature,
        unit=unit,
        polarity=polarity,
        decimal_point=decimal_point,
        raw_payload=payload,
    )


def split_frames(carry: bytes, incoming: bytes) -> tuple[list[bytes], bytes]:
    """
    Split buffered bytes on the frame terminator.

    Returns:
        (complete non-empty segments, trailing unterminated remainder)
    """
    segments = (carry + incoming).split(FRAME_TERMINATOR)
    remainder = segments.pop()
    return [segment for segment in segments if segment], remainder


def feed(carry: bytes, incoming: bytes) -> tuple[list[ParseResult], bytes]:
    """
    Feed a chunk into the stream decoder.

    The results for any partition of a stream into chunks are the same as for
    the whole stream fed at once.

    Args:
        carry: Unterminated bytes left over from the previous call
        incoming: Newly received bytes

    Returns:
        (parse results in stream order, new carry)
    """
    frames, remainder = split_frames(carry, incoming)
    return [parse_frame(frame) for frame in frames], remainder


class FrameAssembler:
    """
    Per-port holder of the carry buffer.

    Each port owns one assembler; assemblers are never shared, so bytes from
    different devices never merge into one frame.
    """

    def __init__(self):
        self._carry = b""

    @property
    def carry(self) -> bytes:
        return self._carry

    @property
    def pending_bytes(self) -> int:
        return len(self._carry)

    def feed(self, data: bytes) -> list[ParseResult]:
        results, self._carry = feed(self._carry, data)
        return results

    def reset(self) -> None:
        """Drop any partial frame (e.g. after the stream was interrupted)."""
        self._carry = b""
