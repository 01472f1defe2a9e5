"""
Unit tests for the HH-4208SD frame protocol.
"""

import pytest

from thermologger.communication.protocol import (
    CHANNEL_MAP,
    FrameAssembler,
    ParsedReading,
    ParseError,
    ParseErrorKind,
    Polarity,
    ProtocolError,
    TemperatureUnit,
    channel_code_for,
    channel_number_for,
    default_datalogger_name,
    default_thermocouple_name,
    extract_datalogger_number,
    feed,
    parse_frame,
    reading_from_fields,
    split_frames,
)

from .helpers import ALL_CODES, make_frame


def _frame(**kwargs) -> bytes:
    """Frame without its terminator, as parse_frame receives it."""
    return make_frame(terminated=False, **kwargs)


class TestChannelMap:
    """Tests for channel code mapping."""

    def test_twelve_channels(self):
        """Codes 41..4C map onto 1..12."""
        assert sorted(CHANNEL_MAP.values()) == list(range(1, 13))
        assert [CHANNEL_MAP[code] for code in ALL_CODES] == list(range(1, 13))

    def test_round_trip(self):
        for number in range(1, 13):
            assert channel_number_for(channel_code_for(number)) == number

    def test_lowercase_code(self):
        assert channel_number_for("4a") == 10

    def test_unknown(self):
        assert channel_number_for("4D") is None
        assert channel_code_for(13) is None


class TestParseFrame:
    """Tests for parse_frame."""

    def test_basic_reading(self):
        """Channel 41, Celsius, positive, payload ending 123 reads 12.3."""
        result = parse_frame(b"\x024101010005123")

        assert isinstance(result, ParsedReading)
        assert result.channel_code == "41"
        assert result.channel_number == 1
        assert result.temperature == pytest.approx(12.3)
        assert result.unit is TemperatureUnit.CELSIUS
        assert result.polarity is Polarity.POSITIVE
        assert result.decimal_point == 1

    def test_last_channel(self):
        result = parse_frame(_frame(channel_code="4C", tenths=875))
        assert result.channel_number == 12
        assert result.temperature == pytest.approx(87.5)

    def test_lowercase_channel_code(self):
        result = parse_frame(_frame(channel_code="4b"))
        assert isinstance(result, ParsedReading)
        assert result.channel_code == "4B"
        assert result.channel_number == 11

    def test_fahrenheit(self):
        result = parse_frame(_frame(unit="02"))
        assert result.unit is TemperatureUnit.FAHRENHEIT

    def test_unknown_unit_is_valid(self):
        result = parse_frame(_frame(unit="07"))
        assert isinstance(result, ParsedReading)
        assert result.unit is TemperatureUnit.UNKNOWN

    def test_negative_polarity(self):
        result = parse_frame(_frame(polarity="1", tenths=456))
        assert result.temperature == pytest.approx(-45.6)
        assert result.polarity is Polarity.NEGATIVE

    def test_unexpected_polarity_defaults_positive(self):
        result = parse_frame(_frame(polarity="7", tenths=456))
        assert result.temperature == pytest.approx(45.6)
        assert result.polarity is Polarity.POSITIVE

    def test_negative_zero_is_zero(self):
        result = parse_frame(_frame(polarity="1", tenths=0))
        assert result.temperature == 0.0
        assert result.is_zero

    def test_only_last_three_digits_count(self):
        """Leading payload digits are ignored."""
        result = parse_frame(_frame(payload=b"99999234"))
        assert result.temperature == pytest.approx(23.4)

    def test_non_digits_scrubbed(self):
        result = parse_frame(_frame(payload=b"00 1.2-3"))
        assert result.temperature == pytest.approx(12.3)

    def test_non_digit_decimal_position(self):
        result = parse_frame(_frame(decimal="x"))
        assert isinstance(result, ParsedReading)
        assert result.decimal_point is None

    def test_pure(self):
        """Same input, same output."""
        frame = _frame(channel_code="47", tenths=301)
        assert parse_frame(frame) == parse_frame(frame)

    def test_rejects_non_bytes(self):
        with pytest.raises(ProtocolError):
            parse_frame("\x024101010005123")


class TestParseFrameErrors:
    """Tests for rejected frames."""

    def test_too_short(self):
        result = parse_frame(b"\x024")
        assert isinstance(result, ParseError)
        assert result.kind is ParseErrorKind.TOO_SHORT

    def test_empty(self):
        assert parse_frame(b"").kind is ParseErrorKind.TOO_SHORT

    def test_missing_stx(self):
        result = parse_frame(b"X4101010005123")
        assert result.kind is ParseErrorKind.MISSING_STX

    @pytest.mark.parametrize("code", ["40", "4D", "50", "ZZ"])
    def test_invalid_channel(self, code):
        result = parse_frame(_frame(channel_code=code))
        assert isinstance(result, ParseError)
        assert result.kind is ParseErrorKind.INVALID_CHANNEL

    def test_body_too_short(self):
        result = parse_frame(b"\x024101")
        assert result.kind is ParseErrorKind.BODY_TOO_SHORT
        assert result.channel_code == "41"

    def test_no_digits(self):
        result = parse_frame(_frame(payload=b"abc"))
        assert result.kind is ParseErrorKind.NO_TEMPERATURE_DIGITS

    def test_fewer_than_three_digits(self):
        result = parse_frame(_frame(payload=b"a12"))
        assert result.kind is ParseErrorKind.NO_TEMPERATURE_DIGITS

    def test_error_is_never_a_reading(self):
        result = parse_frame(_frame(payload=b""))
        assert not isinstance(result, ParsedReading)


class TestReadingFromFields:
    """Tests for range and channel validation."""

    @pytest.mark.parametrize("temperature", [200.0, -200.0, 2000.0, 0.0])
    def test_boundaries_accepted(self, temperature):
        result = reading_from_fields("41", temperature)
        assert isinstance(result, ParsedReading)
        assert result.temperature == temperature

    @pytest.mark.parametrize("temperature", [2000.1, -200.1])
    def test_out_of_range_rejected(self, temperature):
        result = reading_from_fields("41", temperature)
        assert isinstance(result, ParseError)
        assert result.kind is ParseErrorKind.OUT_OF_RANGE

    def test_invalid_channel(self):
        result = reading_from_fields("4F", 20.0)
        assert result.kind is ParseErrorKind.INVALID_CHANNEL


class TestStreamDecoding:
    """Tests for split_frames / feed."""

    def test_partial_frame_carried(self):
        frame = make_frame(channel_code="42", tenths=250)
        results, carry = feed(b"", frame[:5])
        assert results == []
        assert carry == frame[:5]

        results, carry = feed(carry, frame[5:])
        assert len(results) == 1
        assert results[0].channel_number == 2
        assert carry == b""

    def test_two_frames_one_chunk(self):
        data = make_frame(channel_code="41", tenths=100) + make_frame(channel_code="42", tenths=200)
        results, carry = feed(b"", data)
        assert [r.channel_number for r in results] == [1, 2]
        assert carry == b""

    def test_empty_segments_skipped(self):
        frames, carry = split_frames(b"", b"\r\r" + make_frame() + b"\r")
        assert len(frames) == 1
        assert carry == b""

    def test_invalid_frame_reported_in_order(self):
        data = make_frame(channel_code="41") + b"garbage\r" + make_frame(channel_code="43")
        results, _ = feed(b"", data)
        assert isinstance(results[0], ParsedReading)
        assert isinstance(results[1], ParseError)
        assert isinstance(results[2], ParsedReading)

    def test_chunking_invariance(self):
        """Any split of the stream yields the same results as feeding it whole."""
        stream = b"".join(
            make_frame(channel_code=code, tenths=100 + i) for i, code in enumerate(ALL_CODES)
        ) + b"noise\r" + make_frame(channel_code="41", terminated=False)

        whole, whole_carry = feed(b"", stream)

        for size in (1, 2, 3, 7, 16, 50):
            carry = b""
            results = []
            for start in range(0, len(stream), size):
                chunk_results, carry = feed(carry, stream[start:start + size])
                results.extend(chunk_results)
            assert results == whole
            assert carry == whole_carry


class TestFrameAssembler:
    """Tests for the per-port carry holder."""

    def test_feed_and_carry(self):
        assembler = FrameAssembler()
        frame = make_frame()
        assert assembler.feed(frame[:4]) == []
        assert assembler.pending_bytes == 4
        results = assembler.feed(frame[4:])
        assert len(results) == 1
        assert assembler.carry == b""

    def test_reset(self):
        assembler = FrameAssembler()
        assembler.feed(b"\x0241")
        assembler.reset()
        assert assembler.carry == b""

    def test_assemblers_are_independent(self):
        """Bytes from one port never complete a frame on another."""
        first, second = FrameAssembler(), FrameAssembler()
        frame = make_frame()
        first.feed(frame[:6])

        [orphan] = second.feed(frame[6:])
        [reading] = first.feed(frame[6:])

        assert isinstance(orphan, ParseError)
        assert isinstance(reading, ParsedReading)


class TestNaming:
    """Tests for default names."""

    def test_thermocouple_name(self):
        assert default_thermocouple_name(2, 7) == "D2-T7"

    def test_datalogger_name(self):
        assert default_datalogger_name(3) == "Datalogger 3"

    @pytest.mark.parametrize("name, number", [
        ("Datalogger 4", "4"),
        ("D12 bench", "12"),
        ("Rack 7", "7"),
        ("Oven logger", "1"),
        ("", "1"),
    ])
    def test_extract_datalogger_number(self, name, number):
        assert extract_datalogger_number(name) == number
