"""
Heuristic ranking of serial ports as HH-4208SD candidates.

The HH-4208SD ships with an FTDI USB-serial cable; other common USB-serial
bridges are plausible replacements. Bluetooth and debug-console ports are
never dataloggers.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from ..communication.transport_base import PortInfo


HIGH_CONFIDENCE_SCORE = 20

FTDI_VENDOR_ID = 0x0403
FTDI_SCORE = 50

SECONDARY_VENDORS = {
    0x067B: "Prolific",
    0x10C4: "Silicon Labs",
    0x1A86: "WCH",
}
SECONDARY_VENDOR_SCORE = 25

OTHER_VENDOR_PENALTY = -10
UNKNOWN_VENDOR_PENALTY = -5
EXCLUDED_PENALTY = -100

PATH_HINTS = (
    ("usbserial", 20),
    ("ttyUSB", 15),
    ("usbmodem", 10),
    ("ttyACM", 10),
)

_COM_PORT = re.compile(r"^COM\d+$", re.IGNORECASE)


@dataclass(frozen=True)
class PortScore:
    """Score and the reasons behind it."""
    score: int
    rationale: Tuple[str, ...] = ()

    @property
    def is_candidate(self) -> bool:
        return self.score > 0

    @property
    def is_high_confidence(self) -> bool:
        return self.score >= HIGH_CONFIDENCE_SCORE

    def describe(self) -> str:
        return "; ".join(self.rationale) or "no matching hints"


def _is_excluded(text: str) -> bool:
    lowered = text.lower()
    return "bluetooth" in lowered or "debug" in lowered


def score_port(info: PortInfo) -> PortScore:
    """Score a port by vendor ID, path and manufacturer hints."""
    score = 0
    reasons = []

    if info.vendor_id == FTDI_VENDOR_ID:
        score += FTDI_SCORE
        reasons.append(f"FTDI chipset (+{FTDI_SCORE})")
    elif info.vendor_id in SECONDARY_VENDORS:
        score += SECONDARY_VENDOR_SCORE
        reasons.append(f"{SECONDARY_VENDORS[info.vendor_id]} USB-serial (+{SECONDARY_VENDOR_SCORE})")
    elif info.vendor_id is None:
        score += UNKNOWN_VENDOR_PENALTY
        reasons.append(f"unknown vendor ({UNKNOWN_VENDOR_PENALTY})")
    else:
        score += OTHER_VENDOR_PENALTY
        reasons.append(f"vendor {info.vendor_id_hex} ({OTHER_VENDOR_PENALTY})")

    for hint, bonus in PATH_HINTS:
        if hint in info.path:
            score += bonus
            reasons.append(f"{hint} path (+{bonus})")
            break
    else:
        if _COM_PORT.match(info.name):
            score += 5
            reasons.append("COM port (+5)")

    manufacturer = info.manufacturer or ""
    if "ftdi" in manufacturer.lower():
        score += 15
        reasons.append("FTDI manufacturer (+15)")
    elif any(name.lower() in manufacturer.lower() for name in SECONDARY_VENDORS.values()) \
            or "usb serial" in manufacturer.lower():
        score += 5
        reasons.append("USB-serial manufacturer (+5)")

    if _is_excluded(info.path) or _is_excluded(manufacturer):
        score += EXCLUDED_PENALTY
        reasons.append(f"Bluetooth/debug port ({EXCLUDED_PENALTY})")

    return PortScore(score=max(score, 0), rationale=tuple(reasons))


def rank_ports(ports: Iterable[PortInfo]) -> List[Tuple[PortInfo, PortScore]]:
    """Score ports, highest first. Ties keep enumeration order."""
    scored = [(port, score_port(port)) for port in ports]
    scored.sort(key=lambda item: item[1].score, reverse=True)
    return scored
