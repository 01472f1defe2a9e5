"""
Channel state store.

Holds the latest reading per (datalogger, channel). Entries are created on
the first valid reading for a key and then updated in place; connectivity is
never stored, it is derived from the age of the last update.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from ..communication.protocol import ParsedReading, default_thermocouple_name
from .config import DataloggerDescriptor, GlobalSettings

logger = logging.getLogger(__name__)


NEVER = 0.0


@dataclass(frozen=True, order=True)
class ChannelKey:
    """Identity of a channel across all dataloggers."""
    datalogger_id: str
    channel_code: str

    def __str__(self) -> str:
        return f"{self.datalogger_id}:{self.channel_code}"


@dataclass
class ChannelEntry:
    """Mutable per-channel state. Only the store writes to it."""
    key: ChannelKey
    channel_number: int
    display_name: str
    thermocouple_type: str
    datalogger_name: str
    is_auto_detected: bool
    first_seen: float
    temperature: float = 0.0
    last_update: float = NEVER
    sample_count: int = 0

    def age_seconds(self, now: float) -> Optional[float]:
        if self.last_update == NEVER:
            return None
        return now - self.last_update


@dataclass(frozen=True)
class ChannelSnapshot:
    """Read-only view of a channel for the reporting layer."""
    key: ChannelKey
    channel_number: int
    display_name: str
    thermocouple_type: str
    datalogger_name: str
    is_auto_detected: bool
    temperature: float
    last_update: float
    first_seen: float
    sample_count: int
    connected: bool
    age_seconds: Optional[float]

    def to_dict(self) -> dict:
        """JSON-ready reading; temperature is None while disconnected."""
        return {
            "id": str(self.key),
            "name": self.display_name,
            "type": self.thermocouple_type,
            "channel": self.channel_number,
            "dataloggerId": self.key.datalogger_id,
            "dataloggerName": self.datalogger_name,
            "temperature": self.temperature if self.connected else None,
            "connected": self.connected,
            "lastUpdate": _iso(self.last_update),
            "ageSeconds": round(self.age_seconds) if self.age_seconds is not None else None,
            "detected": self.is_auto_detected,
            "firstSeen": _iso(self.first_seen),
            "dataCount": self.sample_count,
        }


@dataclass(frozen=True)
class DataloggerSummary:
    datalogger_id: str
    display_name: str
    channel_count: int
    connected_channels: int
    total_samples: int


def _iso(timestamp: float) -> Optional[str]:
    if timestamp == NEVER:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class ChannelStateStore:
    """
    Latest-reading table for every active channel.

    Owned by the acquisition supervisor; reporting code reads snapshots.
    """

    def __init__(
        self,
        dataloggers: Iterable[DataloggerDescriptor],
        settings: Optional[GlobalSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._dataloggers: Dict[str, DataloggerDescriptor] = {d.id: d for d in dataloggers}
        self._order = {datalogger_id: index for index, datalogger_id in enumerate(self._dataloggers)}
        self._settings = settings or GlobalSettings()
        self._clock = clock
        self._entries: Dict[ChannelKey, ChannelEntry] = {}

    @property
    def connection_timeout(self) -> float:
        return self._settings.connection_timeout

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: ChannelKey) -> bool:
        return key in self._entries

    def record(self, datalogger_id: str, reading: ParsedReading) -> ChannelEntry:
        """
        Store a reading from a datalogger.

        Creates the entry on first sight of the channel, then updates
        temperature, timestamp and sample count.

        Raises:
            KeyError: If the datalogger is unknown to the store
        """
        datalogger = self._dataloggers[datalogger_id]
        key = ChannelKey(datalogger_id, reading.channel_code)
        now = self._clock()

        entry = self._entries.get(key)
        if entry is None:
            entry = self._create_entry(datalogger, key, reading, now)
            self._entries[key] = entry

        entry.temperature = reading.temperature
        entry.last_update = now
        entry.sample_count += 1
        return entry

    def _create_entry(
        self,
        datalogger: DataloggerDescriptor,
        key: ChannelKey,
        reading: ParsedReading,
        now: float,
    ) -> ChannelEntry:
        configured = datalogger.channel_for(reading.channel_number)
        if configured is not None:
            name, tc_type, auto_detected = configured.name, configured.type, False
        else:
            name = default_thermocouple_name(datalogger.number, reading.channel_number)
            tc_type = self._settings.default_thermocouple_type
            auto_detected = True
            logger.info(f"[{datalogger.display_name}] Auto-detected channel {reading.channel_number} as {name}")

        return ChannelEntry(
            key=key,
            channel_number=reading.channel_number,
            display_name=name,
            thermocouple_type=tc_type,
            datalogger_name=datalogger.display_name,
            is_auto_detected=auto_detected,
            first_seen=now,
        )

    def get(self, datalogger_id: str, channel_code: str) -> Optional[ChannelEntry]:
        return self._entries.get(ChannelKey(datalogger_id, channel_code.upper()))

    def entries(self, datalogger_id: Optional[str] = None) -> List[ChannelEntry]:
        """Entries in datalogger order, then channel number."""
        selected = [
            entry for entry in self._entries.values()
            if datalogger_id is None or entry.key.datalogger_id == datalogger_id
        ]
        selected.sort(key=lambda e: (self._order.get(e.key.datalogger_id, len(self._order)), e.channel_number))
        return selected

    def is_connected(self, entry: ChannelEntry, now: Optional[float] = None) -> bool:
        """Updated at least once and within the connection timeout."""
        if entry.last_update == NEVER:
            return False
        now = self._clock() if now is None else now
        return (now - entry.last_update) < self.connection_timeout

    def snapshot(self, now: Optional[float] = None, datalogger_id: Optional[str] = None) -> List[ChannelSnapshot]:
        """Frozen copies of all entries with derived connectivity."""
        now = self._clock() if now is None else now
        return [
            ChannelSnapshot(
                key=entry.key,
                channel_number=entry.channel_number,
                display_name=entry.display_name,
                thermocouple_type=entry.thermocouple_type,
                datalogger_name=entry.datalogger_name,
                is_auto_detected=entry.is_auto_detected,
                temperature=entry.temperature,
                last_update=entry.last_update,
                first_seen=entry.first_seen,
                sample_count=entry.sample_count,
                connected=self.is_connected(entry, now),
                age_seconds=entry.age_seconds(now),
            )
            for entry in self.entries(datalogger_id)
        ]

    def datalogger_summary(self, datalogger_id: str, now: Optional[float] = None) -> DataloggerSummary:
        datalogger = self._dataloggers[datalogger_id]
        channels = self.snapshot(now, datalogger_id)
        return DataloggerSummary(
            datalogger_id=datalogger_id,
            display_name=datalogger.display_name,
            channel_count=len(channels),
            connected_channels=sum(1 for c in channels if c.connected),
            total_samples=sum(c.sample_count for c in channels),
        )
