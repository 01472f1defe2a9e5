"""
Acquisition configuration.

JSON layout:

    {
      "dataloggers": [
        {
          "id": "primary",
          "name": "Datalogger 1",
          "serial": {"path": "/dev/ttyUSB0", "baudRate": 9600},
          "thermocouples": [{"name": "Oven", "type": "K", "channel": 1}],
          "autoDetected": false
        }
      ],
      "globalSettings": {"connectionTimeout": 60, "defaultThermocoupleType": "K"}
    }

The legacy single-logger layout ({"serial": ..., "thermocouples": [...]}) is
migrated on load.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..communication.protocol import (
    CHANNEL_COUNT,
    default_datalogger_name,
    extract_datalogger_number,
)
from ..communication.transport_base import BAUD_RATE_MAX, BAUD_RATE_MIN, DEFAULT_BAUD_RATE

logger = logging.getLogger(__name__)


CONFIG_ENV_VAR = "THERMOLOGGER_CONFIG"
DEFAULT_CONFIG_PATH = "./config.json"
DEFAULT_CONNECTION_TIMEOUT = 60
DEFAULT_THERMOCOUPLE_TYPE = "K"
DEFAULT_DATALOGGER_ID = "default"


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


@dataclass(frozen=True)
class ChannelConfig:
    """User configuration for one thermocouple channel."""
    name: str
    type: str
    channel_number: int


@dataclass(frozen=True)
class DataloggerDescriptor:
    """One physical datalogger and its channel overrides."""
    id: str
    display_name: str
    device_path: str
    baud_rate: int = DEFAULT_BAUD_RATE
    channels: tuple = ()
    auto_detected: bool = False

    @property
    def number(self) -> int:
        """Datalogger number used in default channel names (D{n}-T{c})."""
        return int(extract_datalogger_number(self.display_name))

    def channel_for(self, channel_number: int) -> Optional[ChannelConfig]:
        for channel in self.channels:
            if channel.channel_number == channel_number:
                return channel
        return None


@dataclass(frozen=True)
class GlobalSettings:
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT
    default_thermocouple_type: str = DEFAULT_THERMOCOUPLE_TYPE


@dataclass
class AppConfig:
    dataloggers: List[DataloggerDescriptor] = field(default_factory=list)
    global_settings: GlobalSettings = field(default_factory=GlobalSettings)

    def get_datalogger(self, datalogger_id: str) -> Optional[DataloggerDescriptor]:
        for datalogger in self.dataloggers:
            if datalogger.id == datalogger_id:
                return datalogger
        return None


# ============================================================================
# Validation and migration
# ============================================================================

class ConfigValidator:
    """Structural validation of configuration dictionaries."""

    @staticmethod
    def validate(data: Any) -> List[str]:
        """
        Validate a configuration dictionary.

        Returns:
            List of error messages, empty if valid
        """
        if not isinstance(data, dict):
            return ["Configuration must be a JSON object"]

        errors = []
        dataloggers = data.get("dataloggers")
        if not isinstance(dataloggers, list):
            return ["Config must have a 'dataloggers' array"]

        seen_ids = set()
        for index, datalogger in enumerate(dataloggers):
            errors.extend(ConfigValidator._validate_datalogger(index, datalogger, seen_ids))

        settings = data.get("globalSettings", {})
        if not isinstance(settings, dict):
            errors.append("'globalSettings' must be an object")
        else:
            timeout = settings.get("connectionTimeout", DEFAULT_CONNECTION_TIMEOUT)
            if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
                errors.append(f"globalSettings.connectionTimeout must be a positive number, got {timeout!r}")
            tc_type = settings.get("defaultThermocoupleType", DEFAULT_THERMOCOUPLE_TYPE)
            if not isinstance(tc_type, str) or not tc_type:
                errors.append("globalSettings.defaultThermocoupleType must be a non-empty string")

        return errors

    @staticmethod
    def _validate_datalogger(index: int, datalogger: Any, seen_ids: set) -> List[str]:
        where = f"dataloggers[{index}]"
        if not isinstance(datalogger, dict):
            return [f"{where} must be an object"]

        errors = []
        datalogger_id = datalogger.get("id")
        if not isinstance(datalogger_id, str) or not datalogger_id:
            errors.append(f"{where}.id must be a non-empty string")
        elif datalogger_id in seen_ids:
            errors.append(f"{where}.id '{datalogger_id}' is duplicated")
        else:
            seen_ids.add(datalogger_id)

        serial = datalogger.get("serial")
        if not isinstance(serial, dict) or not isinstance(serial.get("path"), str):
            errors.append(f"{where}.serial must have a string 'path'")
        else:
            baud = serial.get("baudRate", DEFAULT_BAUD_RATE)
            if not isinstance(baud, int) or isinstance(baud, bool) or not BAUD_RATE_MIN <= baud <= BAUD_RATE_MAX:
                errors.append(f"{where}.serial.baudRate is invalid: {baud!r}")

        thermocouples = datalogger.get("thermocouples", [])
        if not isinstance(thermocouples, list):
            errors.append(f"{where}.thermocouples must be an array")
            return errors

        seen_channels = set()
        for tc in thermocouples:
            if (
                not isinstance(tc, dict)
                or not isinstance(tc.get("name"), str)
                or not isinstance(tc.get("type"), str)
                or not isinstance(tc.get("channel"), int)
                or isinstance(tc.get("channel"), bool)
                or not 1 <= tc["channel"] <= CHANNEL_COUNT
            ):
                errors.append(f"{where}: invalid thermocouple config: {json.dumps(tc)}")
                continue
            if tc["channel"] in seen_channels:
                errors.append(f"{where}: channel {tc['channel']} configured twice")
            seen_channels.add(tc["channel"])

        return errors


class ConfigMigration:
    """Upgrades older configuration layouts."""

    @staticmethod
    def is_legacy(data: Dict[str, Any]) -> bool:
        return isinstance(data, dict) and "dataloggers" not in data and "serial" in data

    @staticmethod
    def migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
        """Wrap a single-logger {serial, thermocouples} config as one datalogger."""
        legacy = copy.deepcopy(data)
        return {
            "dataloggers": [
                {
                    "id": "primary",
                    "name": default_datalogger_name(1),
                    "serial": legacy.get("serial", {}),
                    "thermocouples": legacy.get("thermocouples", []),
                    "autoDetected": False,
                }
            ],
            "globalSettings": legacy.get("globalSettings", {}),
        }


# ============================================================================
# Loading
# ============================================================================

def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    """
    Build an AppConfig from a configuration dictionary.

    Raises:
        ConfigError: If validation fails
    """
    if ConfigMigration.is_legacy(data):
        data = ConfigMigration.migrate_legacy(data)
        logger.info("Migrated single-datalogger configuration")

    errors = ConfigValidator.validate(data)
    if errors:
        raise ConfigError("Configuration validation failed:\n" + "\n".join(errors), errors)

    dataloggers = []
    for index, entry in enumerate(data["dataloggers"], start=1):
        serial = entry["serial"]
        channels = tuple(
            ChannelConfig(name=tc["name"], type=tc["type"], channel_number=tc["channel"])
            for tc in entry.get("thermocouples", [])
        )
        dataloggers.append(DataloggerDescriptor(
            id=entry["id"],
            display_name=entry.get("name") or default_datalogger_name(index),
            device_path=serial["path"],
            baud_rate=serial.get("baudRate", DEFAULT_BAUD_RATE),
            channels=channels,
            auto_detected=bool(entry.get("autoDetected", False)),
        ))

    settings = data.get("globalSettings", {})
    global_settings = GlobalSettings(
        connection_timeout=settings.get("connectionTimeout", DEFAULT_CONNECTION_TIMEOUT),
        default_thermocouple_type=settings.get("defaultThermocoupleType", DEFAULT_THERMOCOUPLE_TYPE),
    )
    return AppConfig(dataloggers=dataloggers, global_settings=global_settings)


def load_config(filepath) -> AppConfig:
    """
    Load configuration from a JSON file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    path = Path(filepath)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {filepath}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"Invalid JSON in {filepath}: line {e.lineno}, column {e.colno}: {e.msg}"
        ) from e
    except OSError as e:
        raise ConfigError(f"Failed to read configuration {filepath}: {e}") from e

    config = config_from_dict(data)
    logger.info(f"Loaded configuration from {filepath} ({len(config.dataloggers)} dataloggers)")
    return config


def resolve_config_path(cli_value: Optional[str] = None) -> Path:
    """Config path from the CLI, else $THERMOLOGGER_CONFIG, else ./config.json."""
    return Path(cli_value or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


def is_default_config(config: AppConfig) -> bool:
    """True for the placeholder config that asks for auto-detection."""
    return (
        len(config.dataloggers) == 1
        and config.dataloggers[0].id == DEFAULT_DATALOGGER_ID
        and not config.dataloggers[0].channels
    )


def create_default_datalogger_config(
    datalogger_number: int,
    device_path: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
) -> DataloggerDescriptor:
    """
    Descriptor for an auto-detected datalogger.

    Carries no channel overrides: detected channels get default names and
    the global thermocouple type when their first reading is stored, and
    stay marked as auto-detected.
    """
    datalogger_id = "primary" if datalogger_number == 1 else f"datalogger{datalogger_number}"
    return DataloggerDescriptor(
        id=datalogger_id,
        display_name=default_datalogger_name(datalogger_number),
        device_path=device_path,
        baud_rate=baud_rate,
        auto_detected=True,
    )
