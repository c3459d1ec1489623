"""Loading and checking of the YAML device description."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .interface import INPUT, OUTPUT, Offsets

_TABLES = ("digital_input", "digital_output", "analog_input", "analog_output")


class ConfigError(Exception):
    """The device description is missing, unreadable or malformed."""


@dataclass(frozen=True)
class IOEntry:
    """One declared IO; ``address`` is zero-based, or -1 when none was given."""

    name: str
    io_type: str
    data_type: str
    address: int


@dataclass(frozen=True)
class DeviceConfig:
    """Everything the bridge needs to know about one device."""

    name: str
    address: str
    port: int
    nb_input_coils: int
    nb_output_coils: int
    nb_input_registers: int
    nb_output_registers: int
    offsets: Offsets
    publish_rate: int
    refresh_rate: int
    state_rate: int
    publish_on_timer: tuple[str, ...] = ()
    publish_on_event: tuple[str, ...] = ()
    ios: tuple[IOEntry, ...] = field(default_factory=tuple)

    @staticmethod
    def _period(rate: int) -> float:
        return int(1000.0 / rate) / 1000.0

    @property
    def publish_period(self) -> float:
        """Seconds between two timer reports."""
        return self._period(self.publish_rate)

    @property
    def refresh_period(self) -> float:
        """Seconds between two memory refreshes."""
        return self._period(self.refresh_rate)

    @property
    def state_period(self) -> float:
        """Seconds between two state reports."""
        return self._period(self.state_rate)


def _as_int(value: Any, where: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ConfigError(f"{where}: expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ConfigError(f"{where}: expected an integer, got {value!r}")


def _as_str(value: Any, where: str) -> str:
    if value is None or isinstance(value, (Mapping, list, tuple)):
        raise ConfigError(f"{where}: expected a scalar, got {value!r}")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _require(section: Mapping[str, Any], key: str, where: str) -> Any:
    if not isinstance(section, Mapping) or key not in section:
        raise ConfigError(f"{where}: missing key {key!r}")
    return section[key]


def _name_list(value: Any, where: str) -> tuple[str, ...]:
    if value is None or isinstance(value, (str, int, float, bool)):
        return ()
    if isinstance(value, list):
        return tuple(_as_str(item, where) for item in value)
    if isinstance(value, Mapping) and not value:
        return ()
    raise ConfigError(f"{where}: expected a list of IO names")


def _io_entries(section: Any, io_type: str, where: str) -> list[IOEntry]:
    if not isinstance(section, Mapping):
        return []
    entries = []
    for data_type, ios in section.items():
        data_type = _as_str(data_type, where)
        if not isinstance(ios, Mapping):
            continue
        for io_name, raw in ios.items():
            io_where = f"{where}.{data_type}.{io_name}"
            if raw is None or isinstance(raw, (Mapping, list)):
                address = -1
            else:
                address = _as_int(raw, io_where) - 1
            entries.append(IOEntry(_as_str(io_name, io_where), io_type, data_type, address))
    return entries


def _rate(device: Mapping[str, Any], key: str, where: str) -> int:
    rate = _as_int(_require(device, key, where), f"{where}.{key}")
    if rate <= 0:
        raise ConfigError(f"{where}.{key}: rate must be positive, got {rate}")
    return rate


def parse_config(data: Any, name: str) -> DeviceConfig | None:
    """Build the description of device ``name`` from parsed YAML.

    Returns None when the document has no section for that device.
    """
    if not isinstance(data, Mapping) or name not in data:
        return None
    device = data[name]
    where = name
    if not isinstance(device, Mapping):
        raise ConfigError(f"{where}: device section must be a mapping")

    address = _as_str(_require(device, "address", where), f"{where}.address")
    port = _as_int(_require(device, "port", where), f"{where}.port")

    connected = _require(device, "connected_IO", where)
    counts = [
        _as_int(_require(connected, key, f"{where}.connected_IO"), f"{where}.connected_IO.{key}")
        for key in _TABLES
    ]
    for key, count in zip(_TABLES, counts):
        if count < 0:
            raise ConfigError(f"{where}.connected_IO.{key}: negative count {count}")

    offsets_section = _require(device, "offsets", where)
    offsets = Offsets(
        *(
            _as_int(_require(offsets_section, key, f"{where}.offsets"), f"{where}.offsets.{key}")
            for key in _TABLES
        )
    )

    on_timer = _name_list(device.get("publish_on_timer"), f"{where}.publish_on_timer")
    on_event = _name_list(device.get("publish_on_event"), f"{where}.publish_on_event")

    ios = _io_entries(device.get("input"), INPUT, f"{where}.input")
    ios += _io_entries(device.get("output"), OUTPUT, f"{where}.output")

    return DeviceConfig(
        name=name,
        address=address,
        port=port,
        nb_input_coils=counts[0],
        nb_output_coils=counts[1],
        nb_input_registers=counts[2],
        nb_output_registers=counts[3],
        offsets=offsets,
        publish_rate=_rate(device, "publish_rate", where),
        refresh_rate=_rate(device, "refresh_rate", where),
        state_rate=_rate(device, "state_rate", where),
        publish_on_timer=on_timer,
        publish_on_event=on_event,
        ios=tuple(ios),
    )


def load_config(path: str | Path, name: str) -> DeviceConfig | None:
    """Read a YAML file and return the description of device ``name``."""
    try:
        with open(path, encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read configuration file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    return parse_config(data, name)