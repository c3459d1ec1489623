"""Cached view of a Modbus TCP device and its named inputs and outputs."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .protocol import (
    ILLEGAL_DATA_ADDRESS,
    SLAVE_OR_SERVER_FAILURE,
    ModbusError,
    ModbusTcpClient,
)

INPUT = "input"
OUTPUT = "output"
DIGITAL = "digital"
ANALOG = "analog"

IO_TYPES = frozenset({INPUT, OUTPUT})
DATA_TYPES = frozenset({DIGITAL, ANALOG})

DEFAULT_RETRY_DELAY = 1.0


class _Client(Protocol):
    def connect(self) -> None: ...
    def close(self) -> None: ...
    def read_input_bits(self, address: int, count: int) -> list[int]: ...
    def read_bits(self, address: int, count: int) -> list[int]: ...
    def read_input_registers(self, address: int, count: int) -> list[int]: ...
    def read_registers(self, address: int, count: int) -> list[int]: ...
    def write_bit(self, address: int, value: object) -> int: ...
    def write_register(self, address: int, value: int) -> int: ...
    def write_bits(self, address: int, values: Iterable[object]) -> int: ...
    def write_registers(self, address: int, values: Iterable[int]) -> int: ...


ClientFactory = Callable[[str, int], Any]


@dataclass(frozen=True)
class IODefinition:
    """A named IO: its direction, its data type and its zero-based address."""

    type: str
    data_type: str
    address: int

    def is_valid(self) -> bool:
        """True when type and data type are known and an address is given."""
        return self.type in IO_TYPES and self.data_type in DATA_TYPES and self.address != -1


@dataclass
class Offsets:
    """First device address of each IO table."""

    digital_input: int = 0
    digital_output: int = 0
    analog_input: int = 0
    analog_output: int = 0


@dataclass
class DeviceMemory:
    """Last values read from each IO table."""

    input_coils: list[int] = field(default_factory=list)
    output_coils: list[int] = field(default_factory=list)
    input_registers: list[int] = field(default_factory=list)
    output_registers: list[int] = field(default_factory=list)


def _at(values: list[int], address: int, what: str) -> int:
    if not 0 <= address < len(values):
        raise IndexError(f"{what} address {address} out of range (size {len(values)})")
    return values[address]


class ModbusInterface:
    """Thread-safe wrapper around a Modbus client with a local copy of the device memory."""

    def __init__(self, client_factory: ClientFactory | None = None) -> None:
        self._client_factory: ClientFactory = client_factory or ModbusTcpClient
        self._client: Any = None
        self._address = ""
        self._port = 0
        self._memory = DeviceMemory()
        self._offsets = Offsets()
        self._io: dict[str, IODefinition] = {}
        self._connected = False

        self._ctx_lock = threading.Lock()
        self._memory_lock = threading.Lock()
        self._offsets_lock = threading.Lock()
        self._io_lock = threading.Lock()
        self._state_lock = threading.Lock()

    # -- configuration -------------------------------------------------

    def set_context(self, address: str, port: int) -> None:
        """Create a new client for the device at ``address``:``port``."""
        with self._ctx_lock:
            self._address = address
            self._port = port
            self._client = self._client_factory(address, port)

    @property
    def context(self) -> tuple[str, int]:
        """The device address and port."""
        return self._address, self._port

    def set_device(
        self,
        nb_input_coils: int,
        nb_output_coils: int,
        nb_input_registers: int,
        nb_output_registers: int,
    ) -> None:
        """Size each IO table and reset its cached values to zero."""
        with self._memory_lock:
            self._memory = DeviceMemory(
                input_coils=[0] * nb_input_coils,
                output_coils=[0] * nb_output_coils,
                input_registers=[0] * nb_input_registers,
                output_registers=[0] * nb_output_registers,
            )

    def set_offsets(
        self, digital_input: int, digital_output: int, analog_input: int, analog_output: int
    ) -> None:
        """Set the first device address of each IO table."""
        with self._offsets_lock:
            self._offsets = Offsets(digital_input, digital_output, analog_input, analog_output)

    @property
    def offsets(self) -> Offsets:
        with self._offsets_lock:
            return Offsets(**vars(self._offsets))

    def add_io(self, name: str, io_type: str, data_type: str, address: int) -> None:
        """Declare an IO; an already declared name keeps its first definition."""
        with self._io_lock:
            self._io.setdefault(name, IODefinition(io_type, data_type, address))

    def verify_io(self) -> bool:
        """True when every declared IO has a known type, data type and an address."""
        return all(definition.is_valid() for definition in self.io_map().values())

    def has_io(self, name: str) -> bool:
        with self._io_lock:
            return name in self._io

    def io_map(self) -> dict[str, IODefinition]:
        """A copy of the declared IOs, by name."""
        with self._io_lock:
            return dict(self._io)

    # -- connection state ----------------------------------------------

    @property
    def connected(self) -> bool:
        with self._state_lock:
            return self._connected

    @connected.setter
    def connected(self, state: bool) -> None:
        with self._state_lock:
            self._connected = bool(state)

    def initiate_connection(self) -> bool:
        """Open the connection; return whether it succeeded."""
        with self._ctx_lock:
            client = self._client
            try:
                if client is None:
                    raise ModbusError("no device context set")
                client.connect()
                ok = True
            except (ModbusError, OSError):
                ok = False
        self.connected = ok
        return ok

    def restart_connection(self, retry_delay: float = DEFAULT_RETRY_DELAY) -> bool:
        """Close and reconnect, retrying every ``retry_delay`` seconds until it works."""
        try:
            self.connected = False
            with self._ctx_lock:
                client = self._client
                if client is None:
                    raise ModbusError("no device context set")
                client.close()
            while True:
                with self._ctx_lock:
                    try:
                        client.connect()
                        break
                    except (ModbusError, OSError):
                        pass
                time.sleep(retry_delay)
            self.connected = True
            return True
        except Exception:
            return False

    # -- memory ----------------------------------------------------------

    def update_memory(self) -> None:
        """Read all four IO tables from the device.

        Raises ModbusError with the server-failure code, and marks the
        connection as lost, if any read fails.
        """
        tables = (
            ("input_coils", "read_input_bits", "digital_input"),
            ("output_coils", "read_bits", "digital_output"),
            ("input_registers", "read_input_registers", "analog_input"),
            ("output_registers", "read_registers", "analog_output"),
        )
        for table, reader, offset_name in tables:
            with self._memory_lock:
                count = len(getattr(self._memory, table))
            with self._ctx_lock, self._offsets_lock:
                offset = getattr(self._offsets, offset_name)
                try:
                    if self._client is None:
                        raise ModbusError("no device context set")
                    values = list(getattr(self._client, reader)(offset, count))
                    if len(values) != count:
                        raise ModbusError("device returned an unexpected number of values")
                except (ModbusError, OSError, ValueError) as exc:
                    failure = exc
                else:
                    failure = None
                    with self._memory_lock:
                        setattr(self._memory, table, values)
            if failure is not None:
                self.connected = False
                raise ModbusError(
                    f"failed to read {table.replace('_', ' ')}: {failure}",
                    SLAVE_OR_SERVER_FAILURE,
                ) from failure

    def input_coil(self, address: int) -> int:
        with self._memory_lock:
            return _at(self._memory.input_coils, address, "input coil")

    def output_coil(self, address: int) -> int:
        with self._memory_lock:
            return _at(self._memory.output_coils, address, "output coil")

    def input_register(self, address: int) -> int:
        with self._memory_lock:
            return _at(self._memory.input_registers, address, "input register")

    def output_register(self, address: int) -> int:
        with self._memory_lock:
            return _at(self._memory.output_registers, address, "output register")

    def input_coils(self) -> list[int]:
        with self._memory_lock:
            return list(self._memory.input_coils)

    def output_coils(self) -> list[int]:
        with self._memory_lock:
            return list(self._memory.output_coils)

    def input_registers(self) -> list[int]:
        with self._memory_lock:
            return list(self._memory.input_registers)

    def output_registers(self) -> list[int]:
        with self._memory_lock:
            return list(self._memory.output_registers)

    # -- writes ----------------------------------------------------------

    def _call(self, method: str, *args: object) -> bool:
        with self._ctx_lock:
            if self._client is None:
                return False
            try:
                getattr(self._client, method)(*args)
            except (ModbusError, OSError):
                return False
            return True

    def write_output_coil(self, address: int, value: int) -> bool:
        """Write one coil at an absolute device address."""
        return self._call("write_bit", address, value)

    def write_output_register(self, address: int, value: int) -> bool:
        """Write one holding register at an absolute device address."""
        return self._call("write_register", address, value)

    def _write_table(self, table: str, offset_name: str, method: str, values: Iterable[int]) -> bool:
        with self._memory_lock:
            count = len(getattr(self._memory, table))
        values = list(values)
        if len(values) < count:
            raise ValueError(f"expected at least {count} values, got {len(values)}")
        with self._offsets_lock:
            offset = getattr(self._offsets, offset_name)
        return self._call(method, offset, values[:count])

    def write_output_coils(self, values: Iterable[int]) -> bool:
        """Write the whole output coil table starting at its offset."""
        return self._write_table("output_coils", "digital_output", "write_bits", values)

    def write_output_registers(self, values: Iterable[int]) -> bool:
        """Write the whole output register table starting at its offset."""
        return self._write_table("output_registers", "analog_output", "write_registers", values)

    # -- named IO ----------------------------------------------------------

    def io_value(self, name: str) -> int:
        """The cached value of a declared IO.

        Raises KeyError for an unknown name and ModbusError with the
        illegal-data-address code for an IO of unknown kind.
        """
        with self._io_lock:
            definition = self._io[name]
        readers = {
            (INPUT, DIGITAL): self.input_coil,
            (INPUT, ANALOG): self.input_register,
            (OUTPUT, DIGITAL): self.output_coil,
            (OUTPUT, ANALOG): self.output_register,
        }
        reader = readers.get((definition.type, definition.data_type))
        if reader is None:
            raise ModbusError(
                f"IO {name!r} has unsupported kind {definition.type}/{definition.data_type}",
                ILLEGAL_DATA_ADDRESS,
            )
        return reader(definition.address)