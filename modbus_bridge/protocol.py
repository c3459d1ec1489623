"""Modbus TCP framing, state codes and a small blocking client."""

from __future__ import annotations

import enum
import socket
import struct
import threading
from collections.abc import Iterable

READ_COILS = 0x01
READ_DISCRETE_INPUTS = 0x02
READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04
WRITE_SINGLE_COIL = 0x05
WRITE_SINGLE_REGISTER = 0x06
WRITE_MULTIPLE_COILS = 0x0F
WRITE_MULTIPLE_REGISTERS = 0x10

ILLEGAL_FUNCTION = 0x01
ILLEGAL_DATA_ADDRESS = 0x02
ILLEGAL_DATA_VALUE = 0x03
SLAVE_OR_SERVER_FAILURE = 0x04

MAX_READ_BITS = 2000
MAX_WRITE_BITS = 1968
MAX_READ_REGISTERS = 125
MAX_WRITE_REGISTERS = 123

DEFAULT_PORT = 502
TCP_UNIT_ID = 0xFF
DEFAULT_TIMEOUT = 0.5

_HEADER = struct.Struct(">HHHB")
_PAIR = struct.Struct(">HH")

_EXCEPTION_NAMES = {
    ILLEGAL_FUNCTION: "illegal function",
    ILLEGAL_DATA_ADDRESS: "illegal data address",
    ILLEGAL_DATA_VALUE: "illegal data value",
    SLAVE_OR_SERVER_FAILURE: "slave or server failure",
    0x05: "acknowledge",
    0x06: "slave or server busy",
    0x08: "memory parity error",
    0x0A: "gateway path unavailable",
    0x0B: "target device failed to respond",
}


class StateCode(enum.IntEnum):
    """Status codes reported by the bridge."""

    NO_ISSUE = 0
    INITIALIZING = 1
    NOT_CONNECTED = 2
    INVALID_CONFIGURATION_FILE = 3
    INVALID_IO_TYPE = 4
    INVALID_IO_DATA_TYPE = 5
    INVALID_IO_KEY = 6
    INVALID_IO_TO_WRITE = 7


class ModbusError(Exception):
    """A Modbus request failed; ``exception_code`` holds the device's code if any."""

    def __init__(self, message: str, exception_code: int | None = None) -> None:
        super().__init__(message)
        self.exception_code = exception_code


def build_request(transaction_id: int, unit_id: int, function: int, payload: bytes) -> bytes:
    """Frame a PDU with an MBAP header."""
    if not 0 <= transaction_id <= 0xFFFF:
        raise ValueError(f"transaction id out of range: {transaction_id}")
    if not 0 <= unit_id <= 0xFF:
        raise ValueError(f"unit id out of range: {unit_id}")
    if not 1 <= function <= 0x7F:
        raise ValueError(f"function code out of range: {function}")
    payload = bytes(payload)
    header = _HEADER.pack(transaction_id, 0, len(payload) + 2, unit_id)
    return header + bytes([function]) + payload


def parse_response(frame: bytes, transaction_id: int, function: int) -> bytes:
    """Check a response frame and return the data that follows the function code."""
    frame = bytes(frame)
    if len(frame) < _HEADER.size + 1:
        raise ModbusError("response too short")
    tid, protocol, length, _unit = _HEADER.unpack_from(frame)
    if tid != transaction_id:
        raise ModbusError(f"transaction id mismatch: expected {transaction_id}, got {tid}")
    if protocol != 0:
        raise ModbusError(f"unexpected protocol id {protocol}")
    if length != len(frame) - 6:
        raise ModbusError("length field does not match frame size")
    code = frame[_HEADER.size]
    if code == function | 0x80:
        exc = frame[_HEADER.size + 1] if len(frame) > _HEADER.size + 1 else None
        name = _EXCEPTION_NAMES.get(exc, "unknown exception")
        raise ModbusError(f"device returned exception {exc}: {name}", exc)
    if code != function:
        raise ModbusError(f"function code mismatch: expected {function}, got {code}")
    return frame[_HEADER.size + 1:]


def pack_bits(values: Iterable[object]) -> bytes:
    """Pack truthy values into bytes, least significant bit first."""
    bits = [bool(v) for v in values]
    packed = bytearray((len(bits) + 7) // 8)
    for index, bit in enumerate(bits):
        if bit:
            packed[index // 8] |= 1 << (index % 8)
    return bytes(packed)


def unpack_bits(data: bytes, count: int) -> list[int]:
    """Unpack ``count`` bits from ``data`` as a list of 0/1 values."""
    if count < 0 or count > len(data) * 8:
        raise ValueError(f"cannot unpack {count} bits from {len(data)} bytes")
    return [(data[i // 8] >> (i % 8)) & 1 for i in range(count)]


def _check_span(address: int, count: int, limit: int) -> None:
    if not 0 <= address <= 0xFFFF:
        raise ValueError(f"address out of range: {address}")
    if count < 0:
        raise ValueError(f"negative count: {count}")
    if count > limit:
        raise ModbusError(f"too many data: {count} > {limit}", ILLEGAL_DATA_VALUE)
    if address + count > 0x10000:
        raise ValueError("address range exceeds 65536")


class ModbusTcpClient:
    """Blocking Modbus TCP client; every call is serialised by an internal lock."""

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        unit_id: int = TCP_UNIT_ID,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._transaction_id = 0
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self) -> None:
        """Open the TCP connection, replacing any existing one."""
        self.close()
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise ModbusError(f"cannot connect to {self.host}:{self.port}: {exc}") from exc
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._sock = sock

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def __enter__(self) -> ModbusTcpClient:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _recv_exact(self, size: int) -> bytes:
        assert self._sock is not None
        chunks = bytearray()
        while len(chunks) < size:
            chunk = self._sock.recv(size - len(chunks))
            if not chunk:
                raise ConnectionError("connection closed by peer")
            chunks += chunk
        return bytes(chunks)

    def _transact(self, function: int, payload: bytes) -> bytes:
        with self._lock:
            if self._sock is None:
                raise ModbusError("not connected")
            self._transaction_id = (self._transaction_id + 1) & 0xFFFF
            tid = self._transaction_id
            request = build_request(tid, self.unit_id, function, payload)
            try:
                self._sock.sendall(request)
                header = self._recv_exact(_HEADER.size)
                length = int.from_bytes(header[4:6], "big")
                if length < 2:
                    raise ModbusError("invalid length in response header")
                body = self._recv_exact(length - 1)
            except OSError as exc:
                self.close()
                raise ModbusError(f"communication failure: {exc}") from exc
        return parse_response(header + body, tid, function)

    def _read_bits(self, function: int, address: int, count: int) -> list[int]:
        _check_span(address, count, MAX_READ_BITS)
        data = self._transact(function, _PAIR.pack(address, count))
        expected = (count + 7) // 8
        if len(data) != expected + 1 or data[0] != expected:
            raise ModbusError("unexpected byte count in response")
        return unpack_bits(data[1:], count)

    def _read_registers(self, function: int, address: int, count: int) -> list[int]:
        _check_span(address, count, MAX_READ_REGISTERS)
        data = self._transact(function, _PAIR.pack(address, count))
        expected = 2 * count
        if len(data) != expected + 1 or data[0] != expected:
            raise ModbusError("unexpected byte count in response")
        return list(struct.unpack(f">{count}H", data[1:]))

    def read_input_bits(self, address: int, count: int) -> list[int]:
        """Read discrete inputs."""
        return self._read_bits(READ_DISCRETE_INPUTS, address, count)

    def read_bits(self, address: int, count: int) -> list[int]:
        """Read coils."""
        return self._read_bits(READ_COILS, address, count)

    def read_input_registers(self, address: int, count: int) -> list[int]:
        """Read input registers."""
        return self._read_registers(READ_INPUT_REGISTERS, address, count)

    def read_registers(self, address: int, count: int) -> list[int]:
        """Read holding registers."""
        return self._read_registers(READ_HOLDING_REGISTERS, address, count)

    def _write_single(self, function: int, address: int, raw: int) -> int:
        payload = _PAIR.pack(address, raw)
        if self._transact(function, payload) != payload:
            raise ModbusError("response does not echo the request")
        return 1

    def write_bit(self, address: int, value: object) -> int:
        """Write one coil; returns the number of coils written."""
        _check_span(address, 1, 1)
        return self._write_single(WRITE_SINGLE_COIL, address, 0xFF00 if value else 0x0000)

    def write_register(self, address: int, value: int) -> int:
        """Write one holding register; returns the number of registers written."""
        _check_span(address, 1, 1)
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"register value out of range: {value}")
        return self._write_single(WRITE_SINGLE_REGISTER, address, value)

    def _write_multiple(self, function: int, address: int, count: int, data: bytes) -> int:
        head = _PAIR.pack(address, count)
        response = self._transact(function, head + bytes([len(data)]) + data)
        if response != head:
            raise ModbusError("response does not echo address and quantity")
        return count

    def write_bits(self, address: int, values: Iterable[object]) -> int:
        """Write consecutive coils; returns the number written."""
        bits = list(values)
        _check_span(address, len(bits), MAX_WRITE_BITS)
        return self._write_multiple(WRITE_MULTIPLE_COILS, address, len(bits), pack_bits(bits))

    def write_registers(self, address: int, values: Iterable[int]) -> int:
        """Write consecutive holding registers; returns the number written."""
        registers = list(values)
        _check_span(address, len(registers), MAX_WRITE_REGISTERS)
        for value in registers:
            if not 0 <= value <= 0xFFFF:
                raise ValueError(f"register value out of range: {value}")
        data = struct.pack(f">{len(registers)}H", *registers)
        return self._write_multiple(WRITE_MULTIPLE_REGISTERS, address, len(registers), data)