# modbus-bridge

`modbus-bridge` connects to a Modbus TCP device, keeps a local copy of its
coils and registers, and gives its I/O human-readable names taken from a YAML
description file. It:

- refreshes the cached device memory at a fixed rate,
- reports chosen I/O values on a timer,
- reports chosen I/O values whenever one of them changes,
- writes output values it receives as commands,
- reports its own state (configuration valid, connected, and so on),
- reconnects, retrying once a second, when a memory refresh fails.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Device description

The file holds one section per device, keyed by the device name. If the file
has no section for the chosen name, nothing is configured. Addresses in the
`input` and `output` sections start at 1; an I/O with no address, or with a
type other than `digital`/`analog`, makes the configuration invalid.

```yaml
test_device:
  address: 192.0.2.10
  port: 502
  publish_rate: 2        # timer reports per second
  refresh_rate: 10       # memory refreshes per second
  state_rate: 1          # state reports per second
  connected_IO:          # size of each table
    digital_input: 8
    digital_output: 8
    analog_input: 2
    analog_output: 2
  offsets:               # first device address of each table
    digital_input: 0
    digital_output: 0
    analog_input: 0
    analog_output: 0
  publish_on_timer: [button, temperature]
  publish_on_event: [button]
  input:
    digital:
      button: 1
    analog:
      temperature: 1
  output:
    digital:
      lamp: 1
    analog:
      setpoint: 2
```

Rates must be positive integers; each period is `1000 / rate` milliseconds,
truncated to a whole millisecond.

## Running

```
modbus-bridge --name test_device --config /path/to/device.yaml
```

Options:

- `--name` — device section to use (default `test_device`),
- `--config` — path of the YAML description,
- `--log-level` — logging level for messages on stderr (default `INFO`).

Reports are written to stdout, one JSON object per line, with a `topic` field:

```
{"topic": "report_timer", "in_out": ["button", "temperature"], "values": [1, 215], "frame_id": "test_device", "stamp": 1700000000.0}
{"topic": "report_event", "in_out": ["button"], "values": [0], "frame_id": "test_device", "stamp": 1700000000.5}
{"topic": "state", "frame_id": "test_device", "stamp": 1700000001.0, "state": true, "error": 0}
```

Commands are read from stdin, one JSON object per line; malformed lines are
logged and ignored:

```
{"in_out": ["lamp", "setpoint"], "values": [1, 500]}
```

Each command writes the whole output coil table and/or the whole output
register table (up to four attempts each), then refreshes the memory. Naming
an undeclared I/O or an input reports `INVALID_IO_TO_WRITE`. The command runs
until stdin ends or it is interrupted.

## Library use

- `modbus_bridge.protocol` — `ModbusTcpClient`, a small blocking Modbus TCP
  client (`read_bits`, `read_input_bits`, `read_registers`,
  `read_input_registers`, `write_bit`, `write_register`, `write_bits`,
  `write_registers`); `build_request`, `parse_response`, `pack_bits` and
  `unpack_bits` for the wire format; `ModbusError` for failed requests, with
  the device's code in `exception_code`; and `StateCode`.
- `modbus_bridge.interface` — `ModbusInterface` holds the cached memory
  (`DeviceMemory`), the table offsets (`Offsets`) and the named I/O
  (`IODefinition`). `update_memory()` reads all four tables, `io_value(name)`
  returns a cached value by name, and `write_output_coils()` /
  `write_output_registers()` write a whole table. A client factory taking
  `(address, port)` can be passed in place of `ModbusTcpClient`.
- `modbus_bridge.config` — `load_config(path, name)` and
  `parse_config(data, name)` return a `DeviceConfig` (with its `IOEntry`
  items), or `None` when there is no section for `name`, and raise
  `ConfigError` on a malformed description.
- `modbus_bridge.node` — `ModbusNode` ties these together. It takes callables
  that receive `ModbusMessage` and `StateMessage` objects, accepts commands
  through `subscriber_callback()`, and runs its timers between `start()` and
  `stop()`.

State codes (`StateCode`): `NO_ISSUE`, `INITIALIZING`, `NOT_CONNECTED`,
`INVALID_CONFIGURATION_FILE`, `INVALID_IO_TYPE`, `INVALID_IO_DATA_TYPE`,
`INVALID_IO_KEY`, `INVALID_IO_TO_WRITE`.

## What it does not do

The bridge talks to a single device over Modbus TCP only (no serial/RTU). It
does not publish onto any message bus or network service: reports go to
stdout and commands come from stdin, or to and from the callables you give
`ModbusNode`.