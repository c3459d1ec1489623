import io
import json
import time

import pytest

from modbus_bridge.interface import ModbusInterface
from modbus_bridge.node import (
    WRITE_ATTEMPTS,
    ModbusMessage,
    ModbusNode,
    StateMessage,
    main,
)
from modbus_bridge.protocol import ModbusError, StateCode

CONFIG = """
dev:
  address: 127.0.0.1
  port: 1502
  connected_IO:
    digital_input: 4
    digital_output: 4
    analog_input: 2
    analog_output: 2
  offsets:
    digital_input: 0
    digital_output: 16
    analog_input: 0
    analog_output: 8
  publish_rate: 10
  refresh_rate: 10
  state_rate: {state_rate}
  publish_on_timer: [level, button]
  publish_on_event: [button]
  input:
    digital:
      button: 1
    analog:
      level: 2
  output:
    digital:
      lamp: {lamp}
    analog:
      speed: 1
"""


class FakeDevice:
    def __init__(self):
        self.input_bits = [0, 0, 0, 0]
        self.bits = [0, 0, 0, 0]
        self.input_registers = [0, 0]
        self.registers = [0, 0]
        self.fail_connect = False
        self.fail_reads = False
        self.fail_writes = False
        self.writes = []
        self.write_attempts = 0
        self.contexts = []

    def factory(self, address, port):
        self.contexts.append((address, port))
        return FakeClient(self)


class FakeClient:
    def __init__(self, device):
        self.device = device

    def connect(self):
        if self.device.fail_connect:
            raise ModbusError("refused")

    def close(self):
        pass

    def _read(self, table, count):
        if self.device.fail_reads:
            raise ModbusError("timeout")
        return list(table[:count])

    def read_input_bits(self, address, count):
        return self._read(self.device.input_bits, count)

    def read_bits(self, address, count):
        return self._read(self.device.bits, count)

    def read_input_registers(self, address, count):
        return self._read(self.device.input_registers, count)

    def read_registers(self, address, count):
        return self._read(self.device.registers, count)

    def _write(self, kind, address, values):
        self.device.write_attempts += 1
        if self.device.fail_writes:
            raise ModbusError("refused")
        values = list(values)
        self.device.writes.append((kind, address, values))
        return len(values)

    def write_bits(self, address, values):
        count = self._write("bits", address, values)
        self.device.bits = list(values)
        return count

    def write_registers(self, address, values):
        count = self._write("registers", address, values)
        self.device.registers = list(values)
        return count

    def write_bit(self, address, value):
        return self._write("bit", address, [value])

    def write_register(self, address, value):
        return self._write("register", address, [value])


class Recorder:
    def __init__(self):
        self.timer = []
        self.event = []
        self.state = []


def write_config(tmp_path, state_rate=10, lamp="3"):
    path = tmp_path / "device.yaml"
    path.write_text(CONFIG.format(state_rate=state_rate, lamp=lamp))
    return path


def make_node(config_file, device, name="dev"):
    rec = Recorder()
    node = ModbusNode(
        name,
        str(config_file),
        ModbusInterface(device.factory),
        rec.timer.append,
        rec.event.append,
        rec.state.append,
    )
    return node, rec


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def node_and_rec(tmp_path, device):
    return make_node(write_config(tmp_path), device)


def test_missing_config_file_reports_invalid_configuration(tmp_path, device):
    node, rec = make_node(tmp_path / "absent.yaml", device)
    assert [m.error for m in rec.state] == [
        StateCode.INITIALIZING,
        StateCode.INVALID_CONFIGURATION_FILE,
    ]
    assert all(m.state is False for m in rec.state)
    assert node.config_ok is False


def test_valid_configuration_reports_no_issue(node_and_rec, device):
    node, rec = node_and_rec
    last = rec.state[-1]
    assert isinstance(last, StateMessage)
    assert last.state is True
    assert last.error == StateCode.NO_ISSUE
    assert last.frame_id == "dev"
    assert node.config_ok is True
    assert device.contexts == [("127.0.0.1", 1502)]
    assert node.interface.context == ("127.0.0.1", 1502)


def test_device_absent_from_file_only_reports_initializing(tmp_path, device):
    node, rec = make_node(write_config(tmp_path), device, name="other")
    assert [m.error for m in rec.state] == [StateCode.INITIALIZING]
    assert device.contexts == []


def test_connection_failure_reports_not_connected(tmp_path, device):
    device.fail_connect = True
    node, rec = make_node(write_config(tmp_path), device)
    assert rec.state[-1].error == StateCode.NOT_CONNECTED
    assert rec.state[-1].state is False
    assert node.config_ok is True


def test_io_without_address_makes_configuration_invalid(tmp_path, device):
    node, rec = make_node(write_config(tmp_path, lamp=""), device)
    assert node.config_ok is False
    assert rec.state[-1].error == StateCode.INVALID_CONFIGURATION_FILE


def test_publish_current_state(node_and_rec, tmp_path, device):
    node, rec = node_and_rec
    node.publish_current_state()
    assert rec.state[-1].error == StateCode.NO_ISSUE
    node.interface.connected = False
    node.publish_current_state()
    assert rec.state[-1].error == StateCode.NOT_CONNECTED
    assert rec.state[-1].state is False


def test_publish_current_state_with_invalid_config(tmp_path, device):
    node, rec = make_node(tmp_path / "absent.yaml", device)
    node.publish_current_state()
    assert rec.state[-1].error == StateCode.INVALID_CONFIGURATION_FILE


def test_publish_timer_reports_values_in_name_order(node_and_rec, device):
    node, rec = node_and_rec
    device.input_bits = [1, 0, 0, 0]
    device.input_registers = [0, 1234]
    node.interface.update_memory()
    node.publish_timer_callback()
    message = rec.timer[-1]
    assert isinstance(message, ModbusMessage)
    assert message.in_out == ["button", "level"]
    assert message.values == [1, 1234]
    assert message.frame_id == "dev"


def test_check_timer_reports_only_on_change(node_and_rec, device):
    node, rec = node_and_rec
    node.check_timer_callback()
    assert rec.event == []

    device.input_bits = [1, 0, 0, 0]
    node.interface.update_memory()
    node.check_timer_callback()
    assert len(rec.event) == 1
    assert rec.event[0].in_out == ["button"]
    assert rec.event[0].values == [1]

    node.check_timer_callback()
    assert len(rec.event) == 1

    device.input_bits = [0, 0, 0, 0]
    node.interface.update_memory()
    node.check_timer_callback()
    assert len(rec.event) == 2
    assert rec.event[1].values == [0]


def test_command_writes_output_tables_at_their_offsets(node_and_rec, device):
    node, rec = node_and_rec
    states_before = len(rec.state)
    node.subscriber_callback(ModbusMessage(in_out=["lamp", "speed"], values=[1, 500]))
    assert ("bits", 16, [0, 0, 1, 0]) in device.writes
    assert ("registers", 8, [500, 0]) in device.writes
    assert node.interface.output_coils() == device.bits
    assert node.interface.output_register(0) == 500
    assert len(rec.state) == states_before


def test_command_on_input_is_rejected(node_and_rec, device):
    node, rec = node_and_rec
    node.subscriber_callback(ModbusMessage(in_out=["button"], values=[1]))
    assert device.writes == []
    assert rec.state[-1].error == StateCode.INVALID_IO_TO_WRITE


def test_command_on_undeclared_io_is_rejected(node_and_rec, device):
    node, rec = node_and_rec
    node.subscriber_callback(ModbusMessage(in_out=["nowhere"], values=[1]))
    assert device.writes == []
    assert rec.state[-1].error == StateCode.INVALID_IO_TO_WRITE


def test_command_missing_value_skips_that_io(node_and_rec, device):
    node, rec = node_and_rec
    node.subscriber_callback(ModbusMessage(in_out=["lamp", "speed"], values=[1]))
    assert [kind for kind, _, _ in device.writes] == ["bits"]
    assert StateCode.INVALID_IO_TO_WRITE in [m.error for m in rec.state]


def test_failed_write_is_retried_then_reported(node_and_rec, device):
    node, rec = node_and_rec
    device.fail_writes = True
    node.subscriber_callback(ModbusMessage(in_out=["lamp"], values=[1]))
    assert device.write_attempts == WRITE_ATTEMPTS
    assert rec.state[-1].error == StateCode.INVALID_IO_TO_WRITE


def test_update_failure_reports_lost_connection_once(node_and_rec, device):
    node, rec = node_and_rec
    device.fail_reads = True
    node.update_timer_callback()
    assert node.interface.connected is False
    assert rec.state[-1].error == StateCode.NOT_CONNECTED
    node.update_timer_callback()
    lost = [m for m in rec.state if m.error == StateCode.NOT_CONNECTED]
    assert len(lost) == 1


def test_update_failure_with_invalid_config_reconfigures(tmp_path, device):
    node, rec = make_node(tmp_path / "absent.yaml", device)
    before = len(rec.state)
    node.update_timer_callback()
    new = rec.state[before:]
    assert len(new) >= 1
    assert all(m.error == StateCode.INVALID_CONFIGURATION_FILE for m in new)


def test_restart_connection_reports_no_issue(node_and_rec, device):
    node, rec = node_and_rec
    node.interface.connected = False
    node.restart_connection()
    assert node.interface.connected is True
    assert rec.state[-1].error == StateCode.NO_ISSUE
    assert rec.state[-1].state is True


def test_started_node_publishes_state_periodically(tmp_path, device):
    node, rec = make_node(write_config(tmp_path, state_rate=50), device)
    initial = len(rec.state)
    node.start()
    try:
        deadline = time.monotonic() + 3.0
        while len(rec.state) <= initial and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        node.stop()
    assert len(rec.state) > initial
    assert rec.state[initial].error == StateCode.NO_ISSUE


def test_main_reports_states_as_json_lines(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO("not json\n\n"))
    result = main(["--name", "dev", "--config", str(tmp_path / "absent.yaml")])
    assert result == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [line["topic"] for line in lines] == ["state", "state"]
    assert lines[0]["error"] == StateCode.INITIALIZING
    assert lines[1]["error"] == StateCode.INVALID_CONFIGURATION_FILE
    assert lines[1]["frame_id"] == "dev"