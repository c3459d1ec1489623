"""Bridge node: polls a Modbus device and reports its named inputs and outputs."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from .config import DeviceConfig, load_config
from .interface import ANALOG, DIGITAL, INPUT, OUTPUT, ModbusInterface
from .protocol import StateCode

_log = logging.getLogger(__name__)

DEFAULT_NAME = "test_device"
DEFAULT_CONFIG_FILE = "FULL/PATH/TO/YOUR/config_file.yaml"
WRITE_ATTEMPTS = 4

TOPIC_TIMER = "report_timer"
TOPIC_EVENT = "report_event"
TOPIC_STATE = "state"


@dataclass
class ModbusMessage:
    """Named IOs with their values, as reported or as commanded."""

    in_out: list[str] = field(default_factory=list)
    values: list[int] = field(default_factory=list)
    frame_id: str = ""
    stamp: float = 0.0


@dataclass(frozen=True)
class StateMessage:
    """Health of the bridge: whether all is well and a state code."""

    frame_id: str
    stamp: float
    state: bool
    error: int


def _send(sink: Callable[[Any], Any] | None, message: object) -> None:
    """Hand a message to a sink, when one was given."""
    if sink is not None:
        sink(message)


class _Timer:
    """A periodic callback on its own thread that can be cancelled and re-armed."""

    def __init__(self, period: float, callback: Callable[[], None], name: str) -> None:
        self.period = max(0.0, period)
        self._callback = callback
        self._name = name
        self._cond = threading.Condition()
        self._canceled = False
        self._stopped = False
        self._generation = 0
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        with self._cond:
            if self._thread is not None or self._stopped:
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def cancel(self) -> None:
        with self._cond:
            self._canceled = True
            self._cond.notify_all()

    def reset(self) -> None:
        """Re-arm the timer; its next firing is one full period away."""
        with self._cond:
            self._canceled = False
            self._generation += 1
            self._cond.notify_all()

    def is_canceled(self) -> bool:
        with self._cond:
            return self._canceled

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped and self._canceled:
                    self._cond.wait()
                if self._stopped:
                    return
                generation = self._generation
                interrupted = self._cond.wait_for(
                    lambda: self._stopped or self._canceled or self._generation != generation,
                    timeout=self.period,
                )
                if interrupted:
                    continue
            try:
                self._callback()
            except Exception:
                _log.exception("%s callback failed", self._name)


class ModbusNode:
    """Polls a Modbus device, reports its IOs and writes commanded outputs.

    Reports go to the ``publish_timer``, ``publish_event`` and
    ``publish_state`` callables. Once stopped, a node cannot be started again.
    """

    def __init__(
        self,
        name: str = DEFAULT_NAME,
        config_file: str = DEFAULT_CONFIG_FILE,
        interface: ModbusInterface | None = None,
        publish_timer: Callable[[ModbusMessage], Any] | None = None,
        publish_event: Callable[[ModbusMessage], Any] | None = None,
        publish_state: Callable[[StateMessage], Any] | None = None,
    ) -> None:
        self.name = name
        self.config_file = config_file
        self.interface = interface if interface is not None else ModbusInterface()
        self._timer_sink = publish_timer
        self._event_sink = publish_event
        self._state_sink = publish_state

        self.config_ok = False
        self._publish_on_timer: dict[str, int] = {}
        self._publish_on_event: dict[str, int] = {}

        self._running = False
        self._timers_lock = threading.Lock()
        self._checker_timer = _Timer(0.0, self.check_timer_callback, "checker")
        self._checker_timer.cancel()
        self._reconnection_timer = _Timer(0.0, self.restart_connection, "reconnection")
        self._reconnection_timer.cancel()
        self._publisher_timer: _Timer | None = None
        self._update_timer: _Timer | None = None
        self._state_timer: _Timer | None = None

        self.publish_state(False, StateCode.INITIALIZING)
        self._try_configure()

    # -- state reports -----------------------------------------------------

    def publish_state(self, state: bool, code: int) -> None:
        """Report an explicit state and state code."""
        _send(self._state_sink, StateMessage(self.name, time.time(), bool(state), int(code)))

    def publish_current_state(self) -> None:
        """Report the state derived from configuration validity and connection."""
        connected = self.interface.connected
        if not self.config_ok:
            code = StateCode.INVALID_CONFIGURATION_FILE
        elif not connected:
            code = StateCode.NOT_CONNECTED
        else:
            code = StateCode.NO_ISSUE
        self.publish_state(self.config_ok and connected, code)

    # -- configuration -----------------------------------------------------

    def _try_configure(self) -> None:
        try:
            self.configure()
        except Exception as exc:
            _log.error(
                "Configuration file %s not valid, please provide a valid configuration file (%s)",
                self.config_file,
                exc,
            )
            self.publish_state(False, StateCode.INVALID_CONFIGURATION_FILE)

    def configure(self) -> None:
        """Load the device description, connect, declare the IOs and set up the timers.

        Does nothing when the file has no section for this device; raises
        ConfigError when the file cannot be used.
        """
        config = load_config(self.config_file, self.name)
        if config is None:
            return
        interface = self.interface
        interface.set_context(config.address, config.port)
        interface.initiate_connection()
        address, port = interface.context
        _log.info("Configuring device %s with address %s and port %d", self.name, address, port)

        interface.set_device(
            config.nb_input_coils,
            config.nb_output_coils,
            config.nb_input_registers,
            config.nb_output_registers,
        )
        offsets = config.offsets
        interface.set_offsets(
            offsets.digital_input,
            offsets.digital_output,
            offsets.analog_input,
            offsets.analog_output,
        )

        for key in config.publish_on_timer:
            _log.info("%s", key)
        self._publish_on_timer = _merged(self._publish_on_timer, config.publish_on_timer)
        self._publish_on_event = _merged(self._publish_on_event, config.publish_on_event)

        for entry in config.ios:
            interface.add_io(entry.name, entry.io_type, entry.data_type, entry.address)

        _log.info("Verifying device %s's IO", self.name)
        self.config_ok = interface.verify_io()

        self._install_timers(config)

        if not self.config_ok:
            _log.info("Configuration appears invalid")
            self.publish_state(False, StateCode.INVALID_CONFIGURATION_FILE)
        elif not interface.connected:
            _log.info("Can not connect")
            self.publish_state(False, StateCode.NOT_CONNECTED)
        else:
            _log.info("Configuration appears valid, connected")
            self.publish_state(True, StateCode.NO_ISSUE)

    def _install_timers(self, config: DeviceConfig) -> None:
        specs = (
            ("_publisher_timer", config.publish_period, self.publish_timer_callback, "publisher"),
            ("_update_timer", config.refresh_period, self.update_timer_callback, "update"),
            ("_state_timer", config.state_period, self.publish_current_state, "state"),
        )
        with self._timers_lock:
            for attribute, period, callback, label in specs:
                old = getattr(self, attribute)
                if old is not None:
                    old.stop()
                timer = _Timer(period, callback, label)
                setattr(self, attribute, timer)
                if self._running:
                    timer.start()

    # -- timer callbacks ---------------------------------------------------

    def restart_connection(self) -> None:
        """Reconnect to the device, then report that all is well."""
        self.interface.restart_connection()
        address, port = self.interface.context
        _log.info("Reconnected to %s:%d", address, port)
        self.publish_state(True, StateCode.NO_ISSUE)
        self._reconnection_timer.cancel()

    def update_timer_callback(self) -> None:
        """Refresh the cached device memory and react to a failed refresh."""
        update_timer = self._update_timer
        if update_timer is not None:
            update_timer.cancel()
        try:
            self.interface.update_memory()
        except Exception:
            if not self.config_ok:
                _log.warning("Timer callback but configuration is not valid, reconfiguring")
                self.publish_state(False, StateCode.INVALID_CONFIGURATION_FILE)
                self._try_configure()
            else:
                self.interface.connected = False
                if self._reconnection_timer.is_canceled():
                    address, port = self.interface.context
                    _log.warning("Connection to %s:%d lost, reconnecting", address, port)
                    self.publish_state(False, StateCode.NOT_CONNECTED)
                    self._reconnection_timer.reset()
        self._checker_timer.reset()
        update_timer = self._update_timer
        if update_timer is not None:
            update_timer.reset()

    def publish_timer_callback(self) -> None:
        """Report the current value of every IO listed for timed reports."""
        watched = self._publish_on_timer
        message = ModbusMessage(frame_id=self.name, stamp=time.time())
        for key in watched:
            value = self.interface.io_value(key)
            watched[key] = value
            message.in_out.append(key)
            message.values.append(value)
        if message.in_out:
            _send(self._timer_sink, message)

    def check_timer_callback(self) -> None:
        """Report every IO listed for event reports when any of them changed."""
        self._checker_timer.cancel()
        watched = self._publish_on_event
        changed = False
        for key, previous in watched.items():
            current = self.interface.io_value(key)
            if current != previous:
                watched[key] = current
                changed = True
        if changed and watched:
            _send(
                self._event_sink,
                ModbusMessage(
                    in_out=list(watched),
                    values=list(watched.values()),
                    frame_id=self.name,
                    stamp=time.time(),
                ),
            )

    # -- commands ------------------------------------------------------------

    def _invalid_write(self, reason: str, *args: object) -> None:
        _log.warning(reason, *args)
        self.publish_state(False, StateCode.INVALID_IO_TO_WRITE)

    def subscriber_callback(self, message: ModbusMessage) -> None:
        """Write the commanded output values, then refresh the cached memory."""
        digital = self.interface.output_coils()
        analog = self.interface.output_registers()
        write_digital = write_analog = False
        io_map = self.interface.io_map()

        for index, key in enumerate(message.in_out):
            try:
                value = int(message.values[index])
                definition = io_map.get(key)
                if definition is None:
                    self._invalid_write("IO %s not declared, skipping", key)
                    continue
                if definition.type == INPUT:
                    self._invalid_write(
                        "I/O %s is configured as input, can't write here, skipping", key
                    )
                    continue
                if definition.type != OUTPUT:
                    continue
                if definition.data_type == DIGITAL:
                    _assign(digital, definition.address, value & 0xFF)
                    write_digital = True
                elif definition.data_type == ANALOG:
                    _assign(analog, definition.address, value & 0xFFFF)
                    write_analog = True
                else:
                    _log.warning("Unsupported output type for I/O %s, skipping", key)
                    self.publish_state(False, StateCode.INVALID_IO_DATA_TYPE)
                    break
            except (IndexError, TypeError, ValueError):
                self._invalid_write("Cannot write, skipping")

        digital_ok = not write_digital or _attempt(self.interface.write_output_coils, digital)
        analog_ok = not write_analog or _attempt(self.interface.write_output_registers, analog)

        try:
            self.interface.update_memory()
        except Exception:
            _log.debug("Memory refresh after command failed", exc_info=True)

        if not (digital_ok and analog_ok):
            self._invalid_write("Cannot write, skipping")

    # -- lifecycle -----------------------------------------------------------

    def _timers(self) -> list[_Timer]:
        candidates = (
            self._checker_timer,
            self._reconnection_timer,
            self._publisher_timer,
            self._update_timer,
            self._state_timer,
        )
        return [timer for timer in candidates if timer is not None]

    def start(self) -> None:
        """Start every timer on its own thread."""
        with self._timers_lock:
            self._running = True
            timers = self._timers()
        for timer in timers:
            timer.start()

    def stop(self) -> None:
        """Stop every timer and wait for their threads."""
        with self._timers_lock:
            self._running = False
            timers = self._timers()
        for timer in timers:
            timer.stop()


def _merged(current: dict[str, int], names: Iterable[str]) -> dict[str, int]:
    merged = dict.fromkeys(names, 0)
    merged.update(current)
    return dict(sorted(merged.items()))


def _assign(table: list[int], address: int, value: int) -> None:
    if not 0 <= address < len(table):
        raise IndexError(f"address {address} out of range (size {len(table)})")
    table[address] = value


def _attempt(write: Callable[[list[int]], bool], values: list[int]) -> bool:
    for _ in range(WRITE_ATTEMPTS):
        try:
            if write(values):
                return True
        except Exception:
            _log.debug("Write attempt failed", exc_info=True)
    return False


def _parse_command(line: str) -> ModbusMessage:
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError("command must be a JSON object")
    in_out = data.get("in_out", [])
    values = data.get("values", [])
    if not isinstance(in_out, list) or not all(isinstance(item, str) for item in in_out):
        raise ValueError("'in_out' must be a list of IO names")
    if not isinstance(values, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in values
    ):
        raise ValueError("'values' must be a list of integers")
    return ModbusMessage(in_out=in_out, values=values)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the bridge: reports go to stdout and commands come from stdin, as JSON lines."""
    parser = argparse.ArgumentParser(
        prog="modbus-bridge",
        description="Poll a Modbus TCP device and report its IOs as JSON lines.",
    )
    parser.add_argument("--name", default=DEFAULT_NAME, help="device name in the configuration")
    parser.add_argument(
        "--config", dest="config_file", default=DEFAULT_CONFIG_FILE, help="YAML device description"
    )
    parser.add_argument("--log-level", default="INFO", help="logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), stream=sys.stderr)
    output_lock = threading.Lock()

    def emitter(topic: str) -> Callable[[object], None]:
        def emit(message: object) -> None:
            line = json.dumps({"topic": topic, **asdict(message)})  # type: ignore[call-overload]
            with output_lock:
                print(line, flush=True)

        return emit

    node = ModbusNode(
        args.name,
        args.config_file,
        None,
        emitter(TOPIC_TIMER),
        emitter(TOPIC_EVENT),
        emitter(TOPIC_STATE),
    )
    node.start()
    try:
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            try:
                command = _parse_command(line)
            except ValueError as exc:
                _log.warning("Ignoring malformed command: %s", exc)
                continue
            node.subscriber_callback(command)
    except KeyboardInterrupt:
        _log.info("Interrupted, stopping")
    finally:
        node.stop()
    return 0