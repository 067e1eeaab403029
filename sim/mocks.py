"""Shared mock pins/hub/door for simulation and tests.

These mocks stand in for the hardware and hub collaborators of
``garage_door_controller`` and are used across the tests and the simulator
script.
"""
from __future__ import annotations

import asyncio
import random
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from garage_door_controller import DoorController, DoorState, GarageConfig, PinDirection, PinLevel, PinPull


BUTTON_PIN = 17
OPEN_SENSOR_PIN = 27
CLOSED_SENSOR_PIN = 22


class MockPins:
    """In-memory PinIO. Inputs are driven by the test via ``set_input``."""

    def __init__(self, glitch_prob: float = 0.0, seed: Optional[int] = None):
        self.configured: Dict[int, Tuple[PinDirection, Union[PinLevel, PinPull]]] = {}
        self.levels: Dict[int, PinLevel] = {}
        self.writes: List[Tuple[int, PinLevel]] = []
        self.reads = 0
        self.glitch_prob = float(glitch_prob)
        self.healthy = True
        self._glitches: Dict[int, List[PinLevel]] = {}
        self._listeners: List[Callable[[int, PinLevel], None]] = []
        self._random = random.Random(seed)

    def configure_pin(self, pin: int, direction: PinDirection, initial: Union[PinLevel, PinPull]) -> None:
        self.configured[pin] = (direction, initial)
        if direction == PinDirection.OUTPUT:
            self.levels[pin] = initial
        else:
            self.levels.setdefault(pin, PinLevel.LOW)

    def read_digital(self, pin: int) -> PinLevel:
        if not self.healthy:
            raise RuntimeError(f"Pin {pin} read failed")
        self.reads += 1
        queued = self._glitches.get(pin)
        if queued:
            return queued.pop(0)
        level = self.levels.get(pin, PinLevel.LOW)
        if self.glitch_prob and self._random.random() < self.glitch_prob:
            return PinLevel.LOW if level == PinLevel.HIGH else PinLevel.HIGH
        return level

    def write_digital(self, pin: int, level: PinLevel) -> None:
        self.levels[pin] = level
        self.writes.append((pin, level))
        for listener in list(self._listeners):
            listener(pin, level)

    # ---------- test helpers ----------
    def set_input(self, pin: int, value: Union[bool, PinLevel]) -> None:
        if isinstance(value, bool):
            value = PinLevel.HIGH if value else PinLevel.LOW
        self.levels[pin] = value

    def queue_glitch(self, pin: int, level: PinLevel, count: int = 1) -> None:
        """Make the next `count` reads of `pin` return `level`."""
        self._glitches.setdefault(pin, []).extend([level] * count)

    def add_write_listener(self, listener: Callable[[int, PinLevel], None]) -> None:
        self._listeners.append(listener)

    def presses(self, pin: int) -> int:
        """Count of rising edges written to `pin`."""
        return sum(1 for p, level in self.writes if p == pin and level == PinLevel.HIGH)

    def simulate_failure(self) -> None:
        self.healthy = False


class MockHub:
    """Records every push from the controller."""

    def __init__(self) -> None:
        self.current_states: List[DoorState] = []
        self.target_states: List[DoorState] = []
        self.healthy = True

    def push_current_state(self, state: DoorState) -> None:
        if not self.healthy:
            raise RuntimeError("publish failed")
        self.current_states.append(state)

    def push_target_state(self, state: DoorState) -> None:
        if not self.healthy:
            raise RuntimeError("publish failed")
        self.target_states.append(state)

    def simulate_failure(self) -> None:
        self.healthy = False


class MockGarageDoor:
    """Physical door model driven by the button pin.

    A press while closing reverses, a press while opening stops, a press at
    rest moves away from the closed end unless the door is fully closed.
    The limit sensor of the end being left de-asserts after `start_delay_ms`,
    the one being reached asserts on arrival.
    """

    def __init__(
        self,
        pins: MockPins,
        button_pin: int,
        open_sensor_pin: int,
        closed_sensor_pin: int,
        travel_ms: float = 400,
        start_delay_ms: float = 20,
        initial: DoorState = DoorState.CLOSED,
        stuck: bool = False,
    ):
        self.pins = pins
        self.button_pin = button_pin
        self.open_sensor_pin = open_sensor_pin
        self.closed_sensor_pin = closed_sensor_pin
        self.travel_ms = float(travel_ms)
        self.start_delay_ms = float(start_delay_ms)
        self.stuck = stuck
        self.position = 1.0 if initial == DoorState.OPEN else 0.0
        self.direction = 0
        self.press_count = 0
        self._last_sync: Optional[float] = None
        self._arrival: Optional[asyncio.TimerHandle] = None
        self._button_level = PinLevel.LOW

        pins.configure_pin(open_sensor_pin, PinDirection.INPUT, PinPull.PULL_DOWN)
        pins.configure_pin(closed_sensor_pin, PinDirection.INPUT, PinPull.PULL_DOWN)
        self._refresh_sensors()
        pins.add_write_listener(self._on_write)

    @property
    def state(self) -> DoorState:
        if self.direction > 0:
            return DoorState.OPENING
        if self.direction < 0:
            return DoorState.CLOSING
        if self.position >= 1.0:
            return DoorState.OPEN
        if self.position <= 0.0:
            return DoorState.CLOSED
        return DoorState.STOPPED

    def _on_write(self, pin: int, level: PinLevel) -> None:
        if pin != self.button_pin:
            return
        rising = level == PinLevel.HIGH and self._button_level == PinLevel.LOW
        self._button_level = level
        if rising:
            self.press()

    def press(self) -> None:
        """Physical button press, as if someone used the wall switch."""
        self.press_count += 1
        if self.stuck:
            return
        loop = asyncio.get_running_loop()
        self._sync(loop)
        leaving_end = self.direction == 0 and self.position in (0.0, 1.0)

        if self.direction > 0:
            self.direction = 0
        elif self.direction < 0:
            self.direction = 1
        elif self.position <= 0.0:
            self.direction = 1
        else:
            self.direction = -1

        if self._arrival is not None:
            self._arrival.cancel()
            self._arrival = None
        if self.direction != 0:
            remaining = (1.0 - self.position) if self.direction > 0 else self.position
            self._arrival = loop.call_later(remaining * self.travel_ms / 1000.0, self._arrive)

        if leaving_end:
            loop.call_later(self.start_delay_ms / 1000.0, self._refresh_sensors)
        else:
            self._refresh_sensors()

    def _sync(self, loop: asyncio.AbstractEventLoop) -> None:
        now = loop.time()
        if self._last_sync is not None and self.direction != 0:
            moved = (now - self._last_sync) * 1000.0 / self.travel_ms
            self.position = min(1.0, max(0.0, self.position + self.direction * moved))
            # Mid-travel never reports an end; arrival does that.
            self.position = min(max(self.position, 1e-6), 1.0 - 1e-6)
        self._last_sync = now

    def _arrive(self) -> None:
        self._arrival = None
        self._last_sync = asyncio.get_running_loop().time()
        self.position = 1.0 if self.direction > 0 else 0.0
        self.direction = 0
        self._refresh_sensors()

    def _refresh_sensors(self) -> None:
        at_top = self.position >= 1.0 and self.direction == 0
        at_bottom = self.position <= 0.0 and self.direction == 0
        self.pins.set_input(self.open_sensor_pin, at_top)
        self.pins.set_input(self.closed_sensor_pin, at_bottom)

    def close(self) -> None:
        if self._arrival is not None:
            self._arrival.cancel()
            self._arrival = None


class MockMqttClient:
    """Stand-in for ``paho.mqtt.client.Client`` that records traffic."""

    def __init__(self) -> None:
        self.on_connect = None
        self.on_message = None
        self.on_disconnect = None
        self.published: List[Tuple[str, Any, int, bool]] = []
        self.subscriptions: List[Tuple[str, int]] = []
        self.connected_to: Optional[Tuple[str, int]] = None
        self.loop_running = False
        self.publish_rc = 0

    def connect_async(self, host: str, port: int = 1883, keepalive: int = 60) -> None:
        self.connected_to = (host, port)

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        self.connected_to = None

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscriptions.append((topic, qos))

    def publish(self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False):
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self.publish_rc)

    def last_payload(self, topic: str) -> Any:
        for t, payload, _, _ in reversed(self.published):
            if t == topic:
                return payload
        return None

    # ---------- test helpers ----------
    def simulate_connect(self, rc: int = 0) -> None:
        self.on_connect(self, None, {}, rc, None)

    def simulate_message(self, topic: str, payload: bytes) -> None:
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))


def make_config(**overrides) -> GarageConfig:
    """A fast config for tests: 200 ms movement, 10 ms polling, 5 ms presses."""
    values = dict(
        name="Test Garage",
        button_pin=BUTTON_PIN,
        open_sensor_pin=OPEN_SENSOR_PIN,
        closed_sensor_pin=CLOSED_SENSOR_PIN,
        duration_of_movement=200,
        polling_interval=10,
        duration_to_press_button=5,
    )
    values.update(overrides)
    return GarageConfig(**values)


def set_sensors(pins: MockPins, state: DoorState) -> None:
    """Drive the sensor inputs as they would read for a calculated state."""
    pins.set_input(OPEN_SENSOR_PIN, state == DoorState.OPEN)
    pins.set_input(CLOSED_SENSOR_PIN, state == DoorState.CLOSED)


def build_garage(initial: DoorState = DoorState.CLOSED, **overrides):
    """Return (controller, pins, hub) with the sensors reading `initial`."""
    pins = MockPins()
    set_sensors(pins, initial)
    hub = MockHub()
    controller = DoorController(make_config(**overrides), pins, hub)
    return controller, pins, hub
