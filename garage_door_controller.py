"""Garage door controller module

Implements the door-state core:
- DebounceBuffer
- SensorReader
- MovementTimer
- RequestQueue
- DoorController

Designed for Python 3.11+. Hardware and hub interfaces are abstract / mockable.
All controller work runs on a single asyncio event loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Deque, Dict, Iterator, List, Mapping, Optional, Protocol, Union


logger = logging.getLogger(__name__)


class DoorState(Enum):
    """Door states, valued with the HomeKit CurrentDoorState codes."""
    OPEN = 0
    CLOSED = 1
    OPENING = 2
    CLOSING = 3
    STOPPED = 4


# The last commanded endpoint
TARGET_STATES = frozenset({DoorState.OPEN, DoorState.CLOSED})
# What the two position sensors alone can tell us
CALCULATED_STATES = frozenset({DoorState.OPEN, DoorState.CLOSED, DoorState.STOPPED})
ENDPOINT_STATES = frozenset({DoorState.OPEN, DoorState.CLOSED})

# Standard garage opener behaviour on a single button press.
TRANSITIONS: Dict[DoorState, DoorState] = {
    DoorState.OPEN: DoorState.CLOSING,
    DoorState.CLOSED: DoorState.OPENING,
    DoorState.OPENING: DoorState.STOPPED,
    DoorState.CLOSING: DoorState.OPENING,
    DoorState.STOPPED: DoorState.CLOSING,
}


def target_for(state: DoorState) -> DoorState:
    """Return the target state implied by a current state."""
    if state in (DoorState.CLOSED, DoorState.CLOSING):
        return DoorState.CLOSED
    return DoorState.OPEN


def satisfies(state: Optional[DoorState], target: DoorState) -> bool:
    """True when `state` is the target or is already moving towards it."""
    if target == DoorState.CLOSED:
        return state in (DoorState.CLOSED, DoorState.CLOSING)
    return state in (DoorState.OPEN, DoorState.OPENING)


class PinDirection(Enum):
    INPUT = 0
    OUTPUT = 1


class PinLevel(Enum):
    LOW = 0
    HIGH = 1


class PinPull(Enum):
    PULL_DOWN = 0


class ConfigError(ValueError):
    """Raised when required configuration keys are absent."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing keys in config: {', '.join(self.missing)}")


class PinIO(Protocol):
    """Abstract digital pin interface."""

    def configure_pin(self, pin: int, direction: PinDirection, initial: Union[PinLevel, PinPull]) -> None:
        """Set up a pin as an output with an initial level, or as an input with a pull."""

    def read_digital(self, pin: int) -> PinLevel:
        """Read the current level of an input pin."""

    def write_digital(self, pin: int, level: PinLevel) -> None:
        """Drive an output pin."""


class HubBinding(Protocol):
    """Abstract home-automation hub. Pushes are fire-and-forget."""

    def push_current_state(self, state: DoorState) -> None:
        """Tell the hub the current door state changed."""

    def push_target_state(self, state: DoorState) -> None:
        """Tell the hub the target door state changed."""


@dataclass(frozen=True)
class GarageConfig:
    """Immutable accessory configuration. Durations are in milliseconds."""

    name: str
    button_pin: int
    open_sensor_pin: int
    closed_sensor_pin: int
    duration_of_movement: int
    sensor_power_pin: Optional[int] = None
    polling_interval: int = 250
    duration_to_press_button: int = 300
    manufacturer: str = "Garage Pi"
    model: str = "Garage Pi Opener"
    serial_number: str = "000-000-001"

    DEFAULT_POLLING_INTERVAL: ClassVar[int] = 250
    DEFAULT_DURATION_TO_PRESS_BUTTON: ClassVar[int] = 300
    REQUIRED_KEYS: ClassVar[tuple] = (
        "name",
        "buttonPin",
        "openSensorPin",
        "closedSensorPin",
        "durationOfMovement",
    )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "GarageConfig":
        """Build a config from the raw (camelCase) config-file mapping.

        Every missing required key is reported before failing, so a user can
        fix the whole file in one go. Values are not type checked.

        Raises:
            ConfigError: If one or more required keys are absent
        """
        missing = [key for key in cls.REQUIRED_KEYS if key not in raw]
        if missing:
            for key in missing:
                logger.error(f'ERROR! The "{key}" key is not set in the config file!')
            raise ConfigError(missing)

        return cls(
            name=raw["name"],
            button_pin=raw["buttonPin"],
            open_sensor_pin=raw["openSensorPin"],
            closed_sensor_pin=raw["closedSensorPin"],
            duration_of_movement=raw["durationOfMovement"],
            sensor_power_pin=raw.get("sensorPowerPin"),
            polling_interval=raw.get("pollingInterval", cls.DEFAULT_POLLING_INTERVAL),
            duration_to_press_button=raw.get("durationToPressButton", cls.DEFAULT_DURATION_TO_PRESS_BUTTON),
            manufacturer=raw.get("manufacturer", cls.manufacturer),
            model=raw.get("model", cls.model),
            serial_number=raw.get("serialNumber", cls.serial_number),
        )


class DebounceBuffer:
    """Fixed-capacity ring of recent sensor readings with a majority vote.

    A single glitchy read never reaches the threshold on its own; only a
    sustained majority does.
    """

    def __init__(self, capacity: int = 4, threshold: float = 0.75):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.threshold = threshold
        self._values: Deque[DoorState] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[DoorState]:
        return iter(self._values)

    def push(self, value: DoorState) -> None:
        self._values.append(value)

    def predict(self) -> Optional[DoorState]:
        """Return the value holding at least `threshold` of the buffer, else None."""
        if not self._values:
            return None
        value, count = Counter(self._values).most_common(1)[0]
        if count >= self.threshold * len(self._values):
            return value
        return None

    def clear(self) -> None:
        self._values.clear()


class SensorReader:
    """Turn the open/closed sensor pins into a calculated door state."""

    def __init__(self, pins: PinIO, open_sensor_pin: int, closed_sensor_pin: int, name: str = "garage"):
        self.pins = pins
        self.open_sensor_pin = open_sensor_pin
        self.closed_sensor_pin = closed_sensor_pin
        self.name = name

    def read(self) -> DoorState:
        is_open = self.pins.read_digital(self.open_sensor_pin) == PinLevel.HIGH
        is_closed = self.pins.read_digital(self.closed_sensor_pin) == PinLevel.HIGH

        if is_open and is_closed:
            # The open sensor wins the tie; the conflict is only reported.
            logger.warning(f"{self.name}: Both sensors read as true. Error state!")

        if is_open:
            return DoorState.OPEN
        if is_closed:
            return DoorState.CLOSED
        return DoorState.STOPPED


class MovementTimer:
    """Cancellable one-shot "assume the movement finished" action.

    Arming replaces (and cancels) any pending handle, so the timer never
    double-fires. Cancelling is a no-op when nothing is pending.
    """

    def __init__(self, name: str = "garage"):
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self, delay_ms: float, callback: Callable[[], None]) -> None:
        logger.debug(f"{self.name}: Queueing movement callback in {delay_ms} ms")
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_ms / 1000.0, self._fire, callback)

    def cancel(self) -> None:
        if self._handle is not None:
            logger.debug(f"{self.name}: Cancelling pending movement callback")
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback: Callable[[], None]) -> None:
        logger.debug(f"{self.name}: Movement callback called")
        self._handle = None
        callback()


@dataclass
class PendingRequest:
    """A hub request waiting in the queue, with its completion signal."""
    target: DoorState
    completion: asyncio.Future = field(repr=False)


class RequestQueue:
    """FIFO of pending target-state requests."""

    def __init__(self) -> None:
        self._items: Deque[PendingRequest] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(self._items)

    def push(self, request: PendingRequest) -> bool:
        """Append a request. Returns True if the queue was empty before the push."""
        self._items.append(request)
        return len(self._items) == 1

    def peek(self) -> Optional[PendingRequest]:
        return self._items[0] if self._items else None

    def pop(self) -> PendingRequest:
        return self._items.popleft()


class DoorController:
    """Reconcile noisy door sensors with commanded button presses.

    The controller owns the stored current/target state, the debounce buffer,
    the movement timer and the request queue. Two loops mutate that state on
    the same event loop: the poll loop (sensor driven) and the request drain
    loop (hub driven). `processing_requests` and `waiting_for_initial_movement`
    keep the poll loop out of the way while a request is in flight.
    """

    def __init__(self, config: GarageConfig, pins: PinIO, hub: Optional[HubBinding] = None):
        self.config = config
        self.pins = pins
        self.hub = hub

        self.buffer = DebounceBuffer()
        self.requests = RequestQueue()
        self.movement_timer = MovementTimer(config.name)
        self.sensor_reader = SensorReader(pins, config.open_sensor_pin, config.closed_sensor_pin, config.name)

        self.processing_requests = False
        self.waiting_for_initial_movement = False

        self._stored_state: Optional[DoorState] = None
        self._stored_target_state: Optional[DoorState] = None
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._grace_handle: Optional[asyncio.TimerHandle] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._closed = False

        pins.configure_pin(config.button_pin, PinDirection.OUTPUT, PinLevel.LOW)
        pins.configure_pin(config.open_sensor_pin, PinDirection.INPUT, PinPull.PULL_DOWN)
        pins.configure_pin(config.closed_sensor_pin, PinDirection.INPUT, PinPull.PULL_DOWN)

        # If the sensors are powered by a GPIO pin, keep it powered
        if config.sensor_power_pin is not None:
            pins.configure_pin(config.sensor_power_pin, PinDirection.OUTPUT, PinLevel.HIGH)

        initial = self.sensor_reader.read()
        self.buffer.push(initial)
        self.stored_state = initial

    # ------------------------------------------------------------------
    # Stored state
    # ------------------------------------------------------------------
    @property
    def stored_state(self) -> Optional[DoorState]:
        """The door's state, as far as we know."""
        return self._stored_state

    @stored_state.setter
    def stored_state(self, new_value: DoorState) -> None:
        old_value = self._stored_state
        if new_value == old_value:
            return
        self._stored_state = new_value

        if old_value is not None:
            self._notify_hub("push_current_state", new_value)

        logger.info(f'{self.config.name}: Updated state to "{new_value.name}"')

        self.stored_target_state = target_for(new_value)

    @property
    def stored_target_state(self) -> Optional[DoorState]:
        """The target state, always derived from `stored_state`."""
        return self._stored_target_state

    @stored_target_state.setter
    def stored_target_state(self, new_value: DoorState) -> None:
        old_value = self._stored_target_state
        if new_value == old_value:
            return
        self._stored_target_state = new_value

        if old_value is not None:
            self._notify_hub("push_target_state", new_value)

        logger.info(f'{self.config.name}: Updated target to "{new_value.name}"')

    def _notify_hub(self, method: str, state: DoorState) -> None:
        # Pushes are fire-and-forget; a failing hub never interrupts a state update.
        if self.hub is None:
            return
        try:
            getattr(self.hub, method)(state)
        except Exception:
            logger.exception(f'{self.config.name}: Hub {method} failed for "{state.name}"')

    # ------------------------------------------------------------------
    # Hub handlers
    # ------------------------------------------------------------------
    def on_current_state_read(self) -> Optional[DoorState]:
        return self.stored_state

    def on_target_state_read(self) -> Optional[DoorState]:
        return self.stored_target_state

    def on_target_state_set(self, value: DoorState) -> asyncio.Future:
        """Entry point for hub set requests. The returned future is the ack."""
        return self.request_set(value)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start polling the sensors. Must be called from the running loop."""
        if self._poll_handle is not None or self._closed:
            return
        logger.info(f"{self.config.name}: Polling every {self.config.polling_interval} ms")
        self._schedule_poll()

    def _schedule_poll(self) -> None:
        loop = asyncio.get_running_loop()
        self._poll_handle = loop.call_later(self.config.polling_interval / 1000.0, self._poll)

    def _poll(self) -> None:
        try:
            self.poll_tick()
        finally:
            if not self._closed:
                self._schedule_poll()

    def poll_tick(self) -> None:
        """Run one sensor poll.

        Only a stable, changed reading causes a transition. A door that leaves
        an endpoint without a hub request is taken to be a physical button
        press and gets a movement callback of its own.
        """
        # Hands off while a request is in flight or the door hasn't had the
        # chance to start moving after a press.
        if self.processing_requests or self.waiting_for_initial_movement:
            return

        calculated = self.sensor_reader.read()
        self.buffer.push(calculated)
        predicted = self.buffer.predict()

        if predicted != calculated or predicted == self.stored_state:
            return

        if calculated != DoorState.STOPPED:
            # The door reached an end, no need to wait on movement any more
            self.movement_timer.cancel()
            logger.info(
                f"{self.config.name}: State updated in poll because the door was calculated as "
                f"{calculated.name} and we weren't processing requests or waiting for an initial movement."
            )
            self.stored_state = calculated
        elif not self.movement_timer.pending:
            logger.info(
                f"{self.config.name}: State updated in poll because there was no movement "
                f"callback pending and the state wasn't what we expected."
            )
            if self.stored_state == DoorState.CLOSED:
                self.stored_state = DoorState.OPENING
                self.queue_movement_callback()
            elif self.stored_state == DoorState.OPEN:
                self.stored_state = DoorState.CLOSING
                self.queue_movement_callback()
            else:
                self.stored_state = calculated

    # ------------------------------------------------------------------
    # Movement timer
    # ------------------------------------------------------------------
    def queue_movement_callback(self) -> None:
        """Arm the movement timer, replacing any pending one."""
        self.movement_timer.arm(self.config.duration_of_movement, self._movement_finished)

    def cancel_movement_callback(self) -> None:
        self.movement_timer.cancel()

    def _movement_finished(self) -> None:
        # One direct read, not debounced.
        self.stored_state = self.sensor_reader.read()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request_set(self, target: DoorState) -> asyncio.Future:
        """Queue a move to `target`.

        The returned future resolves as soon as the request has been applied
        optimistically (or skipped because it is already satisfied), not when
        the door physically finishes moving.

        Raises:
            ValueError: If target is not OPEN or CLOSED
        """
        if target not in TARGET_STATES:
            raise ValueError(f"Invalid target state: {target!r}")
        if self._closed:
            raise RuntimeError(f"{self.config.name}: controller is closed")

        loop = asyncio.get_running_loop()
        request = PendingRequest(target, loop.create_future())
        logger.info(f'{self.config.name}: A new request for "{target.name}" was queued')

        # Only the first request since the queue was last emptied starts a drain.
        if self.requests.push(request):
            self._drain_task = loop.create_task(self._process_requests())
        return request.completion

    async def _process_requests(self) -> None:
        self.processing_requests = len(self.requests) > 0

        while self.processing_requests:
            request = self.requests.peek()
            try:
                await self._process_request(request)
            except Exception as e:
                logger.exception(f'{self.config.name}: Failed to process request for "{request.target.name}": {e}')
                if not request.completion.done():
                    request.completion.set_exception(e)
            finally:
                self.requests.pop()
                self.processing_requests = len(self.requests) > 0

    async def _process_request(self, request: PendingRequest) -> None:
        target = request.target
        logger.info(f'{self.config.name}: Process request for "{target.name}"')

        if satisfies(self.stored_state, target):
            logger.info(f'{self.config.name}: State is already "{self.stored_state.name}". Skipping.')
            _complete(request)
            return

        self.cancel_movement_callback()

        logger.info(f"{self.config.name}: Pressing button")
        loop = asyncio.get_running_loop()
        button_press = loop.create_task(self.press_button())

        previous = self.stored_state
        new_state = TRANSITIONS[previous]
        logger.info(
            f'{self.config.name}: Last state was "{previous.name}" and predicted state is "{new_state.name}"'
        )
        need_initial_movement_grace = previous in ENDPOINT_STATES

        self.stored_state = new_state
        _complete(request)

        await button_press
        logger.info(f"{self.config.name}: Done pressing button")

        if new_state != DoorState.STOPPED:
            self.queue_movement_callback()

        if need_initial_movement_grace:
            self._begin_initial_movement_grace()

    def _begin_initial_movement_grace(self) -> None:
        # It can take a moment for the door to start moving; ignore the
        # sensors until then.
        self.waiting_for_initial_movement = True
        if self._grace_handle is not None:
            self._grace_handle.cancel()
        loop = asyncio.get_running_loop()
        self._grace_handle = loop.call_later(
            self.config.duration_of_movement / 5 / 1000.0, self._end_initial_movement_grace
        )

    def _end_initial_movement_grace(self) -> None:
        self.waiting_for_initial_movement = False
        self._grace_handle = None

    # ------------------------------------------------------------------
    # Button
    # ------------------------------------------------------------------
    async def press_button(self) -> None:
        """Press and release the garage button relay.

        The second wait lets the relay settle before anything else happens.
        """
        press_s = self.config.duration_to_press_button / 1000.0
        self.pins.write_digital(self.config.button_pin, PinLevel.HIGH)
        await asyncio.sleep(press_s)
        self.pins.write_digital(self.config.button_pin, PinLevel.LOW)
        await asyncio.sleep(press_s)

    # ------------------------------------------------------------------
    # Lifecycle / diagnostics
    # ------------------------------------------------------------------
    async def close(self) -> None:
        """Stop every loop and timer and release the button."""
        if self._closed:
            return
        self._closed = True

        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None
        if self._grace_handle is not None:
            self._grace_handle.cancel()
            self._grace_handle = None
        self.movement_timer.cancel()

        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while len(self.requests):
            request = self.requests.pop()
            if not request.completion.done():
                request.completion.cancel()
        self.processing_requests = False

        self.pins.write_digital(self.config.button_pin, PinLevel.LOW)
        logger.info(f"{self.config.name}: Controller closed")

    def accessory_info(self) -> Dict[str, str]:
        return {
            "name": self.config.name,
            "manufacturer": self.config.manufacturer,
            "model": self.config.model,
            "serial_number": self.config.serial_number,
        }

    def status_report(self) -> Dict[str, Any]:
        """Generate a status report of the controller's state and plumbing."""
        state = self.stored_state
        target = self.stored_target_state
        return {
            "name": self.config.name,
            "state": state.value if state is not None else None,
            "state_name": state.name if state is not None else None,
            "target": target.value if target is not None else None,
            "target_name": target.name if target is not None else None,
            "processing_requests": self.processing_requests,
            "waiting_for_initial_movement": self.waiting_for_initial_movement,
            "movement_callback_pending": self.movement_timer.pending,
            "queued_requests": [r.target.name for r in self.requests],
            "buffer": [v.name for v in self.buffer],
            "accessory": self.accessory_info(),
        }


def _complete(request: PendingRequest) -> None:
    if not request.completion.done():
        request.completion.set_result(None)
