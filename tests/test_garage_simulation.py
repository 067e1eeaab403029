"""End-to-end runs of the controller against the simulated door.

Scenarios covered:
1. Hub-driven open and close
2. Someone using the wall button
3. Sensor noise
4. Button mashing from the hub
5. A door that never moves
"""

import asyncio

import pytest

from garage_door_controller import DoorController, DoorState, PinLevel
from sim.mocks import (
    BUTTON_PIN,
    CLOSED_SENSOR_PIN,
    OPEN_SENSOR_PIN,
    MockGarageDoor,
    MockHub,
    MockPins,
    make_config,
)

# 200 ms movement budget, the simulated door needs 150 ms to travel
SETTLE_S = 0.5


def setup_garage_system(initial=DoorState.CLOSED, stuck=False, glitch_prob=0.0):
    """Create a running controller wired to a simulated door.

    Must be called from inside the event loop.
    """
    pins = MockPins(glitch_prob=glitch_prob, seed=7)
    door = MockGarageDoor(
        pins, BUTTON_PIN, OPEN_SENSOR_PIN, CLOSED_SENSOR_PIN,
        travel_ms=150, start_delay_ms=10, initial=initial, stuck=stuck,
    )
    hub = MockHub()
    controller = DoorController(make_config(), pins, hub)
    controller.start()
    return {"controller": controller, "door": door, "pins": pins, "hub": hub}


async def teardown(sys):
    await sys["controller"].close()
    sys["door"].close()


class TestHubRequests:
    def test_open_then_close(self):
        async def scenario():
            sys = setup_garage_system(DoorState.CLOSED)
            controller, door, hub = sys["controller"], sys["door"], sys["hub"]

            await controller.on_target_state_set(DoorState.OPEN)
            assert controller.stored_state == DoorState.OPENING
            await asyncio.sleep(SETTLE_S)
            assert door.state == DoorState.OPEN
            assert controller.stored_state == DoorState.OPEN

            await controller.on_target_state_set(DoorState.CLOSED)
            assert controller.stored_state == DoorState.CLOSING
            await asyncio.sleep(SETTLE_S)
            assert door.state == DoorState.CLOSED
            assert controller.stored_state == DoorState.CLOSED

            assert door.press_count == 2
            assert hub.current_states == [
                DoorState.OPENING, DoorState.OPEN, DoorState.CLOSING, DoorState.CLOSED,
            ]
            assert hub.target_states == [DoorState.OPEN, DoorState.CLOSED]
            await teardown(sys)

        asyncio.run(scenario())

    def test_mashed_requests_press_once(self):
        async def scenario():
            sys = setup_garage_system(DoorState.OPEN)
            controller, door = sys["controller"], sys["door"]

            acks = [controller.on_target_state_set(DoorState.CLOSED) for _ in range(3)]
            await asyncio.gather(*acks)
            await asyncio.sleep(SETTLE_S)

            assert door.press_count == 1
            assert controller.stored_state == DoorState.CLOSED
            await teardown(sys)

        asyncio.run(scenario())

    def test_reverse_while_closing(self):
        async def scenario():
            sys = setup_garage_system(DoorState.OPEN)
            controller, door = sys["controller"], sys["door"]

            await controller.on_target_state_set(DoorState.CLOSED)
            await asyncio.sleep(0.06)
            # Door is on its way down; asking for open reverses it
            await controller.on_target_state_set(DoorState.OPEN)
            assert controller.stored_state == DoorState.OPENING
            await asyncio.sleep(SETTLE_S)

            assert door.state == DoorState.OPEN
            assert controller.stored_state == DoorState.OPEN
            assert door.press_count == 2
            await teardown(sys)

        asyncio.run(scenario())


class TestWallButton:
    @pytest.mark.parametrize("initial,moving,final", [
        (DoorState.OPEN, DoorState.CLOSING, DoorState.CLOSED),
        (DoorState.CLOSED, DoorState.OPENING, DoorState.OPEN),
    ])
    def test_physical_press_is_followed(self, initial, moving, final):
        async def scenario():
            sys = setup_garage_system(initial)
            controller, door, hub, pins = sys["controller"], sys["door"], sys["hub"], sys["pins"]

            await asyncio.sleep(0.05)
            door.press()
            await asyncio.sleep(SETTLE_S)

            assert controller.stored_state == final
            assert hub.current_states == [moving, final]
            assert pins.presses(BUTTON_PIN) == 0
            assert not controller.movement_timer.pending
            await teardown(sys)

        asyncio.run(scenario())

    def test_door_stopped_by_hand_reports_stopped(self):
        async def scenario():
            sys = setup_garage_system(DoorState.CLOSED)
            controller, door = sys["controller"], sys["door"]

            await asyncio.sleep(0.05)
            door.press()
            await asyncio.sleep(0.07)
            door.press()  # stop half way
            assert door.state == DoorState.STOPPED
            await asyncio.sleep(SETTLE_S)

            # The movement timer's snapshot settles it
            assert controller.stored_state == DoorState.STOPPED
            assert controller.stored_target_state == DoorState.OPEN
            await teardown(sys)

        asyncio.run(scenario())


class TestSensorNoise:
    def test_isolated_glitches_are_ignored(self):
        async def scenario():
            sys = setup_garage_system(DoorState.CLOSED)
            controller, pins, hub = sys["controller"], sys["pins"], sys["hub"]

            for _ in range(5):
                await asyncio.sleep(0.03)
                pins.queue_glitch(CLOSED_SENSOR_PIN, PinLevel.LOW)
            await asyncio.sleep(0.05)

            assert controller.stored_state == DoorState.CLOSED
            assert hub.current_states == []
            await teardown(sys)

        asyncio.run(scenario())

    def test_both_sensors_asserted_reads_as_open(self, caplog):
        async def scenario():
            sys = setup_garage_system(DoorState.CLOSED)
            controller, pins = sys["controller"], sys["pins"]

            pins.set_input(OPEN_SENSOR_PIN, True)
            await asyncio.sleep(0.1)

            assert controller.stored_state == DoorState.OPEN
            await teardown(sys)

        asyncio.run(scenario())
        assert any("Both sensors read as true" in r.getMessage() for r in caplog.records)


class TestStuckDoor:
    def test_state_falls_back_to_what_the_sensors_say(self):
        async def scenario():
            sys = setup_garage_system(DoorState.CLOSED, stuck=True)
            controller, door = sys["controller"], sys["door"]

            await controller.on_target_state_set(DoorState.OPEN)
            assert controller.stored_state == DoorState.OPENING
            await asyncio.sleep(SETTLE_S)

            assert door.press_count == 1
            assert controller.stored_state == DoorState.CLOSED
            await teardown(sys)

        asyncio.run(scenario())
