"""Simple garage door simulator that prints step-by-step messages.

This standalone script runs the real DoorController against a simulated
physical door (``sim.mocks.MockGarageDoor``) and prints human-readable
messages with timestamps. It is intended for demonstration and manual
inspection of the controller timing.

Usage:
    python simulate_garage.py

The script will, per cycle:
 - ask the controller to open the door
 - wait for the movement to finish
 - (optionally) press the wall button by hand while the door is open
 - ask the controller to close the door
 - mash the request a second time while the first is in flight

"""
from __future__ import annotations

import argparse
import asyncio
import logging
import time
from typing import Callable

from garage_door_controller import DoorController, DoorState, GarageConfig
from sim.mocks import BUTTON_PIN, CLOSED_SENSOR_PIN, OPEN_SENSOR_PIN, MockGarageDoor, MockPins


def ts() -> str:
    return time.strftime("%H:%M:%S")


def print_step(msg: str) -> None:
    print(f"[{ts()}] {msg}")


def make_printer(verbose: bool):
    if verbose:
        return print_step
    else:
        return lambda *_args, **_kwargs: None


class PrintingHub:
    """Hub binding that prints what a home-automation hub would display."""

    def __init__(self, printer: Callable[[str], None]):
        self.print = printer

    def push_current_state(self, state: DoorState) -> None:
        self.print(f"(hub) current state: {state.name}")

    def push_target_state(self, state: DoorState) -> None:
        self.print(f"(hub) target state: {state.name}")


class GarageSimulator:
    def __init__(self, controller: DoorController, door: MockGarageDoor, manual_press: bool = False,
                 printer: Callable[[str], None] = print_step):
        self.controller = controller
        self.door = door
        self.manual_press = manual_press
        self.print = printer
        self.settle_s = controller.config.duration_of_movement / 1000.0 * 1.5

    async def request(self, target: DoorState) -> None:
        self.print(f"Hub requests {target.name}")
        await self.controller.on_target_state_set(target)
        self.print(f"Request acknowledged (controller state={self.controller.stored_state.name})")

    async def settle(self) -> None:
        await asyncio.sleep(self.settle_s)
        self.print(f"Door is physically {self.door.state.name}, controller reports "
                   f"{self.controller.stored_state.name} (target {self.controller.stored_target_state.name})")

    async def run_one_cycle(self) -> None:
        self.print("\n=== Opening from the hub ===")
        await self.request(DoorState.OPEN)
        await self.settle()

        if self.manual_press:
            self.print("\n=== Someone presses the wall button ===")
            self.door.press()
            await self.settle()
            if self.controller.stored_state != DoorState.OPEN:
                self.print("- Door was closed by hand, reopening from the hub")
                await self.request(DoorState.OPEN)
                await self.settle()

        self.print("\n=== Closing from the hub (button mashed twice) ===")
        first = self.controller.on_target_state_set(DoorState.CLOSED)
        second = self.controller.on_target_state_set(DoorState.CLOSED)
        await asyncio.gather(first, second)
        self.print(f"Both requests acknowledged, button presses so far: {self.door.press_count}")
        await self.settle()

        if self.controller.stored_state != DoorState.CLOSED:
            self.print("=== WARNING: door did not report closed ===")
            self.print(f"  * Status: {self.controller.status_report()}")


async def simulate(args, printer: Callable[[str], None]) -> None:
    pins = MockPins(glitch_prob=args.glitch_prob)
    door = MockGarageDoor(
        pins,
        BUTTON_PIN,
        OPEN_SENSOR_PIN,
        CLOSED_SENSOR_PIN,
        travel_ms=args.movement_ms * 0.8,
        start_delay_ms=args.movement_ms / 20,
    )
    config = GarageConfig(
        name="Simulated Garage",
        button_pin=BUTTON_PIN,
        open_sensor_pin=OPEN_SENSOR_PIN,
        closed_sensor_pin=CLOSED_SENSOR_PIN,
        duration_of_movement=args.movement_ms,
        polling_interval=args.polling_ms,
        duration_to_press_button=args.press_ms,
    )
    controller = DoorController(config, pins, PrintingHub(printer))
    controller.start()

    sim = GarageSimulator(controller, door, manual_press=args.manual_press, printer=printer)
    try:
        for cycle in range(1, args.cycles + 1):
            printer(f"--- Cycle {cycle} ---")
            await sim.run_one_cycle()
    finally:
        await controller.close()
        door.close()
    printer(f"Sensor reads: {pins.reads}, button presses: {door.press_count}")


def main():
    parser = argparse.ArgumentParser(description="Simulate a garage door driven by the door controller")
    parser.add_argument("--cycles", type=int, default=1, help="Number of open/close cycles to simulate (default: 1)")
    parser.add_argument("--movement-ms", type=int, default=2000, help="durationOfMovement in milliseconds (default: 2000)")
    parser.add_argument("--polling-ms", type=int, default=50, help="pollingInterval in milliseconds (default: 50)")
    parser.add_argument("--press-ms", type=int, default=100, help="durationToPressButton in milliseconds (default: 100)")
    parser.add_argument("--glitch-prob", type=float, default=0.0, help="Probability (0.0-1.0) that a sensor read is flipped (default: 0.0)")
    parser.add_argument("--manual-press", action="store_true", help="Also press the wall button by hand while the door is open")
    parser.add_argument("--quiet", action="store_true", help="Suppress printed steps")
    parser.add_argument("--log-level", default="WARNING", help="Controller logging level (default: WARNING)")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING),
                        format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    printer = make_printer(not args.quiet)
    printer("Starting garage door simulation")
    asyncio.run(simulate(args, printer))
    printer("Simulation complete")


if __name__ == "__main__":
    main()
