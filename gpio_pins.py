"""Digital pin access backed by gpiozero.

gpiozero picks its pin factory at runtime (lgpio / RPi.GPIO on a Pi, or
``MockFactory`` in tests), so this module imports cleanly off-device.
"""
from __future__ import annotations

import logging
from typing import Dict, Union

from gpiozero import DigitalInputDevice, DigitalOutputDevice

from garage_door_controller import PinDirection, PinLevel, PinPull


logger = logging.getLogger(__name__)


class PinNotConfiguredError(KeyError):
    pass


class GpioZeroPins:
    """PinIO implementation holding one gpiozero device per configured pin."""

    def __init__(self, pin_factory=None):
        self.pin_factory = pin_factory
        self._inputs: Dict[int, DigitalInputDevice] = {}
        self._outputs: Dict[int, DigitalOutputDevice] = {}

    def configure_pin(self, pin: int, direction: PinDirection, initial: Union[PinLevel, PinPull]) -> None:
        self._release(pin)
        if direction == PinDirection.OUTPUT:
            if not isinstance(initial, PinLevel):
                raise ValueError(f"Output pin {pin} needs an initial level, got {initial!r}")
            self._outputs[pin] = DigitalOutputDevice(
                pin, initial_value=initial == PinLevel.HIGH, pin_factory=self.pin_factory
            )
        else:
            if initial != PinPull.PULL_DOWN:
                raise ValueError(f"Unsupported input setting for pin {pin}: {initial!r}")
            self._inputs[pin] = DigitalInputDevice(pin, pull_up=False, pin_factory=self.pin_factory)
        logger.debug(f"Configured pin {pin} as {direction.name} ({initial.name})")

    def read_digital(self, pin: int) -> PinLevel:
        device = self._inputs.get(pin)
        if device is None:
            raise PinNotConfiguredError(f"Pin {pin} is not configured as an input")
        return PinLevel.HIGH if device.value else PinLevel.LOW

    def write_digital(self, pin: int, level: PinLevel) -> None:
        device = self._outputs.get(pin)
        if device is None:
            raise PinNotConfiguredError(f"Pin {pin} is not configured as an output")
        if level == PinLevel.HIGH:
            device.on()
        else:
            device.off()

    def _release(self, pin: int) -> None:
        device = self._inputs.pop(pin, None) or self._outputs.pop(pin, None)
        if device is not None:
            device.close()

    def close(self) -> None:
        """Release every device so the pins return to their default state."""
        for pin in list(self._inputs) + list(self._outputs):
            self._release(pin)


__all__ = ["GpioZeroPins", "PinNotConfiguredError"]
