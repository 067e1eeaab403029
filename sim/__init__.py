"""Simulation helper package.

Expose reusable mock hardware for tests and the simulator.
"""

from .mocks import MockPins, MockHub, MockGarageDoor, MockMqttClient, build_garage, make_config, set_sensors
