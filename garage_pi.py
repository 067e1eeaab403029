"""Garage Pi entry point.

Usage:
    python garage_pi.py --config config.json

Loads the accessory configuration, sets up the GPIO pins and the hub binding,
then runs the door controller until SIGINT/SIGTERM.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Dict

from garage_door_controller import ConfigError, DoorController, GarageConfig
from gpio_pins import GpioZeroPins
from hub_bindings import LoggingHubBinding, MqttHubBinding


logger = logging.getLogger("garage_pi")

DEFAULT_CONFIG_PATH = "config.json"


class ConfigFileError(RuntimeError):
    pass


def load_config(path: str) -> Dict[str, Any]:
    """Read the JSON config file.

    Raises:
        ConfigFileError: If the file is missing, unreadable or not a JSON object
    """
    if not path or not os.path.exists(path):
        raise ConfigFileError(f"Configuration file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigFileError(f"Configuration file could not be read: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigFileError("Configuration file does not contain a JSON object.")
    return cfg


def setup_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def run(config: GarageConfig, raw: Dict[str, Any]) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    mqtt_settings = raw.get("mqtt")
    if mqtt_settings is not None:
        hub = MqttHubBinding.from_config(mqtt_settings, config.name)
    else:
        hub = LoggingHubBinding(config.name)

    pins = GpioZeroPins()
    controller = DoorController(config, pins, hub)
    if isinstance(hub, MqttHubBinding):
        hub.attach(controller, loop)

    controller.start()
    logger.info(f"{config.name}: running (state={controller.stored_state.name})")
    try:
        await stop.wait()
    finally:
        logger.info(f"{config.name}: shutting down")
        await controller.close()
        if isinstance(hub, MqttHubBinding):
            hub.close()
        pins.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Drive a garage door through a relay and two position sensors")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help=f"Path to the JSON config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"), help="Logging level (default: $LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        raw = load_config(args.config)
        config = GarageConfig.from_mapping(raw)
    except (ConfigFileError, ConfigError) as e:
        logger.error(f"[FATAL] {e}")
        return 1

    try:
        asyncio.run(run(config, raw))
    except ValueError as e:
        logger.error(f"[FATAL] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
