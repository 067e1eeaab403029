"""Hub bindings that surface door state and accept target-state commands.

- LoggingHubBinding: logs every push, used when no hub is configured
- MqttHubBinding: retained state topics plus a ``target/set`` command topic
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Mapping, Optional

import paho.mqtt.client as mqtt

from garage_door_controller import DoorController, DoorState, TARGET_STATES


logger = logging.getLogger(__name__)


class LoggingHubBinding:
    def __init__(self, name: str = "garage"):
        self.name = name

    def push_current_state(self, state: DoorState) -> None:
        logger.info(f"{self.name}: current state -> {state.name}")

    def push_target_state(self, state: DoorState) -> None:
        logger.info(f"{self.name}: target state -> {state.name}")


def parse_target(payload: str) -> DoorState:
    """Parse a target-state command: "open"/"closed" or the HomeKit codes 0/1.

    Raises:
        ValueError: If the payload names no target state
    """
    text = payload.strip().lower()
    if text.isdigit():
        state = DoorState(int(text))
    else:
        state = DoorState[text.upper()]
    if state not in TARGET_STATES:
        raise ValueError(f"{state.name} is not a target state")
    return state


def topic_level(text: str) -> str:
    """Make free text usable as a single MQTT topic level."""
    return re.sub(r"[+#/]", "_", text)


class MqttHubBinding:
    """Expose a DoorController over MQTT.

    paho runs its network loop on its own thread; every inbound event is
    handed to the controller's event loop with ``call_soon_threadsafe`` so the
    controller is only ever touched from one thread.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        topic_prefix: str = "garage",
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "",
        client: Optional[Any] = None,
    ):
        if "+" in topic_prefix or "#" in topic_prefix:
            raise ValueError(f"MQTT topic prefix cannot contain wildcards: {topic_prefix!r}")
        self.host = host
        self.port = port
        self.topic_prefix = topic_prefix.rstrip("/")
        self.controller: Optional[DoorController] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        if client is None:
            client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
            if username:
                client.username_pw_set(username, password)
        self.client = client
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect

    @classmethod
    def from_config(cls, raw: Mapping[str, Any], name: str) -> "MqttHubBinding":
        """Build a binding from the ``mqtt`` section of the config file."""
        if "host" not in raw:
            logger.error('ERROR! The "mqtt.host" key is not set in the config file!')
            raise ValueError("Missing keys in config: mqtt.host")
        topic_prefix = raw.get("topicPrefix", f"garage/{topic_level(name)}")
        if "+" in topic_prefix or "#" in topic_prefix:
            logger.error('ERROR! The "mqtt.topicPrefix" key cannot contain "+" or "#"!')
        return cls(
            host=raw["host"],
            port=int(raw.get("port", 1883)),
            topic_prefix=topic_prefix,
            username=raw.get("username"),
            password=raw.get("password"),
            client_id=raw.get("clientId", ""),
        )

    # ---------- topics ----------
    @property
    def current_topic(self) -> str:
        return f"{self.topic_prefix}/current"

    @property
    def target_topic(self) -> str:
        return f"{self.topic_prefix}/target"

    @property
    def set_topic(self) -> str:
        return f"{self.topic_prefix}/target/set"

    @property
    def info_topic(self) -> str:
        return f"{self.topic_prefix}/info"

    # ---------- lifecycle ----------
    def attach(self, controller: DoorController, loop: asyncio.AbstractEventLoop) -> None:
        """Bind to a controller and start the MQTT network loop."""
        self.controller = controller
        self.loop = loop
        controller.hub = self
        logger.info(f"Connecting to MQTT broker {self.host}:{self.port}")
        self.client.connect_async(self.host, self.port, keepalive=60)
        self.client.loop_start()

    def close(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()

    # ---------- HubBinding ----------
    def push_current_state(self, state: DoorState) -> None:
        self._publish(self.current_topic, state.name.lower())

    def push_target_state(self, state: DoorState) -> None:
        self._publish(self.target_topic, state.name.lower())

    def _publish(self, topic: str, payload: str) -> None:
        result = self.client.publish(topic, payload, qos=1, retain=True)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"Publish to {topic} failed (rc={result.rc})")

    # ---------- paho callbacks (network thread) ----------
    def _on_connect(self, client, userdata, flags, rc, properties=None):
        if rc != 0:
            logger.error(f"MQTT connection failed (rc={rc})")
            return
        logger.info("Connected to MQTT broker")
        client.subscribe(self.set_topic, qos=1)
        self.loop.call_soon_threadsafe(self.publish_snapshot)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        if rc != 0:
            logger.warning(f"Unexpected MQTT disconnect (rc={rc})")

    def _on_message(self, client, userdata, msg):
        payload = msg.payload.decode("utf-8", errors="replace")
        self.loop.call_soon_threadsafe(self.handle_set, payload)

    # ---------- event-loop side ----------
    def publish_snapshot(self) -> None:
        """Answer the hub's "get" for both characteristics plus accessory info."""
        current = self.controller.on_current_state_read()
        target = self.controller.on_target_state_read()
        if current is not None:
            self.push_current_state(current)
        if target is not None:
            self.push_target_state(target)
        self._publish(self.info_topic, json.dumps(self.controller.accessory_info()))

    def handle_set(self, payload: str) -> Optional[asyncio.Future]:
        try:
            target = parse_target(payload)
        except (KeyError, ValueError):
            logger.warning(f"Ignoring invalid target state payload {payload!r}")
            return None
        try:
            ack = self.controller.on_target_state_set(target)
        except RuntimeError as e:
            logger.warning(f'Dropping request for "{target.name}": {e}')
            return None
        ack.add_done_callback(lambda fut: self._log_ack(target, fut))
        return ack

    def _log_ack(self, target: DoorState, fut: asyncio.Future) -> None:
        if fut.cancelled():
            logger.warning(f'Request for "{target.name}" was cancelled')
        elif fut.exception() is not None:
            logger.error(f'Request for "{target.name}" failed: {fut.exception()}')
        else:
            logger.debug(f'Request for "{target.name}" acknowledged')
