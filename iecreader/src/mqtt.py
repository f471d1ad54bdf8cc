"""
MQTT publisher for meter snapshots.

Publishes every pending snapshot as a JSON state message to
``{topic_prefix}/{device_id}/state`` and, once per process, retained Home
Assistant discovery configs for the energy and power sensors. Uses
paho-mqtt's one-shot ``publish.multiple`` (connect, publish, disconnect),
run in a worker thread so the event loop is never blocked by the broker.

Same contract as the HTTPS uploader: rows are only acknowledged after the
broker accepted them; failures double the backoff.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from paho.mqtt import MQTTException
from paho.mqtt import publish

if TYPE_CHECKING:
    from iecreader.src.outbox import Outbox

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 300.0

DISCOVERY_SENSORS: dict[str, dict[str, str]] = {
    "energy_positive_wh": {
        "device_class": "energy",
        "state_class": "total_increasing",
        "unit_of_measurement": "Wh",
        "icon": "mdi:transmission-tower-import",
    },
    "energy_negative_wh": {
        "device_class": "energy",
        "state_class": "total_increasing",
        "unit_of_measurement": "Wh",
        "icon": "mdi:transmission-tower-export",
    },
    "power_w": {
        "device_class": "power",
        "state_class": "measurement",
        "unit_of_measurement": "W",
        "icon": "mdi:flash",
    },
}
"""Home Assistant sensors derived from the snapshot fields."""


class MqttPublisher:
    """Publish outbox batches to an MQTT broker.

    Args:
        host: Broker hostname.
        port: Broker port (default 1883).
        username: Optional username; no auth when empty.
        password: Password for *username*.
        topic_prefix: Prefix for state topics.
        batch_size: Maximum number of snapshots per connection.
        discovery_prefix: Home Assistant discovery prefix; empty disables
            discovery messages.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        username: str = "",
        password: str = "",
        topic_prefix: str = "iecreader",
        batch_size: int = 30,
        discovery_prefix: str = "homeassistant",
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
    ) -> None:
        self._host = host
        self._port = port
        self._auth = {"username": username, "password": password} if username else None
        self._topic_prefix = topic_prefix.rstrip("/")
        self._batch_size = batch_size
        self._discovery_prefix = discovery_prefix
        self._max_backoff_s = max_backoff_s
        self._current_backoff = _INITIAL_BACKOFF_S
        self._discovery_sent: set[str] = set()

    @property
    def current_backoff(self) -> float:
        return self._current_backoff

    def state_topic(self, device_id: str) -> str:
        return f"{self._topic_prefix}/{device_id}/state"

    def _discovery_messages(self, sample: dict[str, Any]) -> list[dict[str, Any]]:
        device_id = sample["device_id"]
        device = {
            "identifiers": [device_id],
            "name": device_id,
            "model": sample.get("identification") or "IEC 62056-21 meter",
        }
        if sample.get("serial_number"):
            device["serial_number"] = str(sample["serial_number"])

        msgs = []
        for field, attrs in DISCOVERY_SENSORS.items():
            unique_id = f"{device_id}_{field}"
            config = {
                "name": field,
                "unique_id": unique_id,
                "state_topic": self.state_topic(device_id),
                "value_template": f"{{{{ value_json.{field} }}}}",
                "device": device,
                **attrs,
            }
            msgs.append(
                {
                    "topic": f"{self._discovery_prefix}/sensor/{unique_id}/config",
                    "payload": json.dumps(config),
                    "retain": True,
                }
            )
        return msgs

    async def publish_batch(self, outbox: Outbox) -> bool:
        """Publish up to ``batch_size`` pending snapshots.

        Returns:
            ``True`` when the batch was published and acknowledged,
            ``False`` when the outbox was empty or the broker failed.
        """
        rows = outbox.peek(self._batch_size)
        if not rows:
            logger.debug("Outbox empty, nothing to publish.")
            return False

        msgs: list[dict[str, Any]] = []
        new_devices: set[str] = set()
        for _, payload in rows:
            sample = json.loads(payload)
            device_id = sample["device_id"]
            if self._discovery_prefix and device_id not in self._discovery_sent | new_devices:
                msgs.extend(self._discovery_messages(sample))
                new_devices.add(device_id)
            msgs.append({"topic": self.state_topic(device_id), "payload": payload})

        try:
            await asyncio.to_thread(
                publish.multiple,
                msgs,
                hostname=self._host,
                port=self._port,
                auth=self._auth,
            )
        except (OSError, MQTTException) as exc:
            logger.warning("MQTT publish to %s:%d failed: %s", self._host, self._port, exc)
            self._current_backoff = min(self._current_backoff * 2, self._max_backoff_s)
            return False

        outbox.ack([rowid for rowid, _ in rows])
        self._discovery_sent |= new_devices
        self._current_backoff = _INITIAL_BACKOFF_S
        logger.info("Published %d snapshots to MQTT %s:%d", len(rows), self._host, self._port)
        return True
