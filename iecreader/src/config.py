"""
Reader daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded ports, URLs, or credentials.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-001)
- 2026-10-19: Rename ingest settings; pulse sensor line (STORY-015)

TODO:
- None
"""

from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class ReaderSettings(BaseSettings):
    """Reader daemon configuration.

    Attributes:
        serial_port: Optical probe device path or pyserial URL.
        device_id: Identifier sent in snapshots. Defaults to the last path
            component of serial_port.
        stall_timeout_s: Watchdog limit per protocol state (min 5).
        sleep_interval_ms: Pause between register poll rounds.
        pulse_settle_ms: Pause after an external pulse before polling.
        pulse_line: Modem status input carrying an external pulse sensor
            (``cts``, ``dsr``, ``ri``, ``cd``), or ``none``.
        loop_interval_ms: Pause between session steps in the daemon loop.
        publisher: ``"https"`` or ``"mqtt"``.
        ingest_base_url: Ingest base URL (HTTPS only), required for https.
        ingest_token: Bearer token, required for https.
        mqtt_host: Broker hostname, required for mqtt.
        mqtt_port: Broker port.
        mqtt_username: Broker username (empty for anonymous).
        mqtt_password: Broker password.
        mqtt_topic_prefix: Prefix for state topics.
        batch_size: Max snapshots per publish.
        publish_interval_s: Seconds between publish attempts.
        outbox_size: Snapshots kept in memory while the publisher is down.
        health_path: Health JSON file path.
    """

    serial_port: str
    device_id: str = ""
    stall_timeout_s: int = 20
    sleep_interval_ms: int = 2000
    pulse_settle_ms: int = 1000
    pulse_line: Literal["none", "cts", "dsr", "ri", "cd"] = "none"
    loop_interval_ms: int = 10
    publisher: Literal["https", "mqtt"] = "https"
    ingest_base_url: str = ""
    ingest_token: str = ""
    mqtt_host: str = ""
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_topic_prefix: str = "iecreader"
    batch_size: int = 30
    publish_interval_s: int = 5
    outbox_size: int = 1000
    health_path: str = "/data/health.json"

    @model_validator(mode="after")
    def _default_device_id(self) -> "ReaderSettings":
        """Default device_id to the serial port name when not set."""
        if not self.device_id:
            self.device_id = self.serial_port.rstrip("/").rsplit("/", 1)[-1]
        return self

    @model_validator(mode="after")
    def _publisher_settings_present(self) -> "ReaderSettings":
        """Require the settings of the selected publisher."""
        if self.publisher == "https":
            if not self.ingest_base_url or not self.ingest_token:
                raise ValueError(
                    "PUBLISHER=https requires INGEST_BASE_URL and INGEST_TOKEN"
                )
        elif not self.mqtt_host:
            raise ValueError("PUBLISHER=mqtt requires MQTT_HOST")
        return self

    @field_validator("ingest_base_url")
    @classmethod
    def ingest_base_url_must_be_https(cls, v: str) -> str:
        """Reject plain HTTP ingest URLs at startup."""
        if v and not v.startswith("https://"):
            raise ValueError(f"INGEST_BASE_URL must use HTTPS (got: '{v[:20]}...').")
        return v

    @field_validator("stall_timeout_s")
    @classmethod
    def stall_timeout_must_cover_slow_readout(cls, v: int) -> int:
        """A 300 baud sign-on plus identification alone takes over a second."""
        if v < 5:
            raise ValueError("STALL_TIMEOUT_S must be >= 5")
        return v

    @field_validator("sleep_interval_ms", "pulse_settle_ms", "loop_interval_ms")
    @classmethod
    def intervals_must_be_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("intervals must be >= 0")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 1000."""
        if v < 1 or v > 1000:
            raise ValueError("BATCH_SIZE must be >= 1 and <= 1000")
        return v

    @field_validator("outbox_size")
    @classmethod
    def outbox_size_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("OUTBOX_SIZE must be >= 1")
        return v

    @field_validator("mqtt_port")
    @classmethod
    def mqtt_port_must_be_valid(cls, v: int) -> int:
        """Validate broker port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("MQTT_PORT must be between 1 and 65535")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
