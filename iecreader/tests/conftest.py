"""
Shared test fixtures for reader daemon tests.

Provides environment variable fixtures for ReaderSettings configuration
tests, plus an in-memory serial transport and a controllable clock for the
protocol session tests. All reader env vars are cleaned before each test to
ensure isolation.

CHANGELOG:
- 2026-10-19: Ingest env names; PULSE_LINE cleanup (STORY-015)
- 2026-10-18: Add fake transport and clock for session tests (STORY-008)
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import pytest

# All ReaderSettings environment variable names, used for cleanup.
_ALL_READER_ENV_VARS = (
    "SERIAL_PORT",
    "DEVICE_ID",
    "STALL_TIMEOUT_S",
    "SLEEP_INTERVAL_MS",
    "PULSE_SETTLE_MS",
    "PULSE_LINE",
    "LOOP_INTERVAL_MS",
    "PUBLISHER",
    "INGEST_BASE_URL",
    "INGEST_TOKEN",
    "MQTT_HOST",
    "MQTT_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_TOPIC_PREFIX",
    "BATCH_SIZE",
    "PUBLISH_INTERVAL_S",
    "OUTBOX_SIZE",
    "HEALTH_PATH",
)


class FakeTransport:
    """In-memory ByteTransport: tests feed inbound bytes and inspect writes."""

    def __init__(self) -> None:
        self.inbound = bytearray()
        self.writes: list[bytes] = []
        self.speeds: list[int] = []

    @property
    def speed(self) -> int | None:
        return self.speeds[-1] if self.speeds else None

    def feed(self, data: bytes) -> None:
        self.inbound.extend(data)

    def set_speed(self, baud: int) -> None:
        self.speeds.append(baud)

    def bytes_available(self) -> int:
        return len(self.inbound)

    def read_byte(self) -> int:
        return self.inbound.pop(0)

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))


class FakeClock:
    """Millisecond clock advanced explicitly by the test."""

    def __init__(self, start: int = 0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture(autouse=True)
def _clean_reader_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all reader env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_READER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all environment variables for ReaderSettings (https publisher).

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "SERIAL_PORT": "/dev/ttyUSB1",
        "DEVICE_ID": "meter-test",
        "STALL_TIMEOUT_S": "30",
        "SLEEP_INTERVAL_MS": "1500",
        "PULSE_SETTLE_MS": "800",
        "PULSE_LINE": "dsr",
        "LOOP_INTERVAL_MS": "5",
        "PUBLISHER": "https",
        "INGEST_BASE_URL": "https://energy.example.com",
        "INGEST_TOKEN": "test-device-token",
        "BATCH_SIZE": "20",
        "PUBLISH_INTERVAL_S": "3",
        "OUTBOX_SIZE": "500",
        "HEALTH_PATH": "/tmp/health.json",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the variables required for the default https publisher."""
    env = {
        "SERIAL_PORT": "/dev/ttyUSB0",
        "INGEST_BASE_URL": "https://ingest.example.com",
        "INGEST_TOKEN": "device-token-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
