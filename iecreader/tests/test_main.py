"""
Unit tests for the reader daemon main loop module.

Tests verify:
- Session step calls session.poll() and updates the health file.
- Health writes from the session loop are throttled and flushed on exit.
- A session error doesn't crash the loop.
- Snapshots published by the session are queued as JSON.
- Publish loop calls publisher.publish_batch(outbox).
- Shutdown signal stops loops gracefully with a final publish.
- The publisher is selected from settings.
- The pulse input is built from the configured modem line.
- Startup logs config summary without secrets.

CHANGELOG:
- 2026-10-18: Drive the meter session instead of a Modbus poller (STORY-013)
- 2026-10-19: Pulse input wiring; throttled health writes (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from iecreader.src.health import HealthWriter
from iecreader.src.main import (
    _publish_loop,
    _publish_once,
    _step_once,
    build_publisher,
    build_pulse,
    enqueue_snapshots,
    log_config_summary,
    run_loops,
)
from iecreader.src.models import MeterSnapshot
from iecreader.src.mqtt import MqttPublisher
from iecreader.src.outbox import Outbox
from iecreader.src.session import State
from iecreader.src.transport import ModemLinePulse
from iecreader.src.uploader import Uploader

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_snapshot(device_id: str = "meter-test") -> MeterSnapshot:
    return MeterSnapshot(
        device_id=device_id,
        ts=datetime(2026, 10, 18, 10, 0, 0, tzinfo=UTC),
        identification="ISK5ME162-0033",
        serial_number=28342193,
        energy_positive_wh=32826545,
        energy_negative_wh=1,
        power_w=-295.3,
    )


def _make_settings(**overrides: object) -> MagicMock:
    """Create a mock ReaderSettings with sensible defaults."""
    defaults = {
        "serial_port": "/dev/ttyUSB0",
        "device_id": "meter-test",
        "stall_timeout_s": 20,
        "sleep_interval_ms": 2000,
        "pulse_settle_ms": 1000,
        "pulse_line": "none",
        "publisher": "https",
        "ingest_base_url": "https://energy.example.com",
        "ingest_token": "secret-token-abc",
        "mqtt_host": "",
        "mqtt_port": 1883,
        "mqtt_username": "",
        "mqtt_password": "broker-pass-xyz",
        "mqtt_topic_prefix": "iecreader",
        "batch_size": 30,
        "publish_interval_s": 5,
        "outbox_size": 1000,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for key, value in defaults.items():
        setattr(settings, key, value)
    return settings


def _make_session(state: State = State.SLEEP) -> MagicMock:
    session = MagicMock()
    session.state = state
    return session


def _make_publisher(result: bool = True) -> AsyncMock:
    publisher = AsyncMock()
    publisher.publish_batch = AsyncMock(return_value=result)
    publisher.current_backoff = 1.0
    return publisher


# ---------------------------------------------------------------------------
# Session step
# ---------------------------------------------------------------------------


class TestStepOnce:
    def test_polls_session(self) -> None:
        session = _make_session()
        _step_once(session=session, outbox=Outbox(), health=None)
        session.poll.assert_called_once_with()

    def test_session_exception_does_not_crash(self) -> None:
        session = _make_session()
        session.poll.side_effect = RuntimeError("serial port vanished")
        _step_once(session=session, outbox=Outbox(), health=None)

    def test_health_file_updated(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        outbox = Outbox()
        outbox.enqueue("{}")

        _step_once(
            session=_make_session(State.AWAIT_REGISTER),
            outbox=outbox,
            health=HealthWriter(health_path),
        )

        data = json.loads(health_path.read_text())
        assert data["state"] == "await_register"
        assert data["outbox_count"] == 1

    def test_health_updated_even_on_session_error(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        session = _make_session(State.LOGIN)
        session.poll.side_effect = RuntimeError("boom")

        _step_once(session=session, outbox=Outbox(), health=HealthWriter(health_path))

        assert json.loads(health_path.read_text())["state"] == "login"

    def test_health_not_rewritten_every_step(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        health = HealthWriter(health_path, min_interval_s=30.0, clock=lambda: 0.0)
        outbox = Outbox()

        for state in (State.LOGIN, State.AWAIT_IDENTIFICATION, State.REQUEST_DATA_MODE):
            _step_once(session=_make_session(state), outbox=outbox, health=health)

        assert json.loads(health_path.read_text())["state"] == "login"


class TestEnqueueSnapshots:
    def test_snapshot_queued_as_json(self) -> None:
        outbox = Outbox()
        enqueue_snapshots(outbox)(_make_snapshot())

        rows = outbox.peek(1)
        parsed = json.loads(rows[0][1])
        assert parsed["device_id"] == "meter-test"
        assert parsed["energy_positive_wh"] == 32826545
        assert parsed["power_w"] == -295.3


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublishOnce:
    @pytest.mark.asyncio
    async def test_calls_publish_batch(self) -> None:
        publisher = _make_publisher()
        outbox = Outbox()

        result = await _publish_once(publisher=publisher, outbox=outbox)

        publisher.publish_batch.assert_awaited_once_with(outbox)
        assert result is True

    @pytest.mark.asyncio
    async def test_exception_does_not_crash(self) -> None:
        publisher = _make_publisher()
        publisher.publish_batch = AsyncMock(side_effect=RuntimeError("Network error"))

        assert await _publish_once(publisher=publisher, outbox=Outbox()) is False

    @pytest.mark.asyncio
    async def test_success_recorded_in_health(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"

        await _publish_once(
            publisher=_make_publisher(),
            outbox=Outbox(),
            health=HealthWriter(health_path),
        )

        assert json.loads(health_path.read_text())["last_publish_ts"] is not None


class TestPublishLoopBackoff:
    @pytest.mark.asyncio
    async def test_waits_for_backoff_after_failure(self) -> None:
        publisher = _make_publisher(result=False)
        publisher.current_backoff = 60.0
        outbox = Outbox()
        outbox.enqueue("{}")
        shutdown_event = asyncio.Event()

        task = asyncio.create_task(
            _publish_loop(
                publisher=publisher,
                outbox=outbox,
                publish_interval_s=0.01,
                shutdown_event=shutdown_event,
            )
        )
        await asyncio.sleep(0.1)
        shutdown_event.set()
        await asyncio.wait_for(task, timeout=5.0)

        # Backoff of 60s means no second attempt within 0.1s.
        assert publisher.publish_batch.await_count == 1


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------


class TestGracefulShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_stops_loops_with_final_publish(self) -> None:
        session = _make_session()
        publisher = _make_publisher()
        shutdown_event = asyncio.Event()

        async def _trigger_shutdown() -> None:
            await asyncio.sleep(0.1)
            shutdown_event.set()

        task = asyncio.create_task(
            run_loops(
                session=session,
                publisher=publisher,
                outbox=Outbox(),
                loop_interval_s=0.01,
                publish_interval_s=0.05,
                shutdown_event=shutdown_event,
            )
        )
        trigger = asyncio.create_task(_trigger_shutdown())

        await asyncio.wait_for(asyncio.gather(task, trigger), timeout=5.0)

        assert session.poll.call_count >= 2
        # At least one loop publish plus the final one.
        assert publisher.publish_batch.await_count >= 2

    @pytest.mark.asyncio
    async def test_shutdown_flushes_health(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        outbox = Outbox()
        session = _make_session()
        session.poll.side_effect = lambda: outbox.enqueue("{}")
        publisher = _make_publisher(result=False)
        shutdown_event = asyncio.Event()

        async def _trigger_shutdown() -> None:
            await asyncio.sleep(0.1)
            shutdown_event.set()

        task = asyncio.create_task(
            run_loops(
                session=session,
                publisher=publisher,
                outbox=outbox,
                loop_interval_s=0.01,
                publish_interval_s=0.05,
                shutdown_event=shutdown_event,
                health=HealthWriter(health_path, min_interval_s=3600.0),
            )
        )
        trigger = asyncio.create_task(_trigger_shutdown())

        await asyncio.wait_for(asyncio.gather(task, trigger), timeout=5.0)

        assert outbox.count() >= 2
        assert json.loads(health_path.read_text())["outbox_count"] == outbox.count()


# ---------------------------------------------------------------------------
# Publisher selection
# ---------------------------------------------------------------------------


class TestBuildPublisher:
    def test_https(self) -> None:
        assert isinstance(build_publisher(_make_settings()), Uploader)

    def test_mqtt(self) -> None:
        settings = _make_settings(publisher="mqtt", mqtt_host="broker.local")
        assert isinstance(build_publisher(settings), MqttPublisher)


class TestBuildPulse:
    def test_no_line_configured(self) -> None:
        assert build_pulse(_make_settings(), MagicMock()) is None

    def test_modem_line(self) -> None:
        pulse = build_pulse(_make_settings(pulse_line="dsr"), MagicMock())
        assert isinstance(pulse, ModemLinePulse)


# ---------------------------------------------------------------------------
# Startup logging
# ---------------------------------------------------------------------------


class TestStartupLogging:
    def test_log_config_summary_contains_port(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="iecreader.src.main"):
            log_config_summary(_make_settings())

        assert "/dev/ttyUSB0" in caplog.text

    def test_log_config_summary_hides_secrets(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="iecreader.src.main"):
            log_config_summary(_make_settings())

        assert "secret-token-abc" not in caplog.text
        assert "broker-pass-xyz" not in caplog.text
        assert "sha256=" in caplog.text
