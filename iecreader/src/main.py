"""
Reader daemon main loop for the IEC 62056-21 meter-to-publisher pipeline.

Runs two concurrent asyncio loops:
1. **Session loop**: steps the MeterSession every few milliseconds. The
   session talks to the meter, estimates power and, when its publish policy
   fires, enqueues a JSON snapshot into the in-memory outbox.
2. **Publish loop**: calls publisher.publish_batch(outbox) to flush queued
   snapshots over HTTPS or MQTT.

Both loops are resilient: an exception in one iteration is logged and does
not crash the loop or affect the other loop. Graceful shutdown on
SIGTERM/SIGINT sets a shared asyncio.Event, allowing both loops to finish
their current iteration and then attempt one final publish before exiting.

Structured JSON logging is used for all events. A HealthWriter instance
tracks the protocol state, last publish and outbox size.

CHANGELOG:
- 2026-10-18: Drive the Mode C session instead of a Modbus poller (STORY-013)
- 2026-10-19: Wire the modem line pulse input; one health update per step (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from iecreader.src.health import HealthWriter

if TYPE_CHECKING:
    from iecreader.src.config import ReaderSettings
    from iecreader.src.models import MeterSnapshot
    from iecreader.src.outbox import Outbox
    from iecreader.src.session import MeterSession
    from iecreader.src.transport import SerialTransport

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """What the publish loop needs (Uploader or MqttPublisher)."""

    @property
    def current_backoff(self) -> float: ...

    async def publish_batch(self, outbox: Outbox) -> bool: ...


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging for the reader daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup with secrets fingerprinted.

    Args:
        settings: A ReaderSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Reader daemon starting with config: "
        "serial_port=%s, device_id=%s, stall_timeout_s=%s, "
        "sleep_interval_ms=%s, pulse_settle_ms=%s, pulse_line=%s, publisher=%s, "
        "ingest_base_url=%s, mqtt_host=%s, mqtt_port=%s, mqtt_username=%s, "
        "batch_size=%s, publish_interval_s=%s, outbox_size=%s, "
        "ingest_token_masked=%s, mqtt_password_masked=%s",
        settings.serial_port,  # type: ignore[attr-defined]
        settings.device_id,  # type: ignore[attr-defined]
        settings.stall_timeout_s,  # type: ignore[attr-defined]
        settings.sleep_interval_ms,  # type: ignore[attr-defined]
        settings.pulse_settle_ms,  # type: ignore[attr-defined]
        settings.pulse_line,  # type: ignore[attr-defined]
        settings.publisher,  # type: ignore[attr-defined]
        settings.ingest_base_url,  # type: ignore[attr-defined]
        settings.mqtt_host,  # type: ignore[attr-defined]
        settings.mqtt_port,  # type: ignore[attr-defined]
        settings.mqtt_username,  # type: ignore[attr-defined]
        settings.batch_size,  # type: ignore[attr-defined]
        settings.publish_interval_s,  # type: ignore[attr-defined]
        settings.outbox_size,  # type: ignore[attr-defined]
        _masked_token(settings.ingest_token),  # type: ignore[attr-defined]
        _masked_token(settings.mqtt_password),  # type: ignore[attr-defined]
    )


def enqueue_snapshots(outbox: Outbox) -> Callable[[MeterSnapshot], None]:
    """Return the session publish callback that queues snapshots as JSON."""

    def _enqueue(snapshot: MeterSnapshot) -> None:
        outbox.enqueue(snapshot.model_dump_json())

    return _enqueue


def build_publisher(settings: ReaderSettings) -> Publisher:
    """Create the publisher selected by ``settings.publisher``."""
    if settings.publisher == "mqtt":
        from iecreader.src.mqtt import MqttPublisher

        return MqttPublisher(
            host=settings.mqtt_host,
            port=settings.mqtt_port,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            topic_prefix=settings.mqtt_topic_prefix,
            batch_size=settings.batch_size,
        )

    from iecreader.src.uploader import Uploader

    return Uploader(
        base_url=settings.ingest_base_url,
        device_token=settings.ingest_token,
        batch_size=settings.batch_size,
    )


def build_pulse(
    settings: ReaderSettings, transport: SerialTransport
) -> Callable[[], bool] | None:
    """Return the pulse input configured by ``settings.pulse_line``, if any."""
    if settings.pulse_line == "none":
        return None

    from iecreader.src.transport import ModemLinePulse

    return ModemLinePulse(transport, settings.pulse_line)


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


def _step_once(
    *,
    session: MeterSession,
    outbox: Outbox,
    health: HealthWriter | None,
) -> None:
    """Advance the meter session by one step.

    Catches all exceptions so that the caller's loop is never broken; the
    session's watchdog recovers the protocol.
    """
    try:
        session.poll()
    except Exception:
        logger.error("Session step error in state %s", session.state.value, exc_info=True)

    if health is not None:
        try:
            health.record_step(session.state.value, outbox.count())
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


async def _publish_once(
    *,
    publisher: Publisher,
    outbox: Outbox,
    health: HealthWriter | None = None,
) -> bool:
    """Execute a single publish cycle.

    Catches all exceptions so that the caller's loop is never broken.

    Returns:
        True if the publish succeeded, False otherwise.
    """
    try:
        result = await publisher.publish_batch(outbox)
        if result:
            logger.debug("Publish success")
            if health is not None:
                health.record_publish()
        return result
    except Exception:
        logger.error("Publish cycle error", exc_info=True)
        return False


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _session_loop(
    *,
    session: MeterSession,
    outbox: Outbox,
    loop_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Step the session until shutdown_event is set."""
    logger.info("Session loop started (interval=%ss)", loop_interval_s)
    while not shutdown_event.is_set():
        _step_once(session=session, outbox=outbox, health=health)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=loop_interval_s)
    logger.info("Session loop stopped")


async def _publish_loop(
    *,
    publisher: Publisher,
    outbox: Outbox,
    publish_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Publish queued snapshots until shutdown_event is set.

    After a failed publish with snapshots still pending, waits for the
    publisher's backoff instead of the regular interval when that is longer.
    """
    logger.info("Publish loop started (interval=%ss)", publish_interval_s)
    while not shutdown_event.is_set():
        ok = await _publish_once(publisher=publisher, outbox=outbox, health=health)
        delay = publish_interval_s
        if not ok and outbox.count():
            delay = max(delay, publisher.current_backoff)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
    logger.info("Publish loop stopped")


async def run_loops(
    *,
    session: MeterSession,
    publisher: Publisher,
    outbox: Outbox,
    loop_interval_s: float,
    publish_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run session and publish loops concurrently until shutdown.

    When the shutdown_event is set, both loops finish their current
    iteration, then a final publish is attempted before returning. Pending
    health changes are flushed last.
    """
    logger.info("Starting concurrent session and publish loops")

    await asyncio.gather(
        _session_loop(
            session=session,
            outbox=outbox,
            loop_interval_s=loop_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _publish_loop(
            publisher=publisher,
            outbox=outbox,
            publish_interval_s=publish_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
    )

    logger.info("Attempting final publish before exit")
    await _publish_once(publisher=publisher, outbox=outbox, health=health)
    if health is not None:
        try:
            health.flush()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from iecreader.src.config import ReaderSettings
    from iecreader.src.outbox import Outbox
    from iecreader.src.session import MeterSession
    from iecreader.src.transport import SerialTransport

    settings = ReaderSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    outbox = Outbox(max_rows=settings.outbox_size)
    publisher = build_publisher(settings)
    health = HealthWriter(settings.health_path)

    with SerialTransport(settings.serial_port) as transport:
        session = MeterSession(
            transport,
            device_id=settings.device_id,
            publish=enqueue_snapshots(outbox),
            pulse=build_pulse(settings, transport),
            stall_timeout_ms=settings.stall_timeout_s * 1000,
            sleep_interval_ms=settings.sleep_interval_ms,
            pulse_settle_ms=settings.pulse_settle_ms,
        )
        await run_loops(
            session=session,
            publisher=publisher,
            outbox=outbox,
            loop_interval_s=settings.loop_interval_ms / 1000.0,
            publish_interval_s=settings.publish_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the reader daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
