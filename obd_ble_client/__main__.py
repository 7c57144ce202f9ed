"""CLI entry point: ``python -m obd_ble_client [--duration N] [--scenario NAME]``."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        stream=sys.stderr,
    )
    # bleak logs every backend call at DEBUG; keep it to warnings unless
    # the client itself is configured quieter than that.
    logging.getLogger("bleak").setLevel(max(log_level, logging.WARNING))

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="obd_ble_client",
        description="Poll live telemetry from a BLE ELM327 OBD-II adapter",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    parser.add_argument(
        "--scenario",
        default=None,
        help="Simulation scenario; implies simulation mode",
    )
    parser.add_argument(
        "--device-name",
        default=None,
        help="Advertised adapter name to match when no service UUID is seen",
    )
    args = parser.parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from obd_ble_client.config import ClientSettings

    settings = ClientSettings()
    if args.scenario is not None:
        settings.obd_transport = "sim"
        settings.obd_sim_scenario = args.scenario
    if args.device_name is not None:
        settings.device_name = args.device_name

    _configure_logging(settings.log_level, settings.log_format)

    logger = structlog.get_logger("obd_ble_client")
    logger.info(
        "client_starting",
        version=__import__("obd_ble_client").__version__,
        mode="simulation" if settings.is_simulation else "ble",
        scenario=settings.obd_sim_scenario if settings.is_simulation else None,
        device_name=settings.device_name,
        auto_reconnect=settings.auto_reconnect,
    )

    from obd_ble_client.client_loop import run_client

    try:
        asyncio.run(run_client(settings, duration=args.duration))
    except KeyboardInterrupt:
        logger.info("client_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
