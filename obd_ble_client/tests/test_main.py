"""Tests for obd_ble_client.__main__ -- logging setup."""

from __future__ import annotations

import logging
from typing import Generator

import pytest
import structlog

from obd_ble_client.__main__ import _configure_logging


@pytest.fixture()
def bleak_logger(monkeypatch: pytest.MonkeyPatch) -> Generator[logging.Logger, None, None]:
    # Keep structlog's global configuration untouched for the other tests.
    monkeypatch.setattr(structlog, "configure", lambda **_: None)
    logger = logging.getLogger("bleak")
    previous = logger.level
    yield logger
    logger.setLevel(previous)


def test_bleak_debug_output_suppressed(bleak_logger: logging.Logger) -> None:
    _configure_logging("DEBUG", "console")
    assert bleak_logger.level == logging.WARNING


def test_bleak_follows_quieter_client_level(bleak_logger: logging.Logger) -> None:
    _configure_logging("ERROR", "json")
    assert bleak_logger.level == logging.ERROR
