"""
Tests for logging setup: service context and quieted library loggers.

Run: pytest backend/tests/test_logging.py -v
"""
from __future__ import annotations

import logging

import structlog

from shared.config import Environment, Settings
from shared.utils.logging import QUIET_LOGGERS, setup_logging


def test_setup_binds_service_and_instance(settings: Settings) -> None:
    settings = settings.model_copy(update={"instance_id": "worker-2", "environment": Environment.PRODUCTION})
    try:
        setup_logging("sync-engine", settings=settings)
        assert structlog.contextvars.get_contextvars() == {"service": "sync-engine", "instance_id": "worker-2"}
        assert all(logging.getLogger(name).level == logging.WARNING for name in QUIET_LOGGERS)
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()


def test_instance_id_omitted_when_unset(settings: Settings) -> None:
    try:
        setup_logging("api", settings=settings)
        assert structlog.contextvars.get_contextvars() == {"service": "api"}
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()
