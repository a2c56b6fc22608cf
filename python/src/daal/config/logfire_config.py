"""
Logfire Configuration

Unified logging setup for the data access layer.
Standard library loggers are always available; when Logfire is enabled
(LOGFIRE_TOKEN set or LOGFIRE_ENABLED=true) records and spans are also
shipped to Logfire. All helpers degrade to no-ops when Logfire is off.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import logfire

_logfire_enabled = False
_configured = False


class _NoopSpan:
    """Stand-in span used when Logfire is disabled."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_attributes(self, attributes: dict[str, Any]) -> None:
        pass


def setup_logfire(
    token: str | None = None,
    environment: str | None = None,
    service_name: str = "daal",
) -> bool:
    """
    Configure logging, and Logfire when a token is available.

    Safe to call more than once; only the first call takes effect.

    Returns:
        True if Logfire is active after the call.
    """
    global _logfire_enabled, _configured
    if _configured:
        return _logfire_enabled

    token = token or os.getenv("LOGFIRE_TOKEN")
    enabled_flag = os.getenv("LOGFIRE_ENABLED", "false").lower() in ("1", "true", "yes")
    environment = environment or os.getenv("ENVIRONMENT", "development")

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if token or enabled_flag:
        try:
            logfire.configure(
                token=token,
                service_name=service_name,
                environment=environment,
                send_to_logfire="if-token-present",
                console=False,
            )
            handlers.append(logfire.LogfireLoggingHandler())
            _logfire_enabled = True
        except Exception as e:
            logging.getLogger(__name__).warning(f"Logfire setup failed, using standard logging: {e}")
            _logfire_enabled = False

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        handlers=handlers,
    )
    _configured = True
    return _logfire_enabled


def is_logfire_enabled() -> bool:
    return _logfire_enabled


def get_logger(name: str) -> logging.Logger:
    """Return a standard logger; Logfire picks records up through its handler."""
    return logging.getLogger(name)


@contextmanager
def safe_span(name: str, **attributes: Any) -> Iterator[Any]:
    """
    Open a Logfire span if enabled, otherwise yield a no-op span.

    Usage:
        with safe_span("daal.select", table="users") as span:
            span.set_attribute("rows", 3)
    """
    if not _logfire_enabled:
        yield _NoopSpan()
        return
    with logfire.span(name, **attributes) as span:
        yield span


def safe_logfire_info(message: str, **kwargs: Any) -> None:
    if _logfire_enabled:
        try:
            logfire.info(message, **kwargs)
        except Exception:
            logging.getLogger(__name__).debug("logfire.info failed", exc_info=True)


def safe_logfire_error(message: str, **kwargs: Any) -> None:
    if _logfire_enabled:
        try:
            logfire.error(message, **kwargs)
        except Exception:
            logging.getLogger(__name__).debug("logfire.error failed", exc_info=True)
