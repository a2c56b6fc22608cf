"""
Shared adapter machinery.

BaseAdapter owns the session state machine and error normalization. Public
operations are decorated with `envelope()`: the wrapped coroutine returns raw
data or raises, and the decorator turns that into an APIResponse so no
backend error ever reaches the caller.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..config.logfire_config import get_logger, safe_logfire_error, safe_span
from .errors import AuthError, BackendError, DaalError, ValidationError
from .protocol import APIResponse

logger = get_logger(__name__)


@dataclass
class Session:
    token: str
    principal: dict[str, Any] = field(default_factory=dict)


def envelope(operation: str) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[APIResponse]]]:
    """Wrap an adapter coroutine so it always resolves to an APIResponse."""

    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[APIResponse]]:
        @functools.wraps(fn)
        async def wrapper(self: "BaseAdapter", *args: Any, **kwargs: Any) -> APIResponse:
            with safe_span(f"daal.{operation}", adapter=self.name) as span:
                try:
                    data = await fn(self, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("success", False)
                    return self._handle_error(operation, e)
                span.set_attribute("success", True)
                return APIResponse.ok(data)

        return wrapper

    return decorator


class BaseAdapter:
    """Base class for the bundled adapters."""

    name = "base"

    def __init__(self) -> None:
        self._session: Session | None = None

    # --- Session state ---

    @property
    def session(self) -> Session | None:
        return self._session

    def _start_session(self, token: str, principal: dict[str, Any]) -> None:
        self._session = Session(token=token, principal=principal)
        logger.info(f"{self.name}: session started")

    def _end_session(self) -> None:
        if self._session is not None:
            logger.info(f"{self.name}: session ended")
        self._session = None

    def _require_session(self) -> Session:
        if self._session is None:
            raise AuthError("Not authenticated", revoke=False)
        return self._session

    # --- Error normalization ---

    def _classify_error(self, exc: Exception) -> DaalError:
        """Map a backend exception into the error taxonomy. Adapters refine this."""
        if isinstance(exc, DaalError):
            return exc
        return BackendError(str(exc) or type(exc).__name__)

    def _handle_error(self, operation: str, exc: Exception) -> APIResponse:
        error = self._classify_error(exc)
        if isinstance(error, ValidationError):
            logger.warning(f"{self.name} {operation} rejected: {error}")
        else:
            logger.error(f"{self.name} {operation} failed: {type(error).__name__}: {error}")
            safe_logfire_error(
                f"{self.name} {operation} failed", error=str(error), error_type=type(error).__name__
            )
        if isinstance(error, AuthError) and error.revoke:
            self._end_session()
        return APIResponse.fail(str(error) or "An unknown database error occurred")


def column_names(columns: str | Sequence[str] | None) -> list[str] | None:
    """Parse a column selection. None means all columns."""
    if columns is None:
        return None
    if isinstance(columns, str):
        if columns.strip() in ("", "*"):
            return None
        return [c.strip() for c in columns.split(",") if c.strip()]
    names = [str(c).strip() for c in columns]
    if not names or "*" in names:
        return None
    return names


def column_clause(columns: str | Sequence[str] | None) -> str:
    names = column_names(columns)
    return "*" if names is None else ", ".join(names)


def as_rows(data: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Normalize insert payloads to a list of dicts."""
    if isinstance(data, Mapping):
        return [dict(data)]
    if isinstance(data, (str, bytes)) or not isinstance(data, Sequence):
        raise ValidationError(f"Expected a record or list of records, got {type(data).__name__}")
    rows = []
    for row in data:
        if not isinstance(row, Mapping):
            raise ValidationError(f"Expected a record, got {type(row).__name__}")
        rows.append(dict(row))
    return rows


def to_record(obj: Any) -> Any:
    """Convert client model objects (pydantic or plain) into dicts."""
    if obj is None or isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "dict"):
        return obj.dict()
    return obj
