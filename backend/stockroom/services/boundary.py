# Overview: Workflow boundary; turns InventoryError into a structured result.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import InventoryError
from ..extensions import db

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a workflow call as seen by an adapter (route, CLI, job)."""
    ok: bool
    value: Any = None
    error: dict | None = None
    http_status: int = 200
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        if self.ok:
            value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
            return {"ok": True, "value": value}
        return {"ok": False, "error": self.error}


def execute(func: Callable[..., Any], *args, **kwargs) -> OperationResult:
    """
    Run a workflow operation and capture its recoverable failures.

    InventoryError rolls the session back and is returned as a structured
    error. Anything else is a bug and propagates.
    """
    try:
        value = func(*args, **kwargs)
    except InventoryError as exc:
        db.session.rollback()
        logger.warning("%s failed: [%s] %s", getattr(func, "__name__", func), exc.code.value, exc.message)
        return OperationResult(ok=False, error=exc.to_dict(), http_status=exc.http_status, context=dict(exc.context))
    return OperationResult(ok=True, value=value)
