"""Structured logging helpers for orchestrator components."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from librarysync.logging_events import log_event


def format_datetime(value: datetime | None) -> str | None:
    """Return an ISO formatted timestamp for ``value`` if present."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat()


def emit_dispatch_event(
    logger: Any,
    *,
    job_id: int,
    job_type: str,
    user_id: str,
    resource: str,
    attempts: int,
) -> None:
    _emit_event(
        logger,
        "orchestrator.dispatch",
        {
            "job_id": job_id,
            "job_type": job_type,
            "user_id": user_id,
            "resource": resource,
            "status": "running",
            "attempts": attempts,
        },
    )


def emit_commit_event(
    logger: Any,
    *,
    job_id: int,
    job_type: str,
    status: str,
    written: int,
    duration_ms: int,
    cursor: str | int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "job_id": job_id,
        "job_type": job_type,
        "status": status,
        "written": written,
        "duration_ms": duration_ms,
    }
    if cursor is not None:
        payload["cursor"] = cursor
    _emit_event(logger, "orchestrator.commit", payload)


def emit_backoff_event(
    logger: Any,
    *,
    job_id: int,
    job_type: str,
    error_code: str,
    retry_at: datetime,
    delay_ms: int,
    failures: int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "job_id": job_id,
        "job_type": job_type,
        "status": "backoff",
        "error_code": error_code,
        "retry_at": format_datetime(retry_at),
        "delay_ms": delay_ms,
    }
    if failures is not None:
        payload["failures"] = failures
    _emit_event(logger, "orchestrator.backoff", payload, level=logging.WARNING)


def emit_failed_event(
    logger: Any,
    *,
    job_id: int,
    job_type: str,
    error_code: str,
    error: str,
) -> None:
    _emit_event(
        logger,
        "orchestrator.failed",
        {
            "job_id": job_id,
            "job_type": job_type,
            "status": "error",
            "error_code": error_code,
            "error": error,
        },
        level=logging.ERROR,
    )


def emit_seed_event(logger: Any, *, user_id: str, job_type: str, job_id: int) -> None:
    _emit_event(
        logger,
        "orchestrator.seed",
        {"user_id": user_id, "job_type": job_type, "job_id": job_id, "status": "queued"},
    )


def emit_heartbeat_event(logger: Any, *, at: datetime) -> None:
    _emit_event(
        logger,
        "orchestrator.heartbeat",
        {"status": "ok", "at": format_datetime(at)},
        level=logging.DEBUG,
    )


def _emit_event(
    logger: Any, event: str, payload: dict[str, Any], *, level: int = logging.INFO
) -> None:
    log_event(logger, event, level=level, component="orchestrator", **payload)


__all__ = [
    "emit_backoff_event",
    "emit_commit_event",
    "emit_dispatch_event",
    "emit_failed_event",
    "emit_heartbeat_event",
    "emit_seed_event",
    "format_datetime",
]
