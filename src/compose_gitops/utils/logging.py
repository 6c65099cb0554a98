# ABOUTME: Structured logging with correlation IDs for the compose-gitops reconciler
# ABOUTME: Configures structlog and records deploy/stop/remove outcomes in an audit trail

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every service logs through structlog with key/value
   fields, rendered as JSON lines in production or coloured console output
   while developing.

2. CORRELATION IDs: a short id stored in a ContextVar and attached to every
   log line. A deploy started by the watcher logs its git pull, both compose
   invocations and the final status under one id, so

       jq 'select(.correlation_id == "a1b2c3d4")'

   shows the whole story of one deploy even while other projects are being
   reconciled concurrently.

3. AUDIT LOGGING: one JSON line per state-changing operation (deploy, stop,
   remove, auto-deploy) with its outcome.

=============================================================================
CORRELATION SCOPES
=============================================================================

bind_operation() opens a scope with a fresh id and restores the previous one
on exit. Because ContextVar values are copied into tasks created inside the
scope, the subprocess reader tasks of a deploy inherit the deploy's id.

    with bind_operation("deploy", project=project.name):
        await orchestrator.deploy(project.id)
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from compose_gitops.utils.safety import mask_data

if TYPE_CHECKING:
    from collections.abc import Iterator, MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate a new one.

    Code running outside any operation scope (startup, the watcher loop
    itself) still gets an id so its logs stay correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context. "" means generate on next access."""
    correlation_id.set(cid)


@contextmanager
def bind_operation(operation: str, **fields: Any) -> Iterator[str]:
    """
    Run a block under a fresh correlation id and bound log context.

    Args:
        operation: Name bound as "operation" on every log line in the block
        **fields: Extra context (project name, project id, ...)

    Yields:
        The correlation id of the scope.
    """
    cid = new_correlation_id()
    token = correlation_id.set(cid)
    with structlog.contextvars.bound_contextvars(operation=operation, **fields):
        try:
            yield cid
        finally:
            correlation_id.reset(token)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding the current correlation id to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    Pipeline: merge_contextvars -> add_log_level -> TimeStamper(iso)
    -> add_correlation_id -> JSONRenderer or ConsoleRenderer.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines for log aggregators instead of console output
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit trail for state-changing operations.

    Every entry records:
    - timestamp: UTC ISO 8601
    - correlation_id: links the entry to the operation's log lines
    - action: "deploy", "auto_deploy", "stop", "remove", ...
    - target: project name
    - result: "success" or "error"
    - details: commit, deployment id, error text (optional)

    Credentials in details (sensitive keys, URLs with userinfo) are masked.

    Entries are appended as JSON lines to log_path, or emitted through
    structlog under the "audit" logger when no path is configured.

    EXAMPLE:
    --------
    {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc12345",
     "action": "deploy", "target": "blog", "result": "success",
     "details": {"commit": "5f3c2a1e", "deployment_id": "..."}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            details = mask_data(details)
            entry["details"] = details

        if self._log_path:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_success(
        self,
        action: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, "success", details)

    def log_error(
        self,
        action: str,
        target: str,
        error: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, "error", {**(details or {}), "error": error})
