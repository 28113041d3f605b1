"""
iYield Observability Framework

Structured logging and tamper-evident audit trails for the valuation, compliance
and vault components.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Component Code                        │
    │  logger.info("msg", subject=x)   audit.log(actor, ...)  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                IYieldLogger / AuditLogger                │
    │  Correlation IDs, layer tags, hash-chained audit events │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                    Event Handlers                        │
    │        StructuredHandler (JSON) │ TextHandler            │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Context variables for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class Layer(Enum):
    """iYield components for log categorization."""
    ORACLE = "oracle"
    COMPLIANCE = "compliance"
    VAULT = "vault"
    TOKEN = "token"
    ACCESS = "access"
    CONFIG = "config"
    SYSTEM = "system"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install the iYield handler on the package root logger."""
    root = logging.getLogger("iyield")
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)


class IYieldLogger:
    """
    Structured logger for iYield components.

    Includes the correlation ID and layer in every record. Output handling is
    left to the `iyield` root logger (see configure_logging).
    """

    def __init__(self, name: str, layer: Layer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"iyield.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "context": context,
        }
        self._logger.log(level, message, extra=extra)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def rejected(self, operation: str, error: Exception, **context: Any) -> None:
        """Log a call that failed with a typed iYield error."""
        self._log(
            logging.WARNING,
            f"Operation {operation} rejected",
            operation=operation,
            error_code=getattr(error, "kind", type(error).__name__),
            reason=getattr(error, "reason", str(error)),
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: Layer) -> IYieldLogger:
    """Get a logger for an iYield component."""
    return IYieldLogger(name, layer)


# =============================================================================
# AUDIT LOG
# =============================================================================

@dataclass
class AuditEvent:
    """An audit log entry."""
    event_id: str
    timestamp: int
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    previous_digest: str = ""
    digest: str = ""

    def compute_digest(self) -> str:
        """Compute tamper-evident digest over everything but the digest itself."""
        content = asdict(self)
        content.pop("digest")
        data = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit logger.

    Each event includes a hash chain linking to the previous event,
    making it possible to detect log tampering.
    """

    GENESIS = "genesis"

    def __init__(self, clock: Any = None, logger: Optional[IYieldLogger] = None):
        self._clock = clock
        self._logger = logger or get_logger("audit", Layer.SYSTEM)
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def log(
        self,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str = "success",
        **details: Any,
    ) -> AuditEvent:
        """Log an audit event."""
        with self._lock:
            previous = self._events[-1].digest if self._events else self.GENESIS
            event = AuditEvent(
                event_id=f"audit-{len(self._events) + 1:012d}",
                timestamp=self._clock.now() if self._clock else int(time.time()),
                actor=actor,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                details=details,
                previous_digest=previous,
            )
            event.digest = event.compute_digest()
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            actor=actor,
            outcome=outcome,
            event_digest=event.digest,
        )
        return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit log chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            previous = self.GENESIS
            for i, event in enumerate(self._events):
                if event.previous_digest != previous:
                    return (False, i)
                if event.compute_digest() != event.digest:
                    return (False, i)
                previous = event.digest
            return (True, None)

    def get_events(
        self,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events."""
        with self._lock:
            events = list(self._events)

        if actor:
            events = [e for e in events if e.actor == actor]
        if action:
            events = [e for e in events if e.action == action]
        if resource_id:
            events = [e for e in events if e.resource_id == resource_id]

        return events[-limit:]

    def export(self) -> List[Dict[str, Any]]:
        """Export all events as dicts."""
        with self._lock:
            return [e.to_dict() for e in self._events]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
