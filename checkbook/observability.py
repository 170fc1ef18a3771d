"""
CHECKBOOK Observability

Structured logging, correlation IDs and the redemption audit trail.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                  RedemptionEngine / CLI                  │
    │  logger.info("msg", account=x)   audit.record(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │             CheckbookLogger / AuditLogger                │
    │  Correlation IDs, components, hash-chained audit events │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  StructuredHandler                       │
    │          one JSON object (or text line) per event       │
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
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Deque, Dict, List, Optional, TypeVar

# Context variable for request-scoped correlation
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LogFormat(Enum):
    JSON = "json"
    TEXT = "text"


class Component(Enum):
    """CHECKBOOK components for categorization."""
    SIGNATURES = "signatures"
    THRESHOLD = "threshold"
    NONCES = "nonces"
    ENGINE = "engine"
    CUSTODIAN = "custodian"
    CONFIG = "config"
    SNAPSHOT = "snapshot"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), self.logger]
        if self.correlation_id:
            parts.append(f"[{self.correlation_id}]")
        parts.append(self.message)
        if self.error_code:
            parts.append(f"error_code={self.error_code}")
        parts.extend(f"{k}={v}" for k, v in sorted(self.context.items()))
        line = " ".join(str(p) for p in parts)
        if self.exception:
            line += "\n" + self.exception
        return line


class StructuredHandler(logging.Handler):
    """Logging handler that writes one structured event per line."""

    def __init__(self, stream: Any = None, fmt: LogFormat = LogFormat.JSON):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            line = event.to_json() if self.fmt is LogFormat.JSON else event.to_text()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Any = None,
) -> logging.Logger:
    """Install a StructuredHandler on the root "checkbook" logger."""
    root = logging.getLogger("checkbook")
    root.setLevel(getattr(logging, LogLevel(level.lower()).value.upper()))
    for handler in list(root.handlers):
        if isinstance(handler, StructuredHandler):
            root.removeHandler(handler)
    root.addHandler(StructuredHandler(stream=stream, fmt=LogFormat(fmt.lower())))
    return root


class CheckbookLogger:
    """
    Structured logger for CHECKBOOK components.

    Log records propagate to the "checkbook" logger, where
    configure_logging() decides level, format and destination.
    """

    def __init__(self, name: str, component: Component):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"checkbook.{component.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "component": self.component.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, component: Component) -> CheckbookLogger:
    """Get a logger for a CHECKBOOK component."""
    return CheckbookLogger(name, component)


T = TypeVar("T")


def timed_operation(
    logger: CheckbookLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================

GENESIS_HASH = "genesis"


@dataclass
class AuditEvent:
    """One redemption outcome in the audit trail."""
    event_id: str
    timestamp: str
    action: str
    account: str
    bearer_secret_identity: str
    outcome: str  # settled, cancelled, rejected
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = GENESIS_HASH
    event_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def compute_hash(self) -> str:
        body = self.to_dict()
        body.pop("event_hash")
        data = json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(data.encode()).hexdigest()


class AuditLogger:
    """
    Tamper-evident audit trail.

    Each event commits to the hash of the one before it; editing or
    dropping an event breaks verify_chain().

    Only the most recent `window` events stay in memory. The hash of the
    last evicted event anchors the retained window, so verify_chain()
    checks the window and the chain head always covers the full history.
    """

    DEFAULT_WINDOW = 1024

    def __init__(self, logger: CheckbookLogger, window: int = DEFAULT_WINDOW):
        if window < 0:
            raise ValueError(f"Audit window must be non-negative, got {window}")
        self._logger = logger
        self._events: Deque[AuditEvent] = deque(maxlen=window)
        self._anchor: str = GENESIS_HASH
        self._last_hash: str = GENESIS_HASH
        self._lock = threading.Lock()

    def record(
        self,
        action: str,
        account: str,
        bearer_secret_identity: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Append an audit event."""
        with self._lock:
            event = AuditEvent(
                event_id=uuid.uuid4().hex,
                timestamp=datetime.now(timezone.utc).isoformat(),
                action=action,
                account=account,
                bearer_secret_identity=bearer_secret_identity,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                details=details,
                previous_hash=self._last_hash,
            )
            event.event_hash = event.compute_hash()
            if len(self._events) == self._events.maxlen:
                self._anchor = self._events[0].event_hash if self._events else event.event_hash
            self._last_hash = event.event_hash
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} {outcome}",
            operation="audit",
            account=account,
            outcome=outcome,
            event_hash=event.event_hash,
        )
        return event

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    @property
    def head(self) -> str:
        with self._lock:
            return self._last_hash

    @property
    def window(self) -> int:
        return self._events.maxlen

    def verify_chain(self) -> bool:
        """Recompute every retained link; False if any event was altered."""
        with self._lock:
            previous = self._anchor
            for event in self._events:
                if event.previous_hash != previous:
                    return False
                if event.compute_hash() != event.event_hash:
                    return False
                previous = event.event_hash
            return True
