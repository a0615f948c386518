"""
Custody Observability

Structured logging and the vault audit trail.

Every vault component logs through a `VaultLogger` bound to a `VaultLayer`.
Records are plain stdlib ``logging`` records carrying the layer, an
operation name, an error code and a free-form context dict; the handlers
installed by `configure_logging` render them as one JSON object per line
(default) or as a single readable line.

A correlation id, held in a context variable, ties together the log lines,
events and audit entries produced by one vault operation.

`AuditTrail` is the append-only record of committed state changes. Each
entry carries the digest of its predecessor, so editing, dropping or
reordering an entry is detected by `verify_chain`.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
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
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from custody.canonical import jcs_canonicalize, sha256_hex

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("custody_correlation_id", default="")

_ROOT_LOGGER = "custody"

# Attributes a VaultLogger attaches to every record.
_RECORD_FIELDS = ("layer", "operation", "error_code", "duration_ms", "context")


class VaultLayer(Enum):
    """Vault components for log categorization."""
    ACCESS = "access"
    FEES = "fees"
    NONCE = "nonce"
    SIGNING = "signing"
    LEDGER = "ledger"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TREASURY = "treasury"
    AUDIT = "audit"
    CONFIG = "config"
    CLI = "cli"


# =============================================================================
# HANDLERS
# =============================================================================

@dataclass
class LogLine:
    """One rendered log record."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    error_code: str = ""
    duration_ms: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogLine":
        line = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=correlation_id_var.get(),
            **{name: getattr(record, name) for name in _RECORD_FIELDS if hasattr(record, name)},
        )
        if record.exc_info:
            line.exception = "".join(traceback.format_exception(*record.exc_info))
        return line

    def to_dict(self) -> Dict[str, Any]:
        """Fields with a value; empty strings, empty context and None are left out."""
        return {k: v for k, v in asdict(self).items() if v not in (None, "", {})}


class StructuredHandler(logging.Handler):
    """Writes each record as a single JSON object followed by a newline."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream if stream is not None else sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(json.dumps(LogLine.from_record(record).to_dict(), default=str) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.StreamHandler):
    """Human-readable single-line output with the structured context appended."""

    def format(self, record: logging.LogRecord) -> str:
        line = LogLine.from_record(record)
        parts = [line.timestamp[11:19], record.levelname.ljust(8), line.logger, line.message]
        if line.error_code:
            parts.append(f"[{line.error_code}]")
        if line.context:
            parts.append(" ".join(f"{k}={v}" for k, v in sorted(line.context.items())))
        return " ".join(parts)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install exactly one handler on the package root logger."""
    root = logging.getLogger(_ROOT_LOGGER)
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        if isinstance(existing, (StructuredHandler, TextHandler)):
            root.removeHandler(existing)
    if fmt == "text":
        root.addHandler(TextHandler(stream if stream is not None else sys.stderr))
    else:
        root.addHandler(StructuredHandler(stream))


def configure_logging_from_config() -> None:
    """Apply the observability section of the active configuration."""
    from custody.config import get_config

    settings = get_config().observability
    configure_logging(level=settings.log_level.get(), fmt=settings.log_format.get())


# =============================================================================
# COMPONENT LOGGERS
# =============================================================================

class VaultLogger:
    """
    Logger for one vault component.

    Keyword arguments become the record's context, except ``operation`` and
    ``duration_ms`` which are promoted to top-level fields. Records go to
    ``custody.<layer>.<name>`` and propagate to the handlers on ``custody``.
    """

    def __init__(self, name: str, layer: VaultLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{_ROOT_LOGGER}.{layer.value}.{name}")

    def _emit(
        self,
        level: int,
        message: str,
        context: Dict[str, Any],
        error_code: str = "",
        exc_info: bool = False,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "layer": self.layer.value,
            "operation": context.pop("operation", ""),
            "duration_ms": context.pop("duration_ms", None),
            "error_code": error_code,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._emit(logging.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(logging.INFO, message, context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._emit(logging.WARNING, message, context, error_code)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._emit(logging.ERROR, message, context, error_code, exc_info)

    def critical(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._emit(logging.CRITICAL, message, context, error_code, exc_info)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        """Record how long ``name`` took and whether it succeeded."""
        context.update(operation=name, duration_ms=round(duration_ms, 3))
        if success:
            self._emit(logging.INFO, f"{name} ok", context)
        else:
            self._emit(logging.WARNING, f"{name} failed", context)


def get_logger(name: str, layer: VaultLayer) -> VaultLogger:
    return VaultLogger(name, layer)


# =============================================================================
# CORRELATION
# =============================================================================

def generate_correlation_id() -> str:
    return "corr-" + uuid.uuid4().hex[:12]


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Current correlation id; one is created if none is set."""
    current = correlation_id_var.get()
    if current:
        return current
    current = generate_correlation_id()
    correlation_id_var.set(current)
    return current


T = TypeVar("T")


def timed_operation(logger: VaultLogger, operation_name: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log the duration and outcome of every call to the wrapped function."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as ex:
                logger.operation(
                    operation_name,
                    (time.perf_counter() - started) * 1000,
                    success=False,
                    error=getattr(ex, "error_code", type(ex).__name__),
                )
                raise
            logger.operation(operation_name, (time.perf_counter() - started) * 1000)
            return result
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEntry:
    """One committed state change of a vault."""
    sequence: int
    recorded_at: str
    actor: str
    action: str
    vault: str
    outcome: str = "success"
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    previous_digest: Optional[str] = None
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = self.compute_digest()

    def compute_digest(self) -> str:
        body = asdict(self)
        del body["digest"]
        return sha256_hex(jcs_canonicalize(body))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditTrail:
    """
    Hash-chained audit entries for committed vault operations.

    Entries are also echoed to the structured log at INFO.
    """

    def __init__(self, logger: Optional[VaultLogger] = None):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()
        self._logger = logger or get_logger("audit", VaultLayer.AUDIT)

    def log(self, actor: str, action: str, vault: str, outcome: str = "success", **details: Any) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(
                sequence=len(self._entries) + 1,
                recorded_at=datetime.now(timezone.utc).isoformat(),
                actor=actor,
                action=action,
                vault=vault,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                details=details,
                previous_digest=self._entries[-1].digest if self._entries else None,
            )
            self._entries.append(entry)

        self._logger.info(
            f"AUDIT: {action} by {actor}",
            operation="audit",
            vault=vault,
            outcome=outcome,
            digest=entry.digest,
        )
        return entry

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """Return ``(True, None)`` or ``(False, index_of_first_bad_entry)``."""
        with self._lock:
            previous: Optional[str] = None
            for index, entry in enumerate(self._entries):
                if entry.previous_digest != previous or entry.compute_digest() != entry.digest:
                    return False, index
                previous = entry.digest
        return True, None

    def get_entries(
        self,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        with self._lock:
            selected = [
                e for e in self._entries
                if (actor is None or e.actor == actor) and (action is None or e.action == action)
            ]
        return selected[-limit:]

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
