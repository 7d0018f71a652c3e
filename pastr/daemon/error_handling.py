"""Error taxonomy and error tracking for the background engine.

Every failure the engine can meet in a background tick maps onto one of
the exception types below. Components catch them at their boundary and
turn them into a status value or a log entry; nothing here is allowed to
terminate a timer loop.

The aggregator keeps a bounded window of recent failures per service so
the status endpoint can report them.
"""

import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional

from loguru import logger


class PastrError(Exception):
    """Base class for engine errors."""
    status_tag = "error"


class Unauthenticated(PastrError):
    """No credential, or the remote store rejected it (401/403)."""
    status_tag = "unauthorized"


class NetworkFailure(PastrError):
    """Transport-level failure talking to a remote endpoint."""
    status_tag = "network"


class RemoteStoreError(PastrError):
    """The remote store answered with an unexpected status."""
    status_tag = "remote"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedRemoteData(RemoteStoreError):
    """The remote object exists but does not parse as a snapshot."""
    status_tag = "malformed"


class HostPermissionDenied(PastrError):
    """The host refused clipboard or notification access."""
    status_tag = "denied"


class InvalidImport(PastrError):
    """An import file is not a valid snippet backup."""
    status_tag = "invalid_import"


class ServiceState(Enum):
    """Service health states."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


@dataclass
class ErrorEvent:
    """Represents an error event."""
    timestamp: datetime
    service: str
    error_type: str
    message: str
    severity: ErrorSeverity
    traceback: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'service': self.service,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'context': self.context
        }


@dataclass
class ServiceHealth:
    """Tracks health of a service."""
    name: str
    state: ServiceState = ServiceState.HEALTHY
    error_count: int = 0
    success_count: int = 0
    last_error: Optional[ErrorEvent] = None
    last_success: Optional[datetime] = None
    consecutive_failures: int = 0


class ErrorAggregator:
    """Aggregates errors reported by the engine components."""

    def __init__(self, window_size: int = 100, degraded_after: int = 3):
        """
        Initialize error aggregator.

        Args:
            window_size: Number of errors to keep
            degraded_after: Consecutive failures before a service is degraded
        """
        self.window_size = window_size
        self.degraded_after = degraded_after
        self.errors: Deque[ErrorEvent] = deque(maxlen=window_size)
        self.error_counts: Dict[str, int] = {}
        self.service_health: Dict[str, ServiceHealth] = {}

    def _health(self, service: str) -> ServiceHealth:
        if service not in self.service_health:
            self.service_health[service] = ServiceHealth(name=service)
        return self.service_health[service]

    def record_error(
        self,
        service: str,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorEvent:
        """Record a failure for a service and log it."""
        event = ErrorEvent(
            timestamp=datetime.now(),
            service=service,
            error_type=type(error).__name__,
            message=str(error),
            severity=classify_severity(error),
            traceback=traceback.format_exc() if error.__traceback__ else None,
            context=context or {}
        )
        self.errors.append(event)

        key = f"{service}:{event.error_type}"
        self.error_counts[key] = self.error_counts.get(key, 0) + 1

        health = self._health(service)
        health.error_count += 1
        health.consecutive_failures += 1
        health.last_error = event
        if health.consecutive_failures >= self.degraded_after:
            health.state = ServiceState.DEGRADED

        log = logger.warning if event.severity != ErrorSeverity.LOW else logger.info
        log(f"{service}: {event.error_type}: {event.message}")
        return event

    def record_success(self, service: str) -> None:
        """Record a successful operation."""
        health = self._health(service)
        health.success_count += 1
        health.consecutive_failures = 0
        health.last_success = datetime.now()
        health.state = ServiceState.HEALTHY

    def get_error_summary(self) -> Dict[str, Any]:
        """Summary of recent errors and per-service health."""
        top_errors = sorted(
            self.error_counts.items(),
            key=lambda x: x[1],
            reverse=True
        )[:5]
        return {
            'total_errors': len(self.errors),
            'recent': [e.to_dict() for e in list(self.errors)[-5:]],
            'top_errors': [{'error': k, 'count': v} for k, v in top_errors],
            'service_health': {
                name: {
                    'state': h.state.value,
                    'error_count': h.error_count,
                    'success_count': h.success_count,
                    'consecutive_failures': h.consecutive_failures,
                }
                for name, h in self.service_health.items()
            }
        }


def classify_severity(error: BaseException) -> ErrorSeverity:
    """Classify error severity."""
    if isinstance(error, (Unauthenticated, HostPermissionDenied)):
        return ErrorSeverity.LOW
    elif isinstance(error, (NetworkFailure, RemoteStoreError)):
        return ErrorSeverity.MEDIUM
    else:
        return ErrorSeverity.HIGH
