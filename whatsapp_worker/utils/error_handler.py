"""
Global error handling and monitoring utilities for the dispatch worker.

Keeps a bounded history of error reports and operation timings, and turns
the last hour of it into the health snapshot served by ``/health``.
"""

import sys
import time
import threading
import traceback
import functools
from collections import deque
from typing import Deque, Dict, Any, Iterable, Optional, Callable, List, TypeVar
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum
import logging


MAX_ERROR_REPORTS = 500
MAX_PERFORMANCE_METRICS = 2000

# Operation names the health snapshot looks for
GATEWAY_COMPONENT = "gateway"
DISPATCH_OPERATION = "dispatch_pass"

_Timestamped = TypeVar('_Timestamped')


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.WARNING,
    ErrorSeverity.MEDIUM: logging.ERROR,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class HealthStatus(str, Enum):
    """System health status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CRITICAL = "critical"


@dataclass
class ErrorReport:
    """A reported exception with where it happened."""
    timestamp: datetime
    error_type: str
    error_message: str
    severity: ErrorSeverity
    component: str
    stack_trace: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'error_type': self.error_type,
            'error_message': self.error_message,
            'severity': self.severity.value,
            'component': self.component,
            'stack_trace': self.stack_trace,
            'context': self.context,
        }


@dataclass
class PerformanceMetric:
    """Timing of one operation, e.g. a dispatch pass or a gateway call."""
    timestamp: datetime
    component: str
    operation: str
    duration_seconds: float
    success: bool = True
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthMetrics:
    """Worker health snapshot."""
    timestamp: datetime
    overall_status: HealthStatus
    uptime_seconds: float
    api_response_time_ms: Optional[float] = None
    error_rate_percent: Optional[float] = None
    last_successful_dispatch: Optional[datetime] = None
    active_errors: int = 0
    performance_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'overall_status': self.overall_status.value,
            'uptime_seconds': self.uptime_seconds,
            'api_response_time_ms': self.api_response_time_ms,
            'error_rate_percent': self.error_rate_percent,
            'last_successful_dispatch': (
                self.last_successful_dispatch.isoformat() if self.last_successful_dispatch else None
            ),
            'active_errors': self.active_errors,
            'performance_score': self.performance_score
        }


def _since(items: Iterable[_Timestamped], cutoff: datetime) -> List[_Timestamped]:
    return [item for item in items if item.timestamp > cutoff]


class GlobalErrorHandler:
    """
    Process-wide error and timing collector.

    Reports and metrics are kept in bounded deques, so a long-running daemon
    only ever holds the most recent ``max_error_reports`` and
    ``max_performance_metrics`` entries. ``error_counts`` keeps lifetime
    totals regardless of what has been evicted.
    """

    def __init__(self,
                 logger: Optional[logging.Logger] = None,
                 install_excepthook: bool = True,
                 max_error_reports: int = MAX_ERROR_REPORTS,
                 max_performance_metrics: int = MAX_PERFORMANCE_METRICS):
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = datetime.now()

        self.error_reports: Deque[ErrorReport] = deque(maxlen=max_error_reports)
        self.performance_metrics: Deque[PerformanceMetric] = deque(maxlen=max_performance_metrics)

        self.error_counts = {
            'total': 0,
            'by_severity': {severity.value: 0 for severity in ErrorSeverity},
            'by_component': {},
        }

        self._lock = threading.Lock()

        if install_excepthook:
            self._install_global_handler()

        self.logger.info("Global error handler initialized")

    def report_error(self,
                     error: Exception,
                     component: str,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                     context: Optional[Dict[str, Any]] = None) -> ErrorReport:
        """
        Record and log an exception.

        Args:
            error: The exception that occurred
            component: Component where error occurred
            severity: Error severity level
            context: Additional context information

        Returns:
            ErrorReport instance
        """
        report = ErrorReport(
            timestamp=datetime.now(),
            error_type=type(error).__name__,
            error_message=str(error),
            severity=severity,
            component=component,
            stack_trace=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            context=context or {}
        )

        with self._lock:
            self.error_reports.append(report)

            self.error_counts['total'] += 1
            self.error_counts['by_severity'][severity.value] += 1
            by_component = self.error_counts['by_component']
            by_component[component] = by_component.get(component, 0) + 1

        self.logger.log(
            SEVERITY_LOG_LEVELS.get(severity, logging.ERROR),
            f"Error in {component}: {report.error_message}",
            extra={
                'component': component,
                'error_type': report.error_type,
                'severity': severity.value,
                'context': context
            },
            exc_info=error
        )

        return report

    def record_performance(self,
                           component: str,
                           operation: str,
                           duration_seconds: float,
                           success: bool = True,
                           error_message: Optional[str] = None,
                           metadata: Optional[Dict[str, Any]] = None) -> PerformanceMetric:
        """Record how long an operation took and whether it succeeded."""
        metric = PerformanceMetric(
            timestamp=datetime.now(),
            component=component,
            operation=operation,
            duration_seconds=duration_seconds,
            success=success,
            error_message=error_message,
            metadata=metadata or {}
        )

        with self._lock:
            self.performance_metrics.append(metric)

        self.logger.debug(
            f"Performance: {component}.{operation} took {duration_seconds:.3f}s",
            extra={
                'component': component,
                'operation': operation,
                'duration_seconds': duration_seconds,
                'success': success,
            }
        )

        return metric

    def get_health_status(self) -> HealthMetrics:
        """
        Summarize the last hour into a health snapshot.

        The error rate covers every recorded operation; the API response time
        averages successful gateway calls only.
        """
        now = datetime.now()
        hour_ago = now - timedelta(hours=1)

        with self._lock:
            recent_errors = _since(self.error_reports, hour_ago)
            recent_operations = _since(self.performance_metrics, hour_ago)
            successful_passes = [
                m.timestamp for m in self.performance_metrics
                if m.operation == DISPATCH_OPERATION and m.success
            ]

        error_rate = 0.0
        if recent_operations:
            failed = sum(1 for m in recent_operations if not m.success)
            error_rate = failed / len(recent_operations) * 100

        gateway_durations = [
            m.duration_seconds for m in recent_operations
            if m.component == GATEWAY_COMPONENT and m.success
        ]
        api_response_time = None
        if gateway_durations:
            api_response_time = sum(gateway_durations) / len(gateway_durations) * 1000

        performance_score = self._calculate_performance_score(error_rate, api_response_time)

        return HealthMetrics(
            timestamp=now,
            overall_status=self._determine_health_status(error_rate, performance_score, len(recent_errors)),
            uptime_seconds=(now - self.start_time).total_seconds(),
            api_response_time_ms=api_response_time,
            error_rate_percent=error_rate,
            last_successful_dispatch=max(successful_passes) if successful_passes else None,
            active_errors=len(recent_errors),
            performance_score=performance_score
        )

    def get_error_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Group the errors of the last ``hours`` by severity, component and type."""
        with self._lock:
            recent_errors = _since(self.error_reports, datetime.now() - timedelta(hours=hours))
            lifetime_total = self.error_counts['total']

        by_severity = {severity.value: 0 for severity in ErrorSeverity}
        by_component: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for error in recent_errors:
            by_severity[error.severity.value] += 1
            by_component[error.component] = by_component.get(error.component, 0) + 1
            by_type[error.error_type] = by_type.get(error.error_type, 0) + 1

        return {
            'total_errors': len(recent_errors),
            'lifetime_errors': lifetime_total,
            'by_severity': by_severity,
            'by_component': by_component,
            'by_type': by_type,
            'recent_errors': [error.to_dict() for error in recent_errors[-10:]]
        }

    def get_performance_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Averages, success rates and the slowest operations of the last ``hours``."""
        with self._lock:
            recent_metrics = _since(self.performance_metrics, datetime.now() - timedelta(hours=hours))

        if not recent_metrics:
            return {
                'total_operations': 0,
                'avg_duration_seconds': 0,
                'success_rate': 0,
                'by_component': {},
                'slowest_operations': []
            }

        grouped: Dict[str, List[PerformanceMetric]] = {}
        for metric in recent_metrics:
            grouped.setdefault(metric.component, []).append(metric)

        def rollup(metrics: List[PerformanceMetric]) -> Dict[str, Any]:
            return {
                'count': len(metrics),
                'avg_duration': sum(m.duration_seconds for m in metrics) / len(metrics),
                'success_rate': sum(1 for m in metrics if m.success) / len(metrics) * 100
            }

        overall = rollup(recent_metrics)
        slowest = sorted(recent_metrics, key=lambda m: m.duration_seconds, reverse=True)[:5]

        return {
            'total_operations': overall['count'],
            'avg_duration_seconds': overall['avg_duration'],
            'success_rate': overall['success_rate'],
            'by_component': {component: rollup(metrics) for component, metrics in grouped.items()},
            'slowest_operations': [
                {
                    'component': m.component,
                    'operation': m.operation,
                    'duration_seconds': m.duration_seconds,
                    'timestamp': m.timestamp.isoformat()
                }
                for m in slowest
            ]
        }

    def cleanup_old_data(self, days: int = 7):
        """Drop error reports and metrics older than ``days``."""
        cutoff_time = datetime.now() - timedelta(days=days)

        with self._lock:
            kept_errors = _since(self.error_reports, cutoff_time)
            kept_metrics = _since(self.performance_metrics, cutoff_time)

            removed_errors = len(self.error_reports) - len(kept_errors)
            removed_metrics = len(self.performance_metrics) - len(kept_metrics)

            self.error_reports = deque(kept_errors, maxlen=self.error_reports.maxlen)
            self.performance_metrics = deque(kept_metrics, maxlen=self.performance_metrics.maxlen)

        if removed_errors or removed_metrics:
            self.logger.info(f"Cleaned up old data: {removed_errors} errors, {removed_metrics} metrics")

    def _install_global_handler(self):
        """Report uncaught exceptions before the default hook prints them."""
        def handle_exception(exc_type, exc_value, exc_traceback):
            if not issubclass(exc_type, KeyboardInterrupt):
                self.report_error(
                    exc_value,
                    component="global",
                    severity=ErrorSeverity.CRITICAL,
                    context={'exc_type': exc_type.__name__}
                )

            sys.__excepthook__(exc_type, exc_value, exc_traceback)

        sys.excepthook = handle_exception

    def _calculate_performance_score(self,
                                     error_rate: float,
                                     api_response_time: Optional[float]) -> float:
        """Score 0-100: 2 points off per % error rate, and gateway latency above one second."""
        score = 100.0 - error_rate * 2

        if api_response_time is not None and api_response_time > 1000:
            score -= (api_response_time - 1000) / 100

        return max(0.0, min(100.0, score))

    def _determine_health_status(self,
                                 error_rate: float,
                                 performance_score: float,
                                 active_errors: int) -> HealthStatus:
        if active_errors > 10 or error_rate > 50 or performance_score < 30:
            return HealthStatus.CRITICAL
        elif active_errors > 5 or error_rate > 20 or performance_score < 60:
            return HealthStatus.UNHEALTHY
        elif active_errors > 2 or error_rate > 10 or performance_score < 80:
            return HealthStatus.DEGRADED
        else:
            return HealthStatus.HEALTHY


# Global error handler instance
_global_error_handler: Optional[GlobalErrorHandler] = None


def initialize_error_handler(logger: Optional[logging.Logger] = None) -> GlobalErrorHandler:
    """
    Initialize the global error handler.

    Args:
        logger: Logger instance to use

    Returns:
        GlobalErrorHandler instance
    """
    global _global_error_handler

    if _global_error_handler is None:
        _global_error_handler = GlobalErrorHandler(logger)

    return _global_error_handler


def get_error_handler() -> GlobalErrorHandler:
    """Get the global error handler instance."""
    if _global_error_handler is None:
        return initialize_error_handler()

    return _global_error_handler


def record_performance(component: str,
                       operation: str,
                       duration_seconds: float,
                       success: bool = True,
                       error_message: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> PerformanceMetric:
    """Record a performance metric on the global handler."""
    return get_error_handler().record_performance(
        component, operation, duration_seconds, success, error_message, metadata
    )


def monitor_performance(component: str, operation: str = None):
    """
    Decorator for automatic performance monitoring.

    Args:
        component: Component name
        operation: Operation name (defaults to function name)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            op_name = operation or func.__name__
            start_time = time.perf_counter()
            success = True
            error_message = None

            try:
                return func(*args, **kwargs)
            except Exception as e:
                success = False
                error_message = str(e)
                raise
            finally:
                record_performance(
                    component=component,
                    operation=op_name,
                    duration_seconds=time.perf_counter() - start_time,
                    success=success,
                    error_message=error_message
                )

        return wrapper
    return decorator
