"""
Utility modules for the WhatsApp dispatch worker.
"""

from .logger import (
    setup_logging,
    get_performance_logger,
    get_structured_logger,
    get_log_stats,
    PerformanceLogger,
    LoggerSetup
)

from .error_handler import (
    initialize_error_handler,
    get_error_handler,
    record_performance,
    monitor_performance,
    GlobalErrorHandler,
    ErrorSeverity,
    HealthStatus,
    ErrorReport,
    PerformanceMetric,
    HealthMetrics
)

from .scheduler import (
    JobScheduler,
    JobConfig,
    JobStatus,
    JobExecution,
    create_dispatch_scheduler
)

__all__ = [
    # Logger exports
    'setup_logging',
    'get_performance_logger',
    'get_structured_logger',
    'get_log_stats',
    'PerformanceLogger',
    'LoggerSetup',

    # Error handler exports
    'initialize_error_handler',
    'get_error_handler',
    'record_performance',
    'monitor_performance',
    'GlobalErrorHandler',
    'ErrorSeverity',
    'HealthStatus',
    'ErrorReport',
    'PerformanceMetric',
    'HealthMetrics',

    # Scheduler exports
    'JobScheduler',
    'JobConfig',
    'JobStatus',
    'JobExecution',
    'create_dispatch_scheduler'
]
