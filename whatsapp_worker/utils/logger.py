"""
Logging system for the WhatsApp dispatch worker.

Provides structured logging with rotation, monitoring integration,
and production-ready configuration management.
"""

import os
import sys
import logging
import logging.handlers
import time
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextlib import contextmanager

try:
    import structlog
    from pythonjsonlogger import jsonlogger
except ImportError as e:
    print(f"Missing required logging dependencies: {e}")
    print("Please install: pip install structlog python-json-logger")
    sys.exit(1)


ROOT_LOGGER_NAME = "whatsapp_worker"


class PerformanceLogger:
    """Logger for tracking performance metrics."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    @contextmanager
    def timer(self, operation: str, **kwargs):
        """Context manager for timing operations."""
        start_time = time.perf_counter()

        try:
            yield
        finally:
            duration = time.perf_counter() - start_time

            self.logger.info(
                "Performance metric",
                extra={
                    "operation": operation,
                    "duration_seconds": round(duration, 4),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    **kwargs
                }
            )

    def log_dispatch_metrics(self, run_id: str, metrics: Dict[str, Any]):
        """Log the outcome counters of a dispatch pass."""
        self.logger.info(
            "Dispatch pass metrics",
            extra={
                "run_id": run_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **metrics
            }
        )


class StructuredFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds source location and process info to every record."""

    def __init__(self, include_extra: bool = True):
        super().__init__(json_default=str)
        self.include_extra = include_extra

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]):
        if self.include_extra:
            super().add_fields(log_record, record, message_dict)
        else:
            log_record.update(message_dict)
            log_record["message"] = record.getMessage()

        log_record["timestamp"] = datetime.fromtimestamp(record.created).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno

        if record.thread:
            log_record["thread_id"] = record.thread
        if record.process:
            log_record["process_id"] = record.process


class MultiLineFormatter(logging.Formatter):
    """Formatter for human-readable logs with dispatch context appended."""

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        extra_info = []

        if hasattr(record, 'duration_seconds'):
            extra_info.append(f"Duration: {record.duration_seconds}s")

        if hasattr(record, 'operation'):
            extra_info.append(f"Operation: {record.operation}")

        if hasattr(record, 'run_id'):
            extra_info.append(f"Run ID: {record.run_id}")

        if hasattr(record, 'notification_id'):
            extra_info.append(f"Notification: {record.notification_id}")

        if extra_info:
            formatted += f" | {' | '.join(extra_info)}"

        return formatted


class LoggerSetup:
    """Main logger setup and configuration."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize logger setup.

        Args:
            config: Configuration dictionary (optional, will use environment if None)
        """
        self.config = config or self._load_config_from_env()
        self.config.setdefault('level', 'INFO')
        self.performance_loggers: Dict[str, PerformanceLogger] = {}
        self._setup_complete = False

    def setup_logging(self) -> logging.Logger:
        """
        Setup the logging system.

        Returns:
            Main application logger
        """
        if self._setup_complete:
            return logging.getLogger(ROOT_LOGGER_NAME)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.config['level']))

        main_logger = logging.getLogger(ROOT_LOGGER_NAME)
        main_logger.setLevel(getattr(logging, self.config['level']))
        main_logger.handlers.clear()

        if self.config.get('enable_file_logging', True):
            self._setup_file_logging(main_logger)

        if self.config.get('enable_console_logging', True):
            self._setup_console_logging(main_logger)

        self._setup_structured_logging(self.config.get('enable_json_logging', False))
        self.configure_third_party_loggers()

        self.performance_loggers['main'] = PerformanceLogger(main_logger)

        self._setup_complete = True

        main_logger.info(
            "Logging system initialized",
            extra={
                "config": {k: v for k, v in self.config.items() if 'password' not in k.lower()}
            }
        )

        return main_logger

    def get_logger(self, name: str) -> logging.Logger:
        """
        Get a logger for a specific component.

        Args:
            name: Logger name

        Returns:
            Configured logger instance
        """
        if name.startswith(ROOT_LOGGER_NAME):
            logger = logging.getLogger(name)
        else:
            logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")

        if name not in self.performance_loggers:
            self.performance_loggers[name] = PerformanceLogger(logger)

        return logger

    def get_performance_logger(self, name: str = 'main') -> PerformanceLogger:
        """
        Get performance logger for a component.

        Args:
            name: Component name

        Returns:
            PerformanceLogger instance
        """
        if name not in self.performance_loggers:
            self.get_logger(name)

        return self.performance_loggers[name]

    def _setup_file_logging(self, logger: logging.Logger):
        """Setup rotating file logging."""
        log_file = self.config.get('log_file', 'logs/whatsapp_worker.log')
        max_bytes = self.config.get('max_bytes', 10 * 1024 * 1024)
        backup_count = self.config.get('backup_count', 5)

        log_dir = os.path.dirname(log_file)
        if log_dir:
            Path(log_dir).mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )

        if self.config.get('enable_json_logging', False):
            formatter = StructuredFormatter(
                include_extra=self.config.get('include_extra_fields', True)
            )
        else:
            formatter = MultiLineFormatter(
                fmt=self.config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
                datefmt='%Y-%m-%d %H:%M:%S'
            )

        file_handler.setFormatter(formatter)
        file_handler.setLevel(getattr(logging, self.config['level']))

        logger.addHandler(file_handler)

    def _setup_console_logging(self, logger: logging.Logger):
        """Setup console logging."""
        console_handler = logging.StreamHandler(sys.stdout)

        console_level = self.config.get('console_level', self.config['level'])
        console_handler.setLevel(getattr(logging, console_level))

        if self.config.get('enable_json_logging', False):
            formatter = StructuredFormatter(include_extra=False)
        else:
            formatter = logging.Formatter(
                fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%H:%M:%S'
            )

        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    def _setup_structured_logging(self, json_output: bool):
        """Route structlog through the stdlib handlers, rendering JSON or key=value."""
        renderer = structlog.processors.JSONRenderer() if json_output else structlog.processors.KeyValueRenderer(
            key_order=['event']
        )
        try:
            structlog.configure(
                processors=[
                    structlog.stdlib.filter_by_level,
                    structlog.stdlib.add_logger_name,
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.PositionalArgumentsFormatter(),
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.StackInfoRenderer(),
                    structlog.processors.format_exc_info,
                    renderer
                ],
                context_class=dict,
                logger_factory=structlog.stdlib.LoggerFactory(),
                wrapper_class=structlog.stdlib.BoundLogger,
                cache_logger_on_first_use=True,
            )
        except Exception as e:
            logging.getLogger().warning(f"Failed to setup structlog: {e}")

    def _load_config_from_env(self) -> Dict[str, Any]:
        """Load logging configuration from environment variables."""
        return {
            'level': os.getenv('LOG_LEVEL', 'INFO').upper(),
            'format': os.getenv('LOG_FORMAT', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
            'enable_file_logging': os.getenv('LOG_ENABLE_FILE_LOGGING', 'true').lower() == 'true',
            'log_file': os.getenv('LOG_LOG_FILE', 'logs/whatsapp_worker.log'),
            'max_bytes': int(os.getenv('LOG_MAX_BYTES', str(10 * 1024 * 1024))),
            'backup_count': int(os.getenv('LOG_BACKUP_COUNT', '5')),
            'enable_console_logging': os.getenv('LOG_ENABLE_CONSOLE_LOGGING', 'true').lower() == 'true',
            'console_level': os.getenv('LOG_CONSOLE_LEVEL', 'INFO').upper(),
            'enable_json_logging': os.getenv('LOG_ENABLE_JSON_LOGGING', 'false').lower() == 'true',
            'include_extra_fields': os.getenv('LOG_INCLUDE_EXTRA_FIELDS', 'true').lower() == 'true',
        }

    def configure_third_party_loggers(self):
        """Configure third-party library loggers."""
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('requests').setLevel(logging.WARNING)
        logging.getLogger('apscheduler').setLevel(logging.INFO)

        # SQL echo is controlled by DATABASE_ECHO, keep the engine logger quiet otherwise
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy.pool').setLevel(logging.WARNING)

    def get_log_stats(self) -> Dict[str, Any]:
        """Get logging system statistics."""
        stats = {
            'handlers': [],
            'level': self.config['level'],
            'performance_loggers': list(self.performance_loggers.keys())
        }

        for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
            handler_info = {
                'type': type(handler).__name__,
                'level': logging.getLevelName(handler.level)
            }

            if hasattr(handler, 'baseFilename'):
                handler_info['file'] = handler.baseFilename
                if os.path.exists(handler.baseFilename):
                    handler_info['file_size'] = os.path.getsize(handler.baseFilename)

            stats['handlers'].append(handler_info)

        return stats


# Global logger setup instance
_logger_setup: Optional[LoggerSetup] = None


def setup_logging(config: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Setup application logging.

    Args:
        config: Optional logging configuration

    Returns:
        Main application logger
    """
    global _logger_setup

    if _logger_setup is None:
        _logger_setup = LoggerSetup(config)

    return _logger_setup.setup_logging()


def get_performance_logger(name: str = 'main') -> PerformanceLogger:
    """Get performance logger."""
    if _logger_setup is None:
        setup_logging()

    return _logger_setup.get_performance_logger(name)


def get_log_stats() -> Dict[str, Any]:
    """Get logging system statistics."""
    if _logger_setup is None:
        return {}

    return _logger_setup.get_log_stats()


def get_structured_logger(name: str):
    """Get a structlog logger bound to the stdlib logger of a component."""
    return structlog.get_logger(f"{ROOT_LOGGER_NAME}.{name}")

