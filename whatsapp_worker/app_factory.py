"""
Application factory for the WhatsApp dispatch worker.

Provides a centralized way to create and configure the application
with dependency injection and clean component interfaces.
"""

import os
import logging
from typing import Optional, Dict, Any, Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Configuration and utilities
from whatsapp_worker.config import Settings, get_settings
from whatsapp_worker.utils.logger import setup_logging
from whatsapp_worker.utils.error_handler import initialize_error_handler, GlobalErrorHandler
from whatsapp_worker.utils.scheduler import JobScheduler, create_dispatch_scheduler

# Core components
from whatsapp_worker.models.db_models import Base
from whatsapp_worker.api.gateway_client import WhatsAppGatewayClient
from whatsapp_worker.notifications.dispatcher import NotificationDispatcher
from whatsapp_worker.notifications.queue import SqlAlchemyQueueRepository
from whatsapp_worker.notifications.templates import SqlTemplateStore


class ComponentInterface(Protocol):
    """Interface for application components."""

    def is_healthy(self) -> bool:
        """Check if component is healthy."""
        ...

    def get_status(self) -> Dict[str, Any]:
        """Get component status."""
        ...


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


class ApplicationContainer:
    """
    Dependency injection container for the dispatch worker components.

    Components are created lazily on first access, so a container built in a
    test can swap any of them out before ``initialize()`` runs.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize application container.

        Args:
            settings: Application settings (uses default if None)
        """
        self.settings = settings or get_settings()

        # Core components
        self._logger: Optional[logging.Logger] = None
        self._error_handler: Optional[GlobalErrorHandler] = None
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._queue: Optional[SqlAlchemyQueueRepository] = None
        self._template_store: Optional[SqlTemplateStore] = None
        self._gateway: Optional[WhatsAppGatewayClient] = None
        self._dispatcher: Optional[NotificationDispatcher] = None
        self._scheduler: Optional[JobScheduler] = None

        # Component registry
        self._components: Dict[str, Any] = {}
        self._initialized = False

    @property
    def logger(self) -> logging.Logger:
        """Get or create logger."""
        if self._logger is None:
            self._logger = self._create_logger()
        return self._logger

    @property
    def error_handler(self) -> GlobalErrorHandler:
        """Get or create error handler."""
        if self._error_handler is None:
            self._error_handler = self._create_error_handler()
        return self._error_handler

    @property
    def engine(self) -> Engine:
        """Get or create the queue database engine."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create the session factory bound to the queue database."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory

    @property
    def queue(self) -> SqlAlchemyQueueRepository:
        """Get or create the notification queue repository."""
        if self._queue is None:
            self._queue = SqlAlchemyQueueRepository(self.session_factory)
        return self._queue

    @property
    def template_store(self) -> SqlTemplateStore:
        """Get or create the message template store."""
        if self._template_store is None:
            self._template_store = SqlTemplateStore(
                self.session_factory,
                config_key=self.settings.dispatch.templates_config_key
            )
        return self._template_store

    @property
    def gateway(self) -> WhatsAppGatewayClient:
        """Get or create the WhatsApp gateway client."""
        if self._gateway is None:
            self._gateway = WhatsAppGatewayClient.from_config(
                self.settings.gateway, error_handler=self.error_handler
            )
        return self._gateway

    @property
    def dispatcher(self) -> NotificationDispatcher:
        """Get or create the notification dispatcher."""
        if self._dispatcher is None:
            self._dispatcher = self._create_dispatcher()
        return self._dispatcher

    @property
    def scheduler(self) -> Optional[JobScheduler]:
        """Get or create scheduler."""
        if self._scheduler is None and self.settings.schedule.enabled:
            self._scheduler = self._create_scheduler()
        return self._scheduler

    def initialize(self) -> bool:
        """
        Initialize all components.

        Returns:
            True if initialization successful
        """
        if self._initialized:
            return True

        try:
            self.logger.info("Initializing application components...")

            self.error_handler  # Initialize error handler first

            if self.settings.database.create_tables:
                Base.metadata.create_all(self.engine)
                self.logger.info("Notification queue tables created")

            self.dispatcher

            if self.settings.schedule.enabled:
                self.scheduler

            # Register all components
            self._register_components()

            if not self._validate_components():
                return False

            self._initialized = True
            self.logger.info("All application components initialized successfully")
            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize application components: {e}", exc_info=True)
            return False

    def get_component_status(self) -> Dict[str, Any]:
        """
        Get status of all components.

        Returns:
            Component status dictionary
        """
        status = {
            'initialized': self._initialized,
            'components': {}
        }

        for name, component in self._components.items():
            try:
                if name == 'database':
                    component_status = {'healthy': self.database_healthy()}
                elif hasattr(component, 'get_scheduler_stats'):
                    component_status = component.get_scheduler_stats()
                else:
                    component_status = {'available': True}

                status['components'][name] = component_status

            except Exception as e:
                status['components'][name] = {
                    'error': str(e),
                    'healthy': False
                }

        return status

    def database_healthy(self) -> bool:
        """Run a trivial query against the queue database."""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            self.logger.error(f"Queue database health check failed: {e}")
            return False

    def health_check(self) -> Dict[str, Any]:
        """
        Perform comprehensive health check.

        The gateway is not part of it: a disconnected gateway is a degraded
        mode the dispatcher handles by re-routing, not a worker failure.

        Returns:
            Health check results
        """
        health = {
            'healthy': True,
            'components': {},
            'overall_status': 'healthy'
        }

        unhealthy_components = []

        if 'database' in self._components:
            database_ok = self.database_healthy()
            health['components']['database'] = {
                'healthy': database_ok,
                'status': 'healthy' if database_ok else 'unhealthy'
            }
            if not database_ok:
                unhealthy_components.append('database')

        # Only daemon mode starts the scheduler; serve mode leaves it idle
        if self._scheduler and self._scheduler.started:
            scheduler_health = self._scheduler.health_check()
            health['components']['scheduler'] = {
                'healthy': scheduler_health['healthy'],
                'status': 'healthy' if scheduler_health['healthy'] else 'unhealthy',
                'issues': scheduler_health['issues']
            }
            if not scheduler_health['healthy']:
                unhealthy_components.append('scheduler')

        if unhealthy_components:
            # Without the queue database the worker cannot do anything
            if 'database' in unhealthy_components:
                health['healthy'] = False
                health['overall_status'] = 'unhealthy'
            else:
                health['overall_status'] = 'degraded'

            health['unhealthy_components'] = unhealthy_components

        return health

    def shutdown(self):
        """Shutdown all components gracefully."""
        self.logger.info("Shutting down application components...")

        # Shutdown scheduler first
        if self._scheduler:
            try:
                self._scheduler.shutdown(wait=True)
                self.logger.info("Scheduler shutdown complete")
            except Exception as e:
                self.logger.error(f"Error shutting down scheduler: {e}")

        if self._engine is not None:
            self._engine.dispose()
            self.logger.info("Database connections closed")

        # Clean up error handler
        if self._error_handler:
            try:
                self._error_handler.cleanup_old_data()
                self.logger.info("Error handler cleanup complete")
            except Exception as e:
                self.logger.error(f"Error during error handler cleanup: {e}")

        self.logger.info("Application shutdown complete")

    def _create_logger(self) -> logging.Logger:
        """Create and configure logger."""
        logging_config = {
            'level': self.settings.logging.level.value,
            'format': self.settings.logging.format,
            'enable_file_logging': self.settings.logging.enable_file_logging,
            'log_file': self.settings.logging.log_file,
            'max_bytes': self.settings.logging.max_bytes,
            'backup_count': self.settings.logging.backup_count,
            'enable_console_logging': self.settings.logging.enable_console_logging,
            'console_level': self.settings.logging.console_level.value,
            'enable_json_logging': self.settings.logging.enable_json_logging,
            'include_extra_fields': self.settings.logging.include_extra_fields,
        }

        return setup_logging(logging_config)

    def _create_error_handler(self) -> GlobalErrorHandler:
        """Create and configure error handler."""
        return initialize_error_handler(self.logger)

    def _create_engine(self) -> Engine:
        """Create the SQLAlchemy engine for the notification queue."""
        url = self.settings.database.url
        kwargs: Dict[str, Any] = {
            'echo': self.settings.database.echo,
            'pool_pre_ping': self.settings.database.pool_pre_ping,
        }

        if url.startswith('sqlite'):
            # The HTTP server and scheduler threads share the engine
            kwargs['connect_args'] = {'check_same_thread': False}
            if _is_memory_sqlite(url):
                kwargs['poolclass'] = StaticPool

        engine = create_engine(url, **kwargs)
        self.logger.info(f"Notification queue engine created ({engine.dialect.name})")
        return engine

    def _create_dispatcher(self) -> NotificationDispatcher:
        """Create and configure the notification dispatcher."""
        self.logger.info("Creating notification dispatcher...")

        dispatcher = NotificationDispatcher.from_config(
            self.settings.dispatch,
            queue=self.queue,
            template_store=self.template_store,
            gateway=self.gateway
        )

        self.logger.info(
            f"Dispatcher created for '{self.settings.dispatch.delivery_method}' notifications "
            f"(fallback: '{self.settings.dispatch.fallback_method}')"
        )
        return dispatcher

    def _create_scheduler(self) -> Optional[JobScheduler]:
        """Create and configure job scheduler."""
        try:
            self.logger.info("Creating job scheduler...")

            # Local import keeps main importable without the container
            from whatsapp_worker.main import dispatch_failure, execute_dispatch

            def dispatch_function():
                return execute_dispatch(self.dispatcher, self.error_handler)

            scheduler = create_dispatch_scheduler(
                dispatch_function=dispatch_function,
                interval_seconds=self.settings.schedule.interval_seconds,
                timezone=self.settings.schedule.timezone,
                logger=self.logger,
                failure_check=dispatch_failure
            )

            self.logger.info(f"Scheduler created for dispatch every {self.settings.schedule.interval_seconds}s")
            return scheduler

        except Exception as e:
            self.logger.error(f"Failed to create scheduler: {e}")
            return None

    def _register_components(self):
        """Register all components in the registry."""
        if self._logger:
            self._components['logger'] = self._logger

        if self._error_handler:
            self._components['error_handler'] = self._error_handler

        if self._engine is not None:
            self._components['database'] = self._engine

        if self._gateway:
            self._components['gateway'] = self._gateway

        if self._dispatcher:
            self._components['dispatcher'] = self._dispatcher

        if self._scheduler:
            self._components['scheduler'] = self._scheduler

    def _validate_components(self) -> bool:
        """Validate that all required components are working."""
        required_components = ['database', 'dispatcher']

        for component_name in required_components:
            if component_name not in self._components:
                self.logger.error(f"Required component '{component_name}' not initialized")
                return False

        if not self.database_healthy():
            self.logger.error("Component 'database' health check failed")
            return False

        return True


class ApplicationFactory:
    """Factory for creating configured dispatch worker applications."""

    @staticmethod
    def create_container(settings: Optional[Settings] = None) -> ApplicationContainer:
        """
        Create application container with components.

        Args:
            settings: Application settings

        Returns:
            Configured ApplicationContainer
        """
        return ApplicationContainer(settings)

    @staticmethod
    def create_production_app() -> ApplicationContainer:
        """Create production-ready application."""
        os.environ['ENVIRONMENT'] = 'production'

        from whatsapp_worker.config import reload_settings
        settings = reload_settings()

        if not settings.is_production:
            raise ValueError("Failed to configure production environment")

        return ApplicationFactory.create_container(settings)

    @staticmethod
    def create_development_app() -> ApplicationContainer:
        """Create development application."""
        os.environ['ENVIRONMENT'] = 'development'

        from whatsapp_worker.config import reload_settings
        settings = reload_settings()

        return ApplicationFactory.create_container(settings)

    @staticmethod
    def create_test_app() -> ApplicationContainer:
        """
        Create test application with minimal configuration.

        Uses an in-memory queue database with tables created and no
        scheduled dispatch.
        """
        os.environ['ENVIRONMENT'] = 'testing'
        os.environ['DATABASE_URL'] = 'sqlite://'
        os.environ['DATABASE_CREATE_TABLES'] = 'true'
        os.environ['SCHEDULE_ENABLED'] = 'false'

        from whatsapp_worker.config import reload_settings
        settings = reload_settings()

        return ApplicationFactory.create_container(settings)


def create_app(environment: str = None) -> ApplicationContainer:
    """
    Convenience function to create application.

    Args:
        environment: Environment name (development, production, testing)

    Returns:
        Configured ApplicationContainer
    """
    if environment:
        os.environ['ENVIRONMENT'] = environment

    env = os.getenv('ENVIRONMENT', 'development').lower()

    if env == 'production':
        return ApplicationFactory.create_production_app()
    elif env == 'testing':
        return ApplicationFactory.create_test_app()
    else:
        return ApplicationFactory.create_development_app()
