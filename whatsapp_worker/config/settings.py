"""
Configuration management for the WhatsApp dispatch worker.

Handles environment variables, validation, and different deployment environments
with type safety and comprehensive validation.
"""

import os
import sys
from pathlib import Path
from typing import Optional, Dict, Any
from enum import Enum
import logging

try:
    from dotenv import load_dotenv
    from pydantic import Field, field_validator, model_validator
    from pydantic_settings import BaseSettings
except ImportError as e:
    print(f"Missing required dependency: {e}")
    print("Please install: pip install python-dotenv pydantic-settings")
    sys.exit(1)


class Environment(str, Enum):
    """Deployment environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class GatewayConfig(BaseSettings):
    """WhatsApp messaging gateway configuration."""

    base_url: str = Field("https://api.proconnection.me/api", description="Gateway API base URL")
    timeout_seconds: int = Field(30, description="Request timeout in seconds")
    status_path: str = Field("/status", description="Connectivity status endpoint")
    send_path: str = Field("/send-message", description="Message send endpoint")

    @field_validator('base_url')
    def base_url_must_be_valid(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Base URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('timeout_seconds')
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError('Gateway timeout must be positive')
        return v

    @property
    def status_url(self) -> str:
        return f"{self.base_url}{self.status_path}"

    @property
    def send_url(self) -> str:
        return f"{self.base_url}{self.send_path}"

    model_config = {"env_prefix": "WHATSAPP_GATEWAY_"}


class DispatchConfig(BaseSettings):
    """Dispatch pass configuration."""

    delivery_method: str = Field("whatsapp", description="Delivery method handled by this worker")
    fallback_method: str = Field("email", description="Delivery method used when the gateway is down")
    batch_limit: int = Field(50, description="Maximum notifications sent per pass")
    fallback_limit: int = Field(10, description="Maximum notifications re-routed per pass while disconnected")
    inter_message_delay_seconds: float = Field(1.0, description="Fixed delay after each processed notification")

    # Claim step for overlapping invocations
    claim_enabled: bool = Field(True, description="Claim rows (pending -> processing) before sending")
    claim_lease_seconds: int = Field(300, description="Age after which a 'processing' row is returned to 'pending'")

    templates_config_key: str = Field("message_templates", description="whatsapp_config key holding message templates")

    @field_validator('batch_limit', 'fallback_limit')
    def limit_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('Batch limits must be at least 1')
        return v

    @field_validator('inter_message_delay_seconds')
    def delay_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('Inter-message delay cannot be negative')
        return v

    @model_validator(mode='after')
    def validate_methods(self):
        """Fallback must route somewhere else."""
        if self.delivery_method == self.fallback_method:
            raise ValueError('Fallback method must differ from the delivery method')
        return self

    model_config = {"env_prefix": "DISPATCH_"}


class DatabaseConfig(BaseSettings):
    """Notification queue database configuration."""

    url: str = Field("sqlite:///data/notifications.db", description="SQLAlchemy database URL")
    echo: bool = Field(False, description="Echo SQL statements")
    pool_pre_ping: bool = Field(True, description="Check connections before use")
    create_tables: bool = Field(False, description="Create missing tables at startup (development)")

    @field_validator('url')
    def url_must_not_be_empty(cls, v):
        if not v or v.strip() == "":
            raise ValueError('Database URL cannot be empty')
        return v.strip()

    model_config = {"env_prefix": "DATABASE_"}


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Default log level")
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # File logging
    enable_file_logging: bool = Field(True, description="Enable file logging")
    log_file: str = Field("logs/whatsapp_worker.log", description="Log file path")
    max_bytes: int = Field(10 * 1024 * 1024, description="Maximum log file size in bytes")
    backup_count: int = Field(5, description="Number of backup log files")

    # Console logging
    enable_console_logging: bool = Field(True, description="Enable console logging")
    console_level: LogLevel = Field(LogLevel.INFO, description="Console log level")

    # Structured logging
    enable_json_logging: bool = Field(False, description="Enable JSON structured logging")
    include_extra_fields: bool = Field(True, description="Include extra fields in logs")

    model_config = {"env_prefix": "LOG_"}


class ServerConfig(BaseSettings):
    """HTTP invocation endpoint configuration."""

    host: str = Field("0.0.0.0", description="Bind address")
    port: int = Field(8080, description="HTTP port")
    invoke_path: str = Field("/process-whatsapp-notifications", description="Dispatch invocation path")
    health_path: str = Field("/health", description="Health check endpoint path")
    gateway_status_path: str = Field("/gateway-status", description="Gateway status endpoint path")

    @field_validator('port')
    def port_must_be_valid(cls, v):
        if not 0 < v < 65536:
            raise ValueError('Port must be between 1 and 65535')
        return v

    model_config = {"env_prefix": "SERVER_"}


class ScheduleConfig(BaseSettings):
    """Periodic dispatch configuration."""

    enabled: bool = Field(True, description="Enable scheduled dispatch passes in daemon mode")
    interval_seconds: int = Field(60, description="Seconds between dispatch passes")
    timezone: str = Field("America/Argentina/Buenos_Aires", description="Timezone for scheduling")

    @field_validator('interval_seconds')
    def interval_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('Schedule interval must be at least 1 second')
        return v

    model_config = {"env_prefix": "SCHEDULE_"}


class Settings(BaseSettings):
    """Main application settings."""

    # Environment and basic settings
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Enable debug mode")
    app_name: str = Field("WhatsApp Dispatch Worker", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")

    data_dir: str = Field("data", description="Data directory for local databases")

    # Component configurations
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    @field_validator('environment', mode='before')
    def validate_environment(cls, v):
        """Validate and normalize environment."""
        if isinstance(v, str):
            try:
                return Environment(v.lower())
            except ValueError:
                raise ValueError(f'Invalid environment: {v}. Must be one of: {list(Environment)}')
        return v

    @model_validator(mode='after')
    def validate_environment_settings(self):
        """Apply environment-specific validation and defaults."""
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                raise ValueError('Debug mode cannot be enabled in production')

            if not self.gateway.base_url.startswith('https://'):
                raise ValueError('Production environment requires HTTPS for API calls')

            if self.database.url.startswith('sqlite'):
                logging.warning("Production environment is using a SQLite notification queue")

        elif self.environment == Environment.DEVELOPMENT:
            self.debug = True

        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING

    def create_directories(self):
        """Create required directories if they don't exist."""
        directories = [
            self.data_dir,
            os.path.dirname(self.logging.log_file) if self.logging.enable_file_logging else None
        ]

        for directory in directories:
            if directory:
                Path(directory).mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary (for debugging)."""
        data = self.model_dump()

        # Database URLs may carry credentials
        if data.get('database', {}).get('url'):
            data['database']['url'] = "***MASKED***"

        return data

    def get_configuration_summary(self) -> Dict[str, Any]:
        """Get configuration summary for debugging and validation."""
        return {
            "environment": self.environment.value,
            "debug_mode": self.debug,
            "gateway": {
                "base_url": self.gateway.base_url,
                "timeout_seconds": self.gateway.timeout_seconds,
            },
            "dispatch": {
                "delivery_method": self.dispatch.delivery_method,
                "fallback_method": self.dispatch.fallback_method,
                "batch_limit": self.dispatch.batch_limit,
                "fallback_limit": self.dispatch.fallback_limit,
                "inter_message_delay_seconds": self.dispatch.inter_message_delay_seconds,
                "claim_enabled": self.dispatch.claim_enabled,
            },
            "schedule": {
                "enabled": self.schedule.enabled,
                "interval_seconds": self.schedule.interval_seconds,
                "timezone": self.schedule.timezone,
            },
        }

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Load application settings from environment variables and .env file.

    Args:
        env_file: Optional path to .env file

    Returns:
        Configured Settings instance

    Raises:
        ValueError: If configuration is invalid
        FileNotFoundError: If required configuration files are missing
    """
    if env_file:
        if not os.path.exists(env_file):
            raise FileNotFoundError(f"Environment file not found: {env_file}")
        load_dotenv(env_file, override=True)
    else:
        for possible_env_file in [".env", ".env.local", f".env.{os.getenv('ENVIRONMENT', 'development')}"]:
            if os.path.exists(possible_env_file):
                load_dotenv(possible_env_file, override=False)

    try:
        settings = Settings()
        settings.create_directories()
        return settings

    except Exception as e:
        print(f"Error loading settings: {e}")
        print("\nPlease check your environment variables and .env file configuration.")
        print("Relevant environment variables:")
        print("- DATABASE_URL: SQLAlchemy URL of the notification queue")
        print("- WHATSAPP_GATEWAY_BASE_URL: WhatsApp gateway API base URL")
        print("- DISPATCH_*: Batch limits, delay and fallback routing")
        raise


def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance
    """
    if not hasattr(get_settings, '_cached_settings'):
        get_settings._cached_settings = load_settings()

    return get_settings._cached_settings


def reload_settings() -> Settings:
    """
    Reload settings (clears cache).

    Returns:
        Fresh Settings instance
    """
    if hasattr(get_settings, '_cached_settings'):
        delattr(get_settings, '_cached_settings')

    return get_settings()


if __name__ == "__main__":
    """CLI for configuration management."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description="WhatsApp Dispatch Worker Configuration")
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--show", action="store_true", help="Show current configuration")
    parser.add_argument("--env-file", help="Path to .env file")

    args = parser.parse_args()

    try:
        settings = load_settings(args.env_file)

        if args.validate:
            print("Configuration loaded successfully")
            print(f"Environment: {settings.environment.value}")
            print(f"Debug mode: {settings.debug}")

        if args.show:
            print("\nCurrent Configuration:")
            print(json.dumps(settings.to_dict(), indent=2, default=str))

            print("\nConfiguration Summary:")
            print(json.dumps(settings.get_configuration_summary(), indent=2, default=str))

    except Exception as e:
        print(f"Configuration error: {e}")
        sys.exit(1)
