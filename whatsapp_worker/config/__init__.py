"""
Configuration module for the WhatsApp dispatch worker.
"""

from .settings import (
    Settings,
    Environment,
    LogLevel,
    GatewayConfig,
    DispatchConfig,
    DatabaseConfig,
    LoggingConfig,
    ServerConfig,
    ScheduleConfig,
    load_settings,
    get_settings,
    reload_settings,
)

__all__ = [
    'Settings',
    'Environment',
    'LogLevel',
    'GatewayConfig',
    'DispatchConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'ServerConfig',
    'ScheduleConfig',
    'load_settings',
    'get_settings',
    'reload_settings',
]
