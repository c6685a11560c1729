"""
Unit tests for worker configuration.
"""

import pytest
from unittest.mock import patch

from pydantic import ValidationError

from whatsapp_worker.config import (
    Settings, Environment, GatewayConfig, DispatchConfig, DatabaseConfig,
    ServerConfig, ScheduleConfig, load_settings, get_settings, reload_settings
)


class TestDispatchConfig:
    """Test dispatch settings."""

    def test_defaults(self):
        """Test the defaults match the worker's documented behavior."""
        with patch.dict('os.environ', {}, clear=True):
            config = DispatchConfig()

        assert config.delivery_method == "whatsapp"
        assert config.fallback_method == "email"
        assert config.batch_limit == 50
        assert config.fallback_limit == 10
        assert config.inter_message_delay_seconds == 1.0
        assert config.claim_enabled is True
        assert config.claim_lease_seconds == 300
        assert config.templates_config_key == "message_templates"

    def test_environment_overrides(self):
        """Test DISPATCH_ variables are read."""
        with patch.dict('os.environ', {
            'DISPATCH_BATCH_LIMIT': '20',
            'DISPATCH_INTER_MESSAGE_DELAY_SECONDS': '0.25',
            'DISPATCH_CLAIM_ENABLED': 'false',
        }, clear=True):
            config = DispatchConfig()

        assert config.batch_limit == 20
        assert config.inter_message_delay_seconds == 0.25
        assert config.claim_enabled is False

    def test_invalid_limits(self):
        """Test non-positive limits are rejected."""
        with pytest.raises(ValidationError):
            DispatchConfig(batch_limit=0)

        with pytest.raises(ValidationError):
            DispatchConfig(inter_message_delay_seconds=-1)

    def test_fallback_must_differ(self):
        """Test falling back to the same channel is rejected."""
        with pytest.raises(ValidationError):
            DispatchConfig(delivery_method="whatsapp", fallback_method="whatsapp")


class TestGatewayConfig:
    """Test gateway settings."""

    def test_urls(self):
        """Test endpoint URLs are built from the base URL."""
        config = GatewayConfig(base_url="https://gw.test/api/")

        assert config.base_url == "https://gw.test/api"
        assert config.status_url == "https://gw.test/api/status"
        assert config.send_url == "https://gw.test/api/send-message"

    def test_invalid_base_url(self):
        """Test base URLs need a scheme."""
        with pytest.raises(ValidationError):
            GatewayConfig(base_url="gw.test")

    def test_invalid_timeout(self):
        """Test timeouts must be positive."""
        with pytest.raises(ValidationError):
            GatewayConfig(timeout_seconds=0)


class TestOtherConfigs:
    """Test database, server and schedule settings."""

    def test_database_url_required(self):
        """Test an empty database URL is rejected."""
        with pytest.raises(ValidationError):
            DatabaseConfig(url="  ")

    def test_server_port(self):
        """Test the port range."""
        assert ServerConfig(port=9000).port == 9000
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)

    def test_schedule_interval(self):
        """Test the schedule interval must be at least a second."""
        with pytest.raises(ValidationError):
            ScheduleConfig(interval_seconds=0)


class TestSettings:
    """Test top-level settings."""

    def test_development_enables_debug(self):
        """Test development mode turns debug on."""
        with patch.dict('os.environ', {'ENVIRONMENT': 'development'}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.is_development
        assert settings.debug is True

    def test_environment_case_insensitive(self):
        """Test environment names are normalized."""
        with patch.dict('os.environ', {'ENVIRONMENT': 'TESTING'}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.environment == Environment.TESTING

    def test_production_rejects_debug(self):
        """Test debug is not allowed in production."""
        with patch.dict('os.environ', {'ENVIRONMENT': 'production', 'DEBUG': 'true'}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_production_requires_https(self):
        """Test the gateway must use HTTPS in production."""
        with patch.dict('os.environ', {
            'ENVIRONMENT': 'production',
            'WHATSAPP_GATEWAY_BASE_URL': 'http://gw.internal/api',
        }, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_to_dict_masks_database_url(self):
        """Test credentials in the database URL are not exposed."""
        with patch.dict('os.environ', {
            'ENVIRONMENT': 'testing',
            'DATABASE_URL': 'postgresql://user:secret@db/app',
        }, clear=True):
            settings = Settings(_env_file=None)

        data = settings.to_dict()

        assert data['database']['url'] == "***MASKED***"
        assert 'secret' not in str(settings.get_configuration_summary())

    def test_configuration_summary(self):
        """Test the summary carries the dispatch settings."""
        with patch.dict('os.environ', {'ENVIRONMENT': 'testing'}, clear=True):
            summary = Settings(_env_file=None).get_configuration_summary()

        assert summary['environment'] == 'testing'
        assert summary['dispatch']['batch_limit'] == 50
        assert summary['schedule']['interval_seconds'] == 60


class TestLoadSettings:
    """Test settings loading helpers."""

    def test_load_from_env_file(self, tmp_path):
        """Test values from an explicit .env file are applied."""
        env_file = tmp_path / ".env.test"
        env_file.write_text(
            "ENVIRONMENT=testing\n"
            "DISPATCH_BATCH_LIMIT=7\n"
            f"DATA_DIR={tmp_path / 'data'}\n"
            f"LOG_LOG_FILE={tmp_path / 'logs' / 'worker.log'}\n"
        )

        with patch.dict('os.environ', {}, clear=True):
            settings = load_settings(str(env_file))

        assert settings.dispatch.batch_limit == 7
        assert (tmp_path / 'data').is_dir()
        assert (tmp_path / 'logs').is_dir()

    def test_missing_env_file(self):
        """Test a missing explicit .env file is an error."""
        with pytest.raises(FileNotFoundError):
            load_settings("/nonexistent/.env")

    def test_get_settings_is_cached(self, tmp_path):
        """Test get_settings returns the same instance until reloaded."""
        with patch.dict('os.environ', {
            'ENVIRONMENT': 'testing',
            'DATA_DIR': str(tmp_path / 'data'),
            'LOG_LOG_FILE': str(tmp_path / 'logs' / 'worker.log'),
        }, clear=True):
            first = reload_settings()
            assert get_settings() is first
            assert reload_settings() is not first
