"""
Unit tests for the WhatsApp gateway HTTP client.
"""

import pytest
import requests
from unittest.mock import Mock, patch

from whatsapp_worker.api.gateway_client import WhatsAppGatewayClient
from whatsapp_worker.config import GatewayConfig
from whatsapp_worker.notifications.exceptions import GatewayError
from whatsapp_worker.utils.error_handler import GlobalErrorHandler


def make_response(status_code=200, json_data=None, json_error=None):
    """Build a mock requests.Response."""
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    if json_error:
        response.json.side_effect = json_error
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def client():
    return WhatsAppGatewayClient(base_url="https://gateway.test/api/", timeout=5)


class TestGatewayStatus:
    """Test connectivity checks."""

    def test_connected(self, client):
        """Test a connected gateway."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(200, {'connected': True, 'phoneNumber': '+5491100000000'})

            assert client.check_connected() is True
            mock_get.assert_called_once_with("https://gateway.test/api/status", timeout=5)

    def test_disconnected(self, client):
        """Test connected=false."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(200, {'connected': False})

            assert client.check_connected() is False

    def test_missing_connected_field(self, client):
        """Test a body without the flag counts as disconnected."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(200, {'status': 'ok'})

            assert client.check_connected() is False

    def test_network_error_fails_closed(self, client):
        """Test network errors count as disconnected instead of raising."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("refused")

            status = client.get_status()

            assert status.connected is False
            assert "refused" in status.error

    def test_http_error_fails_closed(self, client):
        """Test non-2xx answers count as disconnected."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(503, {'connected': True})

            status = client.get_status()

            assert status.connected is False
            assert status.error == "HTTP 503"

    def test_invalid_json_fails_closed(self, client):
        """Test unparseable bodies count as disconnected."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(200, json_error=ValueError("no json"))

            assert client.check_connected() is False

    def test_non_object_body_fails_closed(self, client):
        """Test JSON that is not an object counts as disconnected."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(200, [True])

            assert client.check_connected() is False

    def test_status_snapshot(self, client):
        """Test the snapshot keeps gateway details."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(
                200, {'connected': True, 'phoneNumber': '+5491100000000', 'timestamp': '2024-03-01T12:00:00Z'}
            )

            status = client.get_status()

            assert status.phone_number == '+5491100000000'
            assert status.timestamp == '2024-03-01T12:00:00Z'
            assert status.to_dict()['apiStatus'] == 'online'


class TestSendMessage:
    """Test message sending."""

    def test_success(self, client):
        """Test an accepted message."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.return_value = make_response(200, {'success': True, 'messageId': 'wamid.1'})

            result = client.send_message("+5491122334455", "Hola")

            assert result.success is True
            assert result.message_id == 'wamid.1'
            mock_post.assert_called_once_with(
                "https://gateway.test/api/send-message",
                json={'phoneNumber': "+5491122334455", 'message': "Hola"},
                headers={'Content-Type': 'application/json'},
                timeout=5
            )

    def test_rejected_with_message(self, client):
        """Test success=false carries the gateway message."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.return_value = make_response(400, {'success': False, 'message': 'Number not on WhatsApp'})

            result = client.send_message("+5491122334455", "Hola")

            assert result.success is False
            assert result.error_message == 'Number not on WhatsApp'

    def test_rejected_without_message(self, client):
        """Test a bare failure falls back to the HTTP status."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.return_value = make_response(500, {})

            result = client.send_message("+5491122334455", "Hola")

            assert result.success is False
            assert result.error_message == "HTTP 500"

    def test_timeout_raises(self, client):
        """Test timeouts raise a retryable GatewayError."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.side_effect = requests.exceptions.Timeout("slow")

            with pytest.raises(GatewayError) as exc_info:
                client.send_message("+5491122334455", "Hola")

            assert exc_info.value.retryable is True
            assert exc_info.value.channel == "whatsapp"

    def test_non_json_raises(self, client):
        """Test unparseable send responses raise GatewayError."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.return_value = make_response(502, json_error=ValueError("html"))

            with pytest.raises(GatewayError) as exc_info:
                client.send_message("+5491122334455", "Hola")

            assert exc_info.value.status_code == 502


class TestCallTiming:
    """Test gateway calls feed the error handler's performance history."""

    @pytest.fixture
    def error_handler(self):
        return GlobalErrorHandler(install_excepthook=False)

    @pytest.fixture
    def timed_client(self, error_handler):
        return WhatsAppGatewayClient(base_url="https://gateway.test/api", timeout=5, error_handler=error_handler)

    def test_send_recorded(self, timed_client, error_handler):
        """Test an accepted send is recorded as a successful gateway call."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.return_value = make_response(200, {'success': True, 'messageId': 'wamid.1'})
            timed_client.send_message("+5491122334455", "Hola")

        metric = error_handler.performance_metrics[-1]
        assert metric.component == "gateway"
        assert metric.operation == "send_message"
        assert metric.success is True
        assert error_handler.get_health_status().api_response_time_ms is not None

    def test_rejected_send_recorded_as_failure(self, timed_client, error_handler):
        """Test a rejected send keeps the gateway message."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.return_value = make_response(400, {'success': False, 'message': 'Number not on WhatsApp'})
            timed_client.send_message("+5491122334455", "Hola")

        metric = error_handler.performance_metrics[-1]
        assert metric.success is False
        assert metric.error_message == 'Number not on WhatsApp'
        assert error_handler.get_health_status().api_response_time_ms is None

    def test_send_error_recorded_before_raising(self, timed_client, error_handler):
        """Test transport errors are recorded and still raised."""
        with patch('whatsapp_worker.api.gateway_client.requests.post') as mock_post:
            mock_post.side_effect = requests.exceptions.Timeout("slow")

            with pytest.raises(GatewayError):
                timed_client.send_message("+5491122334455", "Hola")

        metric = error_handler.performance_metrics[-1]
        assert metric.operation == "send_message"
        assert metric.success is False

    def test_status_recorded(self, timed_client, error_handler):
        """Test status checks are recorded, failing when disconnected by error."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.side_effect = [
                make_response(200, {'connected': True}),
                requests.exceptions.ConnectionError("refused"),
            ]
            timed_client.get_status()
            timed_client.get_status()

        first, second = error_handler.performance_metrics
        assert (first.operation, first.success) == ("get_status", True)
        assert (second.operation, second.success) == ("get_status", False)
        assert "refused" in second.error_message

    def test_no_handler(self, client):
        """Test calls work without an error handler."""
        with patch('whatsapp_worker.api.gateway_client.requests.get') as mock_get:
            mock_get.return_value = make_response(200, {'connected': True})

            assert client.error_handler is None
            assert client.check_connected() is True


class TestClientFactory:
    """Test building clients from configuration."""

    def test_from_config(self):
        """Test GatewayConfig values are applied."""
        config = GatewayConfig(base_url="https://gw.example.com/api/", timeout_seconds=12)

        client = WhatsAppGatewayClient.from_config(config)

        assert client.base_url == "https://gw.example.com/api"
        assert client.timeout == 12
        assert client.status_url == "https://gw.example.com/api/status"
        assert client.send_url == "https://gw.example.com/api/send-message"
        assert client.error_handler is None

    def test_from_config_with_error_handler(self):
        """Test the error handler is passed through."""
        error_handler = Mock()

        client = WhatsAppGatewayClient.from_config(GatewayConfig(), error_handler=error_handler)

        assert client.base_url == "https://api.proconnection.me/api"
        assert client.timeout == 30
        assert client.error_handler is error_handler
