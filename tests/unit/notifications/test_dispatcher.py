"""
Unit tests for the notification dispatcher.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, call

from whatsapp_worker.notifications.dispatcher import (
    NotificationDispatcher, DISCONNECTED_MESSAGE, NO_PENDING_MESSAGE
)
from whatsapp_worker.notifications.exceptions import GatewayError, InvalidRecipientError, QueueError
from whatsapp_worker.notifications.fallback import FallbackConverter
from whatsapp_worker.notifications.models import (
    FallbackResult, GatewayState, Notification, NotificationStatus, SendResult
)
from whatsapp_worker.notifications.templates import StaticTemplateStore


def make_notification(notification_id="n1", phone="01122334455", message="Hola", **metadata):
    if phone is not None:
        metadata['phone_number'] = phone
    return Notification(
        id=notification_id,
        delivery_method="whatsapp",
        status="pending",
        scheduled_for=datetime(2024, 3, 1, 12, 0),
        notification_type="appointment_reminder",
        message=message,
        metadata=metadata,
    )


@pytest.fixture
def queue():
    """Mock queue with nothing pending and every claim succeeding."""
    mock_queue = Mock()
    mock_queue.fetch_pending.return_value = []
    mock_queue.claim.return_value = True
    return mock_queue


@pytest.fixture
def gateway():
    """Mock gateway that is connected and accepts every message."""
    mock_gateway = Mock()
    mock_gateway.check_connected.return_value = True
    mock_gateway.send_message.return_value = SendResult(success=True, message_id="wamid.1")
    return mock_gateway


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def dispatcher(queue, gateway, sleep):
    return NotificationDispatcher(
        queue=queue,
        template_store=StaticTemplateStore(),
        gateway=gateway,
        claim_lease_seconds=300,
        sleep=sleep,
    )


def status_update(queue, notification_id):
    """Return (status, metadata_patch) of the final update for a notification."""
    for update in queue.update_status.call_args_list:
        if update.args[0] == notification_id:
            return update.args[1], update.args[2]
    raise AssertionError(f"No status update for {notification_id}")


class TestDispatchPass:
    """Test a full dispatch pass."""

    def test_no_pending(self, dispatcher, queue, gateway):
        """Test the connected, nothing-pending result."""
        summary = dispatcher.run()

        assert summary.to_dict() == {'success': True, 'message': NO_PENDING_MESSAGE, 'processed': 0}
        queue.fetch_pending.assert_called_once_with("whatsapp", 50)
        gateway.send_message.assert_not_called()

    def test_successful_send(self, dispatcher, queue, gateway):
        """Test a valid notification is sent and recorded."""
        queue.fetch_pending.return_value = [make_notification()]

        summary = dispatcher.run()

        gateway.send_message.assert_called_once_with("+5491122334455", "Hola")
        status, patch = status_update(queue, "n1")
        assert status == NotificationStatus.SENT
        assert patch['message_id'] == "wamid.1"
        assert patch['formatted_phone'] == "+5491122334455"
        assert 'processing_time' in patch
        assert summary.to_dict() == {
            'success': True,
            'processed': 1,
            'failed': 0,
            'total': 1,
            'success_rate': "100.00",
            'whatsapp_status': "connected",
        }

    def test_missing_message_id_gets_generated(self, dispatcher, queue, gateway):
        """Test a fallback message id when the gateway returns none."""
        queue.fetch_pending.return_value = [make_notification()]
        gateway.send_message.return_value = SendResult(success=True)

        dispatcher.run()

        _, patch = status_update(queue, "n1")
        assert patch['message_id'].startswith("msg_")

    def test_missing_phone(self, dispatcher, queue, gateway):
        """Test notifications without a phone fail without a gateway call."""
        queue.fetch_pending.return_value = [make_notification(phone=None)]

        summary = dispatcher.run()

        gateway.send_message.assert_not_called()
        assert status_update(queue, "n1") == (NotificationStatus.FAILED, {'error_reason': 'no_phone_number'})
        assert summary.failed == 1
        assert summary.processed == 0

    def test_invalid_phone(self, dispatcher, queue, gateway):
        """Test invalid numbers fail with the raw number recorded."""
        queue.fetch_pending.return_value = [make_notification(phone="123")]

        dispatcher.run()

        gateway.send_message.assert_not_called()
        assert status_update(queue, "n1") == (
            NotificationStatus.FAILED,
            {'error_reason': 'invalid_phone_number', 'original_phone': '123'}
        )

    def test_gateway_rejects(self, dispatcher, queue, gateway):
        """Test success=false from the gateway is an api_error."""
        queue.fetch_pending.return_value = [make_notification(retry_count=2)]
        gateway.send_message.return_value = SendResult(success=False, error_message="Number not on WhatsApp")

        summary = dispatcher.run()

        assert status_update(queue, "n1") == (NotificationStatus.FAILED, {
            'error_reason': 'api_error',
            'error_message': 'Number not on WhatsApp',
            'retry_count': 3,
        })
        assert summary.to_dict()['success_rate'] == "0.00"

    def test_gateway_raises(self, dispatcher, queue, gateway):
        """Test transport errors are a processing_exception."""
        queue.fetch_pending.return_value = [make_notification()]
        gateway.send_message.side_effect = GatewayError("timed out", retryable=True)

        summary = dispatcher.run()

        assert status_update(queue, "n1") == (NotificationStatus.FAILED, {
            'error_reason': 'processing_exception',
            'error_message': 'timed out',
            'retry_count': 1,
        })
        assert summary.failed == 1

    def test_item_failures_do_not_abort_batch(self, dispatcher, queue, gateway):
        """Test every item reaches a terminal state."""
        queue.fetch_pending.return_value = [
            make_notification("n1"),
            make_notification("n2", phone=None),
            make_notification("n3"),
            make_notification("n4", phone="bad"),
        ]
        gateway.send_message.side_effect = [RuntimeError("boom"), SendResult(success=True, message_id="m3")]

        summary = dispatcher.run()

        assert status_update(queue, "n1")[0] == NotificationStatus.FAILED
        assert status_update(queue, "n2")[0] == NotificationStatus.FAILED
        assert status_update(queue, "n3")[0] == NotificationStatus.SENT
        assert status_update(queue, "n4")[0] == NotificationStatus.FAILED
        assert summary.to_dict() == {
            'success': True,
            'processed': 1,
            'failed': 3,
            'total': 4,
            'success_rate': "25.00",
            'whatsapp_status': "connected",
        }

    def test_renders_template(self, dispatcher, queue, gateway):
        """Test template rendering when requested by metadata."""
        queue.fetch_pending.return_value = [make_notification(
            use_template=True,
            template_variables={'patient_name': 'Ana', 'date': '01/02', 'time': '10:00'},
        )]

        dispatcher.run()

        gateway.send_message.assert_called_once_with(
            "+5491122334455",
            "Estimado/a Ana, le recordamos su cita para el 01/02 a las 10:00."
        )

    def test_template_decision_reads_metadata(self, dispatcher, queue, gateway):
        """Test only the metadata flags decide between template and raw message."""
        queue.fetch_pending.return_value = [
            make_notification("n1", message="raw", use_template=True, template_variables={}),
            make_notification("n2", message="raw", use_template=True),
        ]

        dispatcher.run()

        assert gateway.send_message.call_args_list == [
            call("+5491122334455", "Estimado/a {{patient_name}}, le recordamos su cita para el {{date}} a las {{time}}."),
            call("+5491122334455", "raw"),
        ]

    def test_templates_loaded_once_per_pass(self, queue, gateway, sleep):
        """Test the template store is read once, not per item."""
        template_store = Mock()
        template_store.load_templates.return_value = {}
        queue.fetch_pending.return_value = [make_notification("n1"), make_notification("n2")]
        dispatcher = NotificationDispatcher(queue, template_store, gateway, sleep=sleep)

        dispatcher.run()

        template_store.load_templates.assert_called_once()

    def test_record_failure_after_send_still_counts_sent(self, dispatcher, queue, gateway):
        """Test a delivered message is not reported as failed."""
        queue.fetch_pending.return_value = [make_notification()]
        queue.update_status.side_effect = QueueError("db down", "n1")

        summary = dispatcher.run()

        assert summary.processed == 1
        assert summary.failed == 0

    def test_fetch_error_propagates(self, dispatcher, queue):
        """Test a queue read failure aborts the pass."""
        queue.fetch_pending.side_effect = QueueError("db down")

        with pytest.raises(QueueError):
            dispatcher.run()

    def test_releases_stale_claims(self, dispatcher, queue):
        """Test stale claims are released at the start of a pass."""
        dispatcher.run()

        queue.release_stale_claims.assert_called_once_with(300)


class TestRateLimiting:
    """Test the fixed delay between gateway calls."""

    def test_sleeps_between_items(self, dispatcher, queue, sleep):
        """Test N items sleep N-1 times with the configured delay."""
        queue.fetch_pending.return_value = [make_notification(f"n{i}") for i in range(3)]

        dispatcher.run()

        assert sleep.call_args_list == [call(1.0), call(1.0)]

    def test_failed_items_are_also_spaced(self, dispatcher, queue, sleep):
        """Test the delay applies after failed items too."""
        queue.fetch_pending.return_value = [make_notification("n1", phone=None), make_notification("n2")]

        dispatcher.run()

        sleep.assert_called_once_with(1.0)

    def test_single_item_no_sleep(self, dispatcher, queue, sleep):
        """Test no delay after the last item."""
        queue.fetch_pending.return_value = [make_notification()]

        dispatcher.run()

        sleep.assert_not_called()

    def test_zero_delay(self, queue, gateway, sleep):
        """Test a zero delay disables sleeping."""
        queue.fetch_pending.return_value = [make_notification("n1"), make_notification("n2")]
        dispatcher = NotificationDispatcher(
            queue, StaticTemplateStore(), gateway, inter_message_delay=0, sleep=sleep
        )

        dispatcher.run()

        sleep.assert_not_called()


class TestClaimStep:
    """Test skipping notifications claimed by another worker."""

    def test_lost_claim_is_skipped(self, dispatcher, queue, gateway, sleep):
        """Test a lost claim is neither sent nor updated."""
        queue.fetch_pending.return_value = [make_notification("n1"), make_notification("n2")]
        queue.claim.side_effect = [False, True]

        summary = dispatcher.run()

        gateway.send_message.assert_called_once()
        assert [c.args[0] for c in queue.update_status.call_args_list] == ["n2"]
        assert summary.skipped == 1
        assert summary.processed == 1
        assert summary.to_dict()['skipped'] == 1
        sleep.assert_not_called()

    def test_claim_error_is_skipped(self, dispatcher, queue, gateway):
        """Test a claim that cannot be written is treated as lost."""
        queue.fetch_pending.return_value = [make_notification()]
        queue.claim.side_effect = QueueError("locked", "n1")

        summary = dispatcher.run()

        gateway.send_message.assert_not_called()
        assert summary.skipped == 1

    def test_claim_disabled(self, queue, gateway, sleep):
        """Test no claims or lease releases when disabled."""
        queue.fetch_pending.return_value = [make_notification()]
        dispatcher = NotificationDispatcher(
            queue, StaticTemplateStore(), gateway, claim_enabled=False, claim_lease_seconds=300, sleep=sleep
        )

        summary = dispatcher.run()

        queue.claim.assert_not_called()
        queue.release_stale_claims.assert_not_called()
        assert summary.processed == 1


class TestDisconnectedGateway:
    """Test the email fallback path."""

    def test_converts_to_email(self, dispatcher, queue, gateway):
        """Test pending WhatsApp notifications are re-routed and nothing is sent."""
        gateway.check_connected.return_value = False
        queue.fetch_pending.return_value = [make_notification("n1"), make_notification("n2")]

        summary = dispatcher.run()

        gateway.send_message.assert_not_called()
        queue.update_status.assert_not_called()
        queue.fetch_pending.assert_called_once_with("whatsapp", 10)
        assert queue.change_delivery_method.call_args_list == [
            call("n1", "email", {'original_method': 'whatsapp', 'fallback_reason': 'whatsapp_disconnected'}),
            call("n2", "email", {'original_method': 'whatsapp', 'fallback_reason': 'whatsapp_disconnected'}),
        ]
        assert summary.to_dict() == {
            'success': False,
            'message': DISCONNECTED_MESSAGE,
            'whatsapp_status': "disconnected",
            'fallback_processed': 2,
        }

    def test_uses_injected_converter(self, queue, gateway, sleep):
        """Test the fallback converter and limits are configurable."""
        gateway.check_connected.return_value = False
        converter = Mock(spec=FallbackConverter)
        converter.convert_to_fallback.return_value = FallbackResult(fetched=3, converted=3)
        dispatcher = NotificationDispatcher(
            queue, StaticTemplateStore(), gateway,
            fallback_converter=converter, fallback_method="sms", fallback_limit=5, sleep=sleep
        )

        summary = dispatcher.run()

        converter.convert_to_fallback.assert_called_once_with("whatsapp", "sms", 5)
        assert summary.whatsapp_status == GatewayState.DISCONNECTED
        assert summary.fallback_processed == 3


class TestFromConfig:
    """Test building a dispatcher from settings."""

    def test_from_config(self, queue, gateway):
        """Test DispatchConfig values are applied."""
        config = Mock(
            delivery_method="whatsapp",
            fallback_method="email",
            batch_limit=20,
            fallback_limit=4,
            inter_message_delay_seconds=0.5,
            claim_enabled=False,
            claim_lease_seconds=60,
        )

        dispatcher = NotificationDispatcher.from_config(config, queue, StaticTemplateStore(), gateway)

        assert dispatcher.batch_limit == 20
        assert dispatcher.fallback_limit == 4
        assert dispatcher.inter_message_delay == 0.5
        assert dispatcher.claim_enabled is False


class TestScheduleReminder:
    """Test queueing reminders."""

    def test_schedules_with_metadata(self, dispatcher, queue):
        """Test reminders are enqueued with the canonical phone."""
        queue.enqueue.return_value = make_notification("new")

        dispatcher.schedule_reminder("011 2233-4455", "Recordatorio", delay_minutes=30, recipient_id="p-1")

        kwargs = queue.enqueue.call_args.kwargs
        assert kwargs['notification_type'] == "appointment_reminder"
        assert kwargs['delivery_method'] == "whatsapp"
        assert kwargs['recipient_id'] == "p-1"
        assert kwargs['metadata'] == {
            'phone_number': "+5491122334455",
            'delay_minutes': 30,
            'scheduled_via': 'api',
        }
        delay = kwargs['scheduled_for'] - datetime.now(timezone.utc).replace(tzinfo=None)
        assert 29 * 60 < delay.total_seconds() <= 30 * 60

    def test_invalid_phone_rejected(self, dispatcher, queue):
        """Test invalid numbers are never enqueued."""
        with pytest.raises(InvalidRecipientError) as exc_info:
            dispatcher.schedule_reminder("123", "Recordatorio")

        assert exc_info.value.recipient == "123"
        queue.enqueue.assert_not_called()
