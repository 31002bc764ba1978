from __future__ import annotations

import httpx
import pytest

from app.errors import ConfigurationError, UpstreamError, ValidationError
from app.services.notification_service import NotificationService, validate_ticket_payload
from tests.fakes import make_settings

PAYLOAD = {
    'title': 'Locker broken',
    'description': 'My locker will not close.',
    'priority': 'medium',
    'status': 'open',
    'member_email': 'member@example.com',
}


def _service(transport, **settings_overrides) -> NotificationService:
    return NotificationService(make_settings(**settings_overrides), transport=transport)


class TestValidateTicketPayload:
    def test_missing_fields_are_listed(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_ticket_payload({'title': 'x'})
        assert excinfo.value.message == (
            'Missing required fields: description, priority, status, member_email'
        )

    def test_reply_requires_reply_text(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_ticket_payload({**PAYLOAD, 'type': 'reply'})
        assert excinfo.value.message == 'reply_text is required for reply type tickets'

    def test_defaults(self):
        normalized = validate_ticket_payload(dict(PAYLOAD))
        assert normalized['type'] == 'notification'
        assert normalized['bcc'] == []

    def test_unknown_type_and_bad_bcc(self):
        with pytest.raises(ValidationError):
            validate_ticket_payload({**PAYLOAD, 'type': 'digest'})
        with pytest.raises(ValidationError):
            validate_ticket_payload({**PAYLOAD, 'bcc': {'a': 1}})


def test_notification_email_goes_to_member(app, email_transport, sent_emails):
    with app.app_context():
        result = _service(email_transport).send(dict(PAYLOAD))

    assert result == {'id': 'email-1'}
    sent = sent_emails[0]
    assert sent['url'] == 'https://api.resend.com/emails'
    assert sent['authorization'] == 'Bearer re_test_key'
    assert sent['body']['to'] == 'member@example.com'
    assert sent['body']['subject'] == 'New Support Ticket: Locker broken'
    assert 'Member Email:</strong> member@example.com' in sent['body']['html']


def test_override_recipient_adds_testing_footer_to_replies(app, email_transport, sent_emails):
    service = _service(email_transport, notification_override_recipient='qa@example.com')
    with app.app_context():
        service.send({**PAYLOAD, 'type': 'reply', 'reply_text': 'Fixed!', 'bcc': ['boss@example.com']})
        service.send(dict(PAYLOAD))

    reply, notification = (entry['body'] for entry in sent_emails)
    assert reply['to'] == 'qa@example.com'
    assert reply['subject'] == 'Re: Locker broken'
    assert reply['bcc'] == ['boss@example.com']
    assert 'would normally be sent to: member@example.com' in reply['html']
    assert notification['to'] == 'qa@example.com'
    assert 'Testing Mode' not in notification['html']


def test_missing_api_key(app, email_transport, sent_emails):
    with app.app_context(), pytest.raises(ConfigurationError) as excinfo:
        _service(email_transport, resend_api_key='').send(dict(PAYLOAD))

    assert excinfo.value.message == 'Missing RESEND_API_KEY'
    assert sent_emails == []


def test_provider_error_message_is_surfaced(app):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(422, json={'message': 'Invalid `to` field'})
    )
    with app.app_context(), pytest.raises(UpstreamError) as excinfo:
        _service(transport).send(dict(PAYLOAD))

    assert excinfo.value.message == 'Invalid `to` field'


def test_network_failure_is_upstream_error(app):
    def handler(request):
        raise httpx.ConnectError('boom', request=request)

    with app.app_context(), pytest.raises(UpstreamError):
        _service(httpx.MockTransport(handler)).send(dict(PAYLOAD))
