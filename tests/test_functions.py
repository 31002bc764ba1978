from __future__ import annotations

import httpx
import pytest

from app.functions import CORS_HEADERS
from tests.fakes import ADMIN, AGENT, MEMBER, auth_user, login_as

TICKET = {
    'title': 'Locker broken',
    'description': 'My locker will not close.',
    'priority': 'high',
    'status': 'open',
    'member_email': 'member@example.com',
}

INVITE = {'email': 'coach@example.com', 'firstName': 'Casey', 'lastName': 'Coach', 'role': 'admin'}


@pytest.fixture
def staff_client(client):
    login_as(client, AGENT)
    return client


@pytest.fixture
def admin_client(client):
    login_as(client, ADMIN)
    return client


@pytest.mark.parametrize('path', ['/functions/send-ticket-notification', '/functions/invite-team-member'])
def test_preflight(client, path):
    response = client.options(path)

    assert response.status_code == 200
    assert response.get_data(as_text=True) == 'ok'
    for name, value in CORS_HEADERS.items():
        assert response.headers[name] == value


@pytest.mark.parametrize(
    'path,payload',
    [('/functions/send-ticket-notification', TICKET), ('/functions/invite-team-member', INVITE)],
)
def test_anonymous_callers_are_rejected(client, supabase, sent_emails, path, payload):
    response = client.post(path, json=payload)

    assert response.status_code == 401
    assert response.get_json() == {'error': 'Unauthorized'}
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert sent_emails == []
    supabase.auth.admin.invite_user_by_email.assert_not_called()


@pytest.mark.parametrize(
    'path,payload',
    [('/functions/send-ticket-notification', TICKET), ('/functions/invite-team-member', INVITE)],
)
def test_members_are_forbidden(client, supabase, sent_emails, path, payload):
    login_as(client, MEMBER)

    response = client.post(path, json=payload)

    assert response.status_code == 403
    assert sent_emails == []
    supabase.auth.admin.invite_user_by_email.assert_not_called()


def test_agents_cannot_invite(staff_client, supabase):
    response = staff_client.post('/functions/invite-team-member', json=INVITE)

    assert response.status_code == 403
    supabase.auth.admin.invite_user_by_email.assert_not_called()


def test_send_ticket_notification(staff_client, sent_emails):
    response = staff_client.post('/functions/send-ticket-notification', json=TICKET)

    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'data': {'id': 'email-1'}}
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert sent_emails[0]['body']['subject'] == 'New Support Ticket: Locker broken'


def test_send_reply_notification(staff_client, sent_emails):
    payload = {**TICKET, 'type': 'reply', 'reply_text': 'All fixed.', 'bcc': ['boss@example.com']}

    response = staff_client.post('/functions/send-ticket-notification', json=payload)

    assert response.status_code == 200
    body = sent_emails[0]['body']
    assert body['subject'] == 'Re: Locker broken'
    assert body['bcc'] == ['boss@example.com']


def test_send_ticket_notification_validation(staff_client, sent_emails):
    response = staff_client.post('/functions/send-ticket-notification', json={'title': 'Only a title'})

    assert response.status_code == 400
    assert response.get_json()['error'].startswith('Missing required fields:')
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert sent_emails == []


def test_send_ticket_notification_rejects_non_object(staff_client):
    response = staff_client.post('/functions/send-ticket-notification', json=['not', 'an', 'object'])
    assert response.status_code == 400


def test_provider_failure_is_reported(app, staff_client):
    app.notification_service = type(app.notification_service)(
        app.settings,
        transport=httpx.MockTransport(lambda request: httpx.Response(500, json={'message': 'Provider down'})),
    )

    response = staff_client.post('/functions/send-ticket-notification', json=TICKET)

    assert response.status_code == 502
    assert response.get_json() == {'error': 'Provider down'}


def test_invite_team_member_accepts_camel_case(admin_client, supabase):
    supabase.auth.admin.invite_user_by_email.return_value.user = auth_user('new-1', 'coach@example.com')

    response = admin_client.post('/functions/invite-team-member', json=INVITE)

    assert response.status_code == 200
    assert response.get_json() == {
        'data': {'user': {'id': 'new-1', 'email': 'coach@example.com', 'role': 'admin'}},
        'error': None,
    }
    assert supabase.rows('users')[-1]['first_name'] == 'Casey'


def test_invite_team_member_validation(admin_client):
    response = admin_client.post('/functions/invite-team-member', json={**INVITE, 'role': 'member'})

    assert response.status_code == 400
    assert response.get_json() == {'error': 'Role must be either agent or admin'}


def test_invite_team_member_provider_error(admin_client, supabase):
    supabase.auth.admin.invite_user_by_email.side_effect = RuntimeError('User already registered')

    response = admin_client.post(
        '/functions/invite-team-member',
        json={'email': 'coach@example.com', 'first_name': 'Casey', 'last_name': 'Coach', 'role': 'agent'},
    )

    assert response.status_code == 500
    assert response.get_json() == {'error': 'User already registered'}
