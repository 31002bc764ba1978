"""Transactional ticket e-mail (the ``send-ticket-notification`` function)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from flask import render_template

from ..config import Settings
from ..errors import ConfigurationError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('title', 'description', 'priority', 'status', 'member_email')
EMAIL_TYPES = ('notification', 'reply')


def validate_ticket_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a normalized copy of *payload* or raise :class:`ValidationError`."""

    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')

    missing = [field for field in REQUIRED_FIELDS if not payload.get(field)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    email_type = payload.get('type') or 'notification'
    if email_type not in EMAIL_TYPES:
        raise ValidationError(f"Unknown e-mail type: {email_type}")

    if email_type == 'reply' and not payload.get('reply_text'):
        raise ValidationError('reply_text is required for reply type tickets')

    bcc = payload.get('bcc') or []
    if isinstance(bcc, str):
        bcc = [bcc]
    if not isinstance(bcc, list):
        raise ValidationError('bcc must be a list of e-mail addresses.')

    normalized = dict(payload)
    normalized['type'] = email_type
    normalized['bcc'] = [str(address).strip() for address in bcc if str(address).strip()]
    return normalized


class NotificationService:
    """Renders ticket e-mails and hands them to the Resend HTTP API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    def build_email(self, ticket: Dict[str, Any]) -> Dict[str, Any]:
        """Return the provider payload for an already validated ticket."""

        override = self.settings.notification_override_recipient
        recipient = override or ticket['member_email']
        intended_recipient = None
        if override and ticket['type'] == 'reply':
            intended_recipient = ticket['member_email']

        if ticket['type'] == 'reply':
            subject = f"Re: {ticket['title']}"
            html = render_template('email/reply.html', ticket=ticket, intended_recipient=intended_recipient)
        else:
            subject = f"New Support Ticket: {ticket['title']}"
            html = render_template('email/notification.html', ticket=ticket)

        return {
            'from': self.settings.notification_from,
            'to': recipient,
            'bcc': list(ticket.get('bcc') or []),
            'subject': subject,
            'html': html,
        }

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate, render and deliver a ticket e-mail.

        Returns the provider's JSON response on success.
        """

        ticket = validate_ticket_payload(payload)
        logger.info('RESEND_API_KEY present: %s', bool(self.settings.resend_api_key))
        if not self.settings.resend_api_key:
            logger.error('Missing RESEND_API_KEY environment variable')
            raise ConfigurationError('Missing RESEND_API_KEY')

        email = self.build_email(ticket)
        logger.info(
            'Sending %s e-mail %r to %s (bcc=%d)',
            ticket['type'],
            email['subject'],
            email['to'],
            len(email['bcc']),
        )

        try:
            with httpx.Client(
                timeout=self.settings.notification_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = client.post(
                    self.settings.resend_api_url,
                    json=email,
                    headers={
                        'Authorization': f'Bearer {self.settings.resend_api_key}',
                        'Content-Type': 'application/json',
                    },
                )
        except httpx.HTTPError as exc:
            logger.warning('Resend request failed', exc_info=True)
            raise UpstreamError('Failed to send email') from exc

        result = self._json_body(response)
        if response.is_error:
            message = result.get('message') or 'Failed to send email'
            logger.error('Resend API error: status=%s message=%s', response.status_code, message)
            raise UpstreamError(message)

        logger.info('Email sent successfully')
        return result

    def send_reply(
        self,
        ticket: Dict[str, Any],
        reply_text: str,
        bcc: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return self.send(
            {
                'title': ticket.get('title'),
                'description': ticket.get('description'),
                'priority': ticket.get('priority'),
                'status': ticket.get('status'),
                'created_by': ticket.get('created_by'),
                'member_email': ticket.get('member_email'),
                'type': 'reply',
                'reply_text': reply_text,
                'bcc': bcc or [],
            }
        )

    def send_new_ticket(self, ticket: Dict[str, Any], member_email: str) -> Dict[str, Any]:
        return self.send(
            {
                'title': ticket.get('title'),
                'description': ticket.get('description'),
                'priority': ticket.get('priority'),
                'status': ticket.get('status'),
                'created_by': ticket.get('created_by'),
                'member_email': member_email,
                'type': 'notification',
            }
        )

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {'data': data}
