"""Ticket store access, status lifecycle and the agent reply flow."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ConfigurationError, GymDeskError, NotFoundError, UpstreamError, ValidationError
from .ai_service import AIService
from .knowledge_base import KnowledgeBaseService
from .notification_service import NotificationService
from .realtime import ChangeFeed
from .supabase_client import require_client, response_rows
from .user_service import EMAIL_PATTERN, STAFF_ROLES, UserService, full_name

logger = logging.getLogger(__name__)

TABLE = 'tickets'
STATUSES = ('open', 'in_progress', 'solved', 'closed', 'ai')
PRIORITIES = ('low', 'medium', 'high', 'urgent')
DEFAULT_PRIORITY = 'medium'
NO_EMAIL = 'No email provided'


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def status_label(status: str) -> str:
    if status == 'in_progress':
        return 'In Progress'
    if status == 'ai':
        return 'AI'
    return status.capitalize()


class TicketService:
    """All ticket reads and writes go through here so every mutation is
    published on the ``tickets`` change feed."""

    def __init__(
        self,
        supabase: Optional[Any],
        users: UserService,
        notifications: NotificationService,
        ai_service: AIService,
        knowledge_base: KnowledgeBaseService,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self._supabase = supabase
        self._users = users
        self._notifications = notifications
        self._ai = ai_service
        self._kb = knowledge_base
        self._feed = feed

    @property
    def client(self) -> Any:
        return require_client(self._supabase)

    # --- Reads ----------------------------------------------------------

    def list_tickets(
        self,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return tickets newest first, each enriched with member info."""

        if status is not None and status not in STATUSES:
            raise ValidationError(f'Unknown status: {status}')

        query = self.client.table(TABLE).select('*')
        if status:
            query = query.eq('status', status)
        if assigned_to:
            query = query.eq('assigned_to', assigned_to)
        if created_by:
            query = query.eq('created_by', created_by)

        try:
            response = query.order('created_at', desc=True).execute()
        except Exception as exc:
            logger.warning('Error fetching tickets', exc_info=True)
            raise UpstreamError('Failed to load tickets.') from exc

        return self._enrich(response_rows(response))

    def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        return self._enrich([self._fetch_ticket(ticket_id)])[0]

    def ticket_counts(self) -> Dict[str, int]:
        """Counts for the sidebar: ``all`` plus one per status."""

        client = self.client
        try:
            response = client.table(TABLE).select('id, status').execute()
        except Exception as exc:
            logger.warning('Error fetching ticket counts', exc_info=True)
            raise UpstreamError('Failed to load ticket counts.') from exc

        rows = response_rows(response)
        counts = {'all': len(rows)}
        for status in STATUSES:
            counts[status] = sum(1 for row in rows if row.get('status') == status)
        return counts

    # --- Creation -------------------------------------------------------

    def create_ticket(
        self,
        title: str,
        description: str,
        created_by: str,
        priority: str = DEFAULT_PRIORITY,
        assigned_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Staff-created ticket on behalf of a member."""

        title = (title or '').strip()
        description = (description or '').strip()
        if not title or not description:
            raise ValidationError('Title and description are required.')
        if not created_by:
            raise ValidationError('A member is required.')
        self._users.get_user(created_by)

        record = {
            'title': title,
            'description': description,
            'priority': self._validate_priority(priority),
            'status': 'open',
            'created_by': created_by,
            'assigned_to': assigned_to,
            'history': [],
        }
        return self._insert(record)

    def submit_member_ticket(self, member: Dict[str, Any], message: str, ai_mode: bool = False) -> Dict[str, Any]:
        """Create a ticket from the member portal.

        In normal mode a notification e-mail is sent (failures are logged
        only). In AI mode an instant answer is generated and returned under
        ``answer``.
        """

        message = (message or '').strip()
        if not message:
            raise ValidationError('Please enter a message.')
        member_id = member.get('id')
        if not member_id:
            raise ValidationError('User ID is required')

        profile = self._users.find_user(member_id)
        if profile is None:
            raise NotFoundError('Failed to verify user existence')

        title = self._ai.generate_subject_line(message)
        logger.info('Generated subject line: %s', title)

        ticket = self._insert(
            {
                'title': title,
                'description': message,
                'priority': DEFAULT_PRIORITY,
                'status': 'ai' if ai_mode else 'open',
                'created_by': member_id,
                'history': [],
            }
        )

        result: Dict[str, Any] = {'ticket': ticket}
        if not ai_mode:
            member_email = member.get('email') or profile.get('email')
            try:
                self._notifications.send_new_ticket(ticket, member_email)
            except GymDeskError as exc:
                logger.error('Email Error Details: %s', exc.message)
            return result

        entries = self._kb.find_relevant_entries(message)
        result['answer'] = self._ai.answer_member_question(message, entries)
        return result

    # --- Mutations ------------------------------------------------------

    def assign_ticket(self, ticket_id: str, agent_id: Optional[str]) -> Dict[str, Any]:
        """Assign (or with ``None`` unassign) a staff user."""

        if agent_id:
            agent = self._users.get_user(agent_id)
            if agent.get('role') not in STAFF_ROLES:
                raise ValidationError('Tickets can only be assigned to staff.')

        updated = self._update(ticket_id, {'assigned_to': agent_id}, 'Failed to assign ticket')
        return self._enrich([updated])[0]

    def delete_ticket(self, ticket_id: str) -> None:
        client = self.client
        logger.info('Deleting ticket: %s', ticket_id)
        try:
            response = client.table(TABLE).delete().eq('id', ticket_id).execute()
        except Exception as exc:
            logger.error('Delete operation failed for %s', ticket_id, exc_info=True)
            raise UpstreamError('Failed to delete ticket.') from exc
        if not response_rows(response):
            raise NotFoundError('Ticket not found.')
        self._publish('DELETE', {'id': ticket_id})

    def update_status(self, ticket_id: str, new_status: str) -> Dict[str, Any]:
        """Set any of the five status labels; there is no transition table."""

        if new_status not in STATUSES:
            raise ValidationError(f'Unknown status: {new_status}')

        current = self._fetch_ticket(ticket_id)
        logger.info('Status change for %s: %s -> %s', ticket_id, current.get('status'), new_status)

        updated = self._update(ticket_id, {'status': new_status}, 'Failed to update ticket status')
        return self._enrich([updated])[0]

    def reply_to_ticket(
        self,
        ticket_id: str,
        agent: Dict[str, Any],
        text: str,
        bcc: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """Append an agent reply to the history, then e-mail it to the member.

        The history write is not rolled back when the e-mail fails.
        """

        if not text or not text.strip():
            raise ValidationError('Reply cannot be empty.')

        bcc_list = [address.strip() for address in (bcc or []) if address and address.strip()]
        invalid = [address for address in bcc_list if not EMAIL_PATTERN.match(address)]
        if invalid:
            raise ValidationError(f"Invalid BCC address: {', '.join(invalid)}")

        ticket = self.get_ticket(ticket_id)
        history = list(ticket.get('history') or [])
        if not history:
            history.append(
                {
                    'id': ticket['id'],
                    'text': ticket.get('description'),
                    'sender': 'customer',
                    'timestamp': ticket.get('created_at'),
                }
            )

        message = {
            'id': uuid.uuid4().hex,
            'text': text,
            'sender': 'agent',
            'timestamp': _now(),
        }
        if agent.get('id'):
            message['agent_id'] = agent['id']
        history.append(message)

        updated = self._update(
            ticket_id,
            {'history': history, 'updated_at': _now()},
            'Failed to save message history',
        )

        member_email = ticket.get('member_email')
        if not member_email or member_email == NO_EMAIL:
            raise ValidationError('Member email is missing from the ticket data')

        self._notifications.send_reply(ticket, text, bcc_list)
        logger.info('Reply sent successfully for ticket %s', ticket_id)

        enriched = dict(ticket)
        enriched.update(updated)
        enriched['history'] = history
        return enriched

    def draft_ai_response(self, ticket_id: str, agent: Dict[str, Any]) -> str:
        """Draft a reply for the agent using knowledge-base context."""

        if not self._ai.enabled:
            raise ConfigurationError('The AI assistant is not configured on this server.')

        ticket = self.get_ticket(ticket_id)
        entries = self._kb.find_relevant_entries(f"{ticket.get('title', '')} {ticket.get('description', '')}")

        agent_profile = self._users.find_user(agent['id']) if agent.get('id') else None
        agent_name = full_name(agent_profile or agent) or 'Support Agent'
        agent_position = (agent_profile or agent).get('role') or 'Support Team'

        member_first = (ticket.get('first_name') or '').strip()
        member_name = member_first or full_name(ticket) or 'Customer'

        return self._ai.draft_ticket_reply(
            ticket,
            member_name=member_name,
            agent_name=agent_name,
            agent_position=agent_position,
            entries=entries,
        )

    # --- Helpers --------------------------------------------------------

    def _fetch_ticket(self, ticket_id: str) -> Dict[str, Any]:
        client = self.client
        try:
            response = client.table(TABLE).select('*').eq('id', ticket_id).limit(1).execute()
        except Exception as exc:
            logger.warning('Error checking ticket %s', ticket_id, exc_info=True)
            raise UpstreamError('Failed to load ticket.') from exc
        rows = response_rows(response)
        if not rows:
            raise NotFoundError('Ticket not found.')
        return rows[0]

    def _insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        client = self.client
        try:
            response = client.table(TABLE).insert(record).execute()
        except Exception as exc:
            logger.error('Ticket insert failed', exc_info=True)
            raise UpstreamError('Failed to create ticket.') from exc
        rows = response_rows(response)
        if not rows:
            raise UpstreamError('Failed to create ticket.')
        self._publish('INSERT', rows[0])
        return rows[0]

    def _update(self, ticket_id: str, changes: Dict[str, Any], failure: str) -> Dict[str, Any]:
        client = self.client
        try:
            response = client.table(TABLE).update(changes).eq('id', ticket_id).execute()
        except Exception as exc:
            logger.warning('Ticket update failed for %s', ticket_id, exc_info=True)
            raise UpstreamError(failure) from exc
        rows = response_rows(response)
        if not rows:
            raise NotFoundError('Ticket not found.')
        self._publish('UPDATE', rows[0])
        return rows[0]

    def _enrich(self, tickets: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not tickets:
            return []
        user_ids: List[str] = []
        for ticket in tickets:
            user_ids.extend(filter(None, (ticket.get('created_by'), ticket.get('assigned_to'))))
        users = self._users.get_users_by_ids(user_ids)

        enriched = []
        for ticket in tickets:
            member = users.get(ticket.get('created_by')) or {}
            row = dict(ticket)
            row['member_email'] = member.get('email') or NO_EMAIL
            row['first_name'] = member.get('first_name')
            row['last_name'] = member.get('last_name')
            assignee = users.get(ticket.get('assigned_to'))
            row['assignee_name'] = full_name(assignee) or None
            enriched.append(row)
        return enriched

    @staticmethod
    def _validate_priority(priority: Optional[str]) -> str:
        priority = (priority or DEFAULT_PRIORITY).strip().lower()
        if priority not in PRIORITIES:
            raise ValidationError(f'Priority must be one of: {", ".join(PRIORITIES)}')
        return priority

    def _publish(self, event: str, record: Dict[str, Any]) -> None:
        if self._feed is not None:
            self._feed.publish(TABLE, event, record)
