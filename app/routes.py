from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterator, Optional

from flask import (
    Blueprint,
    Response,
    current_app,
    request,
    session,
    stream_with_context,
)

from .errors import GymDeskError, ValidationError
from .services.auth_service import MEMBER_PORTAL, portal_for_role
from .services.user_service import STAFF_ROLES
from .utils.auth import get_current_user, login_required, role_required

main_bp = Blueprint('main', __name__)

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_SECONDS = 15.0


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _require_fields(payload: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not str(payload.get(name) or '').strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _login(user: Dict[str, Any]) -> Dict[str, Any]:
    session['user'] = user
    session.modified = True
    return {'user': user, 'redirect': portal_for_role(user.get('role'))}


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _change_stream(table: str, refetch: Callable[[], Any]) -> Response:
    """Stream a fresh snapshot of *table* on connect and after every change."""

    feed = current_app.change_feed
    heartbeat = current_app.config.get('SSE_HEARTBEAT_SECONDS', DEFAULT_HEARTBEAT_SECONDS)

    def snapshot() -> str:
        try:
            return _sse(table, refetch())
        except GymDeskError as exc:
            return _sse('error', {'error': exc.message})

    def generate() -> Iterator[str]:
        subscription = feed.subscribe(table)
        try:
            yield snapshot()
            for change in subscription.listen(heartbeat):
                if change is None:
                    yield ': keep-alive\n\n'
                    continue
                yield snapshot()
        finally:
            subscription.unsubscribe()

    response = Response(stream_with_context(generate()), mimetype='text/event-stream')
    response.headers['Cache-Control'] = 'no-cache'
    response.headers['X-Accel-Buffering'] = 'no'
    return response


# --- Auth ---------------------------------------------------------------


@main_bp.route('/api/auth/signup', methods=['POST'])
def signup() -> tuple[Dict[str, Any], int]:
    payload = _payload()
    user = current_app.auth_service.sign_up(
        email=(payload.get('email') or '').strip(),
        password=payload.get('password') or '',
        first_name=(payload.get('first_name') or '').strip(),
        last_name=(payload.get('last_name') or '').strip(),
        portal=payload.get('portal') or MEMBER_PORTAL,
    )
    return _login(user), 201


@main_bp.route('/api/auth/login', methods=['POST'])
def login() -> Dict[str, Any]:
    payload = _payload()
    user = current_app.auth_service.sign_in(
        email=(payload.get('email') or '').strip(),
        password=payload.get('password') or '',
        portal=payload.get('portal') or MEMBER_PORTAL,
    )
    return _login(user)


@main_bp.route('/api/auth/logout', methods=['POST'])
def logout() -> Dict[str, Any]:
    user = session.get('user') or {}
    current_app.auth_service.sign_out(user.get('access_token'))
    session.clear()
    return {'message': 'You have been logged out.'}


@main_bp.route('/api/auth/me')
@login_required
def me() -> Dict[str, Any]:
    return {'user': _public_user(get_current_user())}


@main_bp.route('/api/auth/invite/verify', methods=['POST'])
def verify_invite() -> Dict[str, Any]:
    payload = _payload()
    verified = current_app.auth_service.verify_invite(
        payload.get('token_hash') or '', payload.get('type') or 'invite'
    )
    invited = verified['user']
    metadata = getattr(invited, 'user_metadata', None) or {}
    return {
        'email': getattr(invited, 'email', None),
        'first_name': metadata.get('first_name'),
        'last_name': metadata.get('last_name'),
        'role': metadata.get('role'),
    }


@main_bp.route('/api/auth/invite/accept', methods=['POST'])
def accept_invite() -> Dict[str, Any]:
    payload = _payload()
    user = current_app.auth_service.accept_invite(
        payload.get('token_hash') or '',
        payload.get('password') or '',
        payload.get('confirm_password') or '',
    )
    result = _login(user)
    result['message'] = 'Account setup complete!'
    return result


# --- Staff dashboard: tickets --------------------------------------------


@main_bp.route('/api/tickets')
@role_required(*STAFF_ROLES)
def list_tickets() -> Dict[str, Any]:
    tickets = current_app.ticket_service.list_tickets(
        status=request.args.get('status') or None,
        assigned_to=request.args.get('assigned_to') or None,
        created_by=request.args.get('created_by') or None,
    )
    return {'tickets': tickets}


@main_bp.route('/api/tickets', methods=['POST'])
@role_required(*STAFF_ROLES)
def create_ticket() -> tuple[Dict[str, Any], int]:
    payload = _payload()
    _require_fields(payload, 'title', 'description', 'created_by')
    ticket = current_app.ticket_service.create_ticket(
        title=payload['title'],
        description=payload['description'],
        created_by=payload['created_by'],
        priority=payload.get('priority') or 'medium',
        assigned_to=payload.get('assigned_to') or None,
    )
    return {'ticket': ticket, 'message': 'Ticket created'}, 201


@main_bp.route('/api/tickets/counts')
@role_required(*STAFF_ROLES)
def ticket_counts() -> Dict[str, Any]:
    return {'counts': current_app.ticket_service.ticket_counts()}


@main_bp.route('/api/tickets/stream')
@role_required(*STAFF_ROLES)
def ticket_stream() -> Response:
    service = current_app.ticket_service
    return _change_stream('tickets', service.list_tickets)


@main_bp.route('/api/tickets/<ticket_id>')
@role_required(*STAFF_ROLES)
def get_ticket(ticket_id: str) -> Dict[str, Any]:
    return {'ticket': current_app.ticket_service.get_ticket(ticket_id)}


@main_bp.route('/api/tickets/<ticket_id>', methods=['DELETE'])
@role_required(*STAFF_ROLES)
def delete_ticket(ticket_id: str) -> Dict[str, Any]:
    current_app.ticket_service.delete_ticket(ticket_id)
    return {'message': 'Ticket deleted'}


@main_bp.route('/api/tickets/<ticket_id>/status', methods=['PATCH'])
@role_required(*STAFF_ROLES)
def update_ticket_status(ticket_id: str) -> Dict[str, Any]:
    payload = _payload()
    _require_fields(payload, 'status')
    ticket = current_app.ticket_service.update_status(ticket_id, payload['status'])
    return {'ticket': ticket, 'message': 'Status updated'}


@main_bp.route('/api/tickets/<ticket_id>/assign', methods=['PATCH'])
@role_required(*STAFF_ROLES)
def assign_ticket(ticket_id: str) -> Dict[str, Any]:
    payload = _payload()
    ticket = current_app.ticket_service.assign_ticket(ticket_id, payload.get('agent_id') or None)
    return {'ticket': ticket, 'message': 'Ticket assigned'}


@main_bp.route('/api/tickets/<ticket_id>/reply', methods=['POST'])
@role_required(*STAFF_ROLES)
def reply_to_ticket(ticket_id: str) -> Dict[str, Any]:
    payload = _payload()
    bcc = payload.get('bcc') or []
    if isinstance(bcc, str):
        bcc = bcc.split(',')
    ticket = current_app.ticket_service.reply_to_ticket(
        ticket_id,
        get_current_user(),
        payload.get('text') or '',
        bcc,
    )
    return {'ticket': ticket, 'message': 'Reply sent successfully'}


@main_bp.route('/api/tickets/<ticket_id>/ai-draft', methods=['POST'])
@role_required(*STAFF_ROLES)
def draft_ticket_reply(ticket_id: str) -> Dict[str, Any]:
    draft = current_app.ticket_service.draft_ai_response(ticket_id, get_current_user())
    return {'draft': draft}


# --- Staff dashboard: people ---------------------------------------------


@main_bp.route('/api/members')
@role_required(*STAFF_ROLES)
def list_members() -> Dict[str, Any]:
    return {'members': current_app.user_service.list_members()}


@main_bp.route('/api/members/stream')
@role_required(*STAFF_ROLES)
def member_stream() -> Response:
    return _change_stream('users', current_app.user_service.list_members)


@main_bp.route('/api/members/<member_id>')
@role_required(*STAFF_ROLES)
def member_detail(member_id: str) -> Dict[str, Any]:
    member = current_app.user_service.get_user(member_id)
    tickets = current_app.ticket_service.list_tickets(created_by=member_id)
    return {'member': member, 'tickets': tickets}


@main_bp.route('/api/team')
@role_required(*STAFF_ROLES)
def list_team() -> Dict[str, Any]:
    return {'team': current_app.user_service.list_team_members()}


@main_bp.route('/api/agents')
@role_required(*STAFF_ROLES)
def list_agents() -> Dict[str, Any]:
    return {'agents': current_app.user_service.list_agents()}


@main_bp.route('/api/team/invite', methods=['POST'])
@role_required('admin')
def invite_team_member() -> tuple[Dict[str, Any], int]:
    payload = _payload()
    invited = current_app.user_service.invite_team_member(
        payload.get('email'),
        payload.get('first_name'),
        payload.get('last_name'),
        payload.get('role'),
    )
    return {'user': invited, 'message': 'Invitation sent successfully'}, 201


# --- Staff dashboard: knowledge base -------------------------------------


@main_bp.route('/api/knowledge-base')
@role_required(*STAFF_ROLES)
def list_knowledge_base() -> Dict[str, Any]:
    return {'entries': current_app.knowledge_base.list_entries(request.args.get('q') or None)}


@main_bp.route('/api/knowledge-base', methods=['POST'])
@role_required(*STAFF_ROLES)
def add_knowledge_base_entry() -> tuple[Dict[str, Any], int]:
    payload = _payload()
    _require_fields(payload, 'title', 'content')
    entry = current_app.knowledge_base.add_entry(
        payload['title'], payload['content'], payload.get('tags') or ''
    )
    return {'entry': entry, 'message': 'Entry added successfully'}, 201


@main_bp.route('/api/knowledge-base/search')
@role_required(*STAFF_ROLES)
def search_knowledge_base() -> Dict[str, Any]:
    query = request.args.get('q') or ''
    return {'entries': current_app.knowledge_base.find_relevant_entries(query)}


@main_bp.route('/api/knowledge-base/stream')
@role_required(*STAFF_ROLES)
def knowledge_base_stream() -> Response:
    return _change_stream('knowledge_base', current_app.knowledge_base.list_entries)


@main_bp.route('/api/knowledge-base/<entry_id>', methods=['PATCH'])
@role_required(*STAFF_ROLES)
def update_knowledge_base_entry(entry_id: str) -> Dict[str, Any]:
    payload = _payload()
    _require_fields(payload, 'content')
    entry = current_app.knowledge_base.update_entry(entry_id, payload['content'])
    return {'entry': entry, 'message': 'Entry updated successfully'}


@main_bp.route('/api/knowledge-base/<entry_id>', methods=['DELETE'])
@role_required(*STAFF_ROLES)
def delete_knowledge_base_entry(entry_id: str) -> Dict[str, Any]:
    current_app.knowledge_base.delete_entry(entry_id)
    return {'message': 'Entry deleted successfully'}


# --- Member portal -------------------------------------------------------


@main_bp.route('/api/portal/tickets', methods=['POST'])
@role_required('member')
def submit_ticket() -> tuple[Dict[str, Any], int]:
    payload = _payload()
    result = current_app.ticket_service.submit_member_ticket(
        get_current_user(),
        payload.get('message') or '',
        ai_mode=bool(payload.get('ai_mode')),
    )
    result['message'] = 'Ticket submitted successfully'
    return result, 201


@main_bp.route('/api/portal/tickets')
@role_required('member')
def my_tickets() -> Dict[str, Any]:
    user = get_current_user()
    return {'tickets': current_app.ticket_service.list_tickets(created_by=user['id'])}


@main_bp.route('/api/portal/workouts')
@role_required('member')
def list_workouts() -> Dict[str, Any]:
    user = get_current_user()
    workouts = current_app.workout_service.list_workouts(
        user['id'],
        request.args.get('range') or 'month',
        exercise=request.args.get('exercise') or None,
    )
    return {'workouts': workouts}


@main_bp.route('/api/portal/workouts', methods=['POST'])
@role_required('member')
def log_workout() -> tuple[Dict[str, Any], int]:
    payload = _payload()
    user = get_current_user()
    service = current_app.workout_service
    if payload.get('description'):
        entry = service.log_workout(user['id'], payload['description'])
    else:
        entry = service.add_workout(user['id'], payload)
    return {'workout': entry, 'message': 'Workout logged successfully!'}, 201


@main_bp.route('/api/portal/workouts/<workout_id>', methods=['DELETE'])
@role_required('member')
def delete_workout(workout_id: str) -> Dict[str, Any]:
    current_app.workout_service.delete_workout(get_current_user()['id'], workout_id)
    return {'message': 'Workout removed'}


@main_bp.route('/api/portal/workouts/stats')
@role_required('member')
def workout_stats() -> Dict[str, Any]:
    user = get_current_user()
    date_range = request.args.get('range') or 'month'
    exercise = request.args.get('exercise')
    service = current_app.workout_service
    if exercise:
        return {'stats': service.exercise_stats(user['id'], exercise, date_range)}
    return {'summary': service.summary(user['id'], date_range)}


@main_bp.route('/api/portal/workouts/balance')
@role_required('member')
def muscle_balance() -> Dict[str, Any]:
    user = get_current_user()
    days = request.args.get('days', type=int) or 30
    return {'analysis': current_app.workout_service.muscle_balance_analysis(user['id'], days)}


@main_bp.route('/api/portal/workouts/stream')
@role_required('member')
def workout_stream() -> Response:
    user_id = get_current_user()['id']
    service = current_app.workout_service
    return _change_stream('workout_history', lambda: service.list_workouts(user_id))


@main_bp.route('/api/portal/classes')
@login_required
def list_classes() -> Dict[str, Any]:
    return {'classes': current_app.class_service.list_classes(request.args.get('date') or None)}


@main_bp.route('/api/portal/classes/<class_id>/book', methods=['POST'])
@role_required('member')
def book_class(class_id: str) -> tuple[Dict[str, Any], int]:
    result = current_app.class_service.book_class(class_id, get_current_user()['id'])
    return result, 201


@main_bp.route('/api/portal/bookings')
@role_required('member')
def my_bookings() -> Dict[str, Any]:
    return {'bookings': current_app.class_service.list_bookings(get_current_user()['id'])}


# --- AI assistant --------------------------------------------------------


def _chat_message() -> str:
    message = (_payload().get('message') or '').strip()
    if not message:
        raise ValidationError('Message cannot be empty.')
    return message


@main_bp.route('/api/assistant/chat', methods=['POST'])
@role_required('member')
def assistant_chat() -> Dict[str, Any]:
    return current_app.assistant.run(get_current_user(), _chat_message())


@main_bp.route('/api/assistant/chat/stream', methods=['POST'])
@role_required('member')
def assistant_chat_stream() -> Response:
    user = get_current_user()
    message = _chat_message()
    events = current_app.assistant.run_iter(user, message)

    def generate() -> Iterator[str]:
        try:
            for event in events:
                yield _sse(event['event'], event['data'])
        except GymDeskError as exc:
            yield _sse('error', {'error': exc.message})

    response = Response(stream_with_context(generate()), mimetype='text/event-stream')
    response.headers['Cache-Control'] = 'no-cache'
    return response


@main_bp.route('/api/assistant/history', methods=['DELETE'])
@role_required('member')
def reset_assistant() -> Dict[str, Any]:
    forget = request.args.get('forget_memory', '').lower() in {'1', 'true', 'yes'}
    current_app.assistant.reset(get_current_user()['id'], forget_memory=forget)
    return {'message': 'Conversation cleared'}


def _public_user(user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {key: value for key, value in (user or {}).items() if key != 'access_token'}


@main_bp.route('/api/session')
def session_status() -> Dict[str, Any]:
    user = get_current_user()
    return {
        'authenticated': bool(user),
        'user': _public_user(user) if user else None,
        'redirect': portal_for_role((user or {}).get('role')),
    }
