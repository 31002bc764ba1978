"""HTTP functions callable from any origin (invites and ticket e-mail)."""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Dict

from flask import Blueprint, Response, current_app, request

from .errors import ValidationError
from .services.user_service import STAFF_ROLES
from .utils.auth import role_required

functions_bp = Blueprint('functions', __name__, url_prefix='/functions')

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
}


@functions_bp.after_request
def add_cors_headers(response: Response) -> Response:
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


def cors_preflight(view):
    """Answer ``OPTIONS`` pre-flight requests before any auth check runs."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if request.method == 'OPTIONS':
            return 'ok'
        return view(*args, **kwargs)

    return wrapped


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    return payload


@functions_bp.route('/send-ticket-notification', methods=['POST', 'OPTIONS'])
@cors_preflight
@role_required(*STAFF_ROLES)
def send_ticket_notification():
    logger.info('=== send-ticket-notification invoked ===')
    result = current_app.notification_service.send(_json_body())
    return {'success': True, 'data': result}


@functions_bp.route('/invite-team-member', methods=['POST', 'OPTIONS'])
@cors_preflight
@role_required('admin')
def invite_team_member():
    payload = _json_body()
    invited = current_app.user_service.invite_team_member(
        payload.get('email'),
        payload.get('firstName') or payload.get('first_name'),
        payload.get('lastName') or payload.get('last_name'),
        payload.get('role'),
    )
    return {'data': {'user': invited}, 'error': None}
