"""Sign-up, sign-in and invite acceptance against the hosted auth API."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..errors import AuthError, GymDeskError, PermissionDenied, UpstreamError, ValidationError
from .supabase_client import require_client
from .user_service import STAFF_ROLES, UserService

logger = logging.getLogger(__name__)

MEMBER_PORTAL = 'member'
STAFF_PORTAL = 'staff'
PORTALS = (MEMBER_PORTAL, STAFF_PORTAL)
MIN_PASSWORD_LENGTH = 6

_PORTAL_MISMATCH = {
    MEMBER_PORTAL: 'This is the member portal. Please use the staff portal to sign in as staff.',
    STAFF_PORTAL: 'This is the staff portal. Please use the member portal to sign in as a member.',
}


def portal_for_role(role: Optional[str]) -> str:
    """Return the landing path for a user's role."""

    if role == 'member':
        return '/member'
    if role in STAFF_ROLES:
        return '/admin/dashboard'
    return '/'


def role_matches_portal(role: Optional[str], portal: str) -> bool:
    if portal == MEMBER_PORTAL:
        return role == 'member'
    return role in STAFF_ROLES


def _validate_portal(portal: str) -> str:
    if portal not in PORTALS:
        raise ValidationError(f'Unknown portal: {portal}')
    return portal


class AuthService:
    """Wraps hosted auth calls.

    Each call builds a fresh anon client from *client_factory* so the auth
    session created by one request never leaks into another.
    """

    def __init__(self, client_factory: Callable[[], Optional[Any]], users: UserService) -> None:
        self._client_factory = client_factory
        self._users = users

    def _client(self) -> Any:
        return require_client(self._client_factory())

    def sign_up(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        portal: str = MEMBER_PORTAL,
    ) -> Dict[str, Any]:
        _validate_portal(portal)
        if not email or not password:
            raise ValidationError('Email and password are required.')
        if not first_name or not last_name:
            raise ValidationError('First and last name are required.')

        role = 'member' if portal == MEMBER_PORTAL else 'agent'
        client = self._client()
        try:
            response = client.auth.sign_up(
                {
                    'email': email,
                    'password': password,
                    'options': {
                        'data': {'first_name': first_name, 'last_name': last_name, 'role': role},
                    },
                }
            )
        except Exception as exc:
            logger.warning('Supabase sign up failed for %s', email, exc_info=True)
            raise AuthError(str(exc) or 'Sign up failed.') from exc

        user = getattr(response, 'user', None)
        if not user or not getattr(user, 'id', None):
            raise AuthError('Failed to get user ID after signup')

        try:
            self._users.create_profile(user.id, email, first_name, last_name, role)
        except GymDeskError as exc:
            logger.error('Profile creation error for %s: %s', user.id, exc.message)
            self._safe_sign_out(client)
            raise UpstreamError('Failed to create user profile. Please try again.') from exc

        try:
            session_response = client.auth.sign_in_with_password({'email': email, 'password': password})
        except Exception as exc:
            logger.info('Auto sign-in after sign up failed for %s', email, exc_info=True)
            raise AuthError('Account created successfully. Please sign in.') from exc

        return self._session_user(
            getattr(session_response, 'user', None) or user,
            getattr(session_response, 'session', None),
            fallback={'email': email, 'first_name': first_name, 'last_name': last_name, 'role': role},
        )

    def sign_in(self, email: str, password: str, portal: str = MEMBER_PORTAL) -> Dict[str, Any]:
        """Sign in and enforce that the account's role belongs to *portal*."""

        _validate_portal(portal)
        if not email or not password:
            raise ValidationError('Email and password are required.')

        client = self._client()
        try:
            response = client.auth.sign_in_with_password({'email': email, 'password': password})
        except Exception as exc:
            logger.info('Supabase sign in failed for %s', email, exc_info=True)
            raise AuthError(str(exc) or 'Invalid credentials.') from exc

        user = getattr(response, 'user', None)
        if not user:
            raise AuthError('Invalid credentials.')

        metadata = getattr(user, 'user_metadata', None) or {}
        role = metadata.get('role')
        if not role_matches_portal(role, portal):
            self._safe_sign_out(client)
            raise PermissionDenied(_PORTAL_MISMATCH[portal])

        self._users.record_sign_in(user.id)
        return self._session_user(user, getattr(response, 'session', None))

    def verify_invite(self, token_hash: str, invite_type: str = 'invite') -> Dict[str, Any]:
        """Verify an invitation link and return the invited user's session."""

        if not token_hash or invite_type != 'invite':
            raise ValidationError('Invalid invitation link. Please contact your administrator.')

        client = self._client()
        try:
            response = client.auth.verify_otp({'token_hash': token_hash, 'type': 'invite'})
        except Exception as exc:
            logger.warning('Error verifying invite', exc_info=True)
            raise AuthError('Invalid or expired invitation link. Please contact your administrator.') from exc

        user = getattr(response, 'user', None)
        if not user:
            raise AuthError('Invalid or expired invitation link. Please contact your administrator.')
        return {'client': client, 'user': user, 'session': getattr(response, 'session', None)}

    def accept_invite(self, token_hash: str, password: str, confirm_password: str) -> Dict[str, Any]:
        if password != confirm_password:
            raise ValidationError('Passwords do not match')
        if len(password or '') < MIN_PASSWORD_LENGTH:
            raise ValidationError('Password must be at least 6 characters long')

        verified = self.verify_invite(token_hash)
        client = verified['client']
        try:
            client.auth.update_user({'password': password})
        except Exception as exc:
            logger.warning('Setup error while setting invite password', exc_info=True)
            raise AuthError(str(exc) or 'Failed to set up account') from exc

        user = verified['user']
        self._users.record_sign_in(user.id)
        logger.info('Invite accepted for %s', user.id)
        return self._session_user(user, verified['session'])

    def sign_out(self, access_token: Optional[str] = None) -> None:
        """Revoke the hosted session when a token is known; best effort."""

        if not access_token:
            return
        client = self._client_factory()
        if client is None:
            return
        try:
            client.auth.admin.sign_out(access_token)
        except Exception:
            logger.info('Remote sign out failed', exc_info=True)

    @staticmethod
    def _safe_sign_out(client: Any) -> None:
        try:
            client.auth.sign_out()
        except Exception:
            logger.info('Sign out after failed auth step raised', exc_info=True)

    @staticmethod
    def _session_user(
        user: Any,
        session: Any = None,
        fallback: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        fallback = fallback or {}
        metadata = getattr(user, 'user_metadata', None) or {}
        return {
            'id': user.id,
            'email': getattr(user, 'email', None) or fallback.get('email'),
            'first_name': metadata.get('first_name') or fallback.get('first_name'),
            'last_name': metadata.get('last_name') or fallback.get('last_name'),
            'role': metadata.get('role') or fallback.get('role'),
            'access_token': getattr(session, 'access_token', None),
        }
