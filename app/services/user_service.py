"""Team invitations (``invite-team-member``) and the user directory."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..errors import GymDeskError, NotFoundError, UpstreamError, ValidationError
from .realtime import ChangeFeed
from .supabase_client import require_client, response_rows

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
STAFF_ROLES = ('agent', 'admin')
ROLES = ('member',) + STAFF_ROLES
MAX_RECOMMENDATIONS = 3

USER_COLUMNS = 'id, email, first_name, last_name, role, last_sign_in_at, created_at'


def full_name(user: Optional[Dict[str, Any]]) -> str:
    if not user:
        return ''
    return ' '.join(part for part in (user.get('first_name'), user.get('last_name')) if part).strip()


class UserService:
    """Reads and writes rows of the ``users`` table."""

    def __init__(self, supabase: Optional[Any], feed: Optional[ChangeFeed] = None) -> None:
        self._supabase = supabase
        self._feed = feed

    @property
    def client(self) -> Any:
        return require_client(self._supabase)

    # --- Directory ------------------------------------------------------

    def get_user(self, user_id: str) -> Dict[str, Any]:
        try:
            response = self.client.table('users').select('*').eq('id', user_id).limit(1).execute()
        except GymDeskError:
            raise
        except Exception as exc:
            logger.warning('Supabase user lookup failed for %s', user_id, exc_info=True)
            raise UpstreamError('Failed to load user.') from exc
        rows = response_rows(response)
        if not rows:
            raise NotFoundError('User not found.')
        return rows[0]

    def find_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.get_user(user_id)
        except NotFoundError:
            return None

    def get_users_by_ids(self, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Return ``{id: user}`` for every id that exists."""

        ids = sorted({user_id for user_id in user_ids if user_id})
        if not ids:
            return {}
        client = self.client
        try:
            response = client.table('users').select(USER_COLUMNS).in_('id', ids).execute()
        except Exception as exc:
            logger.warning('Supabase bulk user lookup failed', exc_info=True)
            raise UpstreamError('Failed to load users.') from exc
        return {row['id']: row for row in response_rows(response)}

    def list_members(self) -> List[Dict[str, Any]]:
        return self._list_by_roles(['member'], 'Failed to load members')

    def list_team_members(self) -> List[Dict[str, Any]]:
        return self._list_by_roles(list(STAFF_ROLES), 'Failed to load team members')

    def list_agents(self) -> List[Dict[str, Any]]:
        """Staff users a ticket can be assigned to."""

        return self._list_by_roles(list(STAFF_ROLES), 'Failed to load agents')

    def _list_by_roles(self, roles: List[str], failure: str) -> List[Dict[str, Any]]:
        try:
            response = (
                self.client.table('users')
                .select(USER_COLUMNS)
                .in_('role', roles)
                .order('created_at', desc=True)
                .execute()
            )
        except GymDeskError:
            raise
        except Exception as exc:
            logger.warning('%s', failure, exc_info=True)
            raise UpstreamError(f'{failure}.') from exc
        return response_rows(response)

    # --- Profiles -------------------------------------------------------

    def create_profile(
        self,
        user_id: str,
        email: str,
        first_name: str,
        last_name: str,
        role: str,
    ) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError(f'Unknown role: {role}')
        record = {
            'id': user_id,
            'email': email,
            'first_name': first_name,
            'last_name': last_name,
            'role': role,
        }
        try:
            response = self.client.table('users').insert(record).execute()
        except GymDeskError:
            raise
        except Exception as exc:
            logger.error('Failed to create public profile for user %s: %s', user_id, exc, exc_info=True)
            raise UpstreamError('Failed to create user profile.') from exc
        rows = response_rows(response)
        created = rows[0] if rows else record
        self._publish('INSERT', created)
        return created

    def record_sign_in(self, user_id: str) -> None:
        """Best effort: stamp ``last_sign_in_at``; failures are only logged."""

        try:
            self.client.table('users').update(
                {'last_sign_in_at': datetime.now(timezone.utc).isoformat()}
            ).eq('id', user_id).execute()
        except Exception:
            logger.warning('Failed to update last_sign_in_at for %s', user_id, exc_info=True)

    def add_injury_prevention_recommendation(
        self,
        user_id: str,
        recommendation: str,
        source: str = 'muscle_balance_analysis',
    ) -> List[Dict[str, Any]]:
        """Prepend a recommendation, keeping only the newest three."""

        if not recommendation or not recommendation.strip():
            raise ValidationError('Recommendation cannot be empty.')

        try:
            response = (
                self.client.table('users')
                .select('injury_prevention_recommendations')
                .eq('id', user_id)
                .limit(1)
                .execute()
            )
        except GymDeskError:
            raise
        except Exception as exc:
            logger.warning('Failed to load recommendations for %s', user_id, exc_info=True)
            raise UpstreamError('Failed to save recommendation.') from exc

        rows = response_rows(response)
        if not rows:
            raise NotFoundError('User not found.')
        existing = rows[0].get('injury_prevention_recommendations') or []

        entry = {
            'recommendation': recommendation.strip(),
            'created_at': datetime.now(timezone.utc).isoformat(),
            'source': source,
        }
        updated = [entry] + [item for item in existing if isinstance(item, dict)]
        updated = updated[:MAX_RECOMMENDATIONS]

        try:
            self.client.table('users').update(
                {'injury_prevention_recommendations': updated}
            ).eq('id', user_id).execute()
        except Exception as exc:
            logger.warning('Failed to store recommendations for %s', user_id, exc_info=True)
            raise UpstreamError('Failed to save recommendation.') from exc
        return updated

    # --- Invitations ----------------------------------------------------

    def invite_team_member(
        self,
        email: str,
        first_name: str,
        last_name: str,
        role: str,
    ) -> Dict[str, Any]:
        """Invite a staff user by e-mail and create their ``users`` row.

        Returns the invited user's auth record as a plain dict.
        """

        email = (email or '').strip()
        first_name = (first_name or '').strip()
        last_name = (last_name or '').strip()
        role = (role or '').strip()

        if not email or not first_name or not last_name or not role:
            raise ValidationError('Missing required fields')
        if not EMAIL_PATTERN.match(email):
            raise ValidationError('Please enter a valid email address')
        if role not in STAFF_ROLES:
            raise ValidationError('Role must be either agent or admin')

        try:
            response = self.client.auth.admin.invite_user_by_email(
                email,
                {'data': {'first_name': first_name, 'last_name': last_name, 'role': role}},
            )
        except GymDeskError:
            raise
        except Exception as exc:
            logger.warning('Supabase invite failed for %s', email, exc_info=True)
            raise GymDeskError(str(exc) or 'Failed to invite team member.', 500) from exc

        invited = getattr(response, 'user', None)
        invited_id = getattr(invited, 'id', None)
        if not invited_id:
            raise GymDeskError('Invite did not return a user id.', 500)

        try:
            self.client.table('users').insert(
                {
                    'id': invited_id,
                    'email': email,
                    'first_name': first_name,
                    'last_name': last_name,
                    'role': role,
                }
            ).execute()
        except Exception as exc:
            logger.error('Failed to insert invited user %s', invited_id, exc_info=True)
            raise GymDeskError(str(exc) or 'Failed to create team member.', 500) from exc

        logger.info('Invited %s as %s', email, role)
        self._publish('INSERT', {'id': invited_id, 'role': role})
        return {'id': invited_id, 'email': email, 'role': role}

    def _publish(self, event: str, record: Dict[str, Any]) -> None:
        if self._feed is not None:
            self._feed.publish('users', event, record)
