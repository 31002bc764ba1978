"""Class schedule, availability and bookings."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from .realtime import ChangeFeed
from .supabase_client import require_client, response_count, response_rows

logger = logging.getLogger(__name__)

UUID_V4 = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$', re.I)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _display_schedule(value: Optional[str]) -> str:
    if not value:
        return 'N/A'
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return str(value)
    return parsed.strftime('%Y-%m-%d %H:%M %Z').strip()


class ClassService:
    def __init__(self, supabase: Optional[Any], feed: Optional[ChangeFeed] = None) -> None:
        self._supabase = supabase
        self._feed = feed

    @property
    def client(self) -> Any:
        return require_client(self._supabase)

    def list_classes(self, on_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Future classes, optionally limited to one ``YYYY-MM-DD`` day."""

        query = self.client.table('classes').select('*').gt('schedule', _now().isoformat())
        if on_date:
            try:
                day = datetime.strptime(on_date, '%Y-%m-%d').replace(tzinfo=timezone.utc)
            except ValueError as exc:
                raise ValidationError(f'Invalid date: {on_date}. Use YYYY-MM-DD.') from exc
            query = query.gte('schedule', day.isoformat()).lt('schedule', (day + timedelta(days=1)).isoformat())

        try:
            response = query.order('schedule').execute()
        except Exception as exc:
            logger.error('Error listing classes', exc_info=True)
            raise UpstreamError('Failed to list available classes') from exc

        return [self._present(row, self._booked_count(row['id'])) for row in response_rows(response)]

    def find_class_by_name(self, class_name: str) -> Dict[str, Any]:
        """First future class whose name contains *class_name* (case-insensitive)."""

        client = self.client
        try:
            response = (
                client.table('classes')
                .select('*')
                .ilike('name', f'%{class_name}%')
                .gt('schedule', _now().isoformat())
                .order('schedule')
                .execute()
            )
        except Exception as exc:
            logger.error('Error finding class', exc_info=True)
            raise UpstreamError('Failed to find class') from exc

        rows = response_rows(response)
        if not rows:
            raise NotFoundError('No matching classes found')
        return rows[0]

    def check_availability(self, class_id: str) -> Dict[str, Any]:
        self._validate_id(class_id)
        client = self.client
        try:
            response = client.table('classes').select('*').eq('id', class_id).limit(1).execute()
        except Exception as exc:
            logger.error('Error checking class availability', exc_info=True)
            raise UpstreamError('Failed to check class availability') from exc

        rows = response_rows(response)
        if not rows:
            raise NotFoundError('Class not found')
        class_row = rows[0]
        available = (class_row.get('capacity') or 0) - self._booked_count(class_id)
        return {
            'class_id': class_id,
            'class_name': class_row.get('name'),
            'available_spots': available,
            'is_available': available > 0,
            'schedule': _display_schedule(class_row.get('schedule')),
        }

    def book_class(self, class_id: str, user_id: str) -> Dict[str, Any]:
        """Book *user_id* into a class, refusing full classes and duplicates."""

        if not user_id:
            raise ValidationError('User not authenticated')

        availability = self.check_availability(class_id)
        if not availability['is_available']:
            raise ConflictError('Class is fully booked')

        client = self.client
        try:
            existing = (
                client.table('class_bookings')
                .select('id')
                .eq('class_id', class_id)
                .eq('user_id', user_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            logger.error('Error checking existing booking', exc_info=True)
            raise UpstreamError('Failed to book class') from exc
        if response_rows(existing):
            raise ConflictError('You have already booked this class')

        try:
            response = (
                client.table('class_bookings')
                .insert({'class_id': class_id, 'user_id': user_id, 'status': 'confirmed'})
                .execute()
            )
        except Exception as exc:
            logger.error('Booking error', exc_info=True)
            raise UpstreamError('Failed to book class') from exc

        rows = response_rows(response)
        booking = rows[0] if rows else {}
        if self._feed is not None:
            self._feed.publish('class_bookings', 'INSERT', booking)

        logger.info('User %s booked class %s', user_id, class_id)
        return {
            'message': f"Successfully booked {availability['class_name']} for {availability['schedule']}",
            'booking_id': booking.get('id'),
        }

    def list_bookings(self, user_id: str) -> List[Dict[str, Any]]:
        client = self.client
        try:
            response = client.table('class_bookings').select('*').eq('user_id', user_id).execute()
        except Exception as exc:
            logger.warning('Error listing bookings for %s', user_id, exc_info=True)
            raise UpstreamError('Failed to load bookings') from exc
        return response_rows(response)

    def _booked_count(self, class_id: str) -> int:
        client = self.client
        try:
            response = (
                client.table('class_bookings')
                .select('id', count='exact')
                .eq('class_id', class_id)
                .execute()
            )
        except Exception as exc:
            logger.error('Error counting bookings for %s', class_id, exc_info=True)
            raise UpstreamError('Failed to check class availability') from exc
        return response_count(response)

    @staticmethod
    def _validate_id(class_id: str) -> None:
        if not class_id or not UUID_V4.match(class_id):
            raise ValidationError('Invalid class ID format')

    @staticmethod
    def _present(row: Dict[str, Any], booked: int) -> Dict[str, Any]:
        return {
            'id': row.get('id'),
            'name': row.get('name'),
            'instructor': row.get('instructor'),
            'schedule': _display_schedule(row.get('schedule')),
            'duration': row.get('duration'),
            'capacity': row.get('capacity'),
            'available_spots': (row.get('capacity') or 0) - booked,
            'description': row.get('description'),
        }
