"""Workout log, history queries and muscle-balance analysis."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import GymDeskError, NotFoundError, UpstreamError, ValidationError
from .ai_service import AIService
from .realtime import ChangeFeed
from .supabase_client import require_client, response_rows
from .user_service import UserService

logger = logging.getLogger(__name__)

TABLE = 'workout_history'
DEFAULT_RANGE = 'month'
DEFAULT_ANALYSIS_DAYS = 30

MUSCLE_GROUP_KEYWORDS = {
    'chest': ['chest', 'pec', 'bench'],
    'back': ['back', 'lat', 'row', 'pull'],
    'shoulders': ['shoulder', 'delt', 'press', 'ohp'],
    'legs': ['leg', 'quad', 'squat', 'calf', 'calves'],
    'biceps': ['bicep', 'curl', 'bi'],
    'triceps': ['tricep', 'extension', 'tri'],
    'core': ['core', 'ab', 'abs', 'plank'],
    'glutes': ['glute', 'hip', 'bridge'],
}

PUSH_GROUPS = ('chest', 'triceps', 'shoulders')
PULL_GROUPS = ('back', 'biceps')
TRACKED_GROUPS = ('legs', 'chest', 'back', 'shoulders', 'biceps', 'triceps', 'core')

_NUMBER_WORDS = {
    'zero': '0', 'one': '1', 'two': '2', 'three': '3', 'four': '4',
    'five': '5', 'six': '6', 'seven': '7', 'eight': '8', 'nine': '9',
    'ten': '10', 'eleven': '11', 'twelve': '12', 'thirteen': '13',
    'fourteen': '14', 'fifteen': '15', 'sixteen': '16', 'seventeen': '17',
    'eighteen': '18', 'nineteen': '19', 'twenty': '20',
}


def detect_muscle_groups(text: str) -> List[str]:
    """Keyword match against :data:`MUSCLE_GROUP_KEYWORDS` (substring, case-insensitive)."""

    lowered = (text or '').lower()
    return [
        group
        for group, terms in MUSCLE_GROUP_KEYWORDS.items()
        if any(term in lowered for term in terms)
    ]


def words_to_numbers(text: str) -> str:
    return ' '.join(_NUMBER_WORDS.get(word.lower(), word) for word in text.split(' '))


def clean_workout_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Title-case the exercise name and turn notes into a punctuated sentence."""

    cleaned = dict(data)
    exercise = (cleaned.get('exercise') or '').strip()
    cleaned['exercise'] = ' '.join(word[:1].upper() + word[1:].lower() for word in exercise.split())

    notes = (cleaned.get('notes') or '').strip()
    if notes:
        sentences = [sentence[:1].upper() + sentence[1:] for sentence in notes.split('. ')]
        notes = '. '.join(sentences)
        if not notes.endswith('.'):
            notes += '.'
    cleaned['notes'] = notes or None
    return cleaned


def resolve_date_range(date_range: Optional[str], today: Optional[date] = None) -> Tuple[datetime, Optional[datetime]]:
    """Return ``(start, end)`` UTC bounds; ``end`` is exclusive and may be ``None``.

    ``today`` and ``YYYY-MM-DD`` cover one calendar day, ``week`` the last
    7 days and ``month`` (the default) the last 30 days.
    """

    today = today or datetime.now(timezone.utc).date()
    value = (date_range or DEFAULT_RANGE).strip().lower()

    def midnight(day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=timezone.utc)

    if value == 'today':
        return midnight(today), midnight(today + timedelta(days=1))
    if value == 'week':
        return midnight(today - timedelta(days=7)), None
    if value == 'month':
        return midnight(today - timedelta(days=30)), None
    if '-' in value:
        try:
            day = datetime.strptime(value, '%Y-%m-%d').date()
        except ValueError as exc:
            raise ValidationError(f'Invalid date: {date_range}. Use YYYY-MM-DD.') from exc
        return midnight(day), midnight(day + timedelta(days=1))
    return midnight(today - timedelta(days=30)), None


def _display_date(value: Optional[str]) -> str:
    if not value:
        return 'N/A'
    return str(value).split('T')[0]


class WorkoutService:
    def __init__(
        self,
        supabase: Optional[Any],
        ai_service: AIService,
        users: Optional[UserService] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self._supabase = supabase
        self._ai = ai_service
        self._users = users
        self._feed = feed

    @property
    def client(self) -> Any:
        return require_client(self._supabase)

    # --- Writes ---------------------------------------------------------

    def log_workout(self, user_id: str, description: str) -> Dict[str, Any]:
        """Parse a natural-language description and store it as an entry."""

        parsed = self._ai.parse_workout(words_to_numbers(description or ''))
        if not parsed or not parsed.get('exercise'):
            raise ValidationError(
                "Sorry, I couldn't log your workout. Please try again with exercise name, "
                "sets, and reps clearly stated."
            )
        parsed = clean_workout_fields(parsed)
        parsed['muscle_groups'] = detect_muscle_groups(description)
        return self.add_workout(user_id, parsed)

    def add_workout(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        exercise = (fields.get('exercise') or '').strip()
        if not exercise:
            raise ValidationError('Exercise is required.')

        record = {
            'user_id': user_id,
            'exercise': exercise,
            'weight': fields.get('weight'),
            'sets': fields.get('sets'),
            'reps': fields.get('reps'),
            'bodyweight': fields.get('bodyweight'),
            'notes': fields.get('notes'),
            'muscle_groups': fields.get('muscle_groups') or detect_muscle_groups(exercise),
            'date': datetime.now(timezone.utc).isoformat(),
        }
        if fields.get('exercise_category'):
            record['exercise_category'] = fields['exercise_category']

        client = self.client
        try:
            response = client.table(TABLE).insert(record).execute()
        except Exception as exc:
            logger.error('Error creating workout entry', exc_info=True)
            raise UpstreamError('Failed to log workout. Please try again.') from exc

        rows = response_rows(response)
        entry = rows[0] if rows else record
        if self._feed is not None:
            self._feed.publish(TABLE, 'INSERT', entry)
        return entry

    def delete_workout(self, user_id: str, workout_id: str) -> None:
        client = self.client
        try:
            response = client.table(TABLE).delete().eq('id', workout_id).eq('user_id', user_id).execute()
        except Exception as exc:
            logger.warning('Error deleting workout %s', workout_id, exc_info=True)
            raise UpstreamError('Failed to remove workout.') from exc
        if not response_rows(response):
            raise NotFoundError('Workout not found.')
        if self._feed is not None:
            self._feed.publish(TABLE, 'DELETE', {'id': workout_id, 'user_id': user_id})

    # --- Reads ----------------------------------------------------------

    def list_workouts(
        self,
        user_id: str,
        date_range: Optional[str] = DEFAULT_RANGE,
        exercise: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Entries for *user_id* in *date_range*, newest first."""

        start, end = resolve_date_range(date_range)
        query = self.client.table(TABLE).select('*').eq('user_id', user_id).gte('date', start.isoformat())
        if end is not None:
            query = query.lt('date', end.isoformat())
        if exercise:
            query = query.ilike('exercise', f'%{exercise}%')

        try:
            response = query.order('date', desc=True).execute()
        except Exception as exc:
            logger.error('Error getting workout history', exc_info=True)
            raise UpstreamError('Failed to retrieve workout history') from exc
        return response_rows(response)

    def history(self, user_id: str, date_range: Optional[str] = DEFAULT_RANGE) -> List[Dict[str, Any]]:
        return [
            {
                'date': _display_date(workout.get('date')),
                'exercise': workout.get('exercise'),
                'sets': workout.get('sets'),
                'reps': workout.get('reps'),
                'weight': workout.get('weight'),
                'notes': workout.get('notes'),
                'category': workout.get('exercise_category'),
                'muscle_groups': workout.get('muscle_groups'),
            }
            for workout in self.list_workouts(user_id, date_range)
        ]

    def exercise_stats(self, user_id: str, exercise: str, date_range: Optional[str] = DEFAULT_RANGE) -> Dict[str, Any]:
        if not exercise:
            raise ValidationError('Exercise name is required for stats')

        workouts = self.list_workouts(user_id, date_range, exercise=exercise)
        total_sets = total_reps = 0
        max_weight = 0.0
        for workout in workouts:
            sets = _as_int(workout.get('sets'))
            reps = _as_int(workout.get('reps'))
            total_sets += sets
            total_reps += sets * reps
            max_weight = max(max_weight, _as_float(workout.get('weight')))

        return {
            'exercise': exercise,
            'period': date_range or DEFAULT_RANGE,
            'workoutCount': len(workouts),
            'totalSets': total_sets,
            'totalReps': total_reps,
            'maxWeight': max_weight,
            'lastWorkout': _display_date(workouts[0].get('date')) if workouts else 'N/A',
        }

    def summary(self, user_id: str, date_range: Optional[str] = DEFAULT_RANGE) -> Dict[str, Any]:
        workouts = self.list_workouts(user_id, date_range)
        unique_days = {_display_date(workout.get('date')) for workout in workouts if workout.get('date')}

        categories: Dict[str, int] = {}
        muscle_groups: Dict[str, int] = {}
        for workout in workouts:
            category = workout.get('exercise_category')
            if category:
                categories[category] = categories.get(category, 0) + 1
            for group in workout.get('muscle_groups') or []:
                muscle_groups[group] = muscle_groups.get(group, 0) + 1

        return {
            'period': date_range or DEFAULT_RANGE,
            'totalDays': len(unique_days),
            'totalExercises': len(workouts),
            'categorySummary': categories,
            'muscleGroupSummary': muscle_groups,
            'firstWorkout': _display_date(workouts[-1].get('date')) if workouts else 'N/A',
            'lastWorkout': _display_date(workouts[0].get('date')) if workouts else 'N/A',
        }

    def muscle_balance_analysis(self, user_id: str, days_to_analyze: int = DEFAULT_ANALYSIS_DAYS) -> Dict[str, Any]:
        """Per-muscle frequency, push/pull ratio, warnings and recommendations.

        When recommendations are produced they are also stored on the user as
        an injury-prevention recommendation.
        """

        days = int(days_to_analyze or DEFAULT_ANALYSIS_DAYS)
        if days <= 0:
            raise ValidationError('days_to_analyze must be positive.')

        since = datetime.now(timezone.utc) - timedelta(days=days)
        client = self.client
        try:
            response = (
                client.table(TABLE)
                .select('*')
                .eq('user_id', user_id)
                .gte('date', since.isoformat())
                .execute()
            )
        except Exception as exc:
            logger.error('Error in muscle balance analysis', exc_info=True)
            raise UpstreamError('Failed to analyze workout history.') from exc

        analysis = analyze_muscle_balance(response_rows(response))
        if analysis['recommendations'] and self._users is not None:
            try:
                self._users.add_injury_prevention_recommendation(
                    user_id,
                    ' '.join(analysis['recommendations']),
                    source='muscle_balance_analysis',
                )
            except GymDeskError as exc:
                logger.warning('Could not store recommendations for %s: %s', user_id, exc.message)
        return analysis


def analyze_muscle_balance(workouts: List[Dict[str, Any]]) -> Dict[str, Any]:
    muscle_groups: Dict[str, Dict[str, Any]] = {}
    for workout in workouts:
        for muscle in workout.get('muscle_groups') or []:
            stats = muscle_groups.setdefault(muscle, {'count': 0, 'lastWorkout': None})
            stats['count'] += 1
            workout_date = workout.get('date')
            if workout_date and (stats['lastWorkout'] is None or workout_date > stats['lastWorkout']):
                stats['lastWorkout'] = workout_date

    def count(group: str) -> int:
        return muscle_groups.get(group, {}).get('count', 0)

    push = sum(count(group) for group in PUSH_GROUPS)
    pull = sum(count(group) for group in PULL_GROUPS)
    ratio = pull / (push or 1)

    warnings: List[str] = []
    if ratio > 2:
        warnings.append('Significant imbalance detected: Pull exercises greatly exceed push exercises')
    if ratio < 0.5:
        warnings.append('Significant imbalance detected: Push exercises greatly exceed pull exercises')

    neglected = [group for group in TRACKED_GROUPS if count(group) == 0]
    warnings.extend(f'{group} appears to be neglected in your training' for group in neglected)

    recommendations: List[str] = []
    if warnings:
        if ratio > 2:
            recommendations.append(
                'Consider incorporating more push exercises (chest, shoulders, triceps) to balance your training'
            )
        if ratio < 0.5:
            recommendations.append(
                'Consider incorporating more pull exercises (back, biceps) to balance your training'
            )
        recommendations.extend(
            f'Add {group} exercises to your routine for balanced development' for group in neglected
        )

    return {
        'muscleGroups': muscle_groups,
        'pushPullRatio': ratio,
        'warnings': warnings,
        'recommendations': recommendations,
    }


def _as_int(value: Any) -> int:
    try:
        return int(float(value)) if value not in (None, '') else 0
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    if value in (None, ''):
        return 0.0
    if isinstance(value, str):
        match = re.search(r'\d+(?:\.\d+)?', value)
        return float(match.group(0)) if match else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
