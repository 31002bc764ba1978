"""Construction of hosted-backend clients."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from supabase import Client, ClientOptions, create_client

from ..config import Settings
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Optional[Any]]


def create_supabase_client(settings: Settings, *, service_role: bool = False) -> Optional[Client]:
    """Return a Supabase client, or ``None`` when the project is not configured.

    The service-role client is shared by the data services. Auth flows build a
    fresh anon client per call so sessions never leak between requests.
    """

    key = settings.supabase_service_role_key if service_role else settings.supabase_anon_key
    if service_role and not key:
        # Local setups often only have the anon key.
        key = settings.supabase_anon_key
    if not settings.supabase_url or not key:
        logger.info('Supabase credentials not found in environment; hosted features disabled.')
        return None

    try:
        return create_client(
            settings.supabase_url,
            key,
            options=ClientOptions(
                auto_refresh_token=False,
                persist_session=False,
                schema='public',
            ),
        )
    except Exception as exc:  # pragma: no cover - network/config dependent
        logger.warning('Supabase client init failed: %s', exc)
        return None


def anon_client_factory(settings: Settings) -> ClientFactory:
    return lambda: create_supabase_client(settings)


def require_client(client: Optional[Any]) -> Any:
    """Return *client* or raise when the hosted backend is unavailable."""

    if client is None:
        raise ConfigurationError('Supabase is not configured on this server.')
    return client


def response_rows(response: Any) -> list:
    """Normalize ``execute()`` results into a list of row dicts."""

    data = getattr(response, 'data', None)
    if data is None and isinstance(response, dict):
        data = response.get('data')
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)


def response_count(response: Any) -> int:
    count = getattr(response, 'count', None)
    if count is None and isinstance(response, dict):
        count = response.get('count')
    if count is None:
        return len(response_rows(response))
    return int(count)
