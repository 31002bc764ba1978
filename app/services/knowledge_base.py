"""Knowledge base CRUD and vector similarity search."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from ..errors import GymDeskError, NotFoundError, UpstreamError, ValidationError
from .ai_service import AIService
from .realtime import ChangeFeed
from .supabase_client import require_client, response_rows

logger = logging.getLogger(__name__)

TABLE = 'knowledge_base'
DEFAULT_CATEGORY = 'general'


def split_tags(tags: Union[str, List[str], None]) -> List[str]:
    """Split a comma separated tag string, dropping blanks."""

    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(',')
    return [str(tag).strip() for tag in tags if str(tag).strip()]


def build_embedding_text(title: str, content: str, tags: Union[str, List[str], None]) -> str:
    tag_text = tags if isinstance(tags, str) else ', '.join(tags or [])
    return f"Title: {title}\nContent: {content}\nTags: {tag_text}"


class KnowledgeBaseService:
    def __init__(
        self,
        supabase: Optional[Any],
        ai_service: AIService,
        feed: Optional[ChangeFeed] = None,
        *,
        match_count: int = 3,
        similarity_threshold: float = 0.5,
    ) -> None:
        self._supabase = supabase
        self._ai = ai_service
        self._feed = feed
        self.match_count = match_count
        self.similarity_threshold = similarity_threshold

    @property
    def client(self) -> Any:
        return require_client(self._supabase)

    def list_entries(self, query: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return entries newest first, optionally filtered by a text query.

        The filter is a case-insensitive substring match on title, content or
        any tag.
        """

        client = self.client
        try:
            response = client.table(TABLE).select('*').order('created_at', desc=True).execute()
        except Exception as exc:
            logger.warning('Error fetching knowledge base entries', exc_info=True)
            raise UpstreamError('Failed to load knowledge base entries') from exc

        entries = response_rows(response)
        needle = (query or '').strip().lower()
        if not needle:
            return entries
        return [entry for entry in entries if self._matches(entry, needle)]

    def add_entry(self, title: str, content: str, tags: Union[str, List[str], None] = '') -> Dict[str, Any]:
        title = (title or '').strip()
        content = (content or '').strip()
        if not title or not content:
            raise ValidationError('Title and content are required.')

        record = {
            'title': title,
            'content': content,
            'tags': split_tags(tags),
            'category': DEFAULT_CATEGORY,
            'embedding_text': build_embedding_text(title, content, tags),
        }
        client = self.client
        try:
            response = client.table(TABLE).insert(record).execute()
        except Exception as exc:
            logger.warning('Error adding knowledge base entry', exc_info=True)
            raise UpstreamError('Failed to add entry') from exc

        rows = response_rows(response)
        created = rows[0] if rows else record
        self._publish('INSERT', created)
        return created

    def update_entry(self, entry_id: str, content: str) -> Dict[str, Any]:
        if content is None or not str(content).strip():
            raise ValidationError('Content cannot be empty.')

        client = self.client
        try:
            response = (
                client.table(TABLE)
                .update({'content': content, 'updated_at': datetime.now(timezone.utc).isoformat()})
                .eq('id', entry_id)
                .execute()
            )
        except Exception as exc:
            logger.warning('Error updating knowledge base entry %s', entry_id, exc_info=True)
            raise UpstreamError('Failed to save changes') from exc

        rows = response_rows(response)
        if not rows:
            raise NotFoundError('Entry not found.')
        self._publish('UPDATE', rows[0])
        return rows[0]

    def delete_entry(self, entry_id: str) -> None:
        client = self.client
        try:
            client.table(TABLE).delete().eq('id', entry_id).execute()
        except Exception as exc:
            logger.warning('Error deleting knowledge base entry %s', entry_id, exc_info=True)
            raise UpstreamError('Failed to delete entry') from exc
        self._publish('DELETE', {'id': entry_id})

    def find_relevant_entries(
        self,
        query: str,
        limit: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Return the entries most similar to *query*; any failure yields ``[]``."""

        if not query or not query.strip():
            return []

        limit = self.match_count if limit is None else limit
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold
        logger.info('Searching knowledge base for: %s', query[:200])

        try:
            embedding = self._ai.embed_text(query)
            response = self.client.rpc(
                'match_entries',
                {
                    'query_embedding': embedding,
                    'similarity_threshold': threshold,
                    'match_count': limit,
                },
            ).execute()
        except Exception:
            logger.warning('Error finding relevant entries', exc_info=True)
            return []

        entries = response_rows(response)
        logger.info(
            'Found relevant entries: %s',
            [(entry.get('title'), entry.get('similarity')) for entry in entries],
        )
        return entries

    def generate_missing_embeddings(self, delay_seconds: float = 0.2) -> Dict[str, int]:
        """Embed every entry whose ``embedding`` is null.

        Per-entry failures are logged and skipped. Returns processed/failed
        counts.
        """

        client = self.client
        try:
            response = client.table(TABLE).select('id, embedding_text').is_('embedding', 'null').execute()
        except Exception as exc:
            logger.error('Failed to fetch entries without embeddings', exc_info=True)
            raise UpstreamError('Failed to fetch knowledge base entries.') from exc

        entries = response_rows(response)
        logger.info('Generating embeddings for %d entries...', len(entries))

        processed = failed = 0
        for entry in entries:
            try:
                embedding = self._ai.embed_text(entry.get('embedding_text') or '')
                client.table(TABLE).update(
                    {'embedding': embedding, 'updated_at': datetime.now(timezone.utc).isoformat()}
                ).eq('id', entry['id']).execute()
            except GymDeskError as exc:
                failed += 1
                logger.error('Error processing entry %s: %s', entry.get('id'), exc.message)
                continue
            except Exception:
                failed += 1
                logger.error('Error processing entry %s', entry.get('id'), exc_info=True)
                continue

            processed += 1
            logger.info('Generated embedding for entry %s', entry['id'])
            if delay_seconds:
                time.sleep(delay_seconds)

        logger.info('Finished generating embeddings! processed=%d failed=%d', processed, failed)
        return {'processed': processed, 'failed': failed}

    @staticmethod
    def _matches(entry: Dict[str, Any], needle: str) -> bool:
        if needle in (entry.get('title') or '').lower():
            return True
        if needle in (entry.get('content') or '').lower():
            return True
        return any(needle in str(tag).lower() for tag in entry.get('tags') or [])

    def _publish(self, event: str, record: Dict[str, Any]) -> None:
        if self._feed is not None:
            self._feed.publish(TABLE, event, record)
