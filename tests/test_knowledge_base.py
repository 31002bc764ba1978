from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from app.errors import ConfigurationError, NotFoundError, UpstreamError, ValidationError
from app.services.knowledge_base import KnowledgeBaseService, build_embedding_text, split_tags
from app.services.realtime import ChangeFeed
from tests.fakes import FakeSupabase


@pytest.fixture
def ai():
    service = MagicMock()
    service.embed_text.return_value = [0.1, 0.2, 0.3]
    return service


@pytest.fixture
def backend():
    return FakeSupabase(
        {
            'knowledge_base': [
                {
                    'id': 'kb-1',
                    'title': 'Pool hours',
                    'content': 'The pool is open 6am to 9pm.',
                    'tags': ['facilities', 'pool'],
                    'embedding': None,
                    'embedding_text': 'Title: Pool hours',
                    'created_at': '2026-09-01T00:00:00+00:00',
                },
                {
                    'id': 'kb-2',
                    'title': 'Freezing a membership',
                    'content': 'Memberships can be frozen for up to 3 months.',
                    'tags': ['billing'],
                    'embedding': [0.5, 0.5],
                    'embedding_text': 'Title: Freezing a membership',
                    'created_at': '2026-09-02T00:00:00+00:00',
                },
            ]
        }
    )


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def kb(backend, ai, feed):
    return KnowledgeBaseService(backend, ai, feed, match_count=3, similarity_threshold=0.5)


def test_split_tags():
    assert split_tags('pool, facilities ,, hours') == ['pool', 'facilities', 'hours']
    assert split_tags(['a', ' ', 'b ']) == ['a', 'b']
    assert split_tags(None) == []


def test_build_embedding_text():
    text = build_embedding_text('Pool hours', 'Open late', 'pool, hours')
    assert text == 'Title: Pool hours\nContent: Open late\nTags: pool, hours'
    assert build_embedding_text('T', 'C', ['a', 'b']).endswith('Tags: a, b')


def test_list_entries_newest_first_and_filtered(kb):
    assert [entry['id'] for entry in kb.list_entries()] == ['kb-2', 'kb-1']
    assert [entry['id'] for entry in kb.list_entries('POOL')] == ['kb-1']
    assert [entry['id'] for entry in kb.list_entries('billing')] == ['kb-2']
    assert kb.list_entries('sauna') == []


def test_add_entry_stores_tags_and_publishes(kb, backend, feed):
    subscription = feed.subscribe('knowledge_base')

    created = kb.add_entry('Sauna', 'Sauna closes at 8pm.', 'facilities, sauna')

    assert created['tags'] == ['facilities', 'sauna']
    assert created['category'] == 'general'
    assert created['embedding_text'].startswith('Title: Sauna')
    assert len(backend.rows('knowledge_base')) == 3
    assert [event.event for event in subscription.drain()] == ['INSERT']


def test_add_entry_requires_title_and_content(kb):
    with pytest.raises(ValidationError):
        kb.add_entry('', 'content')
    with pytest.raises(ValidationError):
        kb.add_entry('title', '   ')


def test_update_entry_changes_content_only(kb, backend, feed):
    subscription = feed.subscribe('knowledge_base')

    updated = kb.update_entry('kb-1', 'The pool is open 5am to 10pm.')

    assert updated['content'] == 'The pool is open 5am to 10pm.'
    assert updated['title'] == 'Pool hours'
    assert 'updated_at' in updated
    assert subscription.drain()[0].event == 'UPDATE'

    with pytest.raises(NotFoundError):
        kb.update_entry('missing', 'text')
    with pytest.raises(ValidationError):
        kb.update_entry('kb-1', ' ')


def test_delete_entry(kb, backend, feed):
    subscription = feed.subscribe('knowledge_base')

    kb.delete_entry('kb-1')

    assert [entry['id'] for entry in backend.rows('knowledge_base')] == ['kb-2']
    assert subscription.drain()[0].record == {'id': 'kb-1'}


def test_failures_surface_as_upstream_errors(kb, backend):
    backend.fail('knowledge_base')
    with pytest.raises(UpstreamError):
        kb.list_entries()
    with pytest.raises(UpstreamError):
        kb.delete_entry('kb-1')


def test_find_relevant_entries_calls_match_entries(kb, backend, ai):
    backend.rpc_results['match_entries'] = [{'id': 'kb-1', 'title': 'Pool hours', 'similarity': 0.82}]

    entries = kb.find_relevant_entries('when does the pool open?')

    assert entries[0]['title'] == 'Pool hours'
    ai.embed_text.assert_called_once_with('when does the pool open?')
    name, params = backend.rpc_calls[0]
    assert name == 'match_entries'
    assert params == {'query_embedding': [0.1, 0.2, 0.3], 'similarity_threshold': 0.5, 'match_count': 3}


def test_find_relevant_entries_never_raises(kb, backend, ai):
    assert kb.find_relevant_entries('  ') == []

    ai.embed_text.side_effect = ConfigurationError('Embeddings require a Gemini API key.')
    assert kb.find_relevant_entries('pool') == []

    ai.embed_text.side_effect = None
    backend.fail('rpc', 'match_entries')
    assert kb.find_relevant_entries('pool') == []


def test_generate_missing_embeddings_only_touches_null_rows(kb, backend, ai):
    result = kb.generate_missing_embeddings(delay_seconds=0)

    assert result == {'processed': 1, 'failed': 0}
    ai.embed_text.assert_called_once_with('Title: Pool hours')
    rows = {row['id']: row for row in backend.rows('knowledge_base')}
    assert rows['kb-1']['embedding'] == [0.1, 0.2, 0.3]
    assert rows['kb-2']['embedding'] == [0.5, 0.5]


def test_generate_missing_embeddings_counts_failures(kb, backend, ai):
    backend.tables['knowledge_base'][1]['embedding'] = None
    ai.embed_text.side_effect = [UpstreamError('Embedding response was empty.'), [0.9]]

    result = kb.generate_missing_embeddings(delay_seconds=0)

    assert result == {'processed': 1, 'failed': 1}
