"""Persistence of assistant history and synthesized memory per member."""

from __future__ import annotations

import logging
from typing import List, Optional

from google.genai import types
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from memory_engine import MemoryStorage, SynthesizedMemory

from ..extensions import db
from ..models import AssistantConversation

logger = logging.getLogger(__name__)


def _get_or_create(user_id: str) -> AssistantConversation:
    conversation = db.session.get(AssistantConversation, user_id)
    if conversation is None:
        conversation = AssistantConversation(user_id=user_id, history=[])
        db.session.add(conversation)
    return conversation


def _commit(action: str, user_id: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Failed to %s for %s", action, user_id, exc_info=True)
        raise


class DatabaseMemoryStorage(MemoryStorage):
    """Synthesized memory kept in the ``assistant_conversations.memory`` column."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    def exists(self) -> bool:
        conversation = db.session.get(AssistantConversation, self.user_id)
        return bool(conversation and conversation.memory and conversation.memory.strip())

    def read(self) -> SynthesizedMemory:
        conversation = db.session.get(AssistantConversation, self.user_id)
        if conversation is None or not conversation.memory:
            return SynthesizedMemory()
        return SynthesizedMemory.from_markdown(conversation.memory)

    def write(self, memory: SynthesizedMemory) -> None:
        conversation = _get_or_create(self.user_id)
        conversation.memory = memory.to_markdown()
        conversation.touch()
        _commit("store assistant memory", self.user_id)
        logger.info("Assistant memory saved for %s (%d words)", self.user_id, memory.word_count())


class ConversationStore:
    """Loads and saves the active chat window as serialized Gemini contents."""

    def load_history(self, user_id: str) -> List[types.Content]:
        conversation = db.session.get(AssistantConversation, user_id)
        if conversation is None or not conversation.history:
            return []

        history: List[types.Content] = []
        for item in conversation.history:
            try:
                history.append(types.Content.model_validate(item))
            except PydanticValidationError:
                logger.warning("Dropping unreadable history item for %s", user_id, exc_info=True)
        return history

    def save_history(self, user_id: str, history: List[types.Content]) -> None:
        conversation = _get_or_create(user_id)
        conversation.history = [
            content.model_dump(mode="json", exclude_none=True) for content in history
        ]
        conversation.touch()
        _commit("save assistant history", user_id)

    def reset(self, user_id: str, *, forget_memory: bool = False) -> None:
        conversation: Optional[AssistantConversation] = db.session.get(AssistantConversation, user_id)
        if conversation is None:
            return
        conversation.history = []
        if forget_memory:
            conversation.memory = None
        conversation.touch()
        _commit("reset assistant history", user_id)

    def memory_for(self, user_id: str) -> DatabaseMemoryStorage:
        return DatabaseMemoryStorage(user_id)
