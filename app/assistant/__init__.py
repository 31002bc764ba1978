"""Tool-calling AI assistant for gym members."""

from .memory_store import ConversationStore, DatabaseMemoryStorage
from .orchestrator import AssistantOrchestrator
from .tools import AssistantToolbox, get_all_tools

__all__ = [
    "AssistantOrchestrator",
    "AssistantToolbox",
    "ConversationStore",
    "DatabaseMemoryStorage",
    "get_all_tools",
]
