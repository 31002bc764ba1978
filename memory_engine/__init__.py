# Token-aware memory synthesis for the member assistant
# Rolling-summary compression for long-lived chat histories

from .compressor import MemoryCompressor
from .storage import InMemoryStorage, MemoryStorage, SynthesizedMemory
from .token_counter import count_tokens, count_tokens_text, split_at_token_boundary

__all__ = [
    "MemoryCompressor",
    "MemoryStorage",
    "InMemoryStorage",
    "SynthesizedMemory",
    "count_tokens",
    "count_tokens_text",
    "split_at_token_boundary",
]
