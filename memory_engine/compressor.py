"""
MemoryCompressor: rolling-summary engine for long assistant conversations.

Monitors the token weight of a member's chat history, flushes the oldest
part into structured memory, and prefixes that memory to the system prompt.
"""
from __future__ import annotations

import logging

from google import genai
from google.genai import types

from .storage import MemoryStorage, SynthesizedMemory
from .token_counter import content_text, count_tokens, split_at_token_boundary

logger = logging.getLogger(__name__)

SYNTHESIS_PROMPT = """\
You maintain long-term memory for a gym's member assistant. Produce a
structured, **merged** summary that combines NEW conversation history with
the EXISTING member memory. Follow these rules strictly:

1. **Merge, don't overwrite.** Keep facts already in the existing memory
   unless the new history explicitly contradicts them.
2. **Be concise.** The output must be at most {max_words} words. Prioritize
   goals, injuries or limitations, training habits, bookings and anything
   the member asked the gym to follow up on.
3. **Use exactly these three sections** (omit a section only if empty):

   ## Member Profile
   Goals, preferences, injuries, limitations, schedule constraints.

   ## Training Notes
   Workouts logged, progress, balance analysis results, classes booked.

   ## Open Requests
   Questions not yet answered, follow-ups the member is waiting on.

4. Use bullet points. Do NOT invent information.

---

### EXISTING MEMORY (may be empty)

{existing_memory}

---

### NEW CONVERSATION HISTORY TO INCORPORATE

{new_history}
"""

RECURSIVE_SUMMARY_PROMPT = """\
The following member memory is too long ({word_count} words, limit is
{max_words}). Condense it to at most {max_words} words, keeping the same
three sections (## Member Profile, ## Training Notes, ## Open Requests).

{summary}
"""


class MemoryCompressor:
    """
    Flushes old chat history into persistent memory via LLM synthesis.

    Parameters
    ----------
    client : genai.Client
        Authenticated Gemini client.
    storage : MemoryStorage
        Backend for reading/writing the synthesized memory.
    threshold : int
        Token count at which compression fires.
    head_ratio : float
        Fraction of the threshold to flush (oldest messages first).
    model_name : str
        Model used for synthesis calls.
    max_words : int
        Hard cap on the memory word count.
    """

    def __init__(
        self,
        client: genai.Client,
        storage: MemoryStorage,
        *,
        threshold: int = 12_000,
        head_ratio: float = 0.75,
        model_name: str = "gemini-2.5-flash",
        max_words: int = 800,
    ):
        self.client = client
        self.storage = storage
        self.threshold = threshold
        self.head_ratio = head_ratio
        self.model_name = model_name
        self.max_words = max_words
        self._last_token_count = 0
        self._compression_count = 0

    @property
    def last_token_count(self) -> int:
        return self._last_token_count

    @property
    def compression_count(self) -> int:
        return self._compression_count

    def check_and_compress(self, history: list[types.Content]) -> list[types.Content]:
        """
        Return *history* unchanged while it is under the threshold; otherwise
        synthesize the oldest part into memory and return the remaining tail.
        """
        self._last_token_count = count_tokens(history)
        logger.debug("Token check: %d / %d", self._last_token_count, self.threshold)

        if self._last_token_count <= self.threshold:
            return history

        head, tail = split_at_token_boundary(history, int(self.threshold * self.head_ratio))
        if not head:
            logger.warning("Nothing to flush: head is empty after split.")
            return history

        logger.info(
            "Compressing: flushing %d messages, keeping %d as raw context.",
            len(head),
            len(tail),
        )

        existing = self.storage.read()
        synthesized = SynthesizedMemory.from_markdown(self._synthesize(head, existing))
        if synthesized.is_empty():
            logger.warning("Synthesis returned nothing; keeping full history.")
            return history

        self.storage.write(self._enforce_word_limit(synthesized))
        self._compression_count += 1
        self._last_token_count = count_tokens(tail)
        return tail

    def build_system_prompt(self, base_instruction: str) -> str:
        """Prefix persisted memory (if any) to *base_instruction*."""
        if not self.storage.exists():
            return base_instruction

        memory_text = self.storage.read().to_markdown()
        if not memory_text.strip():
            return base_instruction

        return (
            "# What you remember about this member\n"
            "The following summarizes earlier conversations with this member. "
            "Treat it as reliable background knowledge.\n\n"
            f"{memory_text}\n\n"
            "---\n\n"
            f"{base_instruction}"
        )

    def _synthesize(self, head: list[types.Content], existing: SynthesizedMemory) -> str:
        lines = []
        for msg in head:
            text = content_text(msg)
            if len(text) > 1500:
                text = text[:1500] + "…"
            lines.append(f"**{msg.role or 'unknown'}**: {text}")

        prompt = SYNTHESIS_PROMPT.format(
            max_words=self.max_words,
            existing_memory=existing.to_markdown() if not existing.is_empty() else "(empty)",
            new_history="\n\n".join(lines),
        )
        return self._generate(prompt, temperature=0.2)

    def _enforce_word_limit(
        self,
        memory: SynthesizedMemory,
        depth: int = 0,
        max_depth: int = 2,
    ) -> SynthesizedMemory:
        """Recursively condense the memory while it exceeds the word cap."""
        wc = memory.word_count()
        if wc <= self.max_words:
            return memory

        if depth >= max_depth:
            logger.warning("Recursive summary depth %d reached; truncating.", depth)
            words = memory.to_markdown().split()
            return SynthesizedMemory.from_markdown(" ".join(words[: self.max_words]))

        prompt = RECURSIVE_SUMMARY_PROMPT.format(
            word_count=wc,
            max_words=self.max_words,
            summary=memory.to_markdown(),
        )
        condensed = SynthesizedMemory.from_markdown(self._generate(prompt, temperature=0.1))
        return self._enforce_word_limit(condensed, depth + 1, max_depth)

    def _generate(self, prompt: str, *, temperature: float) -> str:
        response = self.client.models.generate_content(
            model=self.model_name,
            contents=[types.Content(role="user", parts=[types.Part.from_text(text=prompt)])],
            config=types.GenerateContentConfig(
                temperature=temperature,
                max_output_tokens=2048,
            ),
        )
        return response.text or ""
