"""
Conversation loop between a member, the Gemini model and the gym tools.

Handles function calling for a bounded number of rounds, rate limiting with
exponential backoff, per-member history persistence and memory compression.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from sqlalchemy.exc import SQLAlchemyError

from memory_engine import MemoryCompressor

from ..config import Settings
from ..errors import ConfigurationError, ConflictError, UpstreamError
from .memory_store import ConversationStore
from .tools import AssistantToolbox, get_all_tools

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Sorry, I had trouble responding. Please try again."

BASE_INSTRUCTION = """You are a helpful gym assistant that specializes in workout advice, \
injury prevention, and answering questions about the gym's services. Keep responses clear, \
friendly, and focused on fitness goals and safety. Address the member by their first name \
when appropriate.

You can use tools to search the gym knowledge base, log workouts, review workout history, \
analyze muscle balance, list and book classes, and check the current date and time. \
Always act on behalf of the member you are talking to. Never invent classes, bookings or \
workouts: use the tools and report their results faithfully."""


def member_context(user: Dict[str, Any]) -> str:
    name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip() or "Unknown"
    return (
        "Member Context:\n"
        f"- Name: {name}\n"
        "- Membership Status: Member\n"
        f"- Email: {user.get('email') or 'unknown'}"
    )


class AssistantOrchestrator:
    """
    Runs one assistant turn at a time per member.

    Manages:
    - Gemini client and tool declarations
    - Tool routing through :class:`AssistantToolbox`
    - Rate limit handling with exponential backoff
    - History persistence and memory compression per member
    """

    def __init__(
        self,
        settings: Settings,
        toolbox: AssistantToolbox,
        conversations: ConversationStore,
        *,
        client: Optional[genai.Client] = None,
        knowledge_base: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.toolbox = toolbox
        self.conversations = conversations
        self.knowledge_base = knowledge_base
        self.client = client
        self.tools = get_all_tools()
        self._sleep = sleep
        self._active_turns: Set[str] = set()
        self._turns_guard = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def run(self, user: Dict[str, Any], message: str) -> Dict[str, Any]:
        """Run a full turn and return ``{"answer", "steps"}``."""
        result: Dict[str, Any] = {"answer": "", "steps": []}
        for event in self.run_iter(user, message):
            if event["event"] == "answer":
                result = {"answer": event["data"]["text"], "steps": event["data"]["steps"]}
        return result

    def run_iter(self, user: Dict[str, Any], message: str) -> Iterator[Dict[str, Any]]:
        """
        Yield ``step`` events while tools run, then a single ``answer`` event.

        Only one turn may be in flight per member; a second concurrent request
        raises :class:`ConflictError`.
        """
        if self.client is None:
            raise ConfigurationError("The AI assistant is not configured.")

        user_id = user["id"]
        self._begin_turn(user_id)
        try:
            yield from self._run_turn(user, message)
        finally:
            self._end_turn(user_id)

    def reset(self, user_id: str, *, forget_memory: bool = False) -> None:
        self.conversations.reset(user_id, forget_memory=forget_memory)

    # --- Turn handling --------------------------------------------------

    def _run_turn(self, user: Dict[str, Any], message: str) -> Iterator[Dict[str, Any]]:
        user_id = user["id"]
        history = self.conversations.load_history(user_id)
        history.append(types.Content(role="user", parts=[types.Part.from_text(text=message)]))

        memory = MemoryCompressor(
            client=self.client,
            storage=self.conversations.memory_for(user_id),
            threshold=self.settings.memory_token_threshold,
            model_name=self.settings.gemini_model,
        )
        try:
            history = memory.check_and_compress(history)
        except (genai_errors.APIError, SQLAlchemyError):
            logger.warning("Memory compression failed for %s; keeping full history.", user_id, exc_info=True)
        system_prompt = memory.build_system_prompt(self._base_instruction(user, message))

        steps: List[Dict[str, Any]] = []
        answer: Optional[str] = None

        for _ in range(self.settings.max_tool_rounds):
            response = self._generate_with_retry(history, system_prompt, with_tools=True)
            if not response.function_calls:
                answer = self._final_text(response, history)
                break

            history.append(response.candidates[0].content)
            function_responses: List[types.Part] = []
            for call in response.function_calls:
                step = {"id": len(steps) + 1, "text": self.toolbox.thinking_label(call.name)}
                steps.append(step)
                yield {"event": "step", "data": step}

                logger.info("Assistant tool call %s for %s", call.name, user_id)
                result = self.toolbox.execute(call.name, dict(call.args or {}), user_id)
                function_responses.append(
                    types.Part.from_function_response(name=call.name, response=result)
                )
            history.append(types.Content(role="user", parts=function_responses))

        if answer is None:
            logger.warning("Tool round limit reached for %s; forcing a text answer.", user_id)
            response = self._generate_with_retry(history, system_prompt, with_tools=False)
            answer = self._final_text(response, history)

        try:
            self.conversations.save_history(user_id, history)
        except SQLAlchemyError as exc:
            logger.error("Could not save assistant history for %s", user_id, exc_info=True)
            raise UpstreamError(FAILURE_MESSAGE) from exc
        yield {"event": "answer", "data": {"text": answer, "steps": steps}}

    def _final_text(self, response: types.GenerateContentResponse, history: List[types.Content]) -> str:
        text = (response.text or "").strip()
        if not text:
            raise UpstreamError(FAILURE_MESSAGE)
        history.append(types.Content(role="model", parts=[types.Part.from_text(text=text)]))
        return text

    def _generate_with_retry(
        self,
        history: List[types.Content],
        system_prompt: str,
        *,
        with_tools: bool,
    ) -> types.GenerateContentResponse:
        """Generate content with exponential backoff for rate limits."""
        backoff = self.settings.base_backoff_seconds
        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            tools=self.tools if with_tools else None,
        )

        for attempt in range(self.settings.max_retries + 1):
            try:
                return self.client.models.generate_content(
                    model=self.settings.gemini_model,
                    contents=history,
                    config=config,
                )
            except genai_errors.APIError as exc:
                if exc.code == 429 and attempt < self.settings.max_retries:
                    logger.warning("Rate limited. Waiting %.1fs before retry...", backoff)
                    self._sleep(backoff)
                    backoff *= 2
                    continue
                logger.error("Gemini request failed", exc_info=True)
                raise UpstreamError(FAILURE_MESSAGE) from exc

        raise UpstreamError(FAILURE_MESSAGE)

    def _base_instruction(self, user: Dict[str, Any], message: str) -> str:
        prompt = f"{BASE_INSTRUCTION}\n\n{member_context(user)}"
        if self.knowledge_base is None:
            return prompt

        entries = self.knowledge_base.find_relevant_entries(message)
        if entries:
            context = "\n\n".join(f"[{entry.get('title')}]: {entry.get('content')}" for entry in entries)
            prompt = f"{prompt}\n\nRelevant gym information:\n{context}"
        return prompt

    def _begin_turn(self, user_id: str) -> None:
        with self._turns_guard:
            if user_id in self._active_turns:
                raise ConflictError("The assistant is still working on your previous message.")
            self._active_turns.add(user_id)

    def _end_turn(self, user_id: str) -> None:
        with self._turns_guard:
            self._active_turns.discard(user_id)
