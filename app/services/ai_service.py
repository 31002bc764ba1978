from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from google import genai
from google.genai import types

from ..config import Settings
from ..errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

FALLBACK_SUBJECT = 'Support Request'

SUBJECT_INSTRUCTION = (
    "You are a helpful assistant that generates concise subject lines. Create a brief "
    "(2-5 words) subject line that captures the main topic of the message. Return only "
    "the subject line text, nothing else."
)

MEMBER_QUESTION_INSTRUCTION = (
    "You are a helpful gym assistant. Provide clear, concise answers about gym membership, "
    "classes, facilities, and fitness advice. Keep responses friendly and professional."
)

WORKOUT_PARSE_INSTRUCTION = (
    "You are a fitness tracking assistant. Parse the following workout description and extract "
    "the information in a JSON format with the following fields: exercise, weight, sets, reps, "
    "bodyweight (if mentioned), notes (any additional comments). Return null for any fields not "
    "mentioned. Return only the JSON object without any markdown formatting."
)

_WORKOUT_FIELDS = ('exercise', 'weight', 'sets', 'reps', 'bodyweight', 'notes')


class AIService:
    """Abstraction around the Gemini API with deterministic fallbacks.

    Every feature that only needs a short completion (subject lines, ticket
    drafts, workout parsing) degrades to a heuristic when no ``GEMINI_API_KEY``
    (or ``GOOGLE_API_KEY``) is configured. Embeddings have no fallback and
    raise :class:`ConfigurationError` instead.
    """

    def __init__(self, settings: Settings, client: Optional[genai.Client] = None) -> None:
        self.settings = settings
        self._text_model_id = settings.gemini_model
        self._embedding_model_id = settings.embedding_model
        self.client: Optional[genai.Client] = client or self._configure_gemini(settings.api_key)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def generate_subject_line(self, message: str) -> str:
        """Return a 2-5 word subject for a member's support message."""

        if not message or not self.client:
            return FALLBACK_SUBJECT

        subject = self._call_gemini(message, system_instruction=SUBJECT_INSTRUCTION)
        subject = subject.strip().strip('"').strip("'").strip()
        if not subject:
            return FALLBACK_SUBJECT
        return subject.splitlines()[0][:120]

    def answer_member_question(self, question: str, entries: Sequence[Dict[str, Any]] = ()) -> str:
        """Produce the instant answer shown for tickets submitted in AI mode."""

        if not self.client:
            raise ConfigurationError('The AI assistant is not configured on this server.')

        prompt = question
        context = self._format_entries(entries)
        if context:
            prompt = f"{question}\n\nRelevant gym policies and information:\n{context}"

        answer = self._call_gemini(prompt, system_instruction=MEMBER_QUESTION_INSTRUCTION)
        if not answer:
            raise UpstreamError('Failed to get AI response. Please try again.')
        return answer

    def draft_ticket_reply(
        self,
        ticket: Dict[str, Any],
        *,
        member_name: str,
        agent_name: str,
        agent_position: str,
        entries: Sequence[Dict[str, Any]] = (),
    ) -> str:
        """Draft an agent reply, citing knowledge base entries that informed it."""

        if not self.client:
            raise ConfigurationError('The AI assistant is not configured on this server.')

        prompt = self._build_ticket_reply_prompt(ticket, member_name, agent_name, agent_position, entries)
        draft = self._call_gemini(prompt)
        if not draft:
            raise UpstreamError('Failed to generate AI response. Please try again.')

        if entries:
            citations = '\n'.join(f"• {entry.get('title', '')}" for entry in entries)
            return f"{draft}\n\n---\nSources:\n{citations}"
        return draft

    def parse_workout(self, description: str) -> Optional[Dict[str, Any]]:
        """Parse a free-text workout description into structured fields.

        Returns ``None`` when nothing resembling an exercise can be extracted.
        """

        if not description or not description.strip():
            return None

        if self.client:
            raw = self._call_gemini(description, system_instruction=WORKOUT_PARSE_INSTRUCTION)
            parsed = self._parse_json_object(raw)
            if parsed:
                workout = self._coerce_workout(parsed)
                if workout.get('exercise'):
                    return workout

        return self._heuristic_workout(description)

    def embed_text(self, text: str) -> List[float]:
        """Return the embedding vector for *text*."""

        if not self.client:
            raise ConfigurationError('Embeddings require a Gemini API key.')

        try:
            response = self.client.models.embed_content(
                model=self._embedding_model_id,
                contents=text,
                config=types.EmbedContentConfig(
                    output_dimensionality=self.settings.embedding_dimensions,
                ),
            )
        except Exception as exc:
            logger.warning('Gemini embedding request failed: %s', exc)
            raise UpstreamError('Failed to generate embedding.') from exc

        embeddings = getattr(response, 'embeddings', None) or []
        if not embeddings or not getattr(embeddings[0], 'values', None):
            raise UpstreamError('Embedding response was empty.')
        return list(embeddings[0].values)

    # --- Helper methods -------------------------------------------------

    def _configure_gemini(self, api_key: Optional[str]) -> Optional[genai.Client]:
        if not api_key:
            logger.info('Gemini API key not found in environment; using fallback prompts.')
            return None
        logger.info('GOOGLE_API_KEY detected (len=%d)', len(api_key))
        try:
            return genai.Client(api_key=api_key)
        except Exception as exc:  # pragma: no cover - external SDK
            logger.warning('Gemini integration disabled: %s', exc)
            return None

    def _build_ticket_reply_prompt(
        self,
        ticket: Dict[str, Any],
        member_name: str,
        agent_name: str,
        agent_position: str,
        entries: Sequence[Dict[str, Any]],
    ) -> str:
        context = self._format_entries(entries)
        knowledge_block = f"\nRelevant gym policies and information:\n{context}" if context else ''
        greeting = f'Start with "Hi {member_name}"' if member_name else 'Start with an appropriate greeting'

        return (
            "Please write a professional and helpful response to this support ticket. Write the "
            "response as if you are directly replying to the customer's email - do not include any "
            "subject line or email headers, just the message body. If you use information from the "
            "provided gym policies, make sure to reference it naturally in your response:\n\n"
            f"Title: {ticket.get('title', '')}\n"
            f"Customer Name: {member_name}\n"
            f"Customer Request: {ticket.get('description', '')}\n"
            f"Agent Name: {agent_name}\n"
            f"Agent Position: {agent_position}{knowledge_block}\n\n"
            "Write a response that is:\n"
            "1. Professional and courteous\n"
            "2. Directly addresses the customer's request\n"
            "3. Clear and concise\n"
            "4. Helpful and solution-oriented\n"
            f"5. {greeting}\n"
            "6. Ends with a professional signature using the agent's name and position\n"
            "7. Incorporates relevant gym policies from the knowledge base when applicable"
        )

    @staticmethod
    def _format_entries(entries: Sequence[Dict[str, Any]]) -> str:
        return '\n\n'.join(
            f"{entry.get('title', '')}:\n{entry.get('content', '')}" for entry in entries if entry
        )

    def _coerce_workout(self, data: Dict[str, Any]) -> Dict[str, Any]:
        workout: Dict[str, Any] = {key: data.get(key) for key in _WORKOUT_FIELDS}
        exercise = workout.get('exercise')
        workout['exercise'] = str(exercise).strip() if exercise else None
        for key in ('sets', 'reps'):
            workout[key] = self._coerce_int(workout.get(key))
        for key in ('weight', 'bodyweight'):
            workout[key] = self._coerce_float(workout.get(key))
        notes = workout.get('notes')
        workout['notes'] = str(notes).strip() if notes else None
        return workout

    def _heuristic_workout(self, description: str) -> Optional[Dict[str, Any]]:
        text = description.strip()
        lowered = text.lower()

        sets = reps = None
        match = re.search(r'(\d+)\s*(?:x|×|sets? of)\s*(\d+)', lowered)
        if match:
            sets, reps = int(match.group(1)), int(match.group(2))
        else:
            sets_match = re.search(r'(\d+)\s*sets?', lowered)
            reps_match = re.search(r'(\d+)\s*reps?', lowered)
            sets = int(sets_match.group(1)) if sets_match else None
            reps = int(reps_match.group(1)) if reps_match else None

        weight = None
        weight_match = re.search(r'(\d+(?:\.\d+)?)\s*(?:lbs?|pounds?|kg|kilos?)', lowered)
        if weight_match:
            weight = float(weight_match.group(1))

        bodyweight = None
        bodyweight_match = re.search(r'(?:bodyweight|bw|weigh(?:ed)?)\s*(?:of|is|at)?\s*(\d+(?:\.\d+)?)', lowered)
        if bodyweight_match:
            bodyweight = float(bodyweight_match.group(1))

        exercise = re.split(r'\d|\bfor\b|\bat\b|\bwith\b|,', text, maxsplit=1)[0]
        exercise = re.sub(r'^(?:i\s+)?(?:did|do|done|logged?|log|just)\s+', '', exercise.strip(), flags=re.I)
        exercise = exercise.strip(' .:-')
        if not exercise or (sets is None and reps is None and weight is None):
            return None

        return {
            'exercise': exercise,
            'weight': weight,
            'sets': sets,
            'reps': reps,
            'bodyweight': bodyweight,
            'notes': None,
        }

    @staticmethod
    def _coerce_int(value: Any) -> Optional[int]:
        if value is None or value == '':
            return None
        try:
            return int(round(float(value)))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_float(value: Any) -> Optional[float]:
        if value is None or value == '':
            return None
        if isinstance(value, str):
            match = re.search(r'\d+(?:\.\d+)?', value)
            if not match:
                return None
            value = match.group(0)
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def _parse_json_object(self, raw: str) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        cleaned = self._strip_code_fences(raw)
        try:
            parsed = json.loads(cleaned)
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return self._extract_json_fragment(cleaned)

    def _extract_json_fragment(self, text: str) -> Optional[Dict[str, Any]]:
        start = text.find('{')
        end = text.rfind('}')
        if start == -1 or end == -1 or end <= start:
            return None
        fragment = text[start : end + 1]
        try:
            parsed = json.loads(fragment)
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return None

    def _strip_code_fences(self, raw: str) -> str:
        cleaned = raw.strip()
        if cleaned.startswith('```') and cleaned.endswith('```'):
            lines = [line for line in cleaned.splitlines() if not line.strip().startswith('```')]
            return '\n'.join(lines).strip()
        return cleaned

    def _call_gemini(self, prompt: str, system_instruction: Optional[str] = None) -> str:
        if not self.client:
            return ''

        config = None
        if system_instruction:
            config = types.GenerateContentConfig(system_instruction=system_instruction)

        try:  # pragma: no cover - external service call
            response = self.client.models.generate_content(
                model=self._text_model_id,
                contents=[prompt],
                config=config,
            )
        except Exception as exc:
            logger.warning('Gemini request failed: %s', exc)
            return ''

        if not response:
            return ''

        text = getattr(response, 'text', None)
        if text:
            return text.strip()

        candidates = getattr(response, 'candidates', None) or []
        for candidate in candidates:
            content = getattr(candidate, 'content', None)
            parts = getattr(content, 'parts', None) if content else None
            if not parts:
                continue
            assembled = ' '.join(getattr(part, 'text', '') for part in parts if getattr(part, 'text', ''))
            if assembled.strip():
                return assembled.strip()

        return ''
