"""
Storage interface and data model for synthesized member memory.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Markdown header -> dataclass field
SECTIONS = {
    "## Member Profile": "member_profile",
    "## Training Notes": "training_notes",
    "## Open Requests": "open_requests",
}


@dataclass
class SynthesizedMemory:
    """Structured long-term memory for one member's assistant conversations."""

    member_profile: str = ""
    training_notes: str = ""
    open_requests: str = ""
    raw_extra: str = ""  # anything outside the known sections

    def to_markdown(self) -> str:
        sections: list[str] = ["# Member Memory\n"]
        for header, attr in SECTIONS.items():
            value = getattr(self, attr)
            if value:
                sections.append(f"{header}\n\n{value}\n")
        if self.raw_extra:
            sections.append(f"## Additional Context\n\n{self.raw_extra}\n")
        return "\n".join(sections)

    @staticmethod
    def from_markdown(text: str) -> "SynthesizedMemory":
        mem = SynthesizedMemory()
        if not text or not text.strip():
            return mem

        current: str | None = None
        buffers: dict[str | None, list[str]] = {None: []}

        for line in text.splitlines():
            stripped = line.strip()
            if stripped in SECTIONS:
                current = SECTIONS[stripped]
                buffers.setdefault(current, [])
            elif stripped.startswith("## "):
                current = "raw_extra"
                buffers.setdefault(current, []).append(line)
            elif stripped.startswith("# "):
                continue
            else:
                buffers.setdefault(current, []).append(line)

        for attr in list(SECTIONS.values()) + ["raw_extra"]:
            setattr(mem, attr, "\n".join(buffers.get(attr, [])).strip())
        return mem

    def is_empty(self) -> bool:
        return not any((self.member_profile, self.training_notes, self.open_requests, self.raw_extra))

    def word_count(self) -> int:
        return len(self.to_markdown().split())


class MemoryStorage(ABC):
    """Backend that persists one member's synthesized memory."""

    @abstractmethod
    def read(self) -> SynthesizedMemory:
        """Read the current persisted memory."""

    @abstractmethod
    def write(self, memory: SynthesizedMemory) -> None:
        """Replace the persisted memory."""

    @abstractmethod
    def exists(self) -> bool:
        """Whether any persisted memory currently exists."""


class InMemoryStorage(MemoryStorage):
    """Process-local storage; the default when no persistent backend is given."""

    def __init__(self, memory: SynthesizedMemory | None = None):
        self._memory = memory

    def exists(self) -> bool:
        return self._memory is not None and not self._memory.is_empty()

    def read(self) -> SynthesizedMemory:
        return self._memory or SynthesizedMemory()

    def write(self, memory: SynthesizedMemory) -> None:
        self._memory = memory
        logger.debug("Memory stored in process (%d words)", memory.word_count())
