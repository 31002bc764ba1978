"""
Tests for the memory_engine package.

Covers token counting, history splitting, memory storage and the compressor.
"""
from unittest.mock import MagicMock

from google.genai import types

from memory_engine import (
    InMemoryStorage,
    MemoryCompressor,
    SynthesizedMemory,
    count_tokens,
    count_tokens_text,
    split_at_token_boundary,
)


def _text(text: str, role: str = "user") -> types.Content:
    return types.Content(role=role, parts=[types.Part.from_text(text=text)])


def _tool_result(name: str) -> types.Content:
    return types.Content(
        role="user",
        parts=[types.Part.from_function_response(name=name, response={"success": True})],
    )


def _long_history(last: str) -> list:
    return [_text("word " * 60), _text("word " * 60, role="model"), _text(last)]


def _client_returning(*texts: str) -> MagicMock:
    client = MagicMock()
    client.models.generate_content.side_effect = [MagicMock(text=text) for text in texts]
    return client


MEMORY_MARKDOWN = """# Member Memory

## Member Profile

- Training for a half marathon

## Training Notes

- Logged bench press 3x10 at 135 lbs

## Open Requests

- Wants a yoga class on Saturday
"""


# ===================================================================
# Token counter
# ===================================================================


class TestCountTokensText:
    def test_empty_string(self):
        assert count_tokens_text("") >= 0

    def test_known_string(self):
        assert 1 <= count_tokens_text("Hello, world!") <= 10

    def test_long_string(self):
        assert count_tokens_text("word " * 1000) > 100

    def test_fallback_on_failure(self):
        """When tiktoken is forced off, the character heuristic kicks in."""
        import memory_engine.token_counter as tc

        original = tc._USE_TIKTOKEN
        original_encoder = tc._encoder
        tc._USE_TIKTOKEN = False
        tc._encoder = None
        try:
            assert 90 <= count_tokens_text("abcd" * 100) <= 110
        finally:
            tc._USE_TIKTOKEN = original
            tc._encoder = original_encoder


class TestCountTokens:
    def test_more_messages_cost_more(self):
        single = count_tokens([_text("Hello")])
        both = count_tokens([_text("Hello"), _text("World", role="model")])
        assert single > 0
        assert both > single

    def test_tool_results_are_counted(self):
        assert count_tokens([_tool_result("workoutHistory")]) > 4


class TestSplitAtTokenBoundary:
    def test_split_basic(self):
        msgs = [_text("word " * 200) for _ in range(5)]
        head, tail = split_at_token_boundary(msgs, target_head_tokens=500)
        assert len(head) + len(tail) == 5
        assert head and tail

    def test_all_fit(self):
        head, tail = split_at_token_boundary([_text("hi")], target_head_tokens=100_000)
        assert (len(head), len(tail)) == (1, 0)

    def test_empty_input(self):
        assert split_at_token_boundary([], target_head_tokens=100) == ([], [])

    def test_tail_starts_with_member_message(self):
        msgs = [
            _text("word " * 60),
            _text("calling a tool", role="model"),
            _tool_result("classBooking"),
            _text("word " * 50, role="model"),
            _text("next question"),
        ]
        head, tail = split_at_token_boundary(msgs, target_head_tokens=100)
        assert tail[0].parts[0].text == "next question"
        assert len(head) == 4


# ===================================================================
# Storage
# ===================================================================


class TestSynthesizedMemory:
    def test_round_trip(self):
        mem = SynthesizedMemory(
            member_profile="- Recovering from a knee injury",
            training_notes="- Squats twice a week",
            open_requests="- Asked about personal training prices",
        )
        parsed = SynthesizedMemory.from_markdown(mem.to_markdown())

        assert "knee injury" in parsed.member_profile
        assert "Squats" in parsed.training_notes
        assert "personal training" in parsed.open_requests

    def test_unknown_sections_are_kept(self):
        parsed = SynthesizedMemory.from_markdown(MEMORY_MARKDOWN + "\n## Billing\n\n- Pays yearly\n")
        assert "Pays yearly" in parsed.raw_extra

    def test_empty(self):
        mem = SynthesizedMemory.from_markdown("")
        assert mem.is_empty()
        assert mem.word_count() > 0  # header still counts


class TestInMemoryStorage:
    def test_write_and_read(self):
        storage = InMemoryStorage()
        assert not storage.exists()

        storage.write(SynthesizedMemory(member_profile="- Likes morning classes"))

        assert storage.exists()
        assert "morning" in storage.read().member_profile

    def test_overwrite(self):
        storage = InMemoryStorage()
        storage.write(SynthesizedMemory(open_requests="- V1"))
        storage.write(SynthesizedMemory(open_requests="- V2"))
        assert storage.read().open_requests == "- V2"


# ===================================================================
# Compressor
# ===================================================================


class TestMemoryCompressor:
    def test_under_threshold_is_untouched(self):
        client = MagicMock()
        compressor = MemoryCompressor(client, InMemoryStorage(), threshold=10_000)
        history = [_text("Hi"), _text("Hello Mia!", role="model")]

        assert compressor.check_and_compress(history) is history
        assert compressor.last_token_count > 0
        client.models.generate_content.assert_not_called()

    def test_over_threshold_flushes_head_into_memory(self):
        storage = InMemoryStorage()
        client = _client_returning(MEMORY_MARKDOWN)
        compressor = MemoryCompressor(client, storage, threshold=100, head_ratio=0.9)
        history = _long_history("latest question")

        tail = compressor.check_and_compress(history)

        assert tail[0].parts[0].text == "latest question"
        assert compressor.compression_count == 1
        assert "half marathon" in storage.read().member_profile
        prompt = client.models.generate_content.call_args.kwargs["contents"][0].parts[0].text
        assert "(empty)" in prompt
        assert "**user**: word" in prompt

    def test_empty_synthesis_keeps_history(self):
        storage = InMemoryStorage()
        compressor = MemoryCompressor(_client_returning(""), storage, threshold=100, head_ratio=0.9)
        history = _long_history("again")

        assert compressor.check_and_compress(history) == history
        assert not storage.exists()

    def test_word_limit_triggers_recursive_summary(self):
        long_memory = "## Member Profile\n\n" + "- detail " * 200
        client = _client_returning(long_memory, "## Member Profile\n\n- short version")
        storage = InMemoryStorage()
        compressor = MemoryCompressor(client, storage, threshold=100, head_ratio=0.9, max_words=50)

        compressor.check_and_compress(_long_history("again"))

        assert storage.read().member_profile == "- short version"
        assert client.models.generate_content.call_count == 2

    def test_system_prompt_prefixes_memory(self):
        storage = InMemoryStorage(SynthesizedMemory.from_markdown(MEMORY_MARKDOWN))
        compressor = MemoryCompressor(MagicMock(), storage)

        prompt = compressor.build_system_prompt("You are a gym assistant.")

        assert prompt.startswith("# What you remember about this member")
        assert "half marathon" in prompt
        assert prompt.endswith("You are a gym assistant.")

    def test_system_prompt_without_memory(self):
        compressor = MemoryCompressor(MagicMock(), InMemoryStorage())
        assert compressor.build_system_prompt("base") == "base"
