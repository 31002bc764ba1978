from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from google.genai import errors as genai_errors
from google.genai import types
from sqlalchemy.exc import OperationalError

from memory_engine import SynthesizedMemory

from app.assistant import AssistantOrchestrator, AssistantToolbox, ConversationStore
from app.assistant.orchestrator import FAILURE_MESSAGE, member_context
from app.assistant.tools import TOOL_DATE_TIME
from app.errors import ConfigurationError, ConflictError, UpstreamError
from tests.fakes import MEMBER, make_settings

FIXED_NOW = datetime(2026, 10, 19, 9, 30, 0)


def _text_response(text: str) -> types.GenerateContentResponse:
    return types.GenerateContentResponse(
        candidates=[types.Candidate(content=types.Content(role="model", parts=[types.Part(text=text)]))]
    )


def _call_response(name: str, args: dict) -> types.GenerateContentResponse:
    call = types.Part(function_call=types.FunctionCall(name=name, args=args))
    return types.GenerateContentResponse(
        candidates=[types.Candidate(content=types.Content(role="model", parts=[call]))]
    )


def _rate_limited() -> genai_errors.ClientError:
    return genai_errors.ClientError(
        429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}
    )


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_assistant(app, client, sleeps):
    def build(knowledge_base=None, **settings_overrides):
        toolbox = AssistantToolbox(
            knowledge_base=MagicMock(),
            workouts=MagicMock(),
            classes=MagicMock(),
            clock=lambda: FIXED_NOW,
        )
        return AssistantOrchestrator(
            make_settings(**settings_overrides),
            toolbox,
            ConversationStore(),
            client=client,
            knowledge_base=knowledge_base,
            sleep=sleeps.append,
        )

    with app.app_context():
        yield build


def test_member_context():
    context = member_context(MEMBER)
    assert "- Name: Mia Member" in context
    assert "- Email: member@example.com" in context


def test_tool_call_then_answer(make_assistant, client):
    client.models.generate_content.side_effect = [
        _call_response(TOOL_DATE_TIME, {"format": "day"}),
        _text_response("Today is Monday."),
    ]
    assistant = make_assistant()

    result = assistant.run(MEMBER, "What day is it?")

    assert result == {"answer": "Today is Monday.", "steps": [{"id": 1, "text": "Checking the date and time"}]}
    first_config = client.models.generate_content.call_args_list[0].kwargs["config"]
    assert first_config.tools
    assert "- Name: Mia Member" in first_config.system_instruction

    history = ConversationStore().load_history(MEMBER["id"])
    assert [content.role for content in history] == ["user", "model", "user", "model"]
    tool_response = history[2].parts[0].function_response
    assert tool_response.name == TOOL_DATE_TIME
    assert tool_response.response["value"] == "Monday"
    assert history[3].parts[0].text == "Today is Monday."


def test_history_is_sent_on_the_next_turn(make_assistant, client):
    client.models.generate_content.side_effect = [_text_response("Hi Mia!"), _text_response("Sure.")]
    assistant = make_assistant()

    assistant.run(MEMBER, "Hello")
    assistant.run(MEMBER, "Can you help me?")

    contents = client.models.generate_content.call_args.kwargs["contents"]
    assert [content.parts[0].text for content in contents] == ["Hello", "Hi Mia!", "Can you help me?", "Sure."]


def test_run_iter_streams_steps_before_answer(make_assistant, client):
    client.models.generate_content.side_effect = [
        _call_response(TOOL_DATE_TIME, {"format": "date"}),
        _call_response(TOOL_DATE_TIME, {"format": "time"}),
        _text_response("It is 09:30 AM on 10/19/2026."),
    ]

    events = list(make_assistant().run_iter(MEMBER, "When is it?"))

    assert [event["event"] for event in events] == ["step", "step", "answer"]
    assert [event["data"]["id"] for event in events[:2]] == [1, 2]
    assert len(events[-1]["data"]["steps"]) == 2


def test_rate_limit_backs_off_exponentially(make_assistant, client, sleeps):
    client.models.generate_content.side_effect = [_rate_limited(), _rate_limited(), _text_response("Done.")]
    assistant = make_assistant(base_backoff_seconds=1.5)

    assert assistant.run(MEMBER, "Hi")["answer"] == "Done."
    assert sleeps == [1.5, 3.0]


def test_rate_limit_gives_up_after_max_retries(make_assistant, client, sleeps):
    client.models.generate_content.side_effect = _rate_limited()
    assistant = make_assistant(max_retries=2)

    with pytest.raises(UpstreamError) as excinfo:
        assistant.run(MEMBER, "Hi")

    assert excinfo.value.message == FAILURE_MESSAGE
    assert len(sleeps) == 2
    assert ConversationStore().load_history(MEMBER["id"]) == []


def test_other_api_errors_fail_immediately(make_assistant, client, sleeps):
    client.models.generate_content.side_effect = genai_errors.ServerError(
        500, {"error": {"code": 500, "message": "Internal", "status": "INTERNAL"}}
    )

    with pytest.raises(UpstreamError):
        make_assistant().run(MEMBER, "Hi")
    assert sleeps == []


def test_round_limit_forces_a_text_answer(make_assistant, client):
    client.models.generate_content.side_effect = [
        _call_response(TOOL_DATE_TIME, {"format": "day"}),
        _call_response(TOOL_DATE_TIME, {"format": "day"}),
        _text_response("It is Monday."),
    ]
    assistant = make_assistant(max_tool_rounds=2)

    result = assistant.run(MEMBER, "Day?")

    assert result["answer"] == "It is Monday."
    assert len(result["steps"]) == 2
    final_config = client.models.generate_content.call_args.kwargs["config"]
    assert final_config.tools is None


def test_empty_answer_is_an_error(make_assistant, client):
    client.models.generate_content.side_effect = [_text_response("   ")]

    with pytest.raises(UpstreamError) as excinfo:
        make_assistant().run(MEMBER, "Hi")
    assert excinfo.value.message == FAILURE_MESSAGE


def test_one_turn_at_a_time_per_member(make_assistant, client):
    client.models.generate_content.side_effect = [
        _call_response(TOOL_DATE_TIME, {"format": "day"}),
        _text_response("Monday."),
    ]
    assistant = make_assistant()

    first = assistant.run_iter(MEMBER, "Day?")
    assert next(first)["event"] == "step"

    with pytest.raises(ConflictError):
        next(assistant.run_iter(MEMBER, "Another question"))

    assert [event["event"] for event in first] == ["answer"]


def test_finished_turns_leave_no_per_member_state(make_assistant, client):
    client.models.generate_content.side_effect = [_text_response("Hi!"), _text_response("Hi again!")]
    assistant = make_assistant()

    assistant.run(MEMBER, "Hello")
    assert assistant._active_turns == set()

    assert assistant.run(MEMBER, "Hello again")["answer"] == "Hi again!"
    assert assistant._active_turns == set()


def _db_error() -> OperationalError:
    return OperationalError("UPDATE assistant_conversations", {}, Exception("database is locked"))


def test_history_save_failure_is_reported(make_assistant, client):
    client.models.generate_content.side_effect = [_text_response("Hi!")]
    assistant = make_assistant()

    with patch.object(ConversationStore, "save_history", side_effect=_db_error()):
        with pytest.raises(UpstreamError) as excinfo:
            assistant.run(MEMBER, "Hello")

    assert excinfo.value.message == FAILURE_MESSAGE
    assert assistant._active_turns == set()


def test_memory_write_failure_keeps_full_history(make_assistant, client):
    client.models.generate_content.side_effect = [_text_response("Hi!")]
    assistant = make_assistant()

    with patch("app.assistant.orchestrator.MemoryCompressor.check_and_compress", side_effect=_db_error()):
        result = assistant.run(MEMBER, "Hello")

    assert result["answer"] == "Hi!"
    assert [content.role for content in ConversationStore().load_history(MEMBER["id"])] == ["user", "model"]


def test_disabled_without_client(app):
    assistant = AssistantOrchestrator(make_settings(), MagicMock(), ConversationStore())

    assert assistant.enabled is False
    with app.app_context(), pytest.raises(ConfigurationError):
        assistant.run(MEMBER, "Hi")


def test_knowledge_base_context_is_added(make_assistant, client):
    knowledge_base = MagicMock()
    knowledge_base.find_relevant_entries.return_value = [
        {"title": "Pool hours", "content": "6am to 9pm"}
    ]
    client.models.generate_content.side_effect = [_text_response("The pool opens at 6am.")]

    make_assistant(knowledge_base=knowledge_base).run(MEMBER, "When does the pool open?")

    knowledge_base.find_relevant_entries.assert_called_once_with("When does the pool open?")
    instruction = client.models.generate_content.call_args.kwargs["config"].system_instruction
    assert "Relevant gym information:\n[Pool hours]: 6am to 9pm" in instruction


def test_reset_clears_history_and_optionally_memory(make_assistant, client):
    client.models.generate_content.side_effect = [_text_response("Hi!")]
    assistant = make_assistant()
    assistant.run(MEMBER, "Hello")
    storage = ConversationStore().memory_for(MEMBER["id"])
    storage.write(SynthesizedMemory(member_profile="- Runs on weekends"))

    assistant.reset(MEMBER["id"])
    assert ConversationStore().load_history(MEMBER["id"]) == []
    assert storage.exists()

    assistant.reset(MEMBER["id"], forget_memory=True)
    assert not storage.exists()
