"""
Tool definitions and dispatch for the member assistant.

Defines FunctionDeclaration objects for:
- knowledgeBaseSearch: gym information from the knowledge base
- muscleBalanceAnalysis: push/pull balance over recent workouts
- classBooking: list, check and book group classes
- createWorkoutEntry: log a workout from a natural-language description
- workoutHistory: history, per-exercise stats and summaries
- getCurrentDateTime: the current date, time or weekday
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from google.genai import types

from ..errors import GymDeskError, ValidationError

logger = logging.getLogger(__name__)

TOOL_KNOWLEDGE_BASE = "knowledgeBaseSearch"
TOOL_MUSCLE_BALANCE = "muscleBalanceAnalysis"
TOOL_CLASS_BOOKING = "classBooking"
TOOL_WORKOUT_ENTRY = "createWorkoutEntry"
TOOL_WORKOUT_HISTORY = "workoutHistory"
TOOL_DATE_TIME = "getCurrentDateTime"

CLASS_ACTIONS = ("list_classes", "book_class", "check_availability")
HISTORY_ACTIONS = ("show_history", "exercise_stats", "summary")
DATE_FORMATS = ("date", "time", "both", "day")

# Progress labels shown to the member while a tool runs
THINKING_LABELS = {
    TOOL_KNOWLEDGE_BASE: "Searching the gym knowledge base",
    TOOL_MUSCLE_BALANCE: "Analyzing your muscle balance",
    TOOL_CLASS_BOOKING: "Checking the class schedule",
    TOOL_WORKOUT_ENTRY: "Logging your workout",
    TOOL_WORKOUT_HISTORY: "Looking through your workout history",
    TOOL_DATE_TIME: "Checking the date and time",
}


def get_knowledge_base_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_KNOWLEDGE_BASE,
        description=(
            "Search the gym's knowledge base for information about services, "
            "opening hours, policies, equipment and membership. Use this before "
            "answering any question about the gym itself."
        ),
        parameters_json_schema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "What to look up, phrased as a question or keywords.",
                }
            },
            "required": ["query"],
        },
    )


def get_muscle_balance_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_MUSCLE_BALANCE,
        description=(
            "Analyze the member's recent workouts for muscle imbalances: per-muscle "
            "frequency, push/pull ratio, neglected muscle groups and injury "
            "prevention recommendations."
        ),
        parameters_json_schema={
            "type": "object",
            "properties": {
                "days_to_analyze": {
                    "type": "integer",
                    "description": "How many days of history to analyze. Defaults to 30.",
                }
            },
        },
    )


def get_class_booking_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_CLASS_BOOKING,
        description="View available classes, check availability and book classes for the member.",
        parameters_json_schema={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(CLASS_ACTIONS),
                    "description": "The operation to perform.",
                },
                "class_id": {
                    "type": "string",
                    "description": "UUID of the class (required for booking unless class_name is given).",
                },
                "date": {
                    "type": "string",
                    "description": "Date to filter classes (YYYY-MM-DD format).",
                },
                "class_name": {
                    "type": "string",
                    "description": "Name of the class to find when the id is unknown.",
                },
            },
            "required": ["action"],
        },
    )


def get_workout_entry_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_WORKOUT_ENTRY,
        description=(
            "Create a new workout entry from a natural language description. Use this "
            "when the member describes a workout they want logged. The description "
            "should include exercise name, weight (if applicable), sets, reps and notes."
        ),
        parameters_json_schema={
            "type": "object",
            "properties": {
                "workout_description": {
                    "type": "string",
                    "description": (
                        "The natural language description of the workout, including "
                        "exercise name, weight, sets, reps and any notes."
                    ),
                }
            },
            "required": ["workout_description"],
        },
    )


def get_workout_history_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_WORKOUT_HISTORY,
        description="Query and analyze the member's workout history.",
        parameters_json_schema={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(HISTORY_ACTIONS),
                },
                "date_range": {
                    "type": "string",
                    "description": "Date range ('today', 'week', 'month') or a specific date (YYYY-MM-DD).",
                },
                "exercise": {
                    "type": "string",
                    "description": "Specific exercise to get stats for.",
                },
            },
            "required": ["action"],
        },
    )


def get_date_time_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_DATE_TIME,
        description=(
            "Get the current date, time, or both. Useful for questions about the "
            "current time, date or day of the week."
        ),
        parameters_json_schema={
            "type": "object",
            "properties": {
                "format": {
                    "type": "string",
                    "enum": list(DATE_FORMATS),
                    "description": (
                        "'date' for the current date, 'time' for the current time, "
                        "'both' for date and time, 'day' for the day of the week."
                    ),
                }
            },
            "required": ["format"],
        },
    )


def get_all_tools() -> list[types.Tool]:
    """All assistant functions wrapped in a single Tool."""
    return [
        types.Tool(
            function_declarations=[
                get_knowledge_base_tool(),
                get_muscle_balance_tool(),
                get_class_booking_tool(),
                get_workout_entry_tool(),
                get_workout_history_tool(),
                get_date_time_tool(),
            ]
        )
    ]


def format_date_time(now: datetime, fmt: Optional[str]) -> str:
    if fmt == "date":
        return now.strftime("%m/%d/%Y")
    if fmt == "time":
        return now.strftime("%I:%M:%S %p")
    if fmt == "day":
        return now.strftime("%A")
    return now.strftime("%m/%d/%Y, %I:%M:%S %p")


def describe_workout(entry: Dict[str, Any]) -> str:
    """Confirmation text listing the logged fields."""
    details: List[str] = []
    for label, key in (
        ("Exercise", "exercise"),
        ("Weight", "weight"),
        ("Sets", "sets"),
        ("Reps", "reps"),
        ("Bodyweight", "bodyweight"),
        ("Notes", "notes"),
    ):
        if entry.get(key):
            details.append(f"{label}: {entry[key]}")
    if entry.get("muscle_groups"):
        details.append(f"Muscle Groups: {', '.join(entry['muscle_groups'])}")
    return "Workout logged successfully!\n" + "\n".join(details)


class AssistantToolbox:
    """Routes model tool calls to the gym services on behalf of one member.

    The member id always comes from the authenticated session; any
    ``user_id`` the model supplies is ignored.
    """

    def __init__(
        self,
        *,
        knowledge_base: Any,
        workouts: Any,
        classes: Any,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.knowledge_base = knowledge_base
        self.workouts = workouts
        self.classes = classes
        self.clock = clock
        self._handlers: Dict[str, Callable[[Dict[str, Any], str], Dict[str, Any]]] = {
            TOOL_KNOWLEDGE_BASE: self._knowledge_base_search,
            TOOL_MUSCLE_BALANCE: self._muscle_balance,
            TOOL_CLASS_BOOKING: self._class_booking,
            TOOL_WORKOUT_ENTRY: self._workout_entry,
            TOOL_WORKOUT_HISTORY: self._workout_history,
            TOOL_DATE_TIME: self._date_time,
        }

    @staticmethod
    def thinking_label(name: str) -> str:
        return THINKING_LABELS.get(name, f"Running {name}")

    def execute(self, name: str, args: Optional[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
        """Run tool *name*; failures come back as ``{"success": False, "error": ...}``."""

        handler = self._handlers.get(name)
        if handler is None:
            return {"name": name, "success": False, "error": f"Unknown tool: {name}"}

        args = dict(args or {})
        args.pop("user_id", None)
        try:
            result = handler(args, user_id)
        except GymDeskError as exc:
            logger.info("Tool %s refused: %s", name, exc.message)
            return {"name": name, "action": args.get("action"), "success": False, "error": exc.message}
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return {
                "name": name,
                "action": args.get("action"),
                "success": False,
                "error": f"An error occurred in the {name} tool: {exc}",
            }

        return {"name": name, "success": True, **result}

    # --- Handlers -------------------------------------------------------

    def _knowledge_base_search(self, args: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        query = (args.get("query") or "").strip()
        if not query:
            raise ValidationError("query is required")
        entries = self.knowledge_base.find_relevant_entries(query)
        return {
            "entries": [
                {"title": entry.get("title"), "content": entry.get("content")}
                for entry in entries
            ]
        }

    def _muscle_balance(self, args: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        days = args.get("days_to_analyze") or 30
        return {"analysis": self.workouts.muscle_balance_analysis(user_id, int(days))}

    def _class_booking(self, args: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        action = args.get("action")
        class_id = args.get("class_id")
        class_name = args.get("class_name")

        if action not in CLASS_ACTIONS:
            raise ValidationError(f"Unknown action: {action}")

        if class_name and not class_id and action in ("book_class", "check_availability"):
            class_id = self.classes.find_class_by_name(class_name)["id"]

        if action == "list_classes":
            return {"action": action, "classes": self.classes.list_classes(args.get("date"))}
        if not class_id:
            raise ValidationError(f"class_id is required for {action.replace('_', ' ')}")
        if action == "book_class":
            return {"action": action, **self.classes.book_class(class_id, user_id)}
        return {"action": action, **self.classes.check_availability(class_id)}

    def _workout_entry(self, args: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        description = (args.get("workout_description") or "").strip()
        if not description:
            raise ValidationError("workout_description is required")
        entry = self.workouts.log_workout(user_id, description)
        return {"message": describe_workout(entry), "entry": entry}

    def _workout_history(self, args: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        action = args.get("action")
        date_range = args.get("date_range") or "month"
        if action == "show_history":
            return {"action": action, "workouts": self.workouts.history(user_id, date_range)}
        if action == "exercise_stats":
            stats = self.workouts.exercise_stats(user_id, args.get("exercise") or "", date_range)
            return {"action": action, "stats": stats}
        if action == "summary":
            return {"action": action, "summary": self.workouts.summary(user_id, date_range)}
        raise ValidationError(f"Unknown action: {action}")

    def _date_time(self, args: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        fmt = args.get("format") or "both"
        return {"format": fmt, "value": format_date_time(self.clock(), fmt)}
