"""Local database models for GymDesk."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.sql import func

from .extensions import db


class AssistantConversation(db.Model):
    """Per-member state for the AI assistant.

    ``history`` holds the serialized Gemini contents of the active window and
    ``memory`` the synthesized summary of older turns.
    """

    __tablename__ = "assistant_conversations"

    user_id = db.Column(db.String(255), primary_key=True)
    history = db.Column(db.JSON, nullable=True)
    memory = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def touch(self) -> None:
        """Update the in-memory timestamp before commit."""

        self.updated_at = datetime.now(timezone.utc)
