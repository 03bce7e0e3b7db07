"""
Type definitions for request orchestration.

This module defines the result objects the Orchestrator returns for
streamed completions and chat turns.
"""

from dataclasses import dataclass, field
from typing import Any

from ..core.models import ActionSet, TokenUsage


@dataclass
class StreamResult:
    """
    Outcome of one streamed completion.

    ``completion`` is the cleaned response, with action tags replaced by
    their placeholders.
    """

    stream_id: str
    """Identifier chunks were tagged with"""

    success: bool
    """True if the stream finalized without error or cancellation"""

    completion: str = ""
    """Cleaned response text"""

    model: str | None = None
    """Model the request was sent to"""

    actions: ActionSet = field(default_factory=ActionSet)
    """Actions extracted from the response"""

    usage: TokenUsage | None = None
    """Usage reported on the terminal chunk"""

    error: str | None = None
    """Error message if the stream failed"""

    cancelled: bool = False
    """Whether the caller cancelled the stream"""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "success": self.success,
            "completion": self.completion,
            "model": self.model,
            "actions": self.actions.model_dump(mode="json", by_alias=True),
            "usage": self.usage.model_dump(mode="json") if self.usage else None,
            "error": self.error,
            "cancelled": self.cancelled,
        }


@dataclass
class ChatResult(StreamResult):
    """Outcome of one chat turn, including what was stored and applied."""

    conversation_id: str | None = None
    """Conversation the turn belongs to"""

    user_message_id: str | None = None
    """Stored user message, None if nothing was stored"""

    assistant_message_id: str | None = None
    """Stored assistant message, None if nothing was stored"""

    file_results: dict[str, list[dict[str, Any]]] | None = None
    """Per-item outcome of applied file actions"""

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update(
            conversation_id=self.conversation_id,
            user_message_id=self.user_message_id,
            assistant_message_id=self.assistant_message_id,
            file_results=self.file_results,
        )
        return result
