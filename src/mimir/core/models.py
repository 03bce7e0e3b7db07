"""
Core Pydantic models for Mimir.

This module contains the data models shared by providers, the response
processor, the conversation manager and the orchestrator, providing type
safety, validation and JSON serialization for persistence.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class MessageRole(str, Enum):
    """Roles a conversation message can have."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConnectionState(str, Enum):
    """Provider connection lifecycle."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ModelCost(BaseModel):
    """Cost per 1000 tokens for one model."""
    input: Decimal = Field(..., ge=0, description="Cost per 1K prompt tokens")
    output: Decimal = Field(..., ge=0, description="Cost per 1K completion tokens")


class TokenUsage(BaseModel):
    """Token counts and derived cost for one or more completions."""
    prompt_tokens: int = Field(default=0, ge=0, description="Prompt tokens")
    completion_tokens: int = Field(default=0, ge=0, description="Completion tokens")
    total_tokens: int = Field(default=0, ge=0, description="Total tokens")
    cost: Decimal = Field(default=Decimal("0"), ge=0, description="Cost in USD")

    def add(self, other: "TokenUsage") -> "TokenUsage":
        """Return a new usage with ``other`` folded in."""
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cost=self.cost + other.cost,
        )


class CompletionOptions(BaseModel):
    """Generation options recognized by every provider."""
    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    model: Optional[str] = Field(None, description="Model identifier")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, ge=1, description="Maximum tokens to generate")


class ChatMessage(BaseModel):
    """A role/content pair as submitted to a provider."""
    role: str = Field(..., description="Message role (user, assistant, system)")
    content: str = Field(..., description="Message content")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        valid_roles = {r.value for r in MessageRole}
        if v not in valid_roles:
            raise ValueError(f"Role must be one of {valid_roles}")
        return v


class CompletionResult(BaseModel):
    """Outcome of a completion request, successful or not."""
    success: bool = Field(..., description="Whether the completion succeeded")
    completion: str = Field(default="", description="Generated text")
    model: Optional[str] = Field(None, description="Model used for generation")
    usage: Optional[TokenUsage] = Field(None, description="Token usage")
    error: Optional[str] = Field(None, description="Error message on failure")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# Actions embedded in responses


class WriteAction(BaseModel):
    kind: Literal["write"] = "write"
    path: str
    content: str


class RenameAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["rename"] = "rename"
    from_path: str = Field(..., alias="from")
    to_path: str = Field(..., alias="to")
    reason: str = ""


class DeleteAction(BaseModel):
    kind: Literal["delete"] = "delete"
    path: str
    reason: str = ""


class DependencyAction(BaseModel):
    kind: Literal["add_dependency"] = "add_dependency"
    name: str
    version: str
    is_dev: bool = False
    reason: str = ""


class ChatSummaryAction(BaseModel):
    kind: Literal["chat_summary"] = "chat_summary"
    summary: str


Action = Annotated[
    Union[WriteAction, RenameAction, DeleteAction, DependencyAction, ChatSummaryAction],
    Field(discriminator="kind"),
]


class ActionSet(BaseModel):
    """Actions extracted from one response, grouped by kind in document order."""
    write: List[WriteAction] = Field(default_factory=list)
    chat_summary: List[ChatSummaryAction] = Field(default_factory=list)
    rename: List[RenameAction] = Field(default_factory=list)
    delete: List[DeleteAction] = Field(default_factory=list)
    add_dependency: List[DependencyAction] = Field(default_factory=list)

    def add(self, action: Action) -> None:
        getattr(self, action.kind).append(action)

    def has_actions(self) -> bool:
        return any(
            (self.write, self.chat_summary, self.rename, self.delete, self.add_dependency)
        )

    def has_file_operations(self) -> bool:
        return bool(self.write or self.rename or self.delete or self.add_dependency)


class CodeBlock(BaseModel):
    """A fenced code block found in a response."""
    language: str = Field(default="text", description="Language identifier")
    code: str = Field(..., description="Trimmed block body")


class StreamChunk(BaseModel):
    """One increment of a streaming completion."""
    text: str = Field(default="", description="Incremental text")
    done: bool = Field(default=False, description="Whether this is the terminal chunk")
    usage: Optional[TokenUsage] = Field(None, description="Usage, on the terminal chunk")
    error: Optional[str] = Field(None, description="Error, on a failed terminal chunk")
    full_response: Optional[str] = Field(None, description="Cleaned full response after processing")
    actions: Optional[ActionSet] = Field(None, description="Actions extracted after processing")
    stream_id: Optional[str] = Field(None, description="Stream the chunk belongs to")


class ProcessedResponse(BaseModel):
    """Finalized result of a stream: cleaned text plus extracted structure."""
    stream_id: str
    raw_response: str
    cleaned_response: str
    actions: ActionSet = Field(default_factory=ActionSet)
    code_blocks: List[CodeBlock] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None


# Conversations


class Attachment(BaseModel):
    name: str
    type: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    path: Optional[str] = None


class Message(BaseModel):
    """A stored conversation message."""
    id: str = Field(default_factory=new_id, description="Unique message identifier")
    role: str = Field(..., description="Message role (user, assistant, system)")
    content: str = Field(default="", description="Message content")
    attachments: List[Attachment] = Field(default_factory=list)
    actions: Optional[ActionSet] = Field(None, description="Actions embedded in the message")
    usage: Optional[TokenUsage] = Field(None, description="Usage snapshot for the message")
    streaming: bool = Field(default=False, description="Whether content is still arriving")
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        valid_roles = {r.value for r in MessageRole}
        if v not in valid_roles:
            raise ValueError(f"Role must be one of {valid_roles}")
        return v


class Conversation(BaseModel):
    """A multi-turn conversation with its free-form context items."""
    id: str = Field(default_factory=new_id, description="Unique conversation identifier")
    title: Optional[str] = Field(None, description="Display title")
    project_id: Optional[str] = Field(None, description="Owning project")
    file_path: Optional[str] = Field(None, description="Associated file")
    messages: List[Message] = Field(default_factory=list)
    context: List[Any] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage, description="Accumulated usage")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Refresh ``updated_at``; it never falls behind ``created_at``."""
        self.updated_at = max(utc_now(), self.created_at)
