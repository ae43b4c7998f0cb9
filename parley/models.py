from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["system", "user", "assistant", "tool"]


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str = "{}"  # raw JSON text exactly as the model sent it


class Message(BaseModel):
    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None  # for role="tool" responses
    name: str | None = None  # tool name for role="tool"


class Tool(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema object


class ChatRequest(BaseModel):
    model: str
    messages: list[Message]
    max_tokens: int
    temperature: float
    tools: list[Tool] | None = None
    tool_choice: Literal["auto"] | None = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Response(BaseModel):
    message: Message
    stop_reason: str  # "stop" | "tool_use"
    model: str = ""
    usage: Usage | None = None


class ModelSettings(BaseModel):
    model: str
    max_tokens: int = 1000
    temperature: float = 0.7
    tool_rounds: int = Field(default=1, ge=0)  # tool-resolution round trips per send()


class ReplyStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


class Reply(BaseModel):
    text: str = ""
    status: ReplyStatus = ReplyStatus.OK
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is ReplyStatus.OK

    @property
    def cancelled(self) -> bool:
        return self.status is ReplyStatus.CANCELLED


class CharacterCard(BaseModel):
    """Persona descriptor in the community character-card format (V1 fields)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_message: str = Field(default="", alias="first_mes")
    message_example: str = Field(default="", alias="mes_example")
    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    creator: str = ""
    character_version: str = ""
    spec: str = ""
    spec_version: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any, info) -> Any:
        # exported cards often carry explicit nulls
        if value is None:
            field = cls.model_fields[info.field_name]
            return field.get_default(call_default_factory=True)
        return value


class SessionMessage(BaseModel):
    role: str  # "user" | "assistant"
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)


class ChatSession(BaseModel):
    id: str
    name: str
    character_name: str = "Assistant"
    character_file: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    last_modified: datetime = Field(default_factory=datetime.now)
    messages: list[SessionMessage] = Field(default_factory=list)
