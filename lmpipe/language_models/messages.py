"""
Generic data structures for language model interactions.

All objects are immutable. The pipeline keeps no conversational state:
a caller that wants continuity holds a `Conversation` and supplies it
again on every call.
"""

from collections.abc import Iterator
from typing import Any, Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

Role = Literal['system', 'human', 'assistant']

# alternative role names accepted on input
_ROLE_ALIASES: dict[str, str] = {'user': 'human', 'ai': 'assistant'}


class Message(BaseModel):
    """Represents a message in a chat conversation."""

    role: Role
    content: str

    model_config = ConfigDict(frozen=True, extra='forbid')

    @field_validator('role', mode='before')
    @classmethod
    def normalize_role(cls, role: object) -> object:
        if isinstance(role, str):
            role = role.strip().lower()
            return _ROLE_ALIASES.get(role, role)
        return role


class TokenUsage(BaseModel):
    """Token counts reported by the generation service."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True, extra='forbid')

    @model_validator(mode='before')
    @classmethod
    def fill_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and 'total_tokens' not in data:
            data = dict(data)  # type: ignore
            data['total_tokens'] = int(
                data.get('input_tokens', 0) or 0  # type: ignore
            ) + int(data.get('output_tokens', 0) or 0)  # type: ignore
        return data  # type: ignore


class Response(BaseModel):
    """The reply of the model to a rendered prompt.

    Attributes:
        message: the assistant message
        usage: token counts
        model: the model specification, as 'provider/model'
        metadata: response metadata from the provider
    """

    message: Message
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra='forbid')

    @field_validator('message', mode='after')
    @classmethod
    def check_role(cls, message: Message) -> Message:
        if message.role != 'assistant':
            raise ValueError(
                "A response must be an assistant message, got "
                + f"'{message.role}'"
            )
        return message

    @property
    def content(self) -> str:
        return self.message.content


class Conversation(BaseModel):
    """An ordered, immutable sequence of messages.

    `add` returns a new conversation; the original is unchanged.

    Example:
        ```python
        history = Conversation()
        history = history.add(Message(role='human', content="Hi"))
        ```
    """

    messages: tuple[Message, ...] = ()

    model_config = ConfigDict(frozen=True, extra='forbid')

    def add(self, message: Message) -> Self:
        return self.model_copy(
            update={'messages': self.messages + (message,)}
        )

    def extend(
        self, messages: "Conversation | list[Message] | tuple[Message, ...]"
    ) -> Self:
        return self.model_copy(
            update={'messages': self.messages + tuple(messages)}
        )

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self) -> Iterator[Message]:  # type: ignore[override]
        return iter(self.messages)

    def __getitem__(self, index: int) -> Message:
        return self.messages[index]
