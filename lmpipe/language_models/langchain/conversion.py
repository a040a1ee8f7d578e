"""
Conversion between lmpipe messages and LangChain messages.
"""

from collections.abc import Iterable

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)

from lmpipe.language_models.messages import Message


def to_langchain_message(message: Message) -> BaseMessage:
    match message.role:
        case 'system':
            return SystemMessage(content=message.content)
        case 'human':
            return HumanMessage(content=message.content)
        case 'assistant':
            return AIMessage(content=message.content)


def to_langchain_messages(
    messages: Iterable[Message],
) -> list[BaseMessage]:
    return [to_langchain_message(m) for m in messages]


def message_text(message: BaseMessage) -> str:
    """The text of a LangChain message. Content given as a list of
    blocks is reduced to its text blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif block.get('type') == 'text':
            parts.append(str(block.get('text', "")))
    return "".join(parts)


def from_langchain_message(message: BaseMessage) -> Message:
    """Convert a LangChain message into a Message.

    Raises:
        ValueError: for message types other than system, human and
            AI messages.
    """
    match message.type:
        case 'system':
            role = 'system'
        case 'human':
            role = 'human'
        case 'ai' | 'AIMessageChunk':
            role = 'assistant'
        case _:
            raise ValueError(
                f"Unsupported message type: '{message.type}'"
            )
    return Message(role=role, content=message_text(message))
