"""
Offline chat models for the 'Debug' model source.

These are LangChain chat models that reply without calling a
provider, used to test pipelines and to run them without credentials.
They report token usage as whitespace-separated word counts.

    - `EchoChatModel` ('Debug/echo') replies with the content of the
      last input message.
    - `SequentialChatModel` (any other 'Debug/...' model) replies with
      "Message 1", "Message 2", ... as the conversation grows, or
      always with the same message, if one is given.
"""

from typing import Any

from langchain_core.callbacks import CallbackManagerForLLMRun
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatResult

from .conversion import message_text


def _count_tokens(text: str) -> int:
    return len(text.split())


class _FakeChatModel(BaseChatModel):
    model_name: str = "debug"

    def _reply(self, messages: list[BaseMessage]) -> str:
        raise NotImplementedError

    def _generate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: CallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> ChatResult:
        text = self._reply(messages)
        input_tokens = sum(_count_tokens(message_text(m)) for m in messages)
        output_tokens = _count_tokens(text)
        message = AIMessage(
            content=text,
            usage_metadata={
                'input_tokens': input_tokens,
                'output_tokens': output_tokens,
                'total_tokens': input_tokens + output_tokens,
            },
            response_metadata={'model_name': self.model_name},
        )
        return ChatResult(generations=[ChatGeneration(message=message)])

    @property
    def _identifying_params(self) -> dict[str, Any]:
        return {'model_name': self.model_name}


class EchoChatModel(_FakeChatModel):
    """Replies with the content of the last input message."""

    model_name: str = "echo"

    @property
    def _llm_type(self) -> str:
        return "echo-chat"

    def _reply(self, messages: list[BaseMessage]) -> str:
        return message_text(messages[-1]) if messages else ""


class SequentialChatModel(_FakeChatModel):
    """Replies with numbered messages, or with a constant message. The
    number of the reply is one more than the number of assistant
    messages in the input, so that the reply depends on the
    conversation only."""

    prefix: str = "Message"
    message: str | None = None

    @property
    def _llm_type(self) -> str:
        return "sequential-chat"

    def _reply(self, messages: list[BaseMessage]) -> str:
        if self.message is not None:
            return self.message
        count = sum(1 for m in messages if isinstance(m, AIMessage))
        return f"{self.prefix} {count + 1}"
