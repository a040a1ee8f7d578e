"""
LangChain implementation of the model invoker.

The invoker converts the rendered prompt into LangChain messages,
calls the chat model selected by the settings, and converts the reply
into a `Response` with its token usage. The runnable configuration
given to `invoke` is forwarded to the chat model, so that callback
handlers (such as the trace emitter) observe the model call.

The credential of the generation service is checked at the first
invocation. Failures of the provider call are raised as
`TransportError`, chained to the provider exception; they are not
retried here (the provider client retries up to `max_retries` times).
"""

from collections.abc import AsyncIterator, Iterator
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage

from lmpipe.config.config import LanguageModelSettings, check_credentials
from lmpipe.errors import PipelineError, TransportError
from lmpipe.language_models.base import (
    InvokeConfig,
    ModelInvoker,
    as_messages,
)
from lmpipe.language_models.messages import Message, Response, TokenUsage
from lmpipe.language_models.prompts import RenderedPrompt
from lmpipe.utils.logging import LoggerBase, get_logger
from .conversion import message_text, to_langchain_messages
from .models import create_model_from_settings

logger: LoggerBase = get_logger(__name__)


def _usage(message: BaseMessage) -> TokenUsage:
    usage: Any = getattr(message, 'usage_metadata', None)
    if not usage:
        return TokenUsage()
    return TokenUsage(
        input_tokens=usage.get('input_tokens', 0),
        output_tokens=usage.get('output_tokens', 0),
        total_tokens=usage.get('total_tokens', 0),
    )


class LangChainModelInvoker(ModelInvoker):
    """Model invoker for LangChain chat models.

    Args:
        settings: the model specification.
        model: an optional LangChain chat model, used instead of the
            model created from the settings (for example, a model
            configured outside lmpipe).
    """

    def __init__(
        self,
        settings: LanguageModelSettings,
        model: BaseChatModel | None = None,
    ):
        super().__init__(settings)
        self._model = model

    @property
    def model(self) -> BaseChatModel:
        """The LangChain chat model, created at first use."""
        if self._model is None:
            check_credentials(self.settings)
            self._model = create_model_from_settings(self.settings)
        return self._model

    def _convert_response(self, reply: BaseMessage) -> Response:
        return Response(
            message=Message(role='assistant', content=message_text(reply)),
            usage=_usage(reply),
            model=self.settings.model,
            metadata=dict(reply.response_metadata),
        )

    def _transport_error(self, e: Exception) -> TransportError:
        logger.error(
            f"Call to {self.settings.model} failed: "
            + f"{type(e).__name__}: {e}"
        )
        return TransportError(
            f"Call to {self.settings.model} failed: {e}",
            model=self.settings.model,
        )

    def invoke(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Response:
        model = self.model
        lc_messages = to_langchain_messages(as_messages(prompt))
        try:
            reply = model.invoke(lc_messages, config=config)  # type: ignore
        except PipelineError:
            raise
        except Exception as e:
            raise self._transport_error(e) from e
        return self._convert_response(reply)

    async def ainvoke(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Response:
        model = self.model
        lc_messages = to_langchain_messages(as_messages(prompt))
        try:
            reply = await model.ainvoke(lc_messages, config=config)  # type: ignore
        except PipelineError:
            raise
        except Exception as e:
            raise self._transport_error(e) from e
        return self._convert_response(reply)

    def stream(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Iterator[str]:
        model = self.model
        lc_messages = to_langchain_messages(as_messages(prompt))
        try:
            for chunk in model.stream(lc_messages, config=config):  # type: ignore
                text = message_text(chunk)
                if text:
                    yield text
        except PipelineError:
            raise
        except Exception as e:
            raise self._transport_error(e) from e

    async def astream(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> AsyncIterator[str]:
        model = self.model
        lc_messages = to_langchain_messages(as_messages(prompt))
        try:
            async for chunk in model.astream(lc_messages, config=config):  # type: ignore
                text = message_text(chunk)
                if text:
                    yield text
        except PipelineError:
            raise
        except Exception as e:
            raise self._transport_error(e) from e


def create_invoker(
    settings: LanguageModelSettings | dict[str, Any],
) -> LangChainModelInvoker:
    """Create a model invoker from settings or from a dictionary with
    the fields of LanguageModelSettings."""
    if isinstance(settings, dict):
        settings = LanguageModelSettings(**settings)
    return LangChainModelInvoker(settings)
