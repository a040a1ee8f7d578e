"""
Abstract base class of the model invokers.

A model invoker sends a rendered prompt to a text generation service,
configured by a `LanguageModelSettings` object (model identifier and
temperature), and returns the assistant response. Invokers do not
retry failed calls; failures are raised as `TransportError`.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator
from typing import Any
import asyncio

from lmpipe.config.config import LanguageModelSettings
from lmpipe.language_models.messages import Message, Response
from lmpipe.language_models.prompts import RenderedPrompt

# Runnable configuration (callbacks, tags, run name) forwarded to the
# underlying framework.
InvokeConfig = dict[str, Any]


def as_messages(prompt: RenderedPrompt) -> tuple[Message, ...]:
    """The messages of a rendered prompt. A flat string prompt is a
    single human message."""
    if isinstance(prompt, str):
        return (Message(role='human', content=prompt),)
    return tuple(prompt)


class ModelInvoker(ABC):
    """Abstract base class for model invokers."""

    def __init__(self, settings: LanguageModelSettings):
        self.settings = settings

    @abstractmethod
    def invoke(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Response:
        """
        Get the response of the model synchronously.

        Args:
            prompt: the rendered prompt, a string or a sequence of
                messages.
            config: optional runnable configuration, used to pass
                callbacks to the model call.

        Returns:
            The model's response.

        Raises:
            ConfigurationError: if the credential is missing.
            TransportError: if the service cannot complete the call.
        """
        pass

    async def ainvoke(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Response:
        """
        Get the response of the model asynchronously.

        Default implementation delegates to the synchronous invoke
        method in a thread pool.
        """
        return await asyncio.to_thread(self.invoke, prompt, config)

    def stream(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Iterator[str]:
        """
        Stream the text of the model's response.

        Default implementation yields the full response content at once.
        """
        response = self.invoke(prompt, config)
        if response.content:
            yield response.content

    async def astream(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> AsyncIterator[str]:
        response = await self.ainvoke(prompt, config)
        if response.content:
            yield response.content

    def __call__(
        self, prompt: RenderedPrompt, config: InvokeConfig | None = None
    ) -> Response:
        return self.invoke(prompt, config)
