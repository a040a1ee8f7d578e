"""
This module implements creation of LangChain chat model objects,
wrapping the message exchange calls of the provider APIs behind a
unified interface. The model objects are memoized in the global
repository `langchain_models`, keyed by the settings that specify
them.

The settings are given as a LanguageModelSettings object or as a spec
given as argument to the create_model_from_spec function. The
LanguageModelSettings is also a member of the Settings object that is
read from config.toml.

Examples:

```python
from lmpipe.config.config import LanguageModelSettings
from lmpipe.language_models.langchain.models import (
    create_model_from_spec,
    create_model_from_settings,
    langchain_models,
)

settings = LanguageModelSettings(model="OpenAI/gpt-4o-mini")
model = langchain_models[settings]

# equivalent
model = create_model_from_settings(settings)
model = create_model_from_spec("OpenAI/gpt-4o-mini", temperature=0.0)

# offline models
echo = create_model_from_spec("Debug/echo")
```

Behaviour:
    Raises exceptions from LangChain and from itself. Provider
    packages are imported lazily; a missing package raises an
    ImportError naming it.

Note:
    Support for new model sources should be added here by extending
    the match ... case statement in _create_model_instance, and the
    ModelSource literal in the config module.
"""

from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel

from lmpipe.config.config import (
    LanguageModelSettings,
    ModelSource,
    ProviderParamValue,
)
from lmpipe.utils.lazy_dict import LazyLoadingDict


def _create_model_instance(
    model: LanguageModelSettings,
) -> BaseChatModel:
    """
    Factory function to create LangChain models while checking
    permissible sources.
    """
    model_source: ModelSource = model.get_model_source()
    model_name: str = model.get_model_name()
    kwargs: dict[str, Any]
    match model_source:
        case "Anthropic":
            try:
                from langchain_anthropic.chat_models import (
                    ChatAnthropic,
                )
            except ImportError as e:
                raise ImportError(
                    "Anthropic models require the "
                    "'langchain-anthropic' package. "
                    "Install it with: pip install langchain-anthropic"
                ) from e

            kwargs = {
                "model_name": model_name,
                "temperature": model.temperature,
                "max_tokens_to_sample": model.max_tokens or 1024,
                "timeout": model.timeout,
                "max_retries": model.max_retries,
                "stop": None,
            }
            kwargs.update(model.provider_params)
            return ChatAnthropic(**kwargs)

        case "Gemini":
            try:
                from langchain_google_genai import (
                    ChatGoogleGenerativeAI,
                )
            except ImportError as e:
                raise ImportError(
                    "Gemini models require the "
                    "'langchain-google-genai' package. "
                    "Install it with: pip install "
                    "langchain-google-genai"
                ) from e

            kwargs = {
                "model": model_name,
                "temperature": model.temperature,
                "max_retries": model.max_retries,
            }
            if model.max_tokens is not None:
                kwargs["max_output_tokens"] = model.max_tokens
            if model.timeout is not None:
                kwargs["timeout"] = model.timeout
            kwargs.update(model.provider_params)
            return ChatGoogleGenerativeAI(**kwargs)

        case "Mistral":
            try:
                from langchain_mistralai.chat_models import (
                    ChatMistralAI,
                )
            except ImportError as e:
                raise ImportError(
                    "Mistral models require the 'langchain-mistralai'"
                    " package. Install it with: pip install "
                    "langchain-mistralai"
                ) from e

            kwargs = {
                "model_name": model_name,
                "temperature": model.temperature,
                "max_retries": model.max_retries,
            }
            if model.max_tokens is not None:
                kwargs["max_tokens"] = model.max_tokens
            if model.timeout is not None:
                kwargs["timeout"] = int(model.timeout)
            kwargs.update(model.provider_params)
            return ChatMistralAI(**kwargs)

        case "OpenAI":
            try:
                from langchain_openai.chat_models import ChatOpenAI
            except ImportError as e:
                raise ImportError(
                    "OpenAI models require the 'langchain-openai'"
                    " package. Install it with: pip install "
                    "langchain-openai"
                ) from e

            kwargs = {
                "model": model_name,
                "temperature": model.temperature,
                "max_retries": model.max_retries,
                "use_responses_api": False,
            }
            if model.max_tokens is not None:
                kwargs["max_tokens"] = model.max_tokens
            if model.timeout is not None:
                kwargs["timeout"] = model.timeout
            kwargs.update(model.provider_params)
            return ChatOpenAI(**kwargs)

        case "Debug":
            from .fake_models import EchoChatModel, SequentialChatModel

            if model_name == "echo":
                return EchoChatModel(name="Debug echo chat")
            message = model.provider_params.get("message")
            return SequentialChatModel(
                name="Debug chat",
                model_name=model_name,
                message=None if message is None else str(message),
            )

        case _:
            raise ValueError(
                f"Unreachable code reached: invalid source {model_source}"
            )


# Public interface----------------------------------------------
langchain_models: LazyLoadingDict[LanguageModelSettings, BaseChatModel] = (
    LazyLoadingDict(_create_model_instance)
)


def create_model_from_spec(
    model: str,
    *,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    max_retries: int = 2,
    timeout: float | None = None,
    provider_params: dict[str, ProviderParamValue] | None = None,
) -> BaseChatModel:
    """
    Create LangChain model from specifications.

    Args:
        model: the model in the form source/model, such as
            'OpenAI/gpt-4o-mini'

    Returns:
        a LangChain chat model object.

    Raises ValueError, ValidationError for invalid specifications.
    """
    spec = LanguageModelSettings(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        max_retries=max_retries,
        timeout=timeout,
        provider_params=provider_params or {},
    )
    return langchain_models[spec]


def create_model_from_settings(
    settings: LanguageModelSettings,
) -> BaseChatModel:
    """
    Create LangChain model from a LanguageModelSettings object.

    Args:
        settings: a LanguageModelSettings object containing model
            configuration.

    Returns:
        a LangChain chat model object.
    """
    return langchain_models[settings]
