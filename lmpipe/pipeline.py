"""
Composition of pipeline stages.

A pipeline is a sequence of stages executed in order on the caller's
thread, each stage receiving the output of the previous one. Stages
are composed with `then` (or `compose`, or the `|` operator); the
composition is associative. Stages may be other pipelines, LangChain
runnables, or plain callables, which are wrapped as named LangChain
runnables. A callable accepting a `config` argument receives the
runnable configuration, which carries the callbacks of the run.

The standard pipeline renders a template, calls a model, and extracts
the text of the response:

    ```python
    from lmpipe.language_models.prompts import ChatTemplate
    from lmpipe.pipeline import build_pipeline

    template = ChatTemplate([
        ("system", "You are a helpful assistant."),
        ("human", "{information}"),
    ])
    pipeline = build_pipeline(template, {'model': "OpenAI/gpt-4o-mini"})
    text = pipeline.invoke({'information': "X is a person."})
    ```

Errors of the stages propagate to the caller: a missing template
variable raises `MissingVariableError` before the model is called, a
failed model call raises `TransportError`. There are no partial
results. Pipelines keep no state between invocations.

When a trace emitter is given (or tracing is enabled in the
environment), it is attached as callback to each invocation and
observes the pipeline run, the stages and the model call. LangChain's
own environment-driven tracer is switched off during invocations, so
that a run is never reported by another route.
"""

from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Union

from langchain_core.callbacks import (
    BaseCallbackHandler,
    BaseCallbackManager,
    Callbacks,
)
from langchain_core.runnables import (
    Runnable,
    RunnableConfig,
    RunnableGenerator,
    RunnableLambda,
)
from langsmith.run_helpers import tracing_context

from lmpipe.config.config import (
    LanguageModelSettings,
    Settings,
    TracingSettings,
)
from lmpipe.language_models.base import ModelInvoker
from lmpipe.language_models.langchain.adapter import LangChainModelInvoker
from lmpipe.language_models.parsers import TextExtractor
from lmpipe.language_models.prompts import (
    RenderedPrompt,
    StringTemplate,
    Template,
    TemplateValue,
    prompt_library,
)
from lmpipe.tracing import create_tracer
from lmpipe.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

Stage = Union['Pipeline', Runnable[Any, Any], Callable[..., Any]]


def _stage_name(stage: Callable[..., Any]) -> str:
    name = getattr(stage, 'name', None) or getattr(stage, '__name__', None)
    return str(name) if name else type(stage).__name__


def as_runnable(stage: Stage) -> Runnable[Any, Any]:
    """The LangChain runnable of a stage."""
    match stage:
        case Pipeline():
            return stage.runnable
        case Runnable():
            return stage
        case _ if callable(stage):
            return RunnableLambda(stage, name=_stage_name(stage))
        case _:
            raise TypeError(
                f"Invalid pipeline stage: {type(stage).__name__}"
            )


@contextmanager
def _own_tracing() -> Iterator[None]:
    # Runs are traced by the given emitter only. LangChain's own
    # environment-driven tracer stays off, also when tracing resolved
    # to inactive.
    with tracing_context(enabled=False):
        yield


def _with_handler(
    callbacks: Callbacks, handler: BaseCallbackHandler
) -> Callbacks:
    match callbacks:
        case None:
            return [handler]
        case BaseCallbackManager():
            manager = callbacks.copy()
            manager.add_handler(handler, inherit=True)
            return manager
        case _:
            return list(callbacks) + [handler]


class Pipeline:
    """A sequence of stages, invoked as a unit.

    Args:
        runnable: the LangChain runnable executing the stages.
        name: the name of the pipeline run in traces.
        tracer: a callback handler attached to every invocation,
            unless another one is given to the invocation.
    """

    def __init__(
        self,
        runnable: Runnable[Any, Any],
        name: str | None = None,
        tracer: BaseCallbackHandler | None = None,
    ) -> None:
        self.runnable = runnable
        self.name = name or "pipeline"
        self.tracer = tracer

    @classmethod
    def from_stages(
        cls,
        *stages: Stage,
        name: str | None = None,
        tracer: BaseCallbackHandler | None = None,
    ) -> 'Pipeline':
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        runnable = as_runnable(stages[0])
        for stage in stages[1:]:
            runnable = runnable | as_runnable(stage)
        return Pipeline(runnable, name=name, tracer=tracer)

    def then(self, stage: Stage) -> 'Pipeline':
        """A new pipeline feeding the output of this one to stage."""
        return Pipeline(
            self.runnable | as_runnable(stage),
            name=self.name,
            tracer=self.tracer,
        )

    def __or__(self, stage: Stage) -> 'Pipeline':
        return self.then(stage)

    def _config(
        self,
        tracer: BaseCallbackHandler | None,
        config: RunnableConfig | None,
    ) -> RunnableConfig:
        run_config: RunnableConfig = {'run_name': self.name}
        if config:
            run_config.update(config)
        if tracer is not None:
            run_config['callbacks'] = _with_handler(
                run_config.get('callbacks'), tracer
            )
        return run_config

    def invoke(
        self,
        inputs: Any,
        *,
        tracer: BaseCallbackHandler | None = None,
        config: RunnableConfig | None = None,
    ) -> Any:
        """Run the stages on inputs and return the output of the last
        stage.

        Args:
            inputs: the input of the first stage; for the standard
                pipeline, the mapping of the template variables.
            tracer: a callback handler observing this invocation.
            config: additional LangChain runnable configuration.
        """
        tracer = tracer or self.tracer
        with _own_tracing():
            return self.runnable.invoke(inputs, self._config(tracer, config))

    async def ainvoke(
        self,
        inputs: Any,
        *,
        tracer: BaseCallbackHandler | None = None,
        config: RunnableConfig | None = None,
    ) -> Any:
        tracer = tracer or self.tracer
        with _own_tracing():
            return await self.runnable.ainvoke(
                inputs, self._config(tracer, config)
            )

    def batch(
        self,
        inputs: Sequence[Any],
        *,
        tracer: BaseCallbackHandler | None = None,
        config: RunnableConfig | None = None,
    ) -> list[Any]:
        """Invoke the pipeline on each of the inputs. Each input is an
        independent invocation; the first error is raised."""
        tracer = tracer or self.tracer
        with _own_tracing():
            return self.runnable.batch(
                list(inputs), self._config(tracer, config)
            )

    def stream(
        self,
        inputs: Any,
        *,
        tracer: BaseCallbackHandler | None = None,
        config: RunnableConfig | None = None,
    ) -> Iterator[Any]:
        tracer = tracer or self.tracer
        with _own_tracing():
            yield from self.runnable.stream(
                inputs, self._config(tracer, config)
            )

    def __repr__(self) -> str:
        return f"Pipeline(name={self.name!r}, runnable={self.runnable!r})"


def compose(left: Stage, right: Stage) -> Pipeline:
    """The pipeline feeding the output of left to right."""
    if isinstance(left, Pipeline):
        return left.then(right)
    return Pipeline.from_stages(left, right)


class ModelPipeline(Pipeline):
    """The standard pipeline: render_prompt, model_call and,
    optionally, extract_text.

    Attributes:
        template: the prompt template
        invoker: the model invoker
        extract: whether the text of the response is extracted
    """

    def __init__(
        self,
        template: Template,
        invoker: ModelInvoker,
        *,
        extract: bool = True,
        name: str | None = None,
        tracer: BaseCallbackHandler | None = None,
    ) -> None:
        self.template = template
        self.invoker = invoker
        self.extract = extract
        stages: list[Runnable[Any, Any]] = [
            RunnableLambda(template.render, name="render_prompt"),
            RunnableLambda(
                invoker.invoke, afunc=invoker.ainvoke, name="model_call"
            ),
        ]
        if extract:
            stages.append(as_runnable(TextExtractor()))
        runnable = stages[0]
        for stage in stages[1:]:
            runnable = runnable | stage
        super().__init__(
            runnable, name=name or template.name or "pipeline", tracer=tracer
        )
        # streamed runs yield the text chunks of the model call
        self.streaming: Runnable[Any, str] = RunnableLambda(
            template.render, name="render_prompt"
        ) | RunnableGenerator(
            self._stream_model, self._astream_model, name="model_call"
        )

    def render(
        self, inputs: dict[str, TemplateValue] | None = None
    ) -> RenderedPrompt:
        """The prompt the pipeline would send to the model."""
        return self.template.render(inputs)

    def _stream_model(
        self, prompts: Iterator[RenderedPrompt], config: RunnableConfig
    ) -> Iterator[str]:
        for prompt in prompts:
            yield from self.invoker.stream(prompt, config)  # type: ignore

    async def _astream_model(
        self, prompts: AsyncIterator[RenderedPrompt], config: RunnableConfig
    ) -> AsyncIterator[str]:
        async for prompt in prompts:
            async for chunk in self.invoker.astream(
                prompt, config  # type: ignore
            ):
                yield chunk

    def stream(
        self,
        inputs: Any,
        *,
        tracer: BaseCallbackHandler | None = None,
        config: RunnableConfig | None = None,
    ) -> Iterator[str]:
        """Stream the text of the response as it is generated. The
        template is rendered before the model is called; the chunks
        are text also when the pipeline does not extract it."""
        tracer = tracer or self.tracer
        with _own_tracing():
            yield from self.streaming.stream(
                inputs, self._config(tracer, config)
            )

    async def astream(
        self,
        inputs: Any,
        *,
        tracer: BaseCallbackHandler | None = None,
        config: RunnableConfig | None = None,
    ) -> AsyncIterator[str]:
        tracer = tracer or self.tracer
        with _own_tracing():
            async for chunk in self.streaming.astream(
                inputs, self._config(tracer, config)
            ):
                yield chunk


def _resolve_settings(
    user_settings: (
        LanguageModelSettings | Settings | dict[str, Any] | None
    ),
) -> LanguageModelSettings:
    match user_settings:
        case LanguageModelSettings():
            return user_settings
        case Settings():
            return user_settings.major
        case dict() if bool(user_settings):
            return Settings(major=user_settings).major  # type: ignore
        case None | dict():
            return Settings().major
        case _:
            raise TypeError(
                "Invalid settings type: " + type(user_settings).__name__
            )


def build_pipeline(
    template: Template | str,
    settings: (
        LanguageModelSettings | Settings | dict[str, Any] | None
    ) = None,
    *,
    invoker: ModelInvoker | None = None,
    extract: bool = True,
    name: str | None = None,
    tracer: BaseCallbackHandler | None = None,
    tracing: TracingSettings | None = None,
) -> ModelPipeline:
    """
    Assembles the standard pipeline from a template and a model
    specification.

    Settings Hierarchy (highest to lowest priority):
    1. settings parameter (if provided)
    2. config.toml file settings
    3. Default settings from Settings class

    Args:
        template: a template, or the text of a flat string template.
        settings: the model specification: a LanguageModelSettings
            object, a dictionary with its fields, or a Settings object
            (the major model is used). If None, the major model of
            the configuration file.
        invoker: a model invoker to use instead of the one created
            from settings.
        extract: if True (default), the pipeline returns the text of
            the response, otherwise the Response object.
        name: the name of the pipeline in traces.
        tracer: a callback handler attached to every invocation.
        tracing: the tracing settings used to create a tracer when
            none is given. If None, read from the environment.

    Returns:
        the pipeline.

    Raises:
        ValueError, ValidationError: for invalid settings. Missing
            credentials are reported at the first invocation.
    """
    if isinstance(template, str):
        template = StringTemplate(template, name=name)
    if invoker is None:
        invoker = LangChainModelInvoker(_resolve_settings(settings))
    if tracer is None:
        tracer = create_tracer(tracing)
    pipeline = ModelPipeline(
        template, invoker, extract=extract, name=name, tracer=tracer
    )
    logger.debug(
        f"Pipeline '{pipeline.name}' created for {invoker.settings.model}"
    )
    return pipeline


def create_pipeline(
    prompt_name: str,
    user_settings: (
        LanguageModelSettings | Settings | dict[str, Any] | None
    ) = None,
    *,
    extract: bool = True,
    tracer: BaseCallbackHandler | None = None,
) -> ModelPipeline:
    """
    Creates a pipeline from a prompt of the prompt library.

    Args:
        prompt_name: the name of a predefined prompt, or of a prompt
            registered with create_prompt.
        user_settings: optional settings to override the configured
            major model (see build_pipeline).

    Raises:
        ValueError: if no prompt is registered under prompt_name.

    Example:
        ```python
        pipeline = create_pipeline("summary", {'model': "Debug/echo"})
        text = pipeline.invoke({'information': "Ada Lovelace was..."})
        ```
    """
    template = prompt_library[prompt_name].to_template()
    return build_pipeline(
        template,
        user_settings,
        extract=extract,
        name=prompt_name,
        tracer=tracer,
    )
