"""
Trace emission for pipeline runs.

The trace emitter is a LangChain callback handler. Passed as a
callback to a pipeline invocation, it observes the start and end of
the pipeline, of each stage, and of the model call, and records them
as `TraceEvent` objects nested under the run identifier of the
pipeline invocation. The events are handed to a bounded queue and
delivered to a collector by a background thread, so that tracing
never delays the return of the result to the caller.

Delivery is best effort. When the queue is full the event is dropped,
and a failure of the collector is logged; neither is ever raised in
the caller's thread.

Example:
    ```python
    from lmpipe.tracing import InMemoryCollector, TraceEmitter

    collector = InMemoryCollector()
    with TraceEmitter(collector) as tracer:
        pipeline.invoke({'information': "..."}, tracer=tracer)
    for event in collector.events:
        print(event.event, event.name, event.latency_ms)
    ```

Tracing to LangSmith is configured from the environment (see
`TracingSettings`), and the emitter is obtained from `create_tracer`.
There is one LangSmith emitter per tracing configuration, kept in
`trace_emitters` and shared by all pipelines; these emitters deliver
their queued events and are closed when the interpreter exits.
"""

import atexit
import queue
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

from lmpipe.config.config import TracingSettings
from lmpipe.language_models.messages import (
    Conversation,
    Message,
    Response,
    TokenUsage,
)
from lmpipe.language_models.langchain.conversion import message_text
from lmpipe.utils.lazy_dict import LazyLoadingDict
from lmpipe.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

EventKind = Literal['start', 'end', 'error']
RunType = Literal['chain', 'llm', 'prompt', 'parser']

# run types of the named pipeline stages
_STAGE_RUN_TYPES: dict[str, RunType] = {
    'render_prompt': 'prompt',
    'extract_text': 'parser',
}


class TraceEvent(BaseModel):
    """A start, end or error event of a run.

    Attributes:
        run_id: the run of the event (pipeline, stage or model call)
        parent_run_id: the enclosing run, None for the pipeline run
        trace_id: the run id of the pipeline invocation
        event: 'start', 'end' or 'error'
        run_type: 'chain', 'llm', 'prompt' or 'parser'
        name: the name of the run
        timestamp: time of the event (UTC)
        inputs: the inputs of the run, on start
        outputs: the outputs of the run, on end
        error: the error message, on error
        usage: token counts of a model call, on end
        latency_ms: duration of the run, on end or error
    """

    run_id: UUID
    parent_run_id: UUID | None = None
    trace_id: UUID
    event: EventKind
    run_type: RunType
    name: str
    timestamp: datetime
    inputs: dict[str, Any] | None = None
    outputs: dict[str, Any] | None = None
    error: str | None = None
    usage: TokenUsage | None = None
    latency_ms: float | None = None

    model_config = ConfigDict(frozen=True, extra='forbid')


class TraceCollector(Protocol):
    """Receives trace events, in the order in which they occurred."""

    def send(self, event: TraceEvent) -> None: ...


class InMemoryCollector:
    """Collects the trace events in a list."""

    def __init__(self) -> None:
        self.events: list[TraceEvent] = []
        self._lock = threading.Lock()

    def send(self, event: TraceEvent) -> None:
        with self._lock:
            self.events.append(event)

    def runs(self, trace_id: UUID | None = None) -> list[TraceEvent]:
        """The start events, optionally of one trace only."""
        return [
            e
            for e in self.events
            if e.event == 'start'
            and (trace_id is None or e.trace_id == trace_id)
        ]


class LangSmithCollector:
    """Sends trace events to a LangSmith project.

    A start event creates a run, an end or error event completes it.
    The calls to the LangSmith API are made on the emitter's worker
    thread.
    """

    def __init__(
        self, settings: TracingSettings, client: Any | None = None
    ) -> None:
        self.project = settings.project
        if client is None:
            try:
                from langsmith import Client
            except ImportError as e:
                raise ImportError(
                    "Tracing to LangSmith requires the 'langsmith' "
                    "package. Install it with: pip install langsmith"
                ) from e

            api_key = (
                settings.api_key.get_secret_value()
                if settings.api_key
                else None
            )
            client = Client(api_key=api_key, api_url=settings.endpoint)
        self.client = client

    def send(self, event: TraceEvent) -> None:
        match event.event:
            case 'start':
                self.client.create_run(
                    name=event.name,
                    inputs=event.inputs or {},
                    run_type=event.run_type,
                    id=event.run_id,
                    parent_run_id=event.parent_run_id,
                    trace_id=event.trace_id,
                    start_time=event.timestamp,
                    project_name=self.project,
                )
            case 'end':
                outputs = dict(event.outputs or {})
                if event.usage is not None:
                    outputs['usage_metadata'] = event.usage.model_dump()
                self.client.update_run(
                    event.run_id,
                    end_time=event.timestamp,
                    outputs=outputs,
                )
            case 'error':
                self.client.update_run(
                    event.run_id,
                    end_time=event.timestamp,
                    error=event.error,
                )


def _payload(value: Any) -> Any:
    """A JSON-friendly copy of a run input or output."""
    match value:
        case None | str() | bool() | int() | float():
            return value
        case Response():
            return value.model_dump(mode='json')
        case Message():
            return {'role': value.role, 'content': value.content}
        case Conversation():
            return [_payload(m) for m in value.messages]
        case BaseMessage():
            return {'role': value.type, 'content': message_text(value)}
        case BaseModel():
            return value.model_dump(mode='json')
        case dict():
            return {str(k): _payload(v) for k, v in value.items()}  # type: ignore
        case list() | tuple():
            return [_payload(v) for v in value]  # type: ignore
        case _:
            return repr(value)


def _as_dict(value: Any, key: str) -> dict[str, Any]:
    payload = _payload(value)
    if isinstance(payload, dict):
        return payload  # type: ignore
    return {key: payload}


@dataclass
class _RunInfo:
    trace_id: UUID
    run_type: RunType
    name: str
    started: float


class TraceEmitter(BaseCallbackHandler):
    """Callback handler that sends pipeline trace events to a
    collector from a background thread.

    Args:
        collector: the receiver of the events.
        queue_size: max number of events waiting for delivery. Events
            emitted while the queue is full are dropped.
        logger: the logger for delivery failures.
    """

    # handle events in the thread of the run, also in async runs,
    # to keep the order of occurrence
    run_inline = True

    def __init__(
        self,
        collector: TraceCollector,
        *,
        queue_size: int = 1000,
        logger: LoggerBase = logger,
    ) -> None:
        super().__init__()
        self.collector = collector
        self.logger = logger
        self.dropped = 0
        self._runs: dict[UUID, _RunInfo] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._queue: queue.Queue[TraceEvent | None] = queue.Queue(
            maxsize=queue_size
        )
        self._worker = threading.Thread(
            target=self._deliver, name="lmpipe-trace-emitter", daemon=True
        )
        self._worker.start()

    # --- delivery ----------------------------------------------------

    def _deliver(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self.collector.send(event)
            except Exception as e:
                self.logger.warning(
                    f"Trace delivery failed for run {event.run_id}: "  # type: ignore
                    + f"{type(e).__name__}: {e}"
                )
            finally:
                self._queue.task_done()

    def _emit(self, event: TraceEvent) -> None:
        if self._closed:
            self.dropped += 1
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            self.logger.warning(
                f"Trace queue full, event dropped: {event.event} "
                + f"{event.name} ({event.run_id})"
            )

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until the queued events have been delivered.

        Returns:
            False if the timeout expired first, True otherwise.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float | None = 5.0) -> None:
        """Deliver the queued events and stop the worker thread.
        Events emitted after closing are dropped."""
        if self._closed:
            return
        self._closed = True
        self.flush(timeout)
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            self.logger.warning("Trace emitter closed with undelivered events")
            return
        self._worker.join(timeout)

    def __enter__(self) -> 'TraceEmitter':
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # --- run bookkeeping ---------------------------------------------

    def _start(
        self,
        run_id: UUID,
        parent_run_id: UUID | None,
        run_type: RunType,
        name: str,
        inputs: dict[str, Any],
    ) -> None:
        with self._lock:
            parent = self._runs.get(parent_run_id) if parent_run_id else None
            trace_id = parent.trace_id if parent else run_id
            self._runs[run_id] = _RunInfo(
                trace_id, run_type, name, time.perf_counter()
            )
            self._emit(
                TraceEvent(
                    run_id=run_id,
                    parent_run_id=parent_run_id,
                    trace_id=trace_id,
                    event='start',
                    run_type=run_type,
                    name=name,
                    timestamp=datetime.now(timezone.utc),
                    inputs=inputs,
                )
            )

    def _finish(
        self,
        run_id: UUID,
        parent_run_id: UUID | None,
        *,
        outputs: dict[str, Any] | None = None,
        error: BaseException | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        with self._lock:
            info = self._runs.pop(run_id, None)
            if info is None:
                # not started under this handler
                return
            self._emit(
                TraceEvent(
                    run_id=run_id,
                    parent_run_id=parent_run_id,
                    trace_id=info.trace_id,
                    event='end' if error is None else 'error',
                    run_type=info.run_type,
                    name=info.name,
                    timestamp=datetime.now(timezone.utc),
                    outputs=outputs,
                    error=(
                        None
                        if error is None
                        else f"{type(error).__name__}: {error}"
                    ),
                    usage=usage,
                    latency_ms=(time.perf_counter() - info.started) * 1000,
                )
            )

    # --- LangChain callbacks -----------------------------------------

    def on_chain_start(
        self,
        serialized: dict[str, Any] | None,
        inputs: Any,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        name = str(
            kwargs.get('name') or (serialized or {}).get('name') or "chain"
        )
        run_type: RunType = kwargs.get('run_type') or _STAGE_RUN_TYPES.get(
            name, 'chain'
        )
        if run_type not in ('chain', 'llm', 'prompt', 'parser'):
            run_type = 'chain'
        self._start(
            run_id, parent_run_id, run_type, name, _as_dict(inputs, 'input')
        )

    def on_chain_end(
        self,
        outputs: Any,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        self._finish(
            run_id, parent_run_id, outputs=_as_dict(outputs, 'output')
        )

    def on_chain_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        self._finish(run_id, parent_run_id, error=error)

    def on_chat_model_start(
        self,
        serialized: dict[str, Any] | None,
        messages: Sequence[Sequence[BaseMessage]],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        name = str(
            kwargs.get('name')
            or (serialized or {}).get('name')
            or "chat_model"
        )
        self._start(
            run_id,
            parent_run_id,
            'llm',
            name,
            {'messages': [_payload(list(batch)) for batch in messages]},
        )

    def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        texts: list[str] = []
        input_tokens = output_tokens = total_tokens = 0
        for generations in response.generations:
            for generation in generations:
                texts.append(generation.text)
                message = getattr(generation, 'message', None)
                usage = getattr(message, 'usage_metadata', None)
                if usage:
                    input_tokens += usage.get('input_tokens', 0)
                    output_tokens += usage.get('output_tokens', 0)
                    total_tokens += usage.get('total_tokens', 0)
        self._finish(
            run_id,
            parent_run_id,
            outputs={'generations': texts},
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=total_tokens,
            ),
        )

    def on_llm_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        self._finish(run_id, parent_run_id, error=error)


def _create_langsmith_emitter(settings: TracingSettings) -> TraceEmitter:
    return TraceEmitter(
        LangSmithCollector(settings), queue_size=settings.queue_size
    )


# Public interface----------------------------------------------
trace_emitters: LazyLoadingDict[TracingSettings, TraceEmitter] = (
    LazyLoadingDict(_create_langsmith_emitter)
)


@atexit.register
def close_trace_emitters() -> None:
    """Deliver the queued events of the shared emitters, and stop
    them. Called at interpreter exit."""
    trace_emitters.clear()


def create_tracer(
    settings: TracingSettings | None = None,
    collector: TraceCollector | None = None,
    *,
    logger: LoggerBase = logger,
) -> TraceEmitter | None:
    """Create a trace emitter from the tracing settings.

    Args:
        settings: the tracing settings. If None, they are read from
            the environment.
        collector: the receiver of the events. If None, events are
            sent to the LangSmith project of the settings, which
            requires an API key.

    Returns:
        None if tracing is disabled, or if no collector is given and
            there is no API key. Otherwise, with a collector, a new
            trace emitter that the caller closes; without, the shared
            LangSmith emitter of the settings.
    """
    if settings is None:
        settings = TracingSettings()
    if not settings.enabled:
        return None
    if collector is None:
        if not settings.is_active():
            logger.warning(
                "Tracing enabled but no API key for the collector is "
                + "set: tracing disabled."
            )
            return None
        return trace_emitters[settings]
    return TraceEmitter(
        collector, queue_size=settings.queue_size, logger=logger
    )
