"""Test trace emission"""

# pyright: basic

import os
import threading
import unittest
from unittest.mock import MagicMock, patch
from uuid import uuid4
from datetime import datetime, timezone

from pydantic import SecretStr
from langchain_core.callbacks import CallbackManager

from lmpipe.config.config import TracingSettings
from lmpipe.errors import MissingVariableError
from lmpipe.language_models.messages import TokenUsage
from lmpipe.language_models.prompts import ChatTemplate, StringTemplate
from lmpipe.pipeline import build_pipeline
from lmpipe.tracing import (
    InMemoryCollector,
    LangSmithCollector,
    TraceEmitter,
    TraceEvent,
    close_trace_emitters,
    create_tracer,
    trace_emitters,
)
from lmpipe.utils.logging import LoglistLogger

ECHO = {'model': "Debug/echo"}
NO_TRACING = TracingSettings(enabled=False)

TRACING_VARS = [
    'LANGSMITH_TRACING',
    'LANGCHAIN_TRACING_V2',
    'LANGSMITH_API_KEY',
    'LANGCHAIN_API_KEY',
    'LANGSMITH_PROJECT',
    'LANGCHAIN_PROJECT',
]


def _clean_environ() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in TRACING_VARS}


def _assistant_pipeline(**kwargs):
    template = ChatTemplate(
        [
            ("system", "You are a helpful assistant."),
            ("human", "{information}"),
        ],
        name="assistant",
    )
    return build_pipeline(template, ECHO, **kwargs)


class CountingCollector:
    def __init__(self):
        self.calls = 0

    def send(self, event):
        self.calls += 1


class FailingCollector:
    def send(self, event):
        raise ConnectionError("collector offline")


class BlockingCollector:
    def __init__(self):
        self.release = threading.Event()
        self.received = []

    def send(self, event):
        self.release.wait(5.0)
        self.received.append(event)


class TestTraceEvents(unittest.TestCase):

    def setUp(self):
        self.collector = InMemoryCollector()
        self.tracer = TraceEmitter(self.collector)

    def tearDown(self):
        self.tracer.close()

    def _events(self):
        self.assertTrue(self.tracer.flush(5.0))
        return self.collector.events

    def test_result_unchanged(self):
        pipeline = _assistant_pipeline(tracing=NO_TRACING)
        untraced = pipeline.invoke({'information': "X is a person."})
        traced = pipeline.invoke(
            {'information': "X is a person."}, tracer=self.tracer
        )
        self.assertEqual(untraced, traced)

    def test_event_order(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        pipeline.invoke({'information': "X is a person."})
        events = self._events()
        self.assertEqual(len(events), 10)
        chain_events = [
            (e.event, e.name) for e in events if e.run_type != 'llm'
        ]
        self.assertEqual(
            chain_events,
            [
                ('start', "assistant"),
                ('start', "render_prompt"),
                ('end', "render_prompt"),
                ('start', "model_call"),
                ('end', "model_call"),
                ('start', "extract_text"),
                ('end', "extract_text"),
                ('end', "assistant"),
            ],
        )
        # the model call is nested in the model_call stage
        self.assertEqual(events[4].run_type, 'llm')
        self.assertEqual(events[4].event, 'start')
        self.assertEqual(events[5].run_type, 'llm')
        self.assertEqual(events[5].event, 'end')
        self.assertEqual(events[4].parent_run_id, events[3].run_id)

    def test_run_types(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        pipeline.invoke({'information': "X is a person."})
        self._events()
        types = {e.name: e.run_type for e in self.collector.runs()}
        self.assertEqual(types["assistant"], 'chain')
        self.assertEqual(types["render_prompt"], 'prompt')
        self.assertEqual(types["model_call"], 'chain')
        self.assertEqual(types["extract_text"], 'parser')

    def test_nesting(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        pipeline.invoke({'information': "X is a person."})
        events = self._events()
        root = events[0]
        self.assertIsNone(root.parent_run_id)
        started = {e.run_id for e in events if e.event == 'start'}
        for event in events:
            self.assertEqual(event.trace_id, root.run_id)
            if event is not root and event.run_id != root.run_id:
                self.assertIn(event.parent_run_id, started)
        ended = {e.run_id for e in events if e.event == 'end'}
        self.assertEqual(started, ended)

    def test_usage(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        pipeline.invoke({'information': "X is a person."})
        events = self._events()
        llm_end = [
            e for e in events if e.run_type == 'llm' and e.event == 'end'
        ]
        self.assertEqual(len(llm_end), 1)
        usage = llm_end[0].usage
        self.assertIsNotNone(usage)
        self.assertEqual(usage.input_tokens, 9)
        self.assertEqual(usage.output_tokens, 4)
        self.assertEqual(usage.total_tokens, 13)
        self.assertIsNotNone(llm_end[0].latency_ms)

    def test_separate_traces(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        pipeline.invoke({'information': "first"})
        pipeline.invoke({'information': "second"})
        self._events()
        roots = [r for r in self.collector.runs() if r.parent_run_id is None]
        self.assertEqual(len(roots), 2)
        self.assertNotEqual(roots[0].trace_id, roots[1].trace_id)
        self.assertEqual(len(self.collector.runs(roots[1].trace_id)), 5)

    def test_error_event(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        with self.assertRaises(MissingVariableError):
            pipeline.invoke({})
        events = self._events()
        errors = [e for e in events if e.event == 'error']
        self.assertEqual(
            [e.name for e in errors], ["render_prompt", "assistant"]
        )
        self.assertIn("information", errors[0].error)
        self.assertFalse(any(e.run_type == 'llm' for e in events))

    def test_tracer_per_invocation(self):
        pipeline = _assistant_pipeline(tracing=NO_TRACING)
        self.assertIsNone(pipeline.tracer)
        pipeline.invoke({'information': "X"})
        self.assertEqual(len(self._events()), 0)
        pipeline.invoke({'information': "X"}, tracer=self.tracer)
        self.assertEqual(len(self._events()), 10)

    def test_tracer_with_callback_manager(self):
        manager = CallbackManager(handlers=[])
        pipeline = _assistant_pipeline(tracing=NO_TRACING)
        result = pipeline.invoke(
            {'information': "X"},
            tracer=self.tracer,
            config={'callbacks': manager},
        )
        self.assertEqual(result, "X")
        self.assertEqual(len(self._events()), 10)
        # the caller's manager is not modified
        self.assertEqual(manager.handlers, [])

    def test_stream_events(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        chunks = pipeline.stream({'information': "X is a person."})
        self.assertEqual("".join(chunks), "X is a person.")
        events = self._events()
        self.assertEqual(len(events), 8)
        root = events[0]
        self.assertEqual(root.event, 'start')
        self.assertEqual(root.name, "assistant")
        self.assertIsNone(root.parent_run_id)
        self.assertEqual(events[-1].event, 'end')
        self.assertEqual(events[-1].run_id, root.run_id)
        for event in events:
            self.assertEqual(event.trace_id, root.run_id)
        stages = {
            e.name: e
            for e in events
            if e.event == 'start' and e.run_type != 'llm'
        }
        self.assertEqual(
            set(stages), {"assistant", "render_prompt", "model_call"}
        )
        self.assertEqual(stages["render_prompt"].run_type, 'prompt')
        llm = [e for e in events if e.run_type == 'llm']
        self.assertEqual([e.event for e in llm], ['start', 'end'])
        self.assertEqual(llm[0].parent_run_id, stages["model_call"].run_id)

    def test_stream_missing_variable(self):
        pipeline = _assistant_pipeline(tracer=self.tracer)
        with self.assertRaises(MissingVariableError):
            list(pipeline.stream({}))
        events = self._events()
        self.assertEqual(events[-1].event, 'error')
        self.assertFalse(any(e.run_type == 'llm' for e in events))


class TestAsyncTraceEvents(unittest.IsolatedAsyncioTestCase):

    async def test_ainvoke(self):
        collector = InMemoryCollector()
        with TraceEmitter(collector) as tracer:
            pipeline = _assistant_pipeline(tracer=tracer)
            result = await pipeline.ainvoke({'information': "async"})
            tracer.flush(5.0)
        self.assertEqual(result, "async")
        self.assertEqual(len(collector.events), 10)
        self.assertEqual(collector.events[0].name, "assistant")
        self.assertEqual(collector.events[-1].name, "assistant")

    async def test_astream(self):
        collector = InMemoryCollector()
        with TraceEmitter(collector) as tracer:
            pipeline = _assistant_pipeline(tracer=tracer)
            chunks = [
                c async for c in pipeline.astream({'information': "async"})
            ]
            tracer.flush(5.0)
        self.assertEqual("".join(chunks), "async")
        self.assertEqual(len(collector.events), 8)
        self.assertEqual(collector.events[0].name, "assistant")
        self.assertEqual(collector.events[-1].name, "assistant")


class TestDelivery(unittest.TestCase):

    def test_collector_failure_logged(self):
        logger = LoglistLogger()
        tracer = TraceEmitter(FailingCollector(), logger=logger)
        pipeline = build_pipeline(
            StringTemplate("{a}"), ECHO, tracer=tracer
        )
        result = pipeline.invoke({'a': "still works"})
        tracer.close()
        self.assertEqual(result, "still works")
        self.assertGreater(logger.count_logs(level=1), 0)
        self.assertIn("collector offline", logger.get_logs()[0])

    def test_queue_full(self):
        logger = LoglistLogger()
        collector = BlockingCollector()
        tracer = TraceEmitter(collector, queue_size=1, logger=logger)
        pipeline = build_pipeline(
            StringTemplate("{a}"), ECHO, tracer=tracer
        )
        result = pipeline.invoke({'a': "busy"})
        self.assertEqual(result, "busy")
        self.assertGreater(tracer.dropped, 0)
        self.assertIn("dropped", logger.get_logs()[0])
        collector.release.set()
        tracer.close()
        self.assertEqual(len(collector.received) + tracer.dropped, 10)

    def test_flush_timeout(self):
        collector = BlockingCollector()
        tracer = TraceEmitter(collector)
        pipeline = build_pipeline(
            StringTemplate("{a}"), ECHO, tracer=tracer
        )
        pipeline.invoke({'a': "slow"})
        self.assertFalse(tracer.flush(0.05))
        collector.release.set()
        self.assertTrue(tracer.flush(5.0))
        tracer.close()

    def test_emit_after_close(self):
        collector = InMemoryCollector()
        tracer = TraceEmitter(collector)
        tracer.close()
        pipeline = build_pipeline(
            StringTemplate("{a}"), ECHO, tracer=tracer
        )
        self.assertEqual(pipeline.invoke({'a': "late"}), "late")
        self.assertEqual(len(collector.events), 0)
        self.assertEqual(tracer.dropped, 10)


class TestCreateTracer(unittest.TestCase):

    def test_disabled(self):
        collector = CountingCollector()
        tracer = create_tracer(NO_TRACING, collector)
        self.assertIsNone(tracer)
        pipeline = _assistant_pipeline(tracer=tracer, tracing=NO_TRACING)
        self.assertEqual(
            pipeline.invoke({'information': "X is a person."}),
            "X is a person.",
        )
        self.assertEqual(collector.calls, 0)

    def test_enabled_with_collector(self):
        collector = CountingCollector()
        tracer = create_tracer(
            TracingSettings(enabled=True, queue_size=10), collector
        )
        self.assertIsInstance(tracer, TraceEmitter)
        pipeline = _assistant_pipeline(tracer=tracer)
        pipeline.invoke({'information': "X"})
        tracer.close()
        self.assertEqual(collector.calls, 10)

    def test_enabled_without_key(self):
        logger = LoglistLogger()
        with patch.dict(os.environ, _clean_environ(), clear=True):
            settings = TracingSettings(enabled=True)
            tracer = create_tracer(settings, logger=logger)
        self.assertIsNone(tracer)
        self.assertEqual(logger.count_logs(level=1), 1)

    def test_from_environment(self):
        env = _clean_environ()
        env['LANGSMITH_TRACING'] = "true"
        env['LANGSMITH_API_KEY'] = "ls-test-key"
        env['LANGSMITH_PROJECT'] = "lmpipe-tests"
        env['LMPIPE_TRACING_QUEUE_SIZE'] = "50"
        with patch.dict(os.environ, env, clear=True):
            settings = TracingSettings()
        self.assertTrue(settings.enabled)
        self.assertTrue(settings.is_active())
        self.assertEqual(settings.project, "lmpipe-tests")
        self.assertEqual(settings.queue_size, 50)

    def test_disabled_from_environment(self):
        with patch.dict(os.environ, _clean_environ(), clear=True):
            self.assertIsNone(create_tracer())

    def test_langchain_tracer_off(self):
        env = _clean_environ()
        env['LANGSMITH_TRACING'] = "true"
        handlers = []

        def capture(text, config):
            manager = config.get('callbacks')
            handlers.extend(
                type(h).__name__ for h in getattr(manager, 'handlers', [])
            )
            return text

        logger = LoglistLogger()
        with patch.dict(os.environ, env, clear=True):
            self.assertIsNone(create_tracer(logger=logger))
            pipeline = _assistant_pipeline()
            self.assertIsNone(pipeline.tracer)
            result = pipeline.then(capture).invoke({'information': "X"})
        self.assertEqual(result, "X")
        self.assertEqual(logger.count_logs(level=1), 1)
        self.assertNotIn("LangChainTracer", handlers)


class TestSharedEmitter(unittest.TestCase):

    def setUp(self):
        self.settings = TracingSettings(
            enabled=True, api_key=SecretStr("ls-x"), queue_size=100
        )
        patcher = patch('lmpipe.tracing.LangSmithCollector')
        self.collector_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(close_trace_emitters)

    def _worker_count(self):
        return sum(
            1
            for t in threading.enumerate()
            if t.name == "lmpipe-trace-emitter" and t.is_alive()
        )

    def test_one_emitter_per_settings(self):
        before = self._worker_count()
        pipelines = [
            _assistant_pipeline(tracing=self.settings) for _ in range(20)
        ]
        tracers = {id(p.tracer) for p in pipelines}
        self.assertEqual(len(tracers), 1)
        self.assertIs(pipelines[0].tracer, trace_emitters[self.settings])
        self.assertEqual(self._worker_count(), before + 1)
        self.collector_class.assert_called_once_with(self.settings)

    def test_closed_at_exit(self):
        pipeline = _assistant_pipeline(tracing=self.settings)
        tracer = pipeline.tracer
        pipeline.invoke({'information': "X"})
        close_trace_emitters()
        collector = self.collector_class.return_value
        self.assertEqual(collector.send.call_count, 10)
        self.assertFalse(tracer._worker.is_alive())
        self.assertEqual(len(trace_emitters), 0)
        # a new emitter is created on demand
        self.assertIsNot(create_tracer(self.settings), tracer)


class TestLangSmithCollector(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        settings = TracingSettings(
            enabled=True,
            api_key=SecretStr("ls-test-key"),
            project="lmpipe-tests",
        )
        self.collector = LangSmithCollector(settings, client=self.client)

    def _event(self, kind, **kwargs):
        run_id = uuid4()
        return TraceEvent(
            run_id=run_id,
            trace_id=run_id,
            event=kind,
            run_type='chain',
            name="assistant",
            timestamp=datetime.now(timezone.utc),
            **kwargs,
        )

    def test_start(self):
        event = self._event('start', inputs={'information': "X"})
        self.collector.send(event)
        self.client.create_run.assert_called_once()
        kwargs = self.client.create_run.call_args.kwargs
        self.assertEqual(kwargs['id'], event.run_id)
        self.assertEqual(kwargs['project_name'], "lmpipe-tests")
        self.assertEqual(kwargs['inputs'], {'information': "X"})

    def test_end(self):
        event = self._event(
            'end',
            outputs={'output': "X"},
            usage=TokenUsage(input_tokens=2, output_tokens=1),
        )
        self.collector.send(event)
        self.client.update_run.assert_called_once()
        kwargs = self.client.update_run.call_args.kwargs
        self.assertEqual(kwargs['outputs']['output'], "X")
        self.assertEqual(
            kwargs['outputs']['usage_metadata']['total_tokens'], 3
        )

    def test_error(self):
        event = self._event('error', error="TransportError: offline")
        self.collector.send(event)
        kwargs = self.client.update_run.call_args.kwargs
        self.assertEqual(kwargs['error'], "TransportError: offline")

    def test_pipeline(self):
        with TraceEmitter(self.collector) as tracer:
            pipeline = _assistant_pipeline(tracer=tracer)
            pipeline.invoke({'information': "X"})
        self.assertEqual(self.client.create_run.call_count, 5)
        self.assertEqual(self.client.update_run.call_count, 5)


if __name__ == "__main__":
    unittest.main()
