"""Shared fixtures for flowengine tests.

Provides:
- A component library with small deterministic components
- A scheduler factory
- A StepRuntime factory for calling executors directly
- The A -> B -> C flow (builders live in builders.py)
"""

from __future__ import annotations

import time
from typing import Any, Dict, List

import pytest

from flowengine.components.library import Component, ComponentLibrary, ComponentPort
from flowengine.config import EngineConfig
from flowengine.engine.resolver import InputResolver
from flowengine.engine.scheduler import Scheduler
from flowengine.errors import StepExecutionError
from flowengine.models import ExecutionContext, Flow
from flowengine.steps.base import StepRuntime

from builders import action, make_flow


class CallRecorder:
    """Records component calls with their monotonic timestamps."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def record(self, component_id: str, inputs: Dict[str, Any]) -> None:
        self.calls.append({"component": component_id, "inputs": dict(inputs), "at": time.monotonic()})

    def ids(self) -> List[str]:
        return [call["component"] for call in self.calls]

    def count(self, component_id: str) -> int:
        return self.ids().count(component_id)


@pytest.fixture
def recorder() -> CallRecorder:
    return CallRecorder()


@pytest.fixture
def library(recorder: CallRecorder) -> ComponentLibrary:
    """Library with deterministic test components."""

    async def fetch(inputs, config):
        recorder.record("test.fetch", inputs)
        return {"value": config.get("value", 5), "user": {"name": "ada", "age": 36}}

    def double(inputs, config):
        recorder.record("test.double", inputs)
        return {"value": inputs["value"] * 2}

    async def is_positive(inputs, config):
        recorder.record("test.is_positive", inputs)
        return {"result": inputs["value"] > 0}

    async def echo(inputs, config):
        recorder.record("test.echo", inputs)
        return dict(inputs)

    async def fail(inputs, config):
        recorder.record("test.fail", inputs)
        raise StepExecutionError(config.get("message", "component failed"))

    async def crash(inputs, config):
        recorder.record("test.crash", inputs)
        raise RuntimeError("unexpected crash")

    return ComponentLibrary([
        Component(
            id="test.fetch", name="Fetch", category="identity", execute=fetch,
            outputs=[ComponentPort("value", "number"), ComponentPort("user", "object")],
        ),
        Component(
            id="test.double", name="Double", category="data", execute=double,
            inputs=[ComponentPort("value", "number", required=True)],
            outputs=[ComponentPort("value", "number")],
        ),
        Component(
            id="test.is_positive", name="Is Positive", category="governance", execute=is_positive,
            inputs=[ComponentPort("value", "number", required=True)],
            outputs=[ComponentPort("result", "boolean")],
        ),
        Component(id="test.echo", name="Echo", category="productivity", execute=echo),
        Component(id="test.fail", name="Fail", category="cloud", execute=fail),
        Component(id="test.crash", name="Crash", category="cloud", execute=crash),
    ])


@pytest.fixture
def make_scheduler(library: ComponentLibrary):
    """Factory: make_scheduler(**kwargs) -> Scheduler bound to the test library."""

    def factory(**kwargs: Any) -> Scheduler:
        kwargs.setdefault("library", library)
        return Scheduler(**kwargs)

    return factory


@pytest.fixture
def make_runtime(library: ComponentLibrary):
    """Factory for a StepRuntime that runs inline steps with no policy."""

    def factory(context: ExecutionContext = None, **kwargs: Any) -> StepRuntime:
        context = context or ExecutionContext()

        async def run_inline(step, ctx):
            raise AssertionError(f"unexpected inline step {step.id}")

        kwargs.setdefault("library", library)
        kwargs.setdefault("run_inline", run_inline)
        return StepRuntime(
            context=context,
            resolver=kwargs.pop("resolver", InputResolver()),
            config=kwargs.pop("config", EngineConfig()),
            **kwargs,
        )

    return factory


@pytest.fixture
def abc_flow() -> Flow:
    """A -> B -> C: fetch a value, double it, check it is positive."""
    return make_flow(
        [
            action("a", "test.fetch", outputs={"value": {"type": "variable", "path": "fetched"}}),
            action("b", "test.double", inputs={"value": {"type": "step", "value": "a", "path": "value"}}),
            action("c", "test.is_positive", inputs={"value": {"type": "step", "value": "b", "path": "value"}}),
        ],
        outputs={"positive": {"type": "step", "value": "c", "path": "result"}},
    )
