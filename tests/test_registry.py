"""Unit tests for the Step Executor Registry

Tests cover:
- Built-in step type registration
- Executor instance creation
- Required config validation
- Registering a new step type
- Scheduler executor overrides
"""

import pytest

from flowengine.models import Step
from flowengine.steps import (
    STEP_EXECUTOR_REGISTRY,
    STEP_EXECUTORS,
    BaseStepExecutor,
    StepExecutorDefinition,
    create_executor,
    get_executor_definition,
    is_step_type_registered,
    list_step_types,
    register_step_executor,
)
from flowengine.steps.action import ActionExecutor

from builders import action, make_flow

BUILT_IN = {"action", "condition", "transform", "custom", "wait", "loop", "parallel"}


class TestStepExecutorDefinition:
    def test_valid_definition(self):
        definition = StepExecutorDefinition(step_type="notify", display_name="Notify", description="")
        assert definition.required_config == []

    def test_empty_step_type_rejected(self):
        with pytest.raises(ValueError, match="step_type"):
            StepExecutorDefinition(step_type="", display_name="X", description="")

    def test_empty_display_name_rejected(self):
        with pytest.raises(ValueError, match="display_name"):
            StepExecutorDefinition(step_type="x", display_name="", description="")


class TestRegistryQueries:
    def test_built_in_types_registered(self):
        assert BUILT_IN <= {definition.step_type for definition in list_step_types()}
        for step_type in BUILT_IN:
            assert is_step_type_registered(step_type)
        assert not is_step_type_registered("teleport")

    def test_definition_metadata(self):
        definition = get_executor_definition("action")
        assert definition.display_name == "Action"
        assert definition.required_config == ["componentId"]
        assert get_executor_definition("teleport") is None

    def test_create_executor(self):
        executor = create_executor("action")
        assert isinstance(executor, ActionExecutor)
        assert executor.step_type == "action"

    def test_create_unknown_executor(self):
        with pytest.raises(ValueError, match="Unknown step type: teleport"):
            create_executor("teleport")

    def test_required_config_validation(self):
        step = Step.model_validate({"id": "a", "type": "action"})
        errors = create_executor("action").validate_config(step)
        assert errors == [{"field": "componentId", "error": "Required field 'componentId' is missing"}]


class TestRegisterStepExecutor:
    def test_decorator_registers_class(self):
        try:
            @register_step_executor(
                step_type="test-echo-step",
                display_name="Echo",
                description="Returns its inputs",
                required_config=["label"],
            )
            class EchoExecutor(BaseStepExecutor):
                async def execute(self, step, inputs, runtime):
                    return dict(inputs)

            assert EchoExecutor.step_type == "test-echo-step"
            assert isinstance(create_executor("test-echo-step"), EchoExecutor)
            step = Step.model_validate({"id": "e", "type": "custom"})
            assert EchoExecutor().validate_config(step)[0]["field"] == "label"
        finally:
            STEP_EXECUTOR_REGISTRY.pop("test-echo-step", None)
            STEP_EXECUTORS.pop("test-echo-step", None)


class TestSchedulerOverrides:
    @pytest.mark.asyncio
    async def test_override_instance(self, make_scheduler, recorder):
        class StubAction(BaseStepExecutor):
            step_type = "action"

            async def execute(self, step, inputs, runtime):
                return {"stubbed": step.config["componentId"]}

        flow = make_flow([action("a", "test.fetch")])

        result = await make_scheduler(executors={"action": StubAction()}).run(flow)

        assert result.step_results["a"] == {"stubbed": "test.fetch"}
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_override_class(self, make_scheduler):
        class NoWait(BaseStepExecutor):
            step_type = "wait"

            async def execute(self, step, inputs, runtime):
                return {"waitedMs": 0}

        flow = make_flow([{"id": "nap", "type": "wait", "config": {"durationMs": 60000}}])

        result = await make_scheduler(executors={"wait": NoWait}).run(flow)

        assert result.step_results["nap"] == {"waitedMs": 0}
