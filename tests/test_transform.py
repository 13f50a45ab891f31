"""Unit tests for the transform step."""

import pytest

from flowengine.errors import ExpressionError, StepExecutionError
from flowengine.models import Step
from flowengine.steps.transform import TransformExecutor, apply_aggregate, apply_map

USERS = [
    {"name": "ada", "age": 36, "team": {"id": "eng"}},
    {"name": "bob", "age": 17, "team": {"id": "ops"}},
    {"name": "cy", "age": "n/a", "team": None},
]


def transform_step(kind, config=None):
    return Step.model_validate({
        "id": "t",
        "type": "transform",
        "config": {"transform": {"type": kind, "config": config or {}}},
    })


class TestApplyHelpers:
    def test_map_list(self):
        assert apply_map(USERS[:2], {"who": "name", "team": "team.id"}) == [
            {"who": "ada", "team": "eng"},
            {"who": "bob", "team": "ops"},
        ]

    def test_map_single_object(self):
        assert apply_map(USERS[0], {"who": "name"}) == {"who": "ada"}

    def test_aggregate_skips_non_numeric(self):
        assert apply_aggregate(USERS, "sum", "age") == 53
        assert apply_aggregate(USERS, "average", "age") == 26.5
        assert apply_aggregate(USERS, "max", "age") == 36
        assert apply_aggregate(USERS, "min", "age") == 17

    def test_aggregate_empty(self):
        assert apply_aggregate([], "count") == 0
        assert apply_aggregate([], "sum") == 0
        assert apply_aggregate([], "average") is None

    def test_count_with_field(self):
        assert apply_aggregate(USERS, "count", "team.id") == 2

    def test_unknown_operation(self):
        with pytest.raises(StepExecutionError):
            apply_aggregate([1], "median")


class TestTransformExecutor:
    """TransformExecutor.execute over the ``data`` input."""

    @pytest.mark.asyncio
    async def test_map(self, make_runtime):
        step = transform_step("map", {"mapping": {"who": "name"}})
        output = await TransformExecutor().execute(step, {"data": USERS[:1]}, make_runtime())
        assert output == {"result": [{"who": "ada"}]}

    @pytest.mark.asyncio
    async def test_filter_with_expression(self, make_runtime):
        step = transform_step("filter", {"condition": "item.age != 'n/a' and item.age >= 18"})
        output = await TransformExecutor().execute(step, {"data": USERS}, make_runtime())
        assert output["result"] == [USERS[0]]

    @pytest.mark.asyncio
    async def test_filter_with_structured_condition(self, make_runtime):
        step = transform_step("filter", {"condition": {
            "type": "comparison",
            "left": {"type": "expression", "value": "item.name"},
            "operator": "starts_with",
            "right": "b",
        }})
        output = await TransformExecutor().execute(step, {"data": USERS}, make_runtime())
        assert [user["name"] for user in output["result"]] == ["bob"]

    @pytest.mark.asyncio
    async def test_filter_non_list_unchanged(self, make_runtime):
        step = transform_step("filter", {"condition": "true"})
        output = await TransformExecutor().execute(step, {"data": {"a": 1}}, make_runtime())
        assert output["result"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_aggregate(self, make_runtime):
        step = transform_step("aggregate", {"operation": "count"})
        output = await TransformExecutor().execute(step, {"data": USERS}, make_runtime())
        assert output["result"] == 3

    @pytest.mark.asyncio
    async def test_template(self, make_runtime):
        step = transform_step("template", {"template": "Hello ${name}, team ${team.id}! ${missing}"})
        output = await TransformExecutor().execute(step, USERS[0], make_runtime())
        assert output["result"] == "Hello ada, team eng! ${missing}"

    @pytest.mark.asyncio
    async def test_expression(self, make_runtime):
        step = transform_step("expression", {"expression": "len(data) * 2"})
        output = await TransformExecutor().execute(step, {"data": USERS}, make_runtime())
        assert output["result"] == 6

    @pytest.mark.asyncio
    async def test_expression_error_propagates(self, make_runtime):
        step = transform_step("expression", {"expression": "data.missing"})
        with pytest.raises(ExpressionError):
            await TransformExecutor().execute(step, {"data": {}}, make_runtime())

    def test_validate_config(self):
        executor = TransformExecutor()
        assert executor.validate_config(transform_step("map", {"mapping": {"a": "b"}})) == []
        assert executor.validate_config(transform_step("map"))[0]["field"] == "transform.config.mapping"
        assert executor.validate_config(transform_step("aggregate", {"operation": "median"}))
        assert executor.validate_config(transform_step("pivot"))[0]["field"] == "transform.type"
        missing = Step.model_validate({"id": "t", "type": "transform"})
        assert executor.validate_config(missing)[0]["field"] == "transform"
