"""Tests for the Component Library and the HTTP component."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
from pydantic import BaseModel

from flowengine.components.auth import AuthenticationManager
from flowengine.components.http import HTTP_COMPONENT_ID, create_http_component
from flowengine.components.library import Component, ComponentLibrary, ComponentPort
from flowengine.errors import ComponentNotFound, StepExecutionError

from builders import action, make_flow


async def noop(inputs, config):
    return {}


class TestComponentLibrary:
    def test_register_and_lookup(self, library):
        assert "test.fetch" in library
        assert library.get("test.fetch").category == "identity"
        assert library.get("missing") is None
        assert [c.id for c in library.list(category="cloud")] == ["test.fail", "test.crash"]

    def test_require(self, library):
        with pytest.raises(ComponentNotFound) as exc_info:
            library.require("missing")
        assert exc_info.value.component_id == "missing"

    def test_replace_and_unregister(self):
        library = ComponentLibrary([Component(id="x", name="X", category="data", execute=noop)])
        library.register(Component(id="x", name="X2", category="data", execute=noop))
        assert len(library) == 1
        assert library.get("x").name == "X2"
        assert library.unregister("x") is True
        assert library.unregister("x") is False

    def test_invalid_component(self):
        with pytest.raises(ValueError):
            Component(id="", name="X", category="data", execute=noop)
        with pytest.raises(ValueError):
            Component(id="x", name="X", category="data", execute="not callable")

    def test_validate_component_usage(self, library):
        assert library.validate_component_usage("test.double", {"value": 1})
        assert not library.validate_component_usage("test.double", {})
        assert not library.validate_component_usage("missing", {})

    @pytest.mark.asyncio
    async def test_scheduler_calls_component(self, make_scheduler):
        lookup = AsyncMock(return_value={"id": "u-7"})
        crm = ComponentLibrary([Component(id="crm.lookup", name="Lookup", category="productivity", execute=lookup)])
        flow = make_flow([action("find", "crm.lookup", inputs={"email": {"type": "literal", "value": "ada@example.com"}})])

        result = await make_scheduler(library=crm).run(flow)

        assert result.step_results["find"] == {"id": "u-7"}
        lookup.assert_awaited_once_with({"email": "ada@example.com"}, {"componentId": "crm.lookup"})

    @pytest.mark.asyncio
    async def test_schema_rejects_bad_inputs(self, make_scheduler):
        class Inputs(BaseModel):
            email: str

        schema_library = ComponentLibrary([
            Component(id="mail.send", name="Send", category="communication", execute=noop, schema=Inputs),
        ])
        flow = make_flow([action("send", "mail.send", inputs={"email": {"type": "literal", "value": 42}})])

        result = await make_scheduler(library=schema_library).run(flow)

        assert result.status == "failed"
        assert result.error.retryable is False
        assert "invalid" in result.error.message


def http_library(handler, auth_manager=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ComponentLibrary([create_http_component(auth_manager=auth_manager, client=client)])


class TestHttpComponent:
    """The http.request component through MockTransport."""

    @pytest.mark.asyncio
    async def test_templated_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": "u-1"})

        component = http_library(handler).get(HTTP_COMPONENT_ID)
        output = await component.execute(
            {"user_id": "42", "email": "ada@example.com"},
            {
                "method": "post",
                "url": "https://api.example.com/users/${user_id}",
                "headers": {"X-Trace": "trace-${user_id}"},
                "body": {"email": "${email}"},
            },
        )

        assert output["status"] == 201
        assert output["body"] == {"id": "u-1"}
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.example.com/users/42"
        assert request.headers["X-Trace"] == "trace-42"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"email": "ada@example.com"}

    @pytest.mark.asyncio
    async def test_text_response(self):
        component = http_library(lambda request: httpx.Response(200, text="pong")).get(HTTP_COMPONENT_ID)
        output = await component.execute({}, {"url": "https://api.example.com/ping"})
        assert output["body"] == "pong"

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        component = http_library(lambda request: httpx.Response(503)).get(HTTP_COMPONENT_ID)
        with pytest.raises(StepExecutionError) as exc_info:
            await component.execute({}, {"url": "https://api.example.com/"})
        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"status": 503}

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        component = http_library(lambda request: httpx.Response(404, text="no such user")).get(HTTP_COMPONENT_ID)
        with pytest.raises(StepExecutionError) as exc_info:
            await component.execute({}, {"url": "https://api.example.com/users/9"})
        assert exc_info.value.retryable is False
        assert "no such user" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        component = http_library(refuse).get(HTTP_COMPONENT_ID)
        with pytest.raises(StepExecutionError) as exc_info:
            await component.execute({}, {"url": "https://api.example.com/"})
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_system_auth_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        manager = AuthenticationManager("acme")
        manager.register_auth("crm", {"type": "bearer", "credentials": {"token": "secret-token"}})
        component = http_library(handler, manager).get(HTTP_COMPONENT_ID)

        await component.execute({}, {"url": "https://crm.example.com/", "system": "crm"})

        assert seen[0].headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_system_without_manager(self):
        component = http_library(lambda request: httpx.Response(200)).get(HTTP_COMPONENT_ID)
        with pytest.raises(StepExecutionError) as exc_info:
            await component.execute({}, {"url": "https://crm.example.com/", "system": "crm"})
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_retried_by_scheduler(self, make_scheduler):
        statuses = [500, 500, 200]
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(statuses[len(calls) - 1], json={"ok": True})

        flow = make_flow(
            [action("call", HTTP_COMPONENT_ID, config={
                "componentId": HTTP_COMPONENT_ID,
                "url": "https://api.example.com/flaky",
            }, retry={"maxAttempts": 3, "backoffMs": 1})],
            outputs={"status": {"type": "step", "value": "call", "path": "status"}},
        )

        result = await make_scheduler(library=http_library(handler)).run(flow)

        assert result.status == "succeeded"
        assert result.outputs == {"status": 200}
        assert result.step_states["call"].attempts == 3
        assert len(calls) == 3

    def test_component_metadata(self):
        component = create_http_component()
        assert component.id == HTTP_COMPONENT_ID
        assert component.category == "cloud"
        assert component.output_names() == ["status", "headers", "body"]
        assert isinstance(component.inputs[0], ComponentPort)
