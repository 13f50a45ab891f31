"""Generic HTTP action component.

Step config:
    {"componentId": "http.request", "method": "POST",
     "url": "https://api.example.com/users/${user_id}",
     "headers": {...}, "body": {...}, "system": "directory"}

``${}`` tokens in url, headers and body are filled from the resolved step
inputs. When ``system`` is set, auth headers come from the injected
AuthenticationManager.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from .. import settings
from ..errors import StepExecutionError
from ..utils import render_template, render_value
from .auth import AuthenticationManager
from .library import Component, ComponentPort

logger = logging.getLogger(__name__)

HTTP_COMPONENT_ID = "http.request"


def create_http_component(
    auth_manager: Optional[AuthenticationManager] = None,
    client: Optional[httpx.AsyncClient] = None,
    component_id: str = HTTP_COMPONENT_ID,
) -> Component:
    """Build the HTTP request component bound to an auth manager and client."""

    async def send(request: httpx.Request) -> httpx.Response:
        if client is not None:
            return await client.send(request)
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as own_client:
            return await own_client.send(request)

    async def execute(inputs: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        method = str(config.get("method", "GET")).upper()
        url = render_template(str(config["url"]), inputs)
        headers = {str(k): str(v) for k, v in render_value(config.get("headers") or {}, inputs).items()}

        body = config.get("body", inputs.get("body"))
        content = b""
        if body is not None:
            body = render_value(body, inputs)
            if isinstance(body, (dict, list)):
                content = json.dumps(body).encode("utf-8")
                headers.setdefault("Content-Type", "application/json")
            else:
                content = str(body).encode("utf-8")

        system = config.get("system")
        if system:
            if auth_manager is None:
                raise StepExecutionError(
                    f"HTTP component needs an AuthenticationManager for system '{system}'",
                    retryable=False,
                )
            headers.update(await auth_manager.get_auth_headers(system, method=method, url=url, body=content))

        request = httpx.Request(method, url, headers=headers, content=content or None)
        try:
            response = await send(request)
        except httpx.TimeoutException as e:
            raise StepExecutionError(f"HTTP {method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise StepExecutionError(f"HTTP {method} {url} failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise StepExecutionError(
                f"HTTP {method} {url} returned {status}",
                details={"status": status},
            )
        if status >= 400:
            raise StepExecutionError(
                f"HTTP {method} {url} returned {status}: {response.text[:200]}",
                retryable=False,
                details={"status": status},
            )

        logger.debug(f"HTTP {method} {url} -> {status}")
        if "application/json" in response.headers.get("content-type", ""):
            payload: Any = response.json()
        else:
            payload = response.text
        return {"status": status, "headers": dict(response.headers), "body": payload}

    return Component(
        id=component_id,
        name="HTTP Request",
        category="cloud",
        description="Calls an HTTP endpoint with optional system authentication",
        execute=execute,
        inputs=[ComponentPort("body", "any")],
        outputs=[
            ComponentPort("status", "number"),
            ComponentPort("headers", "object"),
            ComponentPort("body", "any"),
        ],
        config={"method": "GET"},
    )
