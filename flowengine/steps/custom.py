"""Custom step: caller-supplied logic behind a sandboxed runner capability.

Custom code never runs inside the engine's own interpreter state. Two
runners are provided:

- RestrictedScriptRunner (default): a tiny statement language interpreted
  over the restricted expression evaluator. Supports ``name = expr``,
  ``if/elif/else``, ``return expr`` and bare expressions. No loops, no
  imports, no function definitions, no host access.
- SubprocessScriptRunner: runs Python code in an isolated interpreter
  subprocess (``-I -S``, empty environment, CPU/memory rlimits on POSIX),
  exchanging JSON over stdin/stdout and killing it on timeout.
"""

from __future__ import annotations

import ast
import asyncio
import json
import logging
import sys
import time
from collections import ChainMap
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .. import settings
from ..errors import ExpressionError, SandboxError, StepExecutionError, WorkflowError
from ..models import Step
from ..engine.safe_eval import evaluate_node, validate_expression
from .action import ActionExecutor
from .base import BaseStepExecutor, StepRuntime
from .registry import register_step_executor

logger = logging.getLogger(__name__)


@runtime_checkable
class CustomStepRunner(Protocol):
    """Capability that runs custom step code with resource/time limits."""

    async def run(self, code: str, inputs: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        """Run ``code`` with ``inputs`` and return its outputs.

        Raises:
            SandboxError: The code was rejected, failed or exceeded its limits
        """
        ...


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class RestrictedScriptRunner:
    """Interprets a restricted statement language.

    Example:
        total = inputs.price * inputs.quantity
        if total > 100:
            tier = "gold"
        else:
            tier = "standard"
        return {"total": total, "tier": tier}

    Outputs are every assigned name plus ``result`` (the returned value,
    else an assigned ``result``, else the last bare expression).
    """

    def __init__(
        self,
        max_statements: int = settings.SCRIPT_MAX_STATEMENTS,
        timeout_ms: int = settings.SCRIPT_TIMEOUT_MS,
    ):
        self.max_statements = max_statements
        self.timeout_ms = timeout_ms

    def check(self, code: str) -> List[str]:
        """Static check of a script. Empty list means valid."""
        try:
            tree = ast.parse(code, mode="exec")
        except SyntaxError as e:
            return [f"Invalid syntax: {e}"]
        errors: List[str] = []
        self._check_block(tree.body, errors)
        return errors

    def _check_block(self, body: List[ast.stmt], errors: List[str]) -> None:
        for stmt in body:
            if isinstance(stmt, ast.Assign):
                if len(stmt.targets) != 1 or not isinstance(stmt.targets[0], ast.Name):
                    errors.append(f"Line {stmt.lineno}: only 'name = expression' assignments are allowed")
                errors.extend(validate_expression(ast.unparse(stmt.value)))
            elif isinstance(stmt, ast.If):
                errors.extend(validate_expression(ast.unparse(stmt.test)))
                self._check_block(stmt.body, errors)
                self._check_block(stmt.orelse, errors)
            elif isinstance(stmt, (ast.Expr, ast.Return)):
                if stmt.value is not None:
                    errors.extend(validate_expression(ast.unparse(stmt.value)))
            elif not isinstance(stmt, ast.Pass):
                errors.append(f"Line {stmt.lineno}: statement not allowed: {type(stmt).__name__}")

    async def run(self, code: str, inputs: Dict[str, Any], timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        errors = self.check(code)
        if errors:
            raise SandboxError(f"Script rejected: {errors[0]}", details={"errors": errors})

        tree = ast.parse(code, mode="exec")
        limit_ms = min(timeout_ms or self.timeout_ms, self.timeout_ms)
        state = {
            "deadline": time.monotonic() + limit_ms / 1000,
            "remaining": self.max_statements,
            "last": None,
        }
        assigned: Dict[str, Any] = {}
        scope = ChainMap(assigned, {"inputs": inputs}, inputs)

        returned = False
        try:
            self._exec_block(tree.body, scope, state)
        except _Return as r:
            returned = True
            result = r.value
        except ExpressionError as e:
            raise SandboxError(f"Script failed: {e.message}") from e

        if not returned:
            result = assigned.get("result", state["last"])
        return {**assigned, "result": result}

    def _exec_block(self, body: List[ast.stmt], scope: ChainMap, state: Dict[str, Any]) -> None:
        for stmt in body:
            state["remaining"] -= 1
            if state["remaining"] < 0:
                raise SandboxError(f"Script exceeded {self.max_statements} statements")
            if time.monotonic() > state["deadline"]:
                raise SandboxError("Script exceeded its time limit")

            if isinstance(stmt, ast.Assign):
                scope.maps[0][stmt.targets[0].id] = evaluate_node(stmt.value, scope)
            elif isinstance(stmt, ast.If):
                branch = stmt.body if evaluate_node(stmt.test, scope) else stmt.orelse
                self._exec_block(branch, scope, state)
            elif isinstance(stmt, ast.Return):
                raise _Return(evaluate_node(stmt.value, scope) if stmt.value is not None else None)
            elif isinstance(stmt, ast.Expr):
                state["last"] = evaluate_node(stmt.value, scope)


_BOOTSTRAP = """
import json, sys
payload = json.loads(sys.stdin.read())
scope = {"inputs": payload["inputs"]}
exec(compile(payload["code"], "<custom-step>", "exec"), scope)
sys.stdout.write(json.dumps({"result": scope.get("result")}, default=str))
"""


def _limit_resources(cpu_seconds: int, memory_mb: int):
    def apply() -> None:
        import resource

        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
        memory = memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (memory, memory))

    return apply


class SubprocessScriptRunner:
    """Runs Python code in an isolated interpreter subprocess.

    The code reads ``inputs`` and assigns ``result``; the result must be
    JSON-serializable.
    """

    def __init__(
        self,
        interpreter: str = settings.CUSTOM_STEP_INTERPRETER,
        memory_mb: int = settings.CUSTOM_STEP_MEMORY_MB,
    ):
        self.interpreter = interpreter
        self.memory_mb = memory_mb

    async def run(self, code: str, inputs: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        try:
            payload = json.dumps({"code": code, "inputs": inputs}).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SandboxError(f"Inputs are not JSON-serializable: {e}") from e

        timeout = timeout_ms / 1000
        kwargs: Dict[str, Any] = {}
        if sys.platform != "win32":
            kwargs["preexec_fn"] = _limit_resources(max(1, int(timeout) + 1), self.memory_mb)

        try:
            proc = await asyncio.create_subprocess_exec(
                self.interpreter, "-I", "-S", "-c", _BOOTSTRAP,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={},
                **kwargs,
            )
        except OSError as e:
            raise SandboxError(f"Failed to start custom step interpreter: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            raise SandboxError(f"Custom step timed out ({timeout_ms}ms)")
        except asyncio.CancelledError:
            proc.kill()
            await asyncio.shield(proc.wait())
            raise

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-1:] or [""]
            raise SandboxError(
                f"Custom step exited with code {proc.returncode}: {tail[0]}",
                details={"returncode": proc.returncode},
            )

        try:
            output = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as e:
            raise SandboxError(f"Custom step produced invalid output: {e}") from e
        return output if isinstance(output, dict) else {"result": output}


@register_step_executor(
    step_type="custom",
    display_name="Custom",
    description="Runs custom logic through a sandboxed runner",
)
class CustomExecutor(BaseStepExecutor):
    """Runs ``config.code`` through the injected runner.

    A custom step without code but with a ``componentId`` (as produced by the
    canvas compiler for uncategorized components) calls that component.
    """

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        code = step.config.get("code")
        if not code and step.config.get("componentId"):
            return await ActionExecutor().execute(step, inputs, runtime)

        runner = runtime.custom_runner or RestrictedScriptRunner()
        timeout_ms = int(step.config.get("timeoutMs") or runtime.config.custom_step_timeout_ms)

        try:
            return await runner.run(code, inputs, timeout_ms)
        except SandboxError as e:
            e.step_id = step.id
            raise
        except (StepExecutionError, asyncio.CancelledError):
            raise
        except WorkflowError as e:
            raise SandboxError(f"Custom step failed: {e.message}", step_id=step.id) from e
        except Exception as e:
            raise SandboxError(f"Custom step failed: {e}", step_id=step.id) from e

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        code = step.config.get("code")
        if not code and not step.config.get("componentId"):
            errors.append({"field": "code", "error": "Custom steps require 'code' or 'componentId'"})
        elif code is not None and not isinstance(code, str):
            errors.append({"field": "code", "error": "code must be a string"})
        return errors
