"""Workflow Document Models - JSON structures for workflow definitions.

These models match the JSON-compatible workflow document format
(camelCase field names) and are immutable once loaded. The per-run
ExecutionContext is the only mutable structure and is owned by the
Scheduler.
"""

from __future__ import annotations

import asyncio
import json
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Literal, MutableMapping, Optional, Set, Union, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .utils import get_path

StepType = Literal["action", "condition", "loop", "parallel", "transform", "wait", "custom"]
InputType = Literal["literal", "variable", "resource", "step", "expression"]
OutputType = Literal["variable", "resource", "file", "database"]
BackoffKind = Literal["linear", "exponential"]

STEP_TYPES = get_args(StepType)


class _DocumentModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class StepInput(_DocumentModel):
    """
    Where a step input value comes from.

    Example: {"type": "step", "value": "fetch-user", "path": "profile.email"}
    """
    type: InputType = Field(..., description="Input kind")
    value: Any = Field(None, description="Literal value, variable name, step id, resource id or expression")
    path: Optional[str] = Field(None, description="Optional dotted path applied to the resolved value")


class StepOutput(_DocumentModel):
    """Where a named step result is written."""
    type: OutputType = "variable"
    path: str


class RetrySpec(_DocumentModel):
    """Retry settings for a step (or the document default)."""
    max_attempts: int = Field(
        1, ge=1,
        validation_alias=AliasChoices("maxAttempts", "max_attempts"),
        serialization_alias="maxAttempts",
    )
    backoff_kind: BackoffKind = Field(
        "linear",
        validation_alias=AliasChoices("backoffKind", "backoff", "backoff_kind"),
        serialization_alias="backoffKind",
    )
    backoff_ms: int = Field(
        0, ge=0,
        validation_alias=AliasChoices("backoffMs", "backoff_ms"),
        serialization_alias="backoffMs",
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_exponential_flag(cls, data: Any) -> Any:
        # Card workflows express the backoff kind as {"exponential": true}
        if isinstance(data, dict) and "exponential" in data:
            data = dict(data)
            exponential = data.pop("exponential")
            data.setdefault("backoffKind", "exponential" if exponential else "linear")
        return data


class CircuitBreakerSpec(_DocumentModel):
    failure_threshold: Optional[int] = Field(
        None, ge=1,
        validation_alias=AliasChoices("failureThreshold", "failure_threshold"),
        serialization_alias="failureThreshold",
    )
    recovery_timeout_ms: Optional[int] = Field(
        None, ge=0,
        validation_alias=AliasChoices("recoveryTimeoutMs", "recovery_timeout_ms"),
        serialization_alias="recoveryTimeoutMs",
    )
    enabled: bool = True


class Condition(_DocumentModel):
    """Structured condition: {type, left, operator, right}."""
    type: Literal["expression", "comparison", "existence", "custom"] = "comparison"
    left: Optional[StepInput] = None
    operator: str = "equals"
    right: Optional[StepInput] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("left", "right", mode="before")
    @classmethod
    def _wrap_bare_values(cls, value: Any) -> Any:
        if value is None or isinstance(value, StepInput):
            return value
        if isinstance(value, dict) and "type" in value:
            return value
        return {"type": "literal", "value": value}


class Step(_DocumentModel):
    """A single unit of work with typed inputs/outputs."""
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, StepInput] = Field(default_factory=dict)
    outputs: Dict[str, StepOutput] = Field(default_factory=dict)
    on_success: List[str] = Field(default_factory=list, alias="onSuccess")
    on_failure: List[str] = Field(default_factory=list, alias="onFailure")
    timeout: Optional[int] = Field(None, ge=1, description="Per-attempt timeout in milliseconds")
    retry: Optional[RetrySpec] = None

    @field_validator("inputs", "outputs", "config", mode="before")
    @classmethod
    def _none_to_empty_dict(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("on_success", "on_failure", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _parse_inline_steps(self) -> "Step":
        # Nested loop/parallel definitions must be valid steps too
        self.inline_steps()
        return self

    def inline_steps(self) -> List["Step"]:
        """Nested step definitions (loop body, parallel branches)."""
        if self.type == "loop":
            body = self.config.get("step")
            raw = [body] if body else []
        elif self.type == "parallel":
            raw = list(self.config.get("steps") or [])
        else:
            return []
        return [item if isinstance(item, Step) else Step.model_validate(item) for item in raw]

    def dependencies(self) -> List[str]:
        """Step ids this step reads through step-kind inputs, in declaration order.

        Includes references made by inline sub-steps and by structured
        conditions in the step config.
        """
        deps: List[str] = []

        def add(ref: Any) -> None:
            if isinstance(ref, str) and ref and ref not in deps:
                deps.append(ref)

        for step_input in self.inputs.values():
            if step_input.type == "step":
                add(step_input.value)

        for step_input in iter_condition_inputs(self.config):
            if step_input.get("type") == "step":
                add(step_input.get("value"))

        inline = self.inline_steps()
        inline_ids = {sub.id for sub in inline}
        for sub in inline:
            for dep in sub.dependencies():
                if dep not in inline_ids:
                    add(dep)
        return deps


def iter_condition_inputs(config: Mapping) -> Iterator[Dict[str, Any]]:
    """Yield raw left/right input dicts of conditions embedded in a step config."""
    candidates: List[Any] = []
    if isinstance(config.get("condition"), Mapping):
        candidates.append(config["condition"])
    candidates.extend(c for c in config.get("conditions") or [] if isinstance(c, Mapping))
    transform = config.get("transform")
    if isinstance(transform, Mapping):
        transform_config = transform.get("config") or {}
        if isinstance(transform_config.get("condition"), Mapping):
            candidates.append(transform_config["condition"])
    for condition in candidates:
        for side in ("left", "right"):
            value = condition.get(side)
            if isinstance(value, Mapping) and "type" in value:
                yield dict(value)


class Flow(_DocumentModel):
    """One executable workflow: ordered steps plus variables/outputs."""
    id: str = Field(..., min_length=1)
    name: str = ""
    description: Optional[str] = None
    trigger_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("triggerId", "trigger", "trigger_id"),
        serialization_alias="triggerId",
    )
    steps: List[Step] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, StepInput] = Field(default_factory=dict)

    @field_validator("outputs", mode="before")
    @classmethod
    def _normalize_outputs(cls, value: Any) -> Any:
        if not value:
            return {}
        normalized = {}
        for name, output in value.items():
            if isinstance(output, str):
                # Bare strings are expressions: "results.check.result"
                output = {"type": "expression", "value": output}
            elif isinstance(output, dict) and "value" not in output and "path" in output:
                # Output-style reference: {"type": "variable", "path": "user_id"}
                output = {"type": output.get("type", "variable"), "value": output["path"]}
            normalized[name] = output
        return normalized

    @field_validator("variables", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def get_step(self, step_id: str) -> Optional[Step]:
        """Get step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class Resource(_DocumentModel):
    id: str
    type: str = "data"
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)


class Trigger(_DocumentModel):
    """What starts a flow; validates the caller-supplied input."""
    id: str
    type: Literal["schedule", "event", "webhook", "api", "manual"] = "manual"
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    enabled: bool = True


class ErrorHandler(_DocumentModel):
    """Document-level fallback for step errors that no onFailure edge handles."""
    id: str
    pattern: str = Field(..., description="Regex matched against the error code or message")
    action: Literal["retry", "skip", "fail", "compensate", "custom"]
    config: Dict[str, Any] = Field(default_factory=dict)


class DocumentMetadata(_DocumentModel):
    name: str = ""
    description: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created: Optional[str] = None
    modified: Optional[str] = None
    schema_uri: Optional[str] = Field(None, alias="schema")


class DocumentConfig(_DocumentModel):
    timeout: Optional[int] = Field(None, ge=1, description="Whole-run timeout in milliseconds")
    retry_policy: Optional[RetrySpec] = Field(None, alias="retryPolicy")
    concurrency_limit: Optional[int] = Field(
        None, ge=1,
        validation_alias=AliasChoices("concurrencyLimit", "concurrency", "concurrency_limit"),
        serialization_alias="concurrencyLimit",
    )
    circuit_breaker: Optional[CircuitBreakerSpec] = Field(None, alias="circuitBreaker")
    environment: Dict[str, Any] = Field(default_factory=dict)


class WorkflowDocument(_DocumentModel):
    """
    Complete workflow document.

    Owned by the caller and read-only to the engine.
    """
    version: str = "1.0.0"
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    config: DocumentConfig = Field(default_factory=DocumentConfig)
    resources: List[Resource] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    flows: List[Flow] = Field(default_factory=list)
    error_handlers: List[ErrorHandler] = Field(default_factory=list, alias="errorHandlers")

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        for flow in self.flows:
            if flow.id == flow_id:
                return flow
        return None

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        for trigger in self.triggers:
            if trigger.id == trigger_id:
                return trigger
        return None


def _schema_issues(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "code": "INVALID_FIELD",
            "message": err.get("msg", ""),
            "severity": "error",
            "location": ".".join(str(part) for part in err.get("loc", ())),
        }
        for err in exc.errors()
    ]


def _parse(model: type, data: Union[str, bytes, Dict[str, Any]], label: str) -> Any:
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid {label} JSON: {e}") from e
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        issues = _schema_issues(e)
        raise ValidationError(
            f"Invalid {label}: {len(issues)} schema error(s)", issues=issues
        ) from e


def load_document(data: Union[str, bytes, Dict[str, Any]]) -> WorkflowDocument:
    """Parse a JSON string or dict into a WorkflowDocument."""
    return _parse(WorkflowDocument, data, "workflow document")


def load_flow(data: Union[str, bytes, Dict[str, Any]]) -> Flow:
    """Parse a JSON string or dict into a Flow."""
    return _parse(Flow, data, "flow")


def dump_document(document: WorkflowDocument) -> Dict[str, Any]:
    """Serialize a document to a JSON-compatible dict using camelCase names."""
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)


def output_value(result: Any, name: str) -> Any:
    """Pick the value a named StepOutput refers to from a step result."""
    if isinstance(result, Mapping):
        if name in result:
            return result[name]
        return get_path(result, name)
    if name == "result":
        return result
    return None


@dataclass
class ExecutionContext:
    """Mutable per-run state: variables, step results and errors.

    Writes go through ``record_result`` / ``record_error`` which hold the
    context lock, so each step's output write is atomic with respect to
    concurrently running branches.
    """

    variables: MutableMapping[str, Any] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    failed_steps: Set[str] = field(default_factory=set)
    output_writes: List[Dict[str, Any]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    def for_flow(cls, flow: Flow, initial_inputs: Optional[Mapping[str, Any]] = None) -> "ExecutionContext":
        variables = dict(flow.variables)
        variables.update(initial_inputs or {})
        return cls(variables=variables)

    async def record_result(self, step: Step, result: Any) -> None:
        """Store a step result and its declared outputs in one atomic write."""
        async with self.lock:
            self.step_results[step.id] = result
            self.failed_steps.discard(step.id)
            for name, output in step.outputs.items():
                value = output_value(result, name)
                if output.type == "variable":
                    self.variables[output.path] = value
                else:
                    self.output_writes.append({
                        "step_id": step.id,
                        "type": output.type,
                        "path": output.path,
                        "value": value,
                    })

    async def record_error(self, error: Any, step_id: Optional[str] = None) -> None:
        async with self.lock:
            entry = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
            if step_id is not None:
                entry.setdefault("step_id", step_id)
                self.failed_steps.add(step_id)
            self.errors.append(entry)

    def scoped(self, overrides: Mapping[str, Any]) -> "ExecutionContext":
        """Child context with layered variables; results, errors and lock are shared."""
        return ExecutionContext(
            variables=ChainMap(dict(overrides), self.variables),
            step_results=self.step_results,
            errors=self.errors,
            failed_steps=self.failed_steps,
            output_writes=self.output_writes,
            lock=self.lock,
        )

    def namespace(self) -> Dict[str, Any]:
        """Read-only views exposed to expressions."""
        variables = MappingProxyType(self.variables)
        return {
            "context": variables,
            "variables": variables,
            "results": MappingProxyType(self.step_results),
            "errors": tuple(self.errors),
        }
