"""Card Workflows - compiles IF/THEN/ELSE card workflows into the step model.

A card workflow is a list of cards (trigger, condition, ifttt, action,
connector-action, notification) joined by typed connections. Compilation
produces a single-flow WorkflowDocument so card workflows run on the same
Scheduler as every other document:

- trigger card -> document trigger; its outgoing connections mark entry steps
- condition card -> condition step over an AND/OR group
- ifttt card -> condition step with failOnFalse; ``then`` targets become
  onSuccess edges and ``else`` targets onFailure edges. Routed branches
  compile to a chain of gate steps, one per route.
- action / connector-action / notification cards -> action steps
- success / flow / data connections -> onSuccess, error connections ->
  onFailure; a connection with a condition gets a gate step in between
- errorHandling.retryPolicy / circuitBreaker -> document config
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ValidationError
from ..models import WorkflowDocument, load_document

logger = logging.getLogger(__name__)

CardType = Literal["trigger", "condition", "action", "ifttt", "flow", "error", "notification", "connector-action"]
ConnectionType = Literal["data", "conditional", "flow", "error", "success"]

ACTION_CARD_TYPES = ("action", "connector-action", "notification")

_TEMPLATE = re.compile(r"^\s*\{\{\s*(.*?)\s*\}\}\s*$")


class _CardModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class Card(_CardModel):
    id: str = Field(..., min_length=1)
    type: CardType
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, str] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)


class CardConnection(_CardModel):
    source: str = Field(..., alias="from")
    target: str = Field(..., alias="to")
    type: ConnectionType = "success"
    condition: Optional[str] = None


class CardRetryPolicy(_CardModel):
    max_attempts: int = Field(1, ge=1, alias="maxAttempts")
    backoff_ms: int = Field(0, ge=0, alias="backoffMs")
    exponential: bool = False


class CardCircuitBreaker(_CardModel):
    failure_threshold: int = Field(..., ge=1, alias="failureThreshold")
    recovery_timeout_ms: int = Field(..., ge=0, alias="recoveryTimeoutMs")


class CardErrorHandling(_CardModel):
    retry_policy: Optional[CardRetryPolicy] = Field(None, alias="retryPolicy")
    circuit_breaker: Optional[CardCircuitBreaker] = Field(None, alias="circuitBreaker")


class CardWorkflow(_CardModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    version: str = "1.0.0"
    resources: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    cards: List[Card] = Field(default_factory=list)
    connections: List[CardConnection] = Field(default_factory=list)
    variables: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    error_handling: Optional[CardErrorHandling] = Field(None, alias="errorHandling")

    def get_card(self, card_id: str) -> Optional[Card]:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None


def strip_template(expression: str) -> str:
    """``"{{ variables.age > 18 }}"`` -> ``"variables.age > 18"``."""
    match = _TEMPLATE.match(expression)
    return match.group(1) if match else expression


def _expression_condition(expression: str) -> Dict[str, Any]:
    return {"type": "expression", "left": {"type": "expression", "value": strip_template(expression)}}


def _variable_path(reference: str) -> str:
    path = strip_template(reference)
    return path[len("variables."):] if path.startswith("variables.") else path


def _card_condition(raw: Dict[str, Any]) -> Dict[str, Any]:
    kind = raw.get("type")
    if kind == "expression":
        return _expression_condition(str(raw.get("expression", "false")))
    if kind == "schema-validation":
        return {"type": "existence", "left": {"type": "variable", "value": _variable_path(str(raw.get("field", "")))}}
    # External lookups (e.g. idp-lookup) evaluate through a registered custom predicate
    return {"type": "custom", "operator": str(kind), "config": dict(raw)}


class _StepBuilder:
    """Accumulates step dicts and edges in card order."""

    def __init__(self) -> None:
        self.steps: Dict[str, Dict[str, Any]] = {}

    def add(self, step: Dict[str, Any]) -> Dict[str, Any]:
        step.setdefault("onSuccess", [])
        step.setdefault("onFailure", [])
        self.steps[step["id"]] = step
        return step

    def link(self, source: str, target: str, edge: str = "onSuccess") -> None:
        targets = self.steps[source][edge]
        if target not in targets:
            targets.append(target)

    def gate(self, gate_id: str, expression: str, targets: List[str], otherwise: Optional[List[str]] = None) -> str:
        self.add({
            "id": gate_id,
            "name": f"Gate {gate_id}",
            "type": "condition",
            "config": {"condition": _expression_condition(expression), "failOnFalse": True},
            "onSuccess": list(targets),
            "onFailure": list(otherwise or []),
        })
        return gate_id


class CardCompiler:
    """Compiles one card workflow into a WorkflowDocument."""

    def __init__(self, workflow: CardWorkflow | Dict[str, Any]):
        self.workflow = workflow if isinstance(workflow, CardWorkflow) else CardWorkflow.model_validate(workflow)
        self.builder = _StepBuilder()

    def compile(self) -> WorkflowDocument:
        workflow = self.workflow
        logger.info(f"Compiling card workflow {workflow.name} ({len(workflow.cards)} cards)")

        unsupported = [card.id for card in workflow.cards if card.type in ("flow", "error")]
        if unsupported:
            raise ValidationError(
                f"Card workflow {workflow.name} uses card types without a step equivalent: {unsupported}",
                issues=[{"code": "UNSUPPORTED_CARD_TYPE", "message": card_id} for card_id in unsupported],
            )

        triggers = [card for card in workflow.cards if card.type == "trigger"]
        if not triggers:
            raise ValidationError(
                f"No trigger card found in workflow {workflow.name}",
                issues=[{"code": "MISSING_TRIGGER", "message": "No trigger card"}],
            )
        trigger_ids = {card.id for card in triggers}

        for card in workflow.cards:
            if card.type == "condition":
                self._condition_step(card)
            elif card.type == "ifttt":
                self._ifttt_step(card)
            elif card.type in ACTION_CARD_TYPES:
                self._action_step(card)

        for index, connection in enumerate(workflow.connections):
            if connection.source in trigger_ids:
                continue
            if connection.source not in self.builder.steps:
                raise ValidationError(
                    f"Connection {index} starts at unknown card '{connection.source}'",
                    issues=[{"code": "DANGLING_CONNECTION", "message": connection.source}],
                )
            edge = "onFailure" if connection.type == "error" else "onSuccess"
            target = connection.target
            if connection.condition:
                target = self.builder.gate(
                    f"{connection.source}-to-{connection.target}", connection.condition, [connection.target]
                )
            self.builder.link(connection.source, target, edge)

        document = load_document({
            "version": workflow.version,
            "metadata": {"name": workflow.name, "description": workflow.description, "tags": ["cards"]},
            "config": self._document_config(),
            "resources": self._resources(),
            "triggers": [self._trigger(card) for card in triggers],
            "flows": [{
                "id": workflow.name,
                "name": workflow.name,
                "description": workflow.description,
                "triggerId": triggers[0].id,
                "steps": list(self.builder.steps.values()),
                "variables": {
                    **workflow.variables.get("global", {}),
                    **workflow.variables.get("flow", {}),
                },
            }],
        })
        logger.info(f"Card workflow {workflow.name} compiled to {len(self.builder.steps)} step(s)")
        return document

    def _trigger(self, card: Card) -> Dict[str, Any]:
        config = dict(card.config)
        schema = config.get("schema")
        if isinstance(schema, dict) and "requiredInputs" not in config:
            config["requiredInputs"] = list(schema)
        return {
            "id": card.id,
            "type": config.pop("triggerType", "event"),
            "name": card.name,
            "config": config,
        }

    def _io(self, card: Card) -> Dict[str, Any]:
        return {
            "inputs": {name: {"type": "variable", "value": _variable_path(ref)} for name, ref in card.inputs.items()},
            "outputs": {name: {"type": "variable", "path": _variable_path(ref)} for name, ref in card.outputs.items()},
        }

    def _condition_step(self, card: Card) -> None:
        io = self._io(card)
        # Condition cards publish their verdict as "isValid"
        outputs = {
            ("result" if name == "isValid" else name): output
            for name, output in io["outputs"].items()
        }
        self.builder.add({
            "id": card.id,
            "name": card.name,
            "type": "condition",
            "config": {
                "conditions": [_card_condition(raw) for raw in card.config.get("conditions", [])],
                "combine": str(card.config.get("operator", "AND")).upper(),
            },
            "inputs": io["inputs"],
            "outputs": outputs,
        })

    def _ifttt_step(self, card: Card) -> None:
        config = card.config
        then_targets = self._branch(card.id, "then", config.get("then"))
        else_targets = self._branch(card.id, "else", config.get("else"))
        self.builder.add({
            "id": card.id,
            "name": card.name,
            "type": "condition",
            "config": {"condition": _expression_condition(str(config.get("if", "false"))), "failOnFalse": True},
            "onSuccess": then_targets,
            "onFailure": else_targets,
        })

    def _branch(self, card_id: str, label: str, branch: Optional[Dict[str, Any]]) -> List[str]:
        """Entry step ids for an ifttt branch."""
        if not branch:
            return []
        if branch.get("action"):
            return [branch["action"]]

        routes = branch.get("routes") or []
        if not routes:
            return []
        fallback = [branch["default"]] if branch.get("default") else []
        next_targets = fallback
        # Built back to front so each gate falls through to the next route
        for index in range(len(routes) - 1, -1, -1):
            route = routes[index]
            gate_id = self.builder.gate(
                f"{card_id}-{label}-route-{index}", str(route.get("condition", "false")), [route["action"]], next_targets
            )
            next_targets = [gate_id]
        return next_targets

    def _action_step(self, card: Card) -> None:
        config = dict(card.config)
        if card.type == "connector-action":
            connector = config.get("connector", "")
            config.setdefault("componentId", f"{connector}.{config.get('action', '')}")
            config.setdefault("system", connector)
        elif card.type == "notification":
            config.setdefault("componentId", f"notification.{config.get('type', 'email')}")
        else:
            config.setdefault("componentId", config.get("action", card.id))

        self.builder.add({
            "id": card.id,
            "name": card.name,
            "type": "action",
            "config": config,
            **self._io(card),
        })

    def _document_config(self) -> Dict[str, Any]:
        handling = self.workflow.error_handling
        config: Dict[str, Any] = {}
        if handling is None:
            return config
        if handling.retry_policy is not None:
            policy = handling.retry_policy
            config["retryPolicy"] = {
                "maxAttempts": policy.max_attempts,
                "backoffMs": policy.backoff_ms,
                "backoffKind": "exponential" if policy.exponential else "linear",
            }
        if handling.circuit_breaker is not None:
            breaker = handling.circuit_breaker
            config["circuitBreaker"] = {
                "failureThreshold": breaker.failure_threshold,
                "recoveryTimeoutMs": breaker.recovery_timeout_ms,
            }
        return config

    def _resources(self) -> List[Dict[str, Any]]:
        resources = []
        for kind, entries in (("idp", "idp"), ("connector", "connectors")):
            for name, ref in (self.workflow.resources.get(entries) or {}).items():
                resources.append({"id": name, "type": kind, "name": name, "config": {"ref": ref}})
        return resources


def compile_cards(workflow: CardWorkflow | Dict[str, Any]) -> WorkflowDocument:
    """Compile a card workflow into a single-flow WorkflowDocument.

    Raises:
        ValidationError: Missing trigger card, unsupported card types or
            dangling connections
    """
    return CardCompiler(workflow).compile()
