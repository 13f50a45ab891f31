"""Canvas Models - the visual node/port/connection graph a designer produces."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

NodeType = Literal["component", "trigger", "condition", "resource", "variable"]


def _camel(name: str, camel: str) -> Dict[str, Any]:
    return {"validation_alias": AliasChoices(camel, name), "serialization_alias": camel}


class _CanvasModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class CanvasPort(_CanvasModel):
    """An input or output handle on a node."""
    id: str
    type: Literal["input", "output"]
    label: str = ""
    name: Optional[str] = None
    data_type: str = Field("any", **_camel("data_type", "dataType"))
    position: Optional[str] = None
    connected: bool = False

    @property
    def port_name(self) -> str:
        return self.name or self.label or self.id


class Position(_CanvasModel):
    x: float = 0
    y: float = 0


class Size(_CanvasModel):
    width: float = 0
    height: float = 0


class NodeVisual(_CanvasModel):
    color: str = ""
    icon: str = ""
    label: str = ""


class CanvasNode(_CanvasModel):
    """A node on the canvas; component nodes reference a library component."""
    id: str = Field(..., min_length=1)
    type: NodeType
    component_id: Optional[str] = Field(None, **_camel("component_id", "componentId"))
    position: Position = Field(default_factory=Position)
    size: Size = Field(default_factory=Size)
    config: Dict[str, Any] = Field(default_factory=dict)
    visual: NodeVisual = Field(default_factory=NodeVisual)
    ports: List[CanvasPort] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.visual.label or self.id

    def get_port(self, port_id: str) -> Optional[CanvasPort]:
        for port in self.ports:
            if port.id == port_id:
                return port
        return None

    def ports_of(self, direction: str) -> List[CanvasPort]:
        return [port for port in self.ports if port.type == direction]


class ConnectionStyle(_CanvasModel):
    color: str = ""
    animated: bool = False
    label: Optional[str] = None


class CanvasConnection(_CanvasModel):
    """A directed link from a source output port to a target input port."""
    id: str
    source_node_id: str = Field(..., **_camel("source_node_id", "sourceNodeId"))
    source_port_id: str = Field(..., **_camel("source_port_id", "sourcePortId"))
    target_node_id: str = Field(..., **_camel("target_node_id", "targetNodeId"))
    target_port_id: str = Field(..., **_camel("target_port_id", "targetPortId"))
    style: ConnectionStyle = Field(default_factory=ConnectionStyle)


class Viewport(_CanvasModel):
    x: float = 0
    y: float = 0
    zoom: float = 1


class CanvasMetadata(_CanvasModel):
    author: Optional[str] = None
    created: Optional[str] = None
    modified: Optional[str] = None
    version: str = "1.0.0"


class Canvas(_CanvasModel):
    """A complete visual design."""
    id: str = Field(..., min_length=1)
    name: str = ""
    description: Optional[str] = None
    nodes: List[CanvasNode] = Field(default_factory=list)
    connections: List[CanvasConnection] = Field(default_factory=list)
    viewport: Viewport = Field(default_factory=Viewport)
    metadata: CanvasMetadata = Field(default_factory=CanvasMetadata)

    def get_node(self, node_id: str) -> Optional[CanvasNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
