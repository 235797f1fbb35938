"""Pydantic models describing a workflow graph."""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class NodeKind(str, Enum):
    """Enumeration of workflow node kinds."""
    START = "start"
    END = "end"
    ACTION = "action"
    DECISION = "decision"
    PARALLEL = "parallel"
    LOOP = "loop"
    FORM = "form"


class HttpMethod(str, Enum):
    """HTTP methods supported by API call actions."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class CanvasModel(BaseModel):
    """Base for models that are exchanged with the canvas editor in camelCase."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class KeyValuePair(CanvasModel):
    """A single header or query parameter."""
    key: str = Field(default="", description="Header or parameter name")
    value: str = Field(default="", description="Header or parameter value")


class ApiConfig(CanvasModel):
    """Outbound HTTP call configuration of an action node."""
    url: str = Field(default="", description="Request URL, may contain {{variables}}")
    method: HttpMethod = Field(default=HttpMethod.GET, description="HTTP method")
    headers: List[KeyValuePair] = Field(default_factory=list, description="Request headers")
    query_params: List[KeyValuePair] = Field(default_factory=list, description="Query string parameters")
    body: str = Field(default="", description="Raw request body")

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, method):
        """Accept lower-case method names."""
        if isinstance(method, str):
            return method.upper()
        return method


class FormFieldOption(CanvasModel):
    """Option of a select, radio or multiselect field."""
    label: str
    value: str


class FormField(CanvasModel):
    """A component of a form node schema."""
    id: str = Field(..., description="Component identifier")
    type: str = Field(..., description="Component type, e.g. text, select, checkbox")
    name: str = Field(default="", description="Key under which the submitted value is stored")
    label: Optional[str] = None
    placeholder: Optional[str] = None
    default_value: Optional[str] = None
    required: bool = False
    options: List[FormFieldOption] = Field(default_factory=list)
    children: List["FormField"] = Field(default_factory=list)


class FormSchema(CanvasModel):
    """Field schema exposed to the user when a form node pauses the run."""
    title: Optional[str] = None
    description: Optional[str] = None
    components: List[FormField] = Field(default_factory=list, description="Form components")
    submit_label: Optional[str] = None
    cancel_label: Optional[str] = None


class WorkflowNode(CanvasModel):
    """A typed step of a workflow graph."""
    id: str = Field(..., description="Unique node identifier")
    kind: str = Field(..., alias="type", description="Node kind, see NodeKind")
    label: str = Field(..., description="Display label, also the variable namespace key")
    description: Optional[str] = Field(None, description="Free-text description, may contain {{variables}}")
    action_type: Optional[str] = Field(None, description="Action subtype, e.g. api_call")
    api_config: Optional[ApiConfig] = Field(None, description="HTTP configuration for api_call actions")
    condition: Optional[str] = Field(None, description="Decision condition expression")
    loop_count: Optional[int] = Field(None, description="Maximum loop iterations")
    loop_condition: Optional[str] = Field(None, description="Informational loop condition")
    branch_count: Optional[int] = Field(None, alias="branches", description="Declared number of parallel branches")
    form_schema: Optional[FormSchema] = Field(None, alias="formConfig", description="Form node schema")

    @field_validator("id", "label")
    @classmethod
    def validate_not_empty(cls, value):
        """Ensure identifiers and labels are not blank."""
        if value is None or not str(value).strip():
            raise ValueError("Node id and label cannot be empty")
        return value

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, kind):
        """Store the kind as a lower-case plain string."""
        if isinstance(kind, Enum):
            kind = kind.value
        return str(kind).strip().lower()


class WorkflowEdge(CanvasModel):
    """A directed connection between two nodes."""
    id: str = Field(..., description="Unique edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, description="Named output port of the source node")
    label: Optional[str] = Field(None, description="Edge label")


class WorkflowGraph(CanvasModel):
    """Immutable in-memory representation of one workflow version."""
    id: str = Field(default="", description="Workflow identifier")
    name: str = Field(default="Untitled workflow", description="Workflow name")
    version: int = Field(default=1, alias="currentVersion", description="Workflow version")
    nodes: List[WorkflowNode] = Field(default_factory=list, description="Nodes in the graph")
    edges: List[WorkflowEdge] = Field(default_factory=list, description="Edges connecting nodes")

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        """Return the node with the given ID, or None."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[WorkflowEdge]:
        """Return edges leaving a node, in input order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[WorkflowEdge]:
        """Return edges entering a node, in input order."""
        return [edge for edge in self.edges if edge.target == node_id]

    def start_nodes(self) -> List[WorkflowNode]:
        return [node for node in self.nodes if node.kind == NodeKind.START.value]

    def start_node(self) -> Optional[WorkflowNode]:
        """Return the first start node, or None."""
        starts = self.start_nodes()
        return starts[0] if starts else None

    @classmethod
    def from_canvas(cls, payload: Dict[str, Any]) -> "WorkflowGraph":
        """Build a graph from the canvas editor's export format.

        The editor nests node settings under ``data`` and stores edge labels
        either on the edge or under ``edge.data.label``; both shapes are
        flattened here.
        """
        nodes = []
        for raw in payload.get("nodes", []):
            data = dict(raw.get("data") or {})
            data.pop("isTestActive", None)
            data.pop("isTestVisited", None)
            data.pop("isTestMode", None)
            nodes.append({**data, "id": raw["id"], "type": raw.get("type")})

        edges = []
        for raw in payload.get("edges", []):
            label = raw.get("label") or (raw.get("data") or {}).get("label")
            edges.append({
                "id": raw["id"],
                "source": raw["source"],
                "target": raw["target"],
                "sourceHandle": raw.get("sourceHandle"),
                "label": label,
            })

        return cls.model_validate({
            "id": payload.get("id", ""),
            "name": payload.get("name", "Untitled workflow"),
            "currentVersion": payload.get("currentVersion") or 1,
            "nodes": nodes,
            "edges": edges,
        })


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")
