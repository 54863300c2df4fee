"""Datamodels for the persisted flow document.

Field names match the JSON document exactly (camelCase). Node payloads are a tagged
variant selected by ``Node.type`` and are validated here, at the persistence boundary.
"""

import re
from datetime import datetime
from typing import Any, ClassVar, Self

import pydantic
from pydantic import ConfigDict, Field, ValidationError, field_validator, model_validator

from apps.flows.const import (
    DEFAULT_END_LABEL,
    DEFAULT_START_LABEL,
    STRUCTURAL_FIELDS,
    BranchHandle,
    DataStoreFieldType,
    IssueSeverity,
    LogicOperator,
    NodeType,
    ReadyState,
)
from apps.flows.exceptions import NotFound, ValidationFailure
from apps.flows.readiness import next_ready_state
from apps.flows.utils import new_id, utcnow

ID_RE = re.compile(r"^\S+$")


def check_id(value: str) -> str:
    if not ID_RE.match(value):
        raise ValueError(f"malformed id: {value!r}")
    return value


def validation_failure(error: ValidationError, message: str) -> ValidationFailure:
    issues = [{"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]} for err in error.errors()]
    return ValidationFailure(message, issues=issues)


class Position(pydantic.BaseModel):
    x: float = 0
    y: float = 0


class NodeData(pydantic.BaseModel):
    # unknown keys written by UI layers are kept so that documents round-trip unchanged
    model_config = ConfigDict(extra="allow")


class StartNodeData(NodeData):
    label: str = DEFAULT_START_LABEL


class EndNodeData(NodeData):
    label: str = DEFAULT_END_LABEL


class AgentNodeData(NodeData):
    agentId: str
    label: str | None = None


class IfCondition(pydantic.BaseModel):
    id: str = Field(default_factory=new_id)
    dataType: DataStoreFieldType | None = None
    value1: str = ""
    operator: str | None = None
    value2: str = ""


class IfNodeData(NodeData):
    ifNodeId: str
    name: str = "If"
    color: str | None = None
    conditions: list[IfCondition] = []
    logicOperator: LogicOperator = LogicOperator.AND


class DataStoreField(pydantic.BaseModel):
    id: str = Field(default_factory=new_id)
    schemaFieldId: str
    logic: str | None = None


class DataStoreNodeData(NodeData):
    dataStoreNodeId: str
    name: str = "Data Store"
    color: str | None = None
    dataStoreFields: list[DataStoreField] = []


NODE_DATA_MODELS: dict[NodeType, type[NodeData]] = {
    NodeType.START: StartNodeData,
    NodeType.END: EndNodeData,
    NodeType.AGENT: AgentNodeData,
    NodeType.IF: IfNodeData,
    NodeType.DATA_STORE: DataStoreNodeData,
}

# payload field that references the separately persisted resource
RESOURCE_REFERENCE_FIELDS: dict[NodeType, str] = {
    NodeType.AGENT: "agentId",
    NodeType.IF: "ifNodeId",
    NodeType.DATA_STORE: "dataStoreNodeId",
}


class Node(pydantic.BaseModel):
    id: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    data: StartNodeData | EndNodeData | AgentNodeData | IfNodeData | DataStoreNodeData
    deletable: bool | None = None
    zIndex: int | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        return check_id(value)

    @model_validator(mode="before")
    @classmethod
    def _parse_payload(cls, values: Any) -> Any:
        """Select the payload model from ``type``.

        Older documents omit the resource reference on the payload and rely on the node id
        instead. The reference is filled in here so that it is always present afterwards.
        """
        if not isinstance(values, dict):
            return values
        try:
            node_type = NodeType(values.get("type"))
        except ValueError:
            return values

        model = NODE_DATA_MODELS[node_type]
        data = values.get("data")
        if isinstance(data, model):
            return values
        if isinstance(data, pydantic.BaseModel):
            data = data.model_dump()
        data = dict(data or {})
        reference = RESOURCE_REFERENCE_FIELDS.get(node_type)
        if reference and not data.get(reference):
            data[reference] = values.get("id")
        return {**values, "data": model.model_validate(data)}

    @property
    def resource_id(self) -> str | None:
        reference = RESOURCE_REFERENCE_FIELDS.get(self.type)
        return getattr(self.data, reference) if reference else None

    @property
    def label(self) -> str:
        return getattr(self.data, "name", None) or getattr(self.data, "label", None) or self.id


class Edge(pydantic.BaseModel):
    id: str
    source: str
    target: str
    sourceHandle: str | None = None
    targetHandle: str | None = None
    label: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        return check_id(value)


class DataStoreSchemaField(pydantic.BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: DataStoreFieldType = DataStoreFieldType.STRING
    # stored as text; may itself be a template or formula
    initialValue: str = ""
    description: str | None = None
    minValue: float | None = None
    maxValue: float | None = None

    @field_validator("initialValue", mode="before")
    @classmethod
    def _initial_value_as_text(cls, value):
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return ""
        return str(value)


class DataStoreSchema(pydantic.BaseModel):
    fields: list[DataStoreSchemaField] = []


class ValidationIssue(pydantic.BaseModel):
    id: str
    code: str
    severity: IssueSeverity
    title: str
    description: str = ""
    suggestion: str | None = None
    nodeId: str | None = None
    agentId: str | None = None
    agentName: str | None = None
    metadata: dict[str, Any] | None = None


class Flow(pydantic.BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = "New Flow"
    description: str = ""
    nodes: list[Node] = []
    edges: list[Edge] = []
    dataStoreSchema: DataStoreSchema | None = None
    responseTemplate: str = ""
    panelStructure: dict[str, Any] | None = None
    viewport: dict[str, Any] | None = None
    vibeSessionId: str | None = None
    readyState: ReadyState = ReadyState.DRAFT
    validationIssues: list[ValidationIssue] = []
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    READ_ONLY_FIELDS: ClassVar[frozenset[str]] = frozenset({"id", "createdAt", "updatedAt"})

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        return check_id(value)

    @classmethod
    def from_json(cls, data: dict) -> Self:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise validation_failure(e, "Invalid flow document") from e

    def to_json(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)

    def update(self, **changes) -> Self:
        """Return a copy with only the given fields replaced.

        Fields that are not passed are left untouched; ``None`` passed explicitly is applied.
        ``readyState`` is recomputed: replacing nodes, edges or the response template of a
        ``ready`` flow puts it back into ``draft``.
        """
        unknown = sorted(set(changes) - set(type(self).model_fields))
        if unknown:
            raise ValidationFailure(f"Unknown flow field(s): {', '.join(unknown)}")
        read_only = sorted(set(changes) & self.READ_ONLY_FIELDS)
        if read_only:
            raise ValidationFailure(f"Read-only flow field(s): {', '.join(read_only)}")

        explicit = changes.pop("readyState", None)
        data = {**self.model_dump(), **changes, "updatedAt": utcnow()}
        try:
            updated = type(self).model_validate(data)
        except ValidationError as e:
            raise validation_failure(e, "Invalid flow update") from e

        structural = any(getattr(updated, name) != getattr(self, name) for name in STRUCTURAL_FIELDS & set(changes))
        updated.readyState = next_ready_state(self.readyState, explicit=explicit, structural_change=structural)
        return updated

    def set_ready_state(self, state: ReadyState, issues: list[ValidationIssue] | None = None) -> Self:
        changes = {"readyState": ReadyState(state)}
        if issues is not None:
            changes["validationIssues"] = issues
        return self.update(**changes)

    # --- Lookups ---

    def node_by_id(self, node_id: str) -> Node | None:
        return next((node for node in self.nodes if node.id == node_id), None)

    def get_node(self, node_id: str) -> Node:
        node = self.node_by_id(node_id)
        if node is None:
            raise NotFound(f"Node '{node_id}' not found in flow '{self.id}'", resource="node", resource_id=node_id)
        return node

    def nodes_of_type(self, node_type: NodeType) -> list[Node]:
        return [node for node in self.nodes if node.type == node_type]

    @property
    def start_node(self) -> Node | None:
        return next(iter(self.nodes_of_type(NodeType.START)), None)

    @property
    def end_node(self) -> Node | None:
        return next(iter(self.nodes_of_type(NodeType.END)), None)

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def edge_for_handle(self, node_id: str, handle: BranchHandle) -> Edge | None:
        return next((edge for edge in self.outgoing_edges(node_id) if edge.sourceHandle == handle), None)

    @property
    def schema_fields(self) -> list[DataStoreSchemaField]:
        return self.dataStoreSchema.fields if self.dataStoreSchema else []

    def schema_field_by_id(self, field_id: str) -> DataStoreSchemaField | None:
        return next((field for field in self.schema_fields if field.id == field_id), None)

    def schema_field_by_name(self, name: str) -> DataStoreSchemaField | None:
        return next((field for field in self.schema_fields if field.name == name), None)


def create_flow(**props) -> Flow:
    """Build a new flow. Unspecified fields take their defaults (``draft``, empty graph)."""
    try:
        return Flow(**props)
    except ValidationError as e:
        raise validation_failure(e, "Invalid flow") from e
