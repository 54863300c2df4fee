"""Operations on stored flows and agents.

``FlowService`` is the boundary between callers and the pure components: every public
method returns a ``Result`` and never raises a ``FlowError``. Node-level edits go through
``FlowRepository.update_node`` so that only the edited node is written back.
"""

import functools
import logging
import threading
from typing import Any

from pydantic import ValidationError

from apps.flows.agents import (
    Agent,
    HistoryPromptMessage,
    OutputFieldOp,
    PromptMessageOp,
    add_history_message,
    set_history_message,
    upsert_output_fields,
    upsert_prompt_messages,
)
from apps.flows.conditions import operator_names
from apps.flows.config import FlowSettings, configure_logging, get_settings
from apps.flows.const import LogicOperator, NodeType, ReadyState
from apps.flows.data_store import DataStoreValue
from apps.flows.exceptions import FlowError, NotFound, TypeMismatch, ValidationFailure
from apps.flows.flow import (
    DataStoreField,
    DataStoreSchema,
    DataStoreSchemaField,
    Edge,
    Flow,
    IfCondition,
    Node,
    Position,
    ValidationIssue,
    create_flow,
    validation_failure,
)
from apps.flows.graph import AgentRunner, FlowGraph, TurnResult
from apps.flows.prompts import HistoryTurn
from apps.flows.readiness import next_ready_state, ready_state_from_issues
from apps.flows.repository import AgentRepository, FlowRepository
from apps.flows.results import BatchResult, Result
from apps.flows.runs import FlowRun
from apps.flows.transfer import ImportedFlow, clone_flow, export_flow, import_flow
from apps.flows.traversal import TraversalCache, TraversalResult
from apps.flows.utils import snake_case
from apps.flows.validation import validate_flow
from apps.flows.variables import AvailableVariable, available_variables

logger = logging.getLogger("flows.service")

DATA_STORE_FIELD_ATTRIBUTES = frozenset({"logic", "schemaFieldId"})
SCHEMA_FIELD_ATTRIBUTES = frozenset({"name", "type", "initialValue", "description", "minValue", "maxValue"})


def returns_result(method):
    """Wrap the return value in ``Result.success`` and convert ``FlowError`` into ``Result.failure``."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs) -> Result:
        try:
            return Result.success(method(*args, **kwargs))
        except FlowError as e:
            logger.info("%s failed: %s", method.__name__, e.message)
            return Result.failure(e)

    return wrapper


class FlowService:
    def __init__(
        self,
        flow_repository: FlowRepository,
        agent_repository: AgentRepository,
        settings: FlowSettings | None = None,
    ):
        self.flow_repository = flow_repository
        self.agent_repository = agent_repository
        self.settings = settings or get_settings()
        self.traversal_cache = TraversalCache(self.settings.traversal_cache_size)
        configure_logging(self.settings)

    # --- Flows ---

    @returns_result
    def create_flow(self, **props) -> Flow:
        flow = self.flow_repository.save_flow(create_flow(**props))
        logger.info("Created flow %s", flow.id)
        return flow

    @returns_result
    def get_flow(self, flow_id: str) -> Flow:
        return self.flow_repository.get_flow_by_id(flow_id)

    @returns_result
    def list_flows(self) -> list[Flow]:
        return self.flow_repository.list_flows()

    @returns_result
    def update_flow(self, flow_id: str, **changes) -> Flow:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        return self.flow_repository.save_flow(flow.update(**changes))

    @returns_result
    def delete_flow(self, flow_id: str) -> None:
        self.flow_repository.delete_flow(flow_id)

    @returns_result
    def set_ready_state(self, flow_id: str, ready_state: ReadyState) -> Flow:
        try:
            ready_state = ReadyState(ready_state)
        except ValueError:
            raise ValidationFailure(f"Unknown ready state: {ready_state}") from None
        return self.flow_repository.update_flow_ready_state(flow_id, ready_state)

    @returns_result
    def update_node(self, flow_id: str, node_id: str, node_data: dict[str, Any]) -> Flow:
        return self.flow_repository.update_node(flow_id, node_id, node_data)

    @returns_result
    def update_nodes_and_edges(self, flow_id: str, nodes: list[Node | dict], edges: list[Edge | dict]) -> Flow:
        return self.flow_repository.update_nodes_and_edges(flow_id, nodes, edges)

    @returns_result
    def update_node_positions(self, flow_id: str, positions: dict[str, Position | dict]) -> Flow:
        return self.flow_repository.update_node_positions(flow_id, positions)

    @returns_result
    def update_viewport(self, flow_id: str, viewport: dict[str, Any]) -> Flow:
        return self.flow_repository.update_flow_viewport(flow_id, viewport)

    # --- Connectivity & validation ---

    @returns_result
    def get_connectivity(self, flow_id: str) -> TraversalResult:
        return self.traversal_cache.get(self.flow_repository.get_flow_by_id(flow_id))

    @returns_result
    def run_validation(self, flow_id: str) -> list[ValidationIssue]:
        """Validate the stored flow, persist the issues and set ``ready`` or ``error``."""
        flow = self.flow_repository.get_flow_by_id(flow_id)
        issues = validate_flow(flow, self._agents_for(flow), self.traversal_cache.get(flow))
        ready_state = ready_state_from_issues(issues)
        self.flow_repository.update_flow_validation(flow_id, ready_state, issues)
        logger.info("Flow %s validated as %s with %d issue(s)", flow_id, ready_state, len(issues))
        return issues

    @returns_result
    def available_variables(self, flow_id: str, node_id: str = None) -> list[AvailableVariable]:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        if node_id is not None:
            flow.get_node(node_id)
        return available_variables(flow, self._agents_for(flow), node_id)

    # --- Data store schema ---

    @returns_result
    def add_schema_field(self, flow_id: str, name: str, **attributes) -> DataStoreSchemaField:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        name = snake_case(name)
        if not name:
            raise ValidationFailure("Data store field name is empty")
        if flow.schema_field_by_name(name) is not None:
            raise ValidationFailure(f"Data store field '{name}' already exists")
        self._check_attributes(attributes, SCHEMA_FIELD_ATTRIBUTES - {"name"}, "data store field")
        try:
            field = DataStoreSchemaField(name=name, **attributes)
        except ValidationError as e:
            raise validation_failure(e, f"Invalid data store field '{name}'") from e

        self.flow_repository.save_flow(flow.update(dataStoreSchema=DataStoreSchema(fields=[*flow.schema_fields, field])))
        return field

    @returns_result
    def update_schema_field(self, flow_id: str, field_id: str, **changes) -> DataStoreSchemaField:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        field = self._schema_field(flow, field_id)
        self._check_attributes(changes, SCHEMA_FIELD_ATTRIBUTES, "data store field")
        if "name" in changes:
            changes["name"] = snake_case(changes["name"])
            other = flow.schema_field_by_name(changes["name"])
            if other is not None and other.id != field.id:
                raise ValidationFailure(f"Data store field '{changes['name']}' already exists")
        try:
            updated = DataStoreSchemaField.model_validate({**field.model_dump(), **changes})
        except ValidationError as e:
            raise validation_failure(e, f"Invalid data store field '{field.name}'") from e

        fields = [updated if f.id == field.id else f for f in flow.schema_fields]
        self.flow_repository.save_flow(flow.update(dataStoreSchema=DataStoreSchema(fields=fields)))
        return updated

    @returns_result
    def remove_schema_field(self, flow_id: str, field_id: str) -> list[str]:
        """Remove a schema field and every data-store node field that writes to it.

        Returns the ids of the removed node fields. A ``ready`` flow goes back to ``draft``.
        """
        flow = self.flow_repository.get_flow_by_id(flow_id)
        field = self._schema_field(flow, field_id)

        removed = []
        nodes = []
        for node in flow.nodes:
            if node.type == NodeType.DATA_STORE:
                kept = [f for f in node.data.dataStoreFields if f.schemaFieldId != field.id]
                removed.extend(f.id for f in node.data.dataStoreFields if f.schemaFieldId == field.id)
                node = node.model_copy(update={"data": node.data.model_copy(update={"dataStoreFields": kept})})
            nodes.append(node)

        fields = [f for f in flow.schema_fields if f.id != field.id]
        self.flow_repository.save_flow(
            flow.update(
                dataStoreSchema=DataStoreSchema(fields=fields),
                nodes=nodes,
                readyState=next_ready_state(flow.readyState, structural_change=True),
            )
        )
        logger.info("Removed data store field %s and %d node field(s) from flow %s", field.name, len(removed), flow_id)
        return removed

    # --- Data store nodes ---

    @returns_result
    def update_data_store_node_fields(self, flow_id: str, node_id: str, fields: list[dict]) -> Flow:
        """Merge ``fields`` into the node by schema field.

        Each item names its schema field with ``schemaFieldId`` or ``name`` and carries the new
        ``logic``. Fields already on the node are updated, the others are appended.
        """
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.DATA_STORE)

        store_fields = list(node.data.dataStoreFields)
        for item in fields:
            key = item.get("schemaFieldId") or item.get("name")
            if not key:
                raise ValidationFailure("Each data store field needs a schemaFieldId or a name")
            schema_field = self._schema_field(flow, key)
            index = next((i for i, f in enumerate(store_fields) if f.schemaFieldId == schema_field.id), None)
            if index is None:
                store_fields.append(DataStoreField(schemaFieldId=schema_field.id, logic=item.get("logic")))
            else:
                store_fields[index] = store_fields[index].model_copy(update={"logic": item.get("logic")})

        return self._write_data_store_fields(flow_id, node_id, store_fields)

    @returns_result
    def add_data_store_field(self, flow_id: str, node_id: str, schema_field: str, logic: str = None) -> DataStoreField:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.DATA_STORE)
        target = self._schema_field(flow, schema_field)
        if any(f.schemaFieldId == target.id for f in node.data.dataStoreFields):
            raise ValidationFailure(f"'{node.label}' already updates '{target.name}'")

        field = DataStoreField(schemaFieldId=target.id, logic=logic)
        self._write_data_store_fields(flow_id, node_id, [*node.data.dataStoreFields, field])
        return field

    @returns_result
    def update_data_store_field(self, flow_id: str, node_id: str, field_id: str, **changes) -> DataStoreField:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.DATA_STORE)
        self._check_attributes(changes, DATA_STORE_FIELD_ATTRIBUTES, "data store node field")
        field = self._find(node.data.dataStoreFields, field_id, "data store node field")
        if "schemaFieldId" in changes:
            changes["schemaFieldId"] = self._schema_field(flow, changes["schemaFieldId"]).id

        updated = field.model_copy(update=changes)
        fields = [updated if f.id == field_id else f for f in node.data.dataStoreFields]
        self._write_data_store_fields(flow_id, node_id, fields)
        return updated

    @returns_result
    def remove_data_store_field(self, flow_id: str, node_id: str, field_id: str) -> Flow:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.DATA_STORE)
        self._find(node.data.dataStoreFields, field_id, "data store node field")
        fields = [f for f in node.data.dataStoreFields if f.id != field_id]
        return self._write_data_store_fields(flow_id, node_id, fields)

    def _write_data_store_fields(self, flow_id: str, node_id: str, fields: list[DataStoreField]) -> Flow:
        return self.flow_repository.update_node(
            flow_id, node_id, {"dataStoreFields": [field.model_dump(mode="json") for field in fields]}
        )

    # --- If nodes ---

    @returns_result
    def update_if_node(
        self,
        flow_id: str,
        node_id: str,
        logic_operator: LogicOperator | str = None,
        conditions: list[dict] = None,
    ) -> Flow:
        """Replace the logic operator and / or the whole condition list of an if node."""
        flow = self.flow_repository.get_flow_by_id(flow_id)
        self._node_of_type(flow, node_id, NodeType.IF)

        node_data = {}
        if logic_operator is not None:
            try:
                node_data["logicOperator"] = LogicOperator(logic_operator)
            except ValueError:
                raise ValidationFailure(f"Unknown logic operator: {logic_operator}") from None
        if conditions is not None:
            node_data["conditions"] = [self._condition(c).model_dump(mode="json") for c in conditions]
        if not node_data:
            return flow
        return self.flow_repository.update_node(flow_id, node_id, node_data)

    @returns_result
    def add_if_condition(self, flow_id: str, node_id: str, condition: dict = None) -> IfCondition:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.IF)
        new_condition = self._condition({key: value for key, value in (condition or {}).items() if key != "id"})
        self._write_conditions(flow_id, node_id, [*node.data.conditions, new_condition])
        return new_condition

    @returns_result
    def update_if_condition(self, flow_id: str, node_id: str, condition_id: str, **changes) -> IfCondition:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.IF)
        condition = self._find(node.data.conditions, condition_id, "condition")
        changes.pop("id", None)
        updated = self._condition({**condition.model_dump(), **changes})
        self._write_conditions(
            flow_id, node_id, [updated if c.id == condition_id else c for c in node.data.conditions]
        )
        return updated

    @returns_result
    def remove_if_condition(self, flow_id: str, node_id: str, condition_id: str) -> Flow:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        node = self._node_of_type(flow, node_id, NodeType.IF)
        self._find(node.data.conditions, condition_id, "condition")
        return self._write_conditions(flow_id, node_id, [c for c in node.data.conditions if c.id != condition_id])

    def _write_conditions(self, flow_id: str, node_id: str, conditions: list[IfCondition]) -> Flow:
        return self.flow_repository.update_node(
            flow_id, node_id, {"conditions": [condition.model_dump(mode="json") for condition in conditions]}
        )

    def _condition(self, data: dict) -> IfCondition:
        try:
            condition = IfCondition.model_validate(data)
        except ValidationError as e:
            raise validation_failure(e, "Invalid condition") from e
        if condition.dataType is not None and condition.operator:
            if condition.operator not in operator_names(condition.dataType):
                raise ValidationFailure(
                    f"Operator '{condition.operator}' cannot be used with {condition.dataType} values"
                )
        return condition

    # --- Agents ---

    @returns_result
    def get_agent(self, agent_id: str) -> Agent:
        return self.agent_repository.get_agent(agent_id)

    @returns_result
    def save_agent(self, agent: Agent) -> Agent:
        return self.agent_repository.save_agent(agent)

    @returns_result
    def upsert_prompt_messages(self, agent_id: str, ops: list[PromptMessageOp | dict]) -> BatchResult:
        agent, result = upsert_prompt_messages(self.agent_repository.get_agent(agent_id), ops)
        if result.created or result.updated or result.deleted or result.system_role_fixed:
            self.agent_repository.save_agent(agent)
        return result

    @returns_result
    def upsert_output_fields(self, agent_id: str, ops: list[OutputFieldOp | dict]) -> BatchResult:
        agent, result = upsert_output_fields(self.agent_repository.get_agent(agent_id), ops)
        if result.created or result.updated or result.deleted:
            self.agent_repository.save_agent(agent)
        return result

    @returns_result
    def set_history_message(
        self, agent_id: str, message: HistoryPromptMessage | dict, index: int = None, replace: bool = True
    ) -> Agent:
        """Put a history message on the agent. With ``replace=False`` an existing one is a failure."""
        agent = self.agent_repository.get_agent(agent_id)
        try:
            message = HistoryPromptMessage.model_validate(message)
        except ValidationError as e:
            raise validation_failure(e, "Invalid history message") from e
        update = set_history_message if replace else add_history_message
        return self.agent_repository.save_agent(update(agent, message, index))

    # --- Import / export ---

    @returns_result
    def export_flow(self, flow_id: str) -> dict:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        return export_flow(flow, self._agents_for(flow))

    @returns_result
    def import_flow(self, data: dict, model_overrides: dict[str, dict] = None) -> Flow:
        return self._save_imported(import_flow(data, model_overrides))

    @returns_result
    def clone_flow(self, flow_id: str) -> Flow:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        return self._save_imported(clone_flow(flow, self._agents_for(flow)))

    def _save_imported(self, imported: ImportedFlow) -> Flow:
        if not imported.result.success:
            logger.warning("Flow %s imported with agent failures: %s", imported.flow.id, imported.result.errors)
        for agent in imported.agents:
            self.agent_repository.save_agent(agent)
        return self.flow_repository.save_flow(imported.flow)

    # --- Turns ---

    @returns_result
    def run_turn(
        self,
        flow_id: str,
        runner: AgentRunner,
        *,
        system: dict[str, Any] = None,
        history: list[HistoryTurn] = None,
        previous_data_store: list[DataStoreValue] = None,
        cancel_event: threading.Event = None,
        flow_run: FlowRun = None,
    ) -> TurnResult:
        flow = self.flow_repository.get_flow_by_id(flow_id)
        graph = FlowGraph(
            flow,
            self._agents_for(flow),
            runner,
            system=system,
            history=history,
            cancel_event=cancel_event,
            settings=self.settings,
        )
        return graph.run_turn(previous_data_store, flow_run=flow_run)

    # --- Helpers ---

    def _agents_for(self, flow: Flow) -> dict[str, Agent]:
        return self.agent_repository.get_agents([node.resource_id for node in flow.nodes_of_type(NodeType.AGENT)])

    def _node_of_type(self, flow: Flow, node_id: str, node_type: NodeType) -> Node:
        node = flow.get_node(node_id)
        if node.type != node_type:
            raise TypeMismatch(
                f"Node '{node_id}' is a {node.type} node, not a {node_type} node",
                node_id=node_id,
                expected=node_type,
                actual=node.type,
            )
        return node

    def _schema_field(self, flow: Flow, key: str) -> DataStoreSchemaField:
        """Find a schema field by id, then by name."""
        field = flow.schema_field_by_id(key) or flow.schema_field_by_name(key) or flow.schema_field_by_name(snake_case(key))
        if field is None:
            raise NotFound(f"Data store field '{key}' not found", resource="schema_field", resource_id=key)
        return field

    def _find(self, items: list, item_id: str, resource: str):
        item = next((item for item in items if item.id == item_id), None)
        if item is None:
            raise NotFound(f"{resource.capitalize()} '{item_id}' not found", resource=resource, resource_id=item_id)
        return item

    def _check_attributes(self, attributes: dict, allowed: frozenset, resource: str):
        unknown = sorted(set(attributes) - allowed)
        if unknown:
            raise ValidationFailure(f"Unknown {resource} attribute(s): {', '.join(unknown)}")
