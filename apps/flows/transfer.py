"""Export, import and clone flows together with the agents they reference.

Importing never reuses an id from the file: the flow, its nodes, edges, agents, if-node
conditions, data-store fields and schema fields all receive new ids, and every reference is
rewritten so that the graph topology is unchanged.

Agents are imported one by one. An agent that is missing from the file or fails validation is
reported in ``ImportedFlow.result``; its node still receives a new agent id, which then points
at no agent and is flagged by validation.
"""

import copy
import logging
from collections.abc import Mapping
from typing import Any, NamedTuple

from pydantic import ValidationError

from apps.flows.agents import Agent
from apps.flows.const import NodeType, ReadyState
from apps.flows.exceptions import ValidationFailure
from apps.flows.flow import RESOURCE_REFERENCE_FIELDS, Flow, validation_failure
from apps.flows.results import BatchResult, ItemAction
from apps.flows.utils import new_id, utcnow

logger = logging.getLogger("flows.transfer")

EXPORT_VERSION = 1
MODEL_OVERRIDE_FIELDS = ("apiSource", "modelId", "modelName")


class ImportedFlow(NamedTuple):
    flow: Flow
    agents: list[Agent]
    # one outcome per agent node, keyed by the node id in the import file
    result: BatchResult


def export_flow(flow: Flow, agents: Mapping[str, Agent]) -> dict:
    """Serialise ``flow`` with the configuration of every node keyed by node id."""
    exported_agents = {}
    if_nodes = {}
    data_store_nodes = {}
    for node in flow.nodes:
        if node.type == NodeType.AGENT:
            agent = agents.get(node.resource_id)
            if agent is None:
                logger.warning("Agent %s referenced by node %s is missing from the export", node.resource_id, node.id)
                continue
            exported_agents[node.id] = agent.model_dump(mode="json")
        elif node.type == NodeType.IF:
            if_nodes[node.id] = node.data.model_dump(mode="json")
        elif node.type == NodeType.DATA_STORE:
            data_store_nodes[node.id] = node.data.model_dump(mode="json")

    return {
        "version": EXPORT_VERSION,
        "exportedAt": utcnow().isoformat(),
        "flow": flow.to_json(),
        "agents": exported_agents,
        "ifNodes": if_nodes,
        "dataStoreNodes": data_store_nodes,
    }


def import_flow(data: dict, model_overrides: Mapping[str, dict] | None = None) -> ImportedFlow:
    """Create a new flow and new agents from exported data.

    Parameters:
        data (dict): the output of ``export_flow``.
        model_overrides (dict, optional): ``{original agent id: {"apiSource", "modelId", "modelName"}}``,
            applied before the agents receive their new ids.
    """
    if not isinstance(data, dict) or "flow" not in data:
        raise ValidationFailure("Import data does not contain a flow")

    document = copy.deepcopy(data["flow"])
    old_flow_id = document.get("id")
    new_flow_id = new_id()
    agents_by_node = data.get("agents", {})
    if_nodes = data.get("ifNodes", {})
    data_store_nodes = data.get("dataStoreNodes", {})

    schema_ids = {}
    for field in (document.get("dataStoreSchema") or {}).get("fields", []):
        schema_ids[field.get("id")] = field["id"] = new_id()

    node_ids = {}
    agents = []
    result = BatchResult()
    for node in document.get("nodes", []):
        old_node_id = node["id"]
        node_ids[old_node_id] = node["id"] = new_id()
        node_type = node.get("type")
        node_data = node.setdefault("data", {})

        if node_type == NodeType.AGENT:
            try:
                agent = _import_agent(old_node_id, node_data, agents_by_node, model_overrides or {})
            except ValidationFailure as e:
                logger.warning("Agent for node %s was not imported: %s", old_node_id, e.message)
                result.record_failure(ItemAction.CREATE, old_node_id, e.message)
                node_data["agentId"] = new_id()
            else:
                agents.append(agent)
                result.record(ItemAction.CREATE, old_node_id)
                node_data["agentId"] = agent.id
        elif node_type == NodeType.IF:
            node_data.update(copy.deepcopy(if_nodes.get(old_node_id, {})))
            node_data["ifNodeId"] = new_id()
            for condition in node_data.get("conditions", []):
                condition["id"] = new_id()
        elif node_type == NodeType.DATA_STORE:
            node_data.update(copy.deepcopy(data_store_nodes.get(old_node_id, {})))
            node_data["dataStoreNodeId"] = new_id()
            for field in node_data.get("dataStoreFields", []):
                field["id"] = new_id()
                field["schemaFieldId"] = schema_ids.get(field.get("schemaFieldId"), field.get("schemaFieldId"))

    edges = []
    for edge in document.get("edges", []):
        if edge.get("source") not in node_ids or edge.get("target") not in node_ids:
            logger.warning("Dropping edge %s with an unknown endpoint", edge.get("id"))
            continue
        edge["source"] = node_ids[edge["source"]]
        edge["target"] = node_ids[edge["target"]]
        edge["id"] = new_id()
        edges.append(edge)
    document["edges"] = edges

    if old_flow_id and document.get("panelStructure"):
        document["panelStructure"] = _replace_value(document["panelStructure"], old_flow_id, new_flow_id)

    now = utcnow()
    document.update(
        id=new_flow_id,
        readyState=ReadyState.DRAFT,
        validationIssues=[],
        createdAt=now,
        updatedAt=now,
    )
    flow = Flow.from_json(document)
    logger.info(
        "Imported flow %s as %s: %d agent(s) created, %d failed",
        old_flow_id,
        new_flow_id,
        result.created,
        result.failed,
    )
    return ImportedFlow(flow=flow, agents=agents, result=result)


def clone_flow(flow: Flow, agents: Mapping[str, Agent]) -> ImportedFlow:
    cloned = import_flow(export_flow(flow, agents))
    return cloned._replace(flow=cloned.flow.model_copy(update={"name": f"{flow.name} (Copy)"}))


def _import_agent(
    old_node_id: str, node_data: dict, agents_by_node: Mapping[str, dict], model_overrides: Mapping[str, dict]
) -> Agent:
    agent_data = agents_by_node.get(old_node_id)
    if not isinstance(agent_data, dict):
        raise ValidationFailure(f"No agent exported for node '{old_node_id}'")
    agent_data = copy.deepcopy(agent_data)
    old_agent_id = agent_data.get("id") or node_data.get(RESOURCE_REFERENCE_FIELDS[NodeType.AGENT])

    override = model_overrides.get(old_agent_id) or {}
    agent_data.update({key: value for key, value in override.items() if key in MODEL_OVERRIDE_FIELDS})

    agent_data["id"] = new_id()
    for message in agent_data.get("promptMessages", []):
        message["id"] = new_id()
    try:
        return Agent.model_validate(agent_data)
    except ValidationError as e:
        raise validation_failure(e, f"Invalid agent for node '{old_node_id}'") from e


def _replace_value(value: Any, old: str, new: str) -> Any:
    if isinstance(value, dict):
        return {key: _replace_value(item, old, new) for key, item in value.items()}
    if isinstance(value, list):
        return [_replace_value(item, old, new) for item in value]
    if value == old:
        return new
    return value
