"""Persistence interfaces consumed by the flow engine, plus in-memory implementations.

Every mutation is a read-current -> merge -> write-back cycle with no locking. Two
concurrent updates of different nodes are safe; two updates of the same node race and the
last write wins.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from apps.flows.agents import Agent
from apps.flows.const import ReadyState
from apps.flows.exceptions import NotFound
from apps.flows.flow import Edge, Flow, Node, Position, ValidationIssue, validation_failure
from apps.flows.utils import utcnow

logger = logging.getLogger("flows.repository")

# node attributes that a bulk node/edge update may change on a node that already exists
LAYOUT_ATTRIBUTES = ("position", "deletable", "zIndex")


class RepositoryLookupError(NotFound):
    """Raised when a repository lookup finds no matching record."""

    pass


def merge_node_data(node: Node, node_data: dict[str, Any]) -> Node:
    """Shallow-merge ``node_data`` into the node's payload. Keys that are not given are kept."""
    data = {**node.data.model_dump(), **node_data}
    try:
        return Node.model_validate({**node.model_dump(), "data": data})
    except ValidationError as e:
        raise validation_failure(e, f"Invalid data for node '{node.id}'") from e


def merge_nodes(existing: list[Node], incoming: list[Node | dict]) -> list[Node]:
    """Return ``incoming`` in order, keeping the stored type and payload of nodes that already exist.

    Only layout attributes (position, deletable, zIndex) are taken from incoming nodes whose
    id is already stored. New nodes are taken as given.
    """
    stored = {node.id: node for node in existing}
    merged = []
    for raw in incoming:
        try:
            node = raw if isinstance(raw, Node) else Node.model_validate(raw)
        except ValidationError as e:
            raise validation_failure(e, "Invalid node") from e
        current = stored.get(node.id)
        if current is not None:
            node = current.model_copy(update={name: getattr(node, name) for name in LAYOUT_ATTRIBUTES})
        merged.append(node)
    return merged


class FlowRepository(ABC):
    """Storage for flow documents."""

    # --- Flows ---

    @abstractmethod
    def get_flow_by_id(self, flow_id: str) -> Flow:
        """Raises RepositoryLookupError if not found."""
        ...

    @abstractmethod
    def save_flow(self, flow: Flow) -> Flow:
        """Insert or replace the whole flow document."""
        ...

    @abstractmethod
    def delete_flow(self, flow_id: str) -> None:
        """Raises RepositoryLookupError if not found."""
        ...

    @abstractmethod
    def list_flows(self) -> list[Flow]: ...

    # --- Targeted updates ---

    @abstractmethod
    def update_node(self, flow_id: str, node_id: str, node_data: dict[str, Any]) -> Flow:
        """Shallow-merge ``node_data`` into one node's payload and persist only that node.

        Other nodes, edges and flow-level fields are left untouched.
        Raises RepositoryLookupError if the flow or node is not found.
        """
        ...

    @abstractmethod
    def update_nodes_and_edges(self, flow_id: str, nodes: list[Node | dict], edges: list[Edge | dict]) -> Flow:
        """Replace the node and edge lists, keeping the stored payload of every retained node."""
        ...

    @abstractmethod
    def update_node_positions(self, flow_id: str, positions: dict[str, Position | dict]) -> Flow: ...

    @abstractmethod
    def update_flow_viewport(self, flow_id: str, viewport: dict[str, Any]) -> Flow: ...

    @abstractmethod
    def update_flow_validation(
        self, flow_id: str, ready_state: ReadyState, issues: list[ValidationIssue]
    ) -> Flow:
        """Store the outcome of a validation pass."""
        ...

    @abstractmethod
    def update_flow_ready_state(self, flow_id: str, ready_state: ReadyState) -> Flow: ...


class AgentRepository(ABC):
    """Storage for agents referenced by agent nodes."""

    @abstractmethod
    def get_agent(self, agent_id: str) -> Agent:
        """Raises RepositoryLookupError if not found."""
        ...

    @abstractmethod
    def get_agents(self, agent_ids: list[str]) -> dict[str, Agent]:
        """Return the agents that exist, keyed by id. Missing ids are omitted."""
        ...

    @abstractmethod
    def save_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    def delete_agent(self, agent_id: str) -> None: ...


class InMemoryFlowRepository(FlowRepository):
    """Keeps serialised flow documents in a dict.

    Documents are stored as JSON data so that every read goes through model validation.
    """

    def __init__(self):
        self._documents: dict[str, dict] = {}

    def _load(self, flow_id: str) -> Flow:
        try:
            document = self._documents[flow_id]
        except KeyError:
            raise RepositoryLookupError(f"Flow {flow_id} not found", resource="flow", resource_id=flow_id) from None
        return Flow.from_json(copy.deepcopy(document))

    def _store(self, flow: Flow) -> Flow:
        self._documents[flow.id] = flow.to_json()
        return self._load(flow.id)

    def get_flow_by_id(self, flow_id: str) -> Flow:
        return self._load(flow_id)

    def save_flow(self, flow: Flow) -> Flow:
        return self._store(flow)

    def delete_flow(self, flow_id: str) -> None:
        if self._documents.pop(flow_id, None) is None:
            raise RepositoryLookupError(f"Flow {flow_id} not found", resource="flow", resource_id=flow_id)

    def list_flows(self) -> list[Flow]:
        return [self._load(flow_id) for flow_id in self._documents]

    def update_node(self, flow_id: str, node_id: str, node_data: dict[str, Any]) -> Flow:
        flow = self._load(flow_id)
        document = self._documents[flow_id]
        index = next((i for i, node in enumerate(document["nodes"]) if node["id"] == node_id), None)
        if index is None:
            raise RepositoryLookupError(
                f"Node {node_id} not found in flow {flow_id}", resource="node", resource_id=node_id
            )

        merged = merge_node_data(flow.nodes[index], node_data)
        document["nodes"][index] = merged.model_dump(mode="json", exclude_none=True)
        document["updatedAt"] = utcnow().isoformat()
        logger.debug("Updated node %s of flow %s", node_id, flow_id)
        return self._load(flow_id)

    def update_nodes_and_edges(self, flow_id: str, nodes: list[Node | dict], edges: list[Edge | dict]) -> Flow:
        flow = self._load(flow_id)
        merged = merge_nodes(flow.nodes, nodes)
        return self._store(flow.update(nodes=merged, edges=edges))

    def update_node_positions(self, flow_id: str, positions: dict[str, Position | dict]) -> Flow:
        flow = self._load(flow_id)
        document = self._documents[flow_id]
        for node in document["nodes"]:
            if node["id"] in positions:
                position = positions[node["id"]]
                if isinstance(position, Position):
                    position = position.model_dump()
                node["position"] = Position.model_validate(position).model_dump()
        document["updatedAt"] = utcnow().isoformat()
        return self._load(flow.id)

    def update_flow_viewport(self, flow_id: str, viewport: dict[str, Any]) -> Flow:
        return self._store(self._load(flow_id).update(viewport=viewport))

    def update_flow_validation(
        self, flow_id: str, ready_state: ReadyState, issues: list[ValidationIssue]
    ) -> Flow:
        flow = self._load(flow_id)
        return self._store(flow.update(readyState=ready_state, validationIssues=issues))

    def update_flow_ready_state(self, flow_id: str, ready_state: ReadyState) -> Flow:
        return self._store(self._load(flow_id).update(readyState=ready_state))


class InMemoryAgentRepository(AgentRepository):
    def __init__(self, agents: list[Agent] = None):
        self._agents: dict[str, dict] = {}
        for agent in agents or []:
            self.save_agent(agent)

    def get_agent(self, agent_id: str) -> Agent:
        try:
            return Agent.model_validate(copy.deepcopy(self._agents[agent_id]))
        except KeyError:
            raise RepositoryLookupError(f"Agent {agent_id} not found", resource="agent", resource_id=agent_id) from None

    def get_agents(self, agent_ids: list[str]) -> dict[str, Agent]:
        return {agent_id: self.get_agent(agent_id) for agent_id in agent_ids if agent_id in self._agents}

    def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_dump(mode="json")
        return self.get_agent(agent.id)

    def delete_agent(self, agent_id: str) -> None:
        if self._agents.pop(agent_id, None) is None:
            raise RepositoryLookupError(f"Agent {agent_id} not found", resource="agent", resource_id=agent_id)
