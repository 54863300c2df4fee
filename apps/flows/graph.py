"""Run one conversation turn through a flow.

The flow's connected nodes are compiled into a langgraph ``StateGraph``. The turn is bounded
by ``FlowSettings.max_steps`` (langgraph's recursion limit) and checks an optional
cancellation event before every node. A cancelled or failed turn returns nothing: data-store
values computed before the failure are discarded.
"""

import logging
import operator
import threading
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Protocol, TypedDict

from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from langgraph.errors import GraphRecursionError
from langgraph.graph import StateGraph
from langgraph.graph.state import CompiledStateGraph
from langgraph.types import Command

from apps.flows.agents import Agent
from apps.flows.conditions import select_branch
from apps.flows.config import FlowSettings, get_settings
from apps.flows.const import NodeType
from apps.flows.data_store import DataStoreValue, apply_data_store_node, initialise_data_store, values_by_name
from apps.flows.exceptions import FlowCancelled, GraphIncomplete, NotFound, StepLimitExceeded
from apps.flows.flow import Flow, Node
from apps.flows.logging import FlowLoggingCallbackHandler
from apps.flows.prompts import HistoryTurn, render_agent_messages
from apps.flows.runs import FlowRun, FlowRunStatus
from apps.flows.traversal import traverse_flow
from apps.flows.utils import merge_dicts, render_template
from apps.flows.variables import VariableRegistry

logger = logging.getLogger("flows.graph")


class AgentRunner(Protocol):
    """Produces an agent's output. Structured output is returned as a dict of field values."""

    def run(self, agent: Agent, messages: list[BaseMessage], config: RunnableConfig) -> dict[str, Any]: ...


class TurnState(TypedDict, total=False):
    agent_outputs: Annotated[dict, merge_dicts]
    data_store: list[dict]
    data_store_results: Annotated[list[dict], operator.add]
    # ids of the nodes in the order they ran
    path: Annotated[list[str], operator.add]
    content: str


@dataclass
class TurnResult:
    content: str
    data_store: list[DataStoreValue]
    agent_outputs: dict[str, dict] = field(default_factory=dict)
    path: list[str] = field(default_factory=list)
    data_store_results: list[dict] = field(default_factory=list)


class FlowGraph:
    def __init__(
        self,
        flow: Flow,
        agents: dict[str, Agent],
        runner: AgentRunner,
        *,
        system: dict[str, Any] | None = None,
        history: list[HistoryTurn] | None = None,
        cancel_event: threading.Event | None = None,
        settings: FlowSettings | None = None,
    ):
        self.flow = flow
        self.agents = agents
        self.runner = runner
        self.system = system or {}
        self.history = history or []
        self.cancel_event = cancel_event
        self.settings = settings or get_settings()

    def build_runnable(self) -> CompiledStateGraph:
        traversal = traverse_flow(self.flow)
        if not traversal.has_valid_flow:
            raise GraphIncomplete("The flow has no complete path from the start node to the end node")

        start_node, end_node = self.flow.start_node, self.flow.end_node
        nodes = [
            node
            for node in self.flow.nodes
            if node.id in (start_node.id, end_node.id) or traversal.is_connected(node.id)
        ]
        included = {node.id for node in nodes}

        state_graph = StateGraph(TurnState)
        state_graph.set_entry_point(start_node.id)
        state_graph.set_finish_point(end_node.id)

        for node in nodes:
            state_graph.add_node(node.id, self._node_function(node))

        for node in nodes:
            if node.type in (NodeType.IF, NodeType.END):
                continue
            edges = [edge for edge in self.flow.outgoing_edges(node.id) if edge.target in included]
            if not edges:
                raise GraphIncomplete("Node has no outgoing edge", node_id=node.id)
            if len(edges) > 1:
                raise GraphIncomplete(
                    "Multiple edges connected to the same output",
                    node_id=node.id,
                    edge_ids=[edge.id for edge in edges],
                )
            state_graph.add_edge(node.id, edges[0].target)

        try:
            return state_graph.compile()
        except ValueError as e:
            raise GraphIncomplete(str(e)) from e

    def run_turn(
        self,
        previous_data_store: list[DataStoreValue] | None = None,
        flow_run: FlowRun | None = None,
    ) -> TurnResult:
        """Execute the flow once and return the response and the next data-store values.

        Raises ``FlowCancelled`` when the cancellation event is set during the turn and
        ``StepLimitExceeded`` when the end node is not reached within the step ceiling.
        """
        registry = VariableRegistry.for_turn(self.flow, self.agents, system=self.system)
        data_store = initialise_data_store(self.flow, previous_data_store, registry)
        runnable = self.build_runnable()

        callbacks = []
        if flow_run is not None:
            flow_run.nodeIds = [node.id for node in self.flow.nodes]
            callbacks.append(FlowLoggingCallbackHandler(flow_run))
        config = RunnableConfig(
            recursion_limit=self.settings.max_steps,
            callbacks=callbacks,
            configurable={"cancel_event": self.cancel_event},
        )
        initial_state = {
            "agent_outputs": {},
            "data_store": [value.model_dump(mode="json") for value in data_store],
            "data_store_results": [],
            "path": [],
        }

        try:
            state = runnable.invoke(initial_state, config=config)
        except GraphRecursionError as e:
            self._finish(flow_run, FlowRunStatus.ERROR, "step limit exceeded")
            raise StepLimitExceeded(f"The turn did not finish within {self.settings.max_steps} steps") from e
        except FlowCancelled as e:
            self._finish(flow_run, FlowRunStatus.CANCELLED, e.message)
            raise
        except Exception as e:
            self._finish(flow_run, FlowRunStatus.ERROR, str(e))
            raise
        finally:
            for callback in callbacks:
                callback.close()

        self._finish(flow_run, FlowRunStatus.SUCCESS)
        return TurnResult(
            content=state.get("content", ""),
            data_store=[DataStoreValue.model_validate(value) for value in state["data_store"]],
            agent_outputs=state.get("agent_outputs", {}),
            path=state.get("path", []),
            data_store_results=state.get("data_store_results", []),
        )

    def _finish(self, flow_run: FlowRun | None, status: FlowRunStatus, error: str = None):
        if flow_run is not None:
            flow_run.status = status
            flow_run.error = error

    def _check_cancelled(self, node_id: str):
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.info("Turn cancelled before node %s", node_id)
            raise FlowCancelled(f"Turn cancelled before node '{node_id}'")

    def _registry(self, state: TurnState) -> VariableRegistry:
        values = [DataStoreValue.model_validate(value) for value in state.get("data_store", [])]
        return VariableRegistry.for_turn(
            self.flow,
            self.agents,
            system=self.system,
            data_store=values_by_name(values),
            agent_outputs=state.get("agent_outputs", {}),
        )

    def _node_function(self, node: Node):
        if node.type == NodeType.AGENT:
            return self._agent_function(node)
        if node.type == NodeType.IF:
            return self._router_function(node)
        if node.type == NodeType.DATA_STORE:
            return self._data_store_function(node)
        if node.type == NodeType.END:
            return self._end_function(node)

        def start(state: TurnState) -> dict:
            self._check_cancelled(node.id)
            return {"path": [node.id]}

        return start

    def _agent_function(self, node: Node):
        def run_agent(state: TurnState, config: RunnableConfig) -> dict:
            self._check_cancelled(node.id)
            agent = self.agents.get(node.resource_id)
            if agent is None:
                raise NotFound(f"Agent {node.resource_id} not found", resource="agent", resource_id=node.resource_id)
            messages = render_agent_messages(agent, self._registry(state), self.history)
            output = self.runner.run(agent, messages, config) or {}
            return {"agent_outputs": {agent.id: output}, "path": [node.id]}

        return run_agent

    def _router_function(self, node: Node):
        targets = tuple(edge.target for edge in self.flow.outgoing_edges(node.id))
        ReturnType = Command[Literal[targets]]  # noqa

        def router(state: TurnState) -> ReturnType:
            self._check_cancelled(node.id)
            selection = select_branch(self.flow, node, self._registry(state))
            return Command(update={"path": [node.id]}, goto=selection.target)

        return router

    def _data_store_function(self, node: Node):
        def update_data_store(state: TurnState) -> dict:
            self._check_cancelled(node.id)
            values = [DataStoreValue.model_validate(value) for value in state.get("data_store", [])]
            values, result = apply_data_store_node(self.flow, node, values, self._registry(state))
            return {
                "data_store": [value.model_dump(mode="json") for value in values],
                "data_store_results": [result.to_json()],
                "path": [node.id],
            }

        return update_data_store

    def _end_function(self, node: Node):
        def end(state: TurnState) -> dict:
            self._check_cancelled(node.id)
            content = ""
            if self.flow.responseTemplate:
                content = render_template(self.flow.responseTemplate, self._registry(state).as_context())
            return {"content": content, "path": [node.id]}

        return end
