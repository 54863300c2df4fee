"""Structural and configuration checks that produce the flow's validation issues.

Nodes that are not on a start-to-end path only get the structural checks: required-field
checks are skipped for them.
"""

import logging
from collections.abc import Mapping

from apps.flows.agents import Agent, PlainPromptMessage
from apps.flows.const import BranchHandle, DataStoreFieldType, IssueSeverity, MessageRole, NodeType
from apps.flows.const import ValidationIssueCode as Code
from apps.flows.exceptions import FormulaError
from apps.flows.flow import Flow, Node, ValidationIssue
from apps.flows.formulas import coerce_value, is_text_template, parse_formula
from apps.flows.traversal import TraversalResult, traverse_flow
from apps.flows.utils import check_template_syntax, template_references
from apps.flows.variables import SYSTEM_VARIABLES, available_variables

logger = logging.getLogger("flows.validation")

BRANCH_HANDLES = frozenset(str(handle) for handle in BranchHandle)


class IssueCollector:
    def __init__(self):
        self.issues: list[ValidationIssue] = []

    def add(
        self,
        code: Code,
        title: str,
        description: str,
        severity: IssueSeverity = IssueSeverity.ERROR,
        suggestion: str = None,
        node: Node = None,
        agent: Agent = None,
        **metadata,
    ):
        issue_id = f"{code}-{node.id if node else 'flow'}-{len(self.issues)}"
        self.issues.append(
            ValidationIssue(
                id=issue_id,
                code=code,
                severity=severity,
                title=title,
                description=description,
                suggestion=suggestion,
                nodeId=node.id if node else None,
                agentId=agent.id if agent else None,
                agentName=agent.name if agent else None,
                metadata=metadata or None,
            )
        )


def validate_flow(
    flow: Flow, agents: Mapping[str, Agent], traversal: TraversalResult | None = None
) -> list[ValidationIssue]:
    traversal = traversal or traverse_flow(flow)
    collector = IssueCollector()
    _check_structure(flow, traversal, collector)
    if not traversal.has_valid_flow and not any(issue.severity == IssueSeverity.ERROR for issue in collector.issues):
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "Flow cannot run",
            "Not every step lies on a complete path from the start node to the end node.",
            suggestion="Connect the agents and data store nodes between start and end.",
            reason="incomplete_flow",
        )
    _check_agents(flow, agents, traversal, collector)
    _check_if_nodes(flow, agents, traversal, collector)
    _check_data_store(flow, agents, traversal, collector)
    logger.debug("Validated flow %s: %d issue(s)", flow.id, len(collector.issues))
    return collector.issues


def _check_structure(flow: Flow, traversal: TraversalResult, collector: IssueCollector):
    if flow.start_node is None:
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "Missing start node",
            "The flow has no start node.",
            suggestion="Add a start node.",
            reason="no_start",
        )
    if flow.end_node is None:
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "Missing end node",
            "The flow has no end node.",
            suggestion="Add an end node.",
            reason="no_end",
        )

    for node_type, reason in ((NodeType.START, "multiple_start"), (NodeType.END, "multiple_end")):
        nodes = flow.nodes_of_type(node_type)
        if len(nodes) > 1:
            collector.add(
                Code.INVALID_FLOW_STRUCTURE,
                f"Multiple {node_type} nodes",
                f"The flow has {len(nodes)} {node_type} nodes; exactly one is allowed.",
                suggestion=f"Remove the extra {node_type} nodes.",
                reason=reason,
                node_ids=[node.id for node in nodes],
            )
    for node_id in traversal.duplicate_node_ids:
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "Duplicate node id",
            f"More than one node uses the id '{node_id}'.",
            reason="duplicate_node_id",
            node_id=node_id,
        )
    for edge_id in traversal.dangling_edges:
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "Dangling edge",
            f"Edge '{edge_id}' connects to a node that does not exist.",
            suggestion="Delete the edge or reconnect it.",
            reason="dangling_edge",
            edge_id=edge_id,
        )
    if flow.start_node and flow.end_node and not traversal.positions[flow.end_node.id].isConnectedToStart:
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "No path from start to end",
            "The end node cannot be reached from the start node.",
            suggestion="Connect the nodes so that a path leads from start to end.",
            reason="disconnected",
        )

    for if_node in flow.nodes_of_type(NodeType.IF):
        if not traversal.positions[if_node.id].isConnectedToStart:
            continue
        outgoing = flow.outgoing_edges(if_node.id)
        for edge in outgoing:
            if edge.sourceHandle not in BRANCH_HANDLES:
                collector.add(
                    Code.INVALID_FLOW_STRUCTURE,
                    "Unknown if node output",
                    f"Edge '{edge.id}' leaves '{if_node.label}' from neither the 'true' nor the 'false' output.",
                    suggestion="Connect the edge to the 'true' or 'false' output.",
                    node=if_node,
                    reason="unknown_handle",
                    edge_id=edge.id,
                )
        for handle in BranchHandle:
            edges = [edge for edge in outgoing if edge.sourceHandle == handle]
            if not edges:
                collector.add(
                    Code.IF_NODE_MISSING_BRANCHES,
                    "If node is missing a branch",
                    f"'{if_node.label}' has no '{handle}' branch.",
                    suggestion=f"Connect the '{handle}' output to the next node.",
                    node=if_node,
                    handle=str(handle),
                )
            elif len(edges) > 1:
                collector.add(
                    Code.INVALID_FLOW_STRUCTURE,
                    "If branch has several edges",
                    f"The '{handle}' branch of '{if_node.label}' is connected to {len(edges)} nodes.",
                    suggestion="Keep a single edge per branch.",
                    node=if_node,
                    reason="multiple_branch_edges",
                    handle=str(handle),
                )
            elif not all(traversal.is_connected(e.target) or _is_end(flow, e.target) for e in edges):
                collector.add(
                    Code.IF_NODE_BRANCH_NOT_REACHING_END,
                    "If branch does not reach the end",
                    f"The '{handle}' branch of '{if_node.label}' never reaches the end node.",
                    suggestion="Connect the branch to a path that leads to the end node.",
                    node=if_node,
                    handle=str(handle),
                )

    runnable_ids = set(traversal.connected_sequence) | {node.id for node in (flow.start_node, flow.end_node) if node}
    for node in flow.nodes:
        if node.id not in runnable_ids or node.type in (NodeType.IF, NodeType.END):
            continue
        edges = [edge for edge in flow.outgoing_edges(node.id) if edge.target in runnable_ids]
        if len(edges) > 1:
            collector.add(
                Code.INVALID_FLOW_STRUCTURE,
                "Several outgoing edges",
                f"'{node.label}' is connected to {len(edges)} next steps; only if nodes can branch.",
                suggestion="Keep a single outgoing edge or use an if node.",
                node=node,
                reason="multiple_outputs",
                edge_ids=[edge.id for edge in edges],
            )

    for node_id in traversal.disconnected_nodes:
        node = flow.node_by_id(node_id)
        collector.add(
            Code.INVALID_FLOW_STRUCTURE,
            "Disconnected node",
            f"'{node.label}' is not on a path from start to end and will not run.",
            severity=IssueSeverity.WARNING,
            node=node,
            reason="disconnected_node",
        )


def _is_end(flow: Flow, node_id: str) -> bool:
    node = flow.node_by_id(node_id)
    return node is not None and node.type == NodeType.END


def _connected_agents(flow: Flow, agents: Mapping[str, Agent], traversal: TraversalResult):
    for node in flow.nodes_of_type(NodeType.AGENT):
        if traversal.is_connected(node.id):
            yield node, agents.get(node.resource_id)


def _check_agents(flow: Flow, agents: Mapping[str, Agent], traversal: TraversalResult, collector: IssueCollector):
    namespaces: dict[str, Agent] = {}
    for node, agent in _connected_agents(flow, agents, traversal):
        if agent is None:
            collector.add(
                Code.INVALID_FLOW_STRUCTURE,
                "Missing agent",
                f"Agent node '{node.id}' references an agent that does not exist.",
                node=node,
                reason="missing_agent",
            )
            continue

        if not agent.name.strip():
            collector.add(Code.MISSING_AGENT_NAME, "Agent has no name", "Every agent needs a name.", node=node, agent=agent)
        elif agent.namespace in namespaces:
            collector.add(
                Code.DUPLICATE_AGENT_NAME,
                "Duplicate agent name",
                f"Another agent already uses the name '{agent.name}'; their output variables would collide.",
                node=node,
                agent=agent,
            )
        else:
            namespaces[agent.namespace] = agent

        plain = [m for m in agent.promptMessages if isinstance(m, PlainPromptMessage) and m.enabled]
        if not any(message.content.strip() for message in plain):
            collector.add(
                Code.MISSING_PROMPT,
                "Agent has no prompt",
                f"'{agent.name}' has no enabled prompt message with content.",
                node=node,
                agent=agent,
            )
        if agent.enabledStructuredOutput and not agent.schemaFields:
            collector.add(
                Code.MISSING_STRUCTURED_OUTPUT_SCHEMA,
                "Structured output has no fields",
                f"'{agent.name}' has structured output enabled but no output fields.",
                node=node,
                agent=agent,
            )
        enabled = [m for m in agent.promptMessages if m.enabled]
        for index, message in enumerate(enabled):
            if index > 0 and isinstance(message, PlainPromptMessage) and message.role == MessageRole.SYSTEM:
                collector.add(
                    Code.SYSTEM_MESSAGE_IN_MIDDLE,
                    "System message after the first position",
                    "Only the first message may use the system role.",
                    severity=IssueSeverity.WARNING,
                    node=node,
                    agent=agent,
                    messageId=message.id,
                )

        known = _known_variables(flow, agents, node)
        for message in plain:
            for block in message.blocks:
                _check_template(block.template, known, collector, node, agent)


def _known_variables(flow: Flow, agents: Mapping[str, Agent], node: Node) -> set[str]:
    return {variable.name for variable in available_variables(flow, agents, node.id)}


def _check_template(template: str, known: set[str], collector: IssueCollector, node: Node, agent: Agent = None):
    error = check_template_syntax(template)
    if error:
        collector.add(Code.SYNTAX_ERROR, "Template syntax error", error, node=node, agent=agent)
        return
    _check_references(template_references(template), known, collector, node, agent)


def _check_references(references, known: set[str], collector: IssueCollector, node: Node, agent: Agent = None):
    system_roots = {name.split(".")[0] for name in SYSTEM_VARIABLES}
    for reference in references:
        if reference in known or reference.split(".")[0] in system_roots:
            continue
        collector.add(
            Code.UNDEFINED_OUTPUT_VARIABLE,
            "Undefined variable",
            f"'{{{{{reference}}}}}' is not produced by any agent or data store field before this node.",
            node=node,
            agent=agent,
            variable=reference,
        )


def _check_if_nodes(flow: Flow, agents: Mapping[str, Agent], traversal: TraversalResult, collector: IssueCollector):
    for node in flow.nodes_of_type(NodeType.IF):
        if not traversal.is_connected(node.id):
            continue
        known = _known_variables(flow, agents, node)
        for condition in node.data.conditions:
            for operand in (condition.value1, condition.value2):
                _check_template(operand, known, collector, node)


def _check_data_store(flow: Flow, agents: Mapping[str, Agent], traversal: TraversalResult, collector: IssueCollector):
    for field in flow.schema_fields:
        if not field.initialValue.strip():
            if field.type != DataStoreFieldType.STRING:
                collector.add(
                    Code.DATA_STORE_MISSING_INITIAL_VALUE,
                    "Missing initial value",
                    f"Data store field '{field.name}' has no initial value; the type default will be used.",
                    severity=IssueSeverity.WARNING,
                    fieldId=field.id,
                )
            continue
        if template_references(field.initialValue) or not is_text_template(field.initialValue):
            continue
        try:
            coerce_value(field.initialValue, field.type)
        except FormulaError as e:
            collector.add(
                Code.DATA_STORE_INVALID_INITIAL_VALUE,
                "Invalid initial value",
                f"Data store field '{field.name}': {e.message}",
                fieldId=field.id,
            )

    for node in flow.nodes_of_type(NodeType.DATA_STORE):
        if not traversal.is_connected(node.id):
            continue
        known = _known_variables(flow, agents, node)
        for store_field in node.data.dataStoreFields:
            schema_field = flow.schema_field_by_id(store_field.schemaFieldId)
            if schema_field is None:
                collector.add(
                    Code.UNDEFINED_OUTPUT_VARIABLE,
                    "Unknown data store field",
                    f"'{node.label}' updates a data store field that does not exist.",
                    node=node,
                    fieldId=store_field.id,
                )
                continue
            if not store_field.logic or not store_field.logic.strip():
                continue
            try:
                formula = parse_formula(store_field.logic)
            except FormulaError as e:
                if schema_field.type == DataStoreFieldType.STRING:
                    continue
                collector.add(
                    Code.SYNTAX_ERROR,
                    "Invalid formula",
                    f"Logic for '{schema_field.name}': {e.message}",
                    node=node,
                    fieldId=store_field.id,
                )
                continue
            _check_references(formula.references, known, collector, node)

