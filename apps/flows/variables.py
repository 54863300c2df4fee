"""Per-turn catalogue of the values available to formulas, conditions and templates.

Three partitions are merged into one flat, dotted namespace:

* ``system`` - session / character context supplied by the caller (``char.name``, ``history`` ...)
* ``agent_output`` - ``<agent namespace>.<field>`` for agents with structured output enabled
* ``data_store`` - one entry per data-store schema field, keyed by the field name

When the same name exists in more than one partition the data store wins, then agent
output, then system.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from apps.flows.const import NodeType
from apps.flows.flow import Flow
from apps.flows.traversal import breadth_first, build_adjacency
from apps.flows.utils import flatten, set_dotted, snake_case

logger = logging.getLogger("flows.variables")

MISSING = object()


class VariableSource(StrEnum):
    SYSTEM = "system"
    AGENT_OUTPUT = "agent_output"
    DATA_STORE = "data_store"


# highest priority first
PARTITION_PRIORITY = (VariableSource.DATA_STORE, VariableSource.AGENT_OUTPUT, VariableSource.SYSTEM)

SYSTEM_VARIABLES = {
    "char.id": "The unique identifier of the current character.",
    "char.name": "The name of the current character.",
    "char.description": "The description of the current character.",
    "char.example_dialog": "Example dialog of the current character.",
    "char.entries": "Lorebook entries of the current character.",
    "user.id": "The unique identifier of the user's persona.",
    "user.name": "The name of the user's persona.",
    "user.description": "The description of the user's persona.",
    "user.example_dialog": "Example dialog of the user's persona.",
    "user.entries": "Lorebook entries of the user's persona.",
    "cast.all": "All characters participating in the session.",
    "cast.active": "The characters currently active in the session.",
    "cast.inactive": "The characters currently inactive in the session.",
    "session.char_entries": "Retrieved character lorebook entries.",
    "session.plot_entries": "Retrieved plot lorebook entries.",
    "session.entries": "All retrieved character and plot entries.",
    "session.scenario": "The scenario of the roleplay.",
    "session.duration": "Time elapsed since the session started.",
    "session.idle_duration": "Time elapsed since the last message.",
    "history": "The conversation history.",
    "turn.char_id": "The character that wrote the turn (history only).",
    "turn.char_name": "The name of the character that wrote the turn (history only).",
    "turn.content": "The content of the turn (history only).",
}


class VariableRegistry:
    """Read-only lookup over the three variable partitions."""

    def __init__(
        self,
        system: Mapping[str, Any] | None = None,
        data_store: Mapping[str, Any] | None = None,
        agent_output: Mapping[str, Mapping[str, Any]] | None = None,
    ):
        self._partitions: dict[VariableSource, dict[str, Any]] = {
            VariableSource.SYSTEM: flatten(dict(system or {})),
            VariableSource.AGENT_OUTPUT: {
                f"{namespace}.{name}": value
                for namespace, fields in (agent_output or {}).items()
                for name, value in fields.items()
            },
            VariableSource.DATA_STORE: dict(data_store or {}),
        }
        collisions = self.collisions()
        if collisions:
            logger.debug("Variable name collisions resolved by priority: %s", collisions)

    @classmethod
    def for_turn(
        cls,
        flow: Flow,
        agents: Mapping[str, Any],
        *,
        system: Mapping[str, Any] | None = None,
        data_store: Mapping[str, Any] | None = None,
        agent_outputs: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> "VariableRegistry":
        """Build the registry for a turn.

        Parameters:
            agents: agents keyed by id.
            data_store: current data-store values keyed by schema field name.
            agent_outputs: structured output of the agents that already ran, keyed by agent id.
        """
        namespaced = {}
        for agent_id, output in (agent_outputs or {}).items():
            agent = agents.get(agent_id)
            if agent is None or not agent.enabledStructuredOutput:
                continue
            namespaced[agent.namespace] = dict(output or {})

        known = {field.name for field in flow.schema_fields}
        store = {name: value for name, value in (data_store or {}).items() if name in known}
        return cls(system=system, data_store=store, agent_output=namespaced)

    def partition(self, source: VariableSource) -> dict[str, Any]:
        return dict(self._partitions[source])

    def with_data_store(self, data_store: Mapping[str, Any]) -> "VariableRegistry":
        """A copy of this registry with the data-store partition replaced."""
        registry = VariableRegistry.__new__(VariableRegistry)
        registry._partitions = {**self._partitions, VariableSource.DATA_STORE: dict(data_store)}
        return registry

    def with_agent_output(self, namespace: str, output: Mapping[str, Any]) -> "VariableRegistry":
        registry = VariableRegistry.__new__(VariableRegistry)
        agent_output = {
            name: value
            for name, value in self._partitions[VariableSource.AGENT_OUTPUT].items()
            if not name.startswith(f"{namespace}.")
        }
        agent_output.update({f"{namespace}.{name}": value for name, value in output.items()})
        registry._partitions = {**self._partitions, VariableSource.AGENT_OUTPUT: agent_output}
        return registry

    def source_of(self, name: str) -> VariableSource | None:
        for source in PARTITION_PRIORITY:
            if name in self._partitions[source]:
                return source
        return None

    def get(self, name: str, default: Any = None) -> Any:
        for source in PARTITION_PRIORITY:
            partition = self._partitions[source]
            if name in partition:
                return partition[name]
        nested = self._nested_lookup(name)
        return default if nested is MISSING else nested

    def resolve(self, name: str) -> Any:
        """Return the bound value. Raises ``KeyError`` naming the variable if it is unknown."""
        value = self.get(name, MISSING)
        if value is MISSING:
            raise KeyError(name)
        return value

    def __contains__(self, name: str) -> bool:
        return self.get(name, MISSING) is not MISSING

    def names(self) -> list[str]:
        seen = {}
        for source in reversed(PARTITION_PRIORITY):
            seen.update(dict.fromkeys(self._partitions[source]))
        return sorted(seen)

    def collisions(self) -> dict[str, list[VariableSource]]:
        """Names defined in more than one partition, mapped to the partitions (highest priority first)."""
        collisions = {}
        for name in self.names():
            sources = [source for source in PARTITION_PRIORITY if name in self._partitions[source]]
            if len(sources) > 1:
                collisions[name] = sources
        return collisions

    def as_context(self) -> dict[str, Any]:
        """Nested dict for template rendering. Lower priority partitions are written first."""
        context = {}
        for source in reversed(PARTITION_PRIORITY):
            for name, value in self._partitions[source].items():
                set_dotted(context, name, value)
        return context

    def _nested_lookup(self, name: str) -> Any:
        # prefix lookups such as "char" return the nested dict
        value = self.as_context()
        for part in name.split("."):
            if not isinstance(value, dict) or part not in value:
                return MISSING
            value = value[part]
        return value


@dataclass(frozen=True)
class AvailableVariable:
    name: str
    source: VariableSource
    description: str = ""
    type: str | None = None
    agentId: str | None = None

    @property
    def reference(self) -> str:
        return "{{" + self.name + "}}"


def upstream_agent_ids(flow: Flow, node_id: str) -> list[str]:
    """Agent ids that run before ``node_id``: reachable from start and able to reach ``node_id``."""
    start = flow.start_node
    if start is None:
        return []
    adjacency = build_adjacency(flow)
    from_start = breadth_first(start.id, adjacency.forward)
    before_node = breadth_first(node_id, adjacency.backward)
    return [
        node.resource_id
        for node in flow.nodes_of_type(NodeType.AGENT)
        if node.id != node_id and node.id in from_start and node.id in before_node
    ]


def available_variables(
    flow: Flow, agents: Mapping[str, Any], node_id: str | None = None
) -> list[AvailableVariable]:
    """Variables that can be referenced from ``node_id`` (or from anywhere when ``node_id`` is None)."""
    variables = [
        AvailableVariable(
            name=field.name,
            source=VariableSource.DATA_STORE,
            description=field.description or "",
            type=str(field.type),
        )
        for field in flow.schema_fields
    ]

    if node_id is None:
        agent_ids = [node.resource_id for node in flow.nodes_of_type(NodeType.AGENT)]
    else:
        agent_ids = upstream_agent_ids(flow, node_id)
    variables.extend(_agent_output_variables(agents[agent_id] for agent_id in agent_ids if agent_id in agents))

    variables.extend(
        AvailableVariable(name=name, source=VariableSource.SYSTEM, description=description)
        for name, description in SYSTEM_VARIABLES.items()
    )
    return variables


def _agent_output_variables(agents: Iterable[Any]) -> list[AvailableVariable]:
    variables = []
    for agent in agents:
        if not agent.enabledStructuredOutput:
            continue
        for field in agent.schemaFields:
            variables.append(
                AvailableVariable(
                    name=f"{agent.namespace}.{snake_case(field.name)}",
                    source=VariableSource.AGENT_OUTPUT,
                    description=field.description,
                    type=str(field.type),
                    agentId=agent.id,
                )
            )
    return variables
