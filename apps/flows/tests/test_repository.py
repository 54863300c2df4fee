import pytest

from apps.flows.const import ReadyState
from apps.flows.flow import Position
from apps.flows.repository import (
    AgentRepository,
    FlowRepository,
    InMemoryAgentRepository,
    InMemoryFlowRepository,
    RepositoryLookupError,
    merge_nodes,
)
from apps.flows.tests.utils import agent_node, branching_flow, data_store_node, end_node, make_flow, start_node
from apps.utils.factories.flows import AgentFactory


def _make_in_memory():
    return InMemoryFlowRepository()


@pytest.mark.parametrize("factory", [_make_in_memory], ids=["in_memory"])
class TestFlowRepositoryContract:
    def test_is_repository(self, factory):
        assert isinstance(factory(), FlowRepository)

    def test_get_flow_not_found(self, factory):
        with pytest.raises(RepositoryLookupError, match="Flow missing"):
            factory().get_flow_by_id("missing")

    def test_save_and_get(self, factory):
        repo = factory()
        flow = repo.save_flow(branching_flow())
        assert repo.get_flow_by_id(flow.id) == flow
        assert [f.id for f in repo.list_flows()] == [flow.id]

    def test_delete(self, factory):
        repo = factory()
        flow = repo.save_flow(branching_flow())
        repo.delete_flow(flow.id)
        with pytest.raises(RepositoryLookupError):
            repo.get_flow_by_id(flow.id)
        with pytest.raises(RepositoryLookupError):
            repo.delete_flow(flow.id)


class TestUpdateNode:
    def setup_method(self):
        self.repo = InMemoryFlowRepository()
        flow = make_flow(
            [start_node(), data_store_node("d1"), data_store_node("d2"), end_node()],
            readyState=ReadyState.READY,
        )
        self.flow = self.repo.save_flow(flow)

    def test_only_target_node_changes(self):
        updated = self.repo.update_node(self.flow.id, "d1", {"name": "Renamed", "color": "#fff"})

        assert updated.get_node("d1").data.name == "Renamed"
        assert updated.get_node("d1").data.color == "#fff"
        assert updated.get_node("d1").data.dataStoreNodeId == "ds-d1"
        assert updated.get_node("d2") == self.flow.get_node("d2")
        assert updated.edges == self.flow.edges
        assert updated.readyState == ReadyState.READY

    def test_idempotent(self):
        first = self.repo.update_node(self.flow.id, "d1", {"name": "Renamed"})
        second = self.repo.update_node(self.flow.id, "d1", {"name": "Renamed"})
        assert first.nodes == second.nodes

    def test_concurrent_updates_of_different_nodes(self):
        self.repo.update_node(self.flow.id, "d1", {"name": "One"})
        self.repo.update_node(self.flow.id, "d2", {"name": "Two"})

        flow = self.repo.get_flow_by_id(self.flow.id)
        assert flow.get_node("d1").data.name == "One"
        assert flow.get_node("d2").data.name == "Two"

    def test_unknown_node(self):
        with pytest.raises(RepositoryLookupError, match="Node missing"):
            self.repo.update_node(self.flow.id, "missing", {"name": "x"})


class TestUpdateNodesAndEdges:
    def test_existing_payload_is_kept(self):
        repo = InMemoryFlowRepository()
        flow = repo.save_flow(branching_flow(readyState=ReadyState.READY))
        placeholder = {"id": "check", "type": "if", "position": {"x": 5, "y": 6}, "data": {"ifNodeId": "stale"}}
        nodes = [placeholder if node.id == "check" else node for node in flow.nodes]

        updated = repo.update_nodes_and_edges(flow.id, nodes, flow.edges[:-1])

        check = updated.get_node("check")
        assert check.data.ifNodeId == "if-check"
        assert check.position == Position(x=5, y=6)
        assert len(updated.edges) == len(flow.edges) - 1
        assert updated.readyState == ReadyState.DRAFT

    def test_new_nodes_take_given_payload(self):
        existing = [branching_flow().get_node("a")]
        merged = merge_nodes(existing, [agent_node("a", "other"), agent_node("z", "agent-z")])
        assert [node.resource_id for node in merged] == ["a", "agent-z"]


def test_update_node_positions():
    repo = InMemoryFlowRepository()
    flow = repo.save_flow(branching_flow())

    updated = repo.update_node_positions(flow.id, {"a": {"x": 1, "y": 2}, "b": Position(x=3, y=4)})

    assert updated.get_node("a").position == Position(x=1, y=2)
    assert updated.get_node("b").position == Position(x=3, y=4)
    assert updated.get_node("c").position == Position()


def test_update_validation():
    repo = InMemoryFlowRepository()
    flow = repo.save_flow(branching_flow())
    issue = {"id": "i", "code": "MISSING_PROMPT", "severity": "error", "title": "t"}

    updated = repo.update_flow_validation(flow.id, ReadyState.ERROR, [issue])

    assert updated.readyState == ReadyState.ERROR
    assert updated.validationIssues[0].code == "MISSING_PROMPT"


class TestAgentRepository:
    def test_crud(self):
        agent = AgentFactory()
        repo = InMemoryAgentRepository([agent])

        assert isinstance(repo, AgentRepository)
        assert repo.get_agent(agent.id) == agent
        assert repo.get_agents([agent.id, "missing"]) == {agent.id: agent}
        repo.delete_agent(agent.id)
        with pytest.raises(RepositoryLookupError, match="Agent"):
            repo.get_agent(agent.id)
