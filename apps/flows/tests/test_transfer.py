import pytest

from apps.flows.const import NodeType, ReadyState
from apps.flows.exceptions import ValidationFailure
from apps.flows.results import BatchStatus
from apps.flows.tests.utils import agent_node, data_store_node, end_node, if_node, make_flow, start_node
from apps.flows.transfer import EXPORT_VERSION, clone_flow, export_flow, import_flow
from apps.utils.factories.flows import AgentFactory, DataStoreSchemaFieldFactory, IfConditionFactory


@pytest.fixture()
def agents():
    return {"agent-1": AgentFactory(id="agent-1", name="Narrator", modelId="small")}


@pytest.fixture()
def flow():
    nodes = [
        start_node(),
        agent_node("n1", "agent-1"),
        if_node("check", [IfConditionFactory(id="c1").model_dump()]),
        data_store_node("store", [{"id": "f1", "schemaFieldId": "hp", "logic": "{{health}} - 1"}]),
        end_node(),
    ]
    edges = ["start - n1", "n1 - check", "check:true - store", "check:false - end", "store - end"]
    return make_flow(
        nodes,
        edges,
        schema_fields=[DataStoreSchemaFieldFactory(id="hp", name="health")],
        readyState=ReadyState.READY,
        panelStructure={"main": {"flowId": "placeholder"}},
    )


def test_export(flow, agents):
    data = export_flow(flow, agents)

    assert data["version"] == EXPORT_VERSION
    assert data["flow"]["id"] == flow.id
    assert data["agents"]["n1"]["id"] == "agent-1"
    assert data["ifNodes"]["check"]["conditions"][0]["id"] == "c1"
    assert data["dataStoreNodes"]["store"]["dataStoreFields"][0]["schemaFieldId"] == "hp"
    assert "exportedAt" in data


def test_import_regenerates_ids_and_keeps_topology(flow, agents):
    flow = flow.update(panelStructure={"main": {"flowId": flow.id}})

    imported = import_flow(export_flow(flow, agents))

    new_flow = imported.flow
    old_ids = {node.id for node in flow.nodes}
    assert new_flow.id != flow.id
    assert not old_ids & {node.id for node in new_flow.nodes}
    assert new_flow.readyState == ReadyState.DRAFT
    assert new_flow.panelStructure == {"main": {"flowId": new_flow.id}}

    types_by_id = {node.id: node.type for node in new_flow.nodes}
    old_types_by_id = {node.id: node.type for node in flow.nodes}
    assert sorted((types_by_id[e.source], types_by_id[e.target], e.sourceHandle or "") for e in new_flow.edges) == sorted(
        (old_types_by_id[e.source], old_types_by_id[e.target], e.sourceHandle or "") for e in flow.edges
    )

    agent = imported.agents[0]
    assert agent.id != "agent-1"
    assert agent.name == "Narrator"
    assert new_flow.nodes_of_type(NodeType.AGENT)[0].resource_id == agent.id

    if_data = new_flow.nodes_of_type(NodeType.IF)[0].data
    assert if_data.ifNodeId != "if-check"
    assert if_data.conditions[0].id != "c1"

    schema_id = new_flow.schema_fields[0].id
    store_field = new_flow.nodes_of_type(NodeType.DATA_STORE)[0].data.dataStoreFields[0]
    assert schema_id != "hp"
    assert store_field.schemaFieldId == schema_id


def test_model_overrides(flow, agents):
    overrides = {"agent-1": {"modelId": "large", "apiSource": "openrouter", "name": "ignored"}}

    agent = import_flow(export_flow(flow, agents), model_overrides=overrides).agents[0]

    assert (agent.modelId, agent.apiSource, agent.name) == ("large", "openrouter", "Narrator")


def test_dangling_edges_dropped(flow, agents):
    data = export_flow(flow, agents)
    data["flow"]["edges"].append({"id": "bad", "source": "n1", "target": "ghost"})

    assert len(import_flow(data).flow.edges) == len(flow.edges)


def test_invalid_import():
    with pytest.raises(ValidationFailure):
        import_flow({"agents": {}})


def test_clone(flow, agents):
    cloned = clone_flow(flow, agents)
    assert cloned.flow.name == f"{flow.name} (Copy)"
    assert len(cloned.agents) == 1
    assert cloned.result.success


def test_agents_are_imported_independently():
    nodes = [start_node(), agent_node("a", "agent-a"), agent_node("b", "agent-b"), end_node()]
    agents = {"agent-a": AgentFactory(id="agent-a"), "agent-b": AgentFactory(id="agent-b")}
    data = export_flow(make_flow(nodes), agents)
    data["agents"]["b"]["promptMessages"] = "not a list"

    imported = import_flow(data)

    assert [agent.name for agent in imported.agents] == [agents["agent-a"].name]
    result = imported.result
    assert (result.created, result.failed, result.status) == (1, 1, BatchStatus.PARTIAL)
    assert result.errors[0].startswith("b: ")
    node_b = imported.flow.nodes[2]
    assert node_b.resource_id not in {"agent-b", imported.agents[0].id}


def test_missing_agent_gets_a_new_reference():
    flow = make_flow([start_node(), agent_node("a", "existing-agent"), end_node()])

    imported = import_flow(export_flow(flow, {}))

    assert imported.agents == []
    assert imported.result.status == BatchStatus.FAILURE
    assert imported.flow.nodes[1].resource_id != "existing-agent"
