import pytest

from apps.flows.const import IssueSeverity, NodeType, ReadyState
from apps.flows.exceptions import NotFound, TypeMismatch, ValidationFailure
from apps.flows.tests.utils import branching_flow, data_store_node, end_node, if_node, make_flow, start_node
from apps.utils.factories.flows import AgentFactory, DataStoreSchemaFieldFactory, IfConditionFactory


@pytest.fixture()
def flow(service, flow_repository):
    fields = [
        DataStoreSchemaFieldFactory(id="hp", name="health"),
        DataStoreSchemaFieldFactory(id="gd", name="gold"),
    ]
    nodes = [
        start_node(),
        data_store_node("store", [{"id": "f1", "schemaFieldId": "hp", "logic": "{{health}} - 1"}]),
        if_node("check", [IfConditionFactory(id="c1").model_dump()]),
        end_node(),
    ]
    edges = ["start - store", "store - check", "check:true - end", "check:false - end"]
    return flow_repository.save_flow(make_flow(nodes, edges, schema_fields=fields, readyState=ReadyState.READY))


def test_failures_are_results(service):
    result = service.get_flow("missing")

    assert not result.is_ok
    assert isinstance(result.error, NotFound)
    assert result.to_json()["error"]["kind"] == "not_found"
    with pytest.raises(NotFound):
        result.unwrap()


def test_create_and_update_flow(service):
    flow = service.create_flow(name="Tale").unwrap()

    updated = service.update_flow(flow.id, description="Long").unwrap()

    assert updated.name == "Tale"
    assert service.get_flow(flow.id).unwrap().description == "Long"
    assert isinstance(service.update_flow(flow.id, bogus=1).error, ValidationFailure)


def test_set_ready_state(service, flow):
    assert service.set_ready_state(flow.id, "error").unwrap().readyState == ReadyState.ERROR
    assert not service.set_ready_state(flow.id, "done").is_ok


def test_connectivity_is_cached(service, flow):
    first = service.get_connectivity(flow.id).unwrap()
    service.update_node(flow.id, "store", {"name": "Store"})
    second = service.get_connectivity(flow.id).unwrap()

    assert first is second
    assert first.has_valid_flow


class TestDataStoreNodes:
    def test_merge_fields_by_schema_field(self, service, flow):
        updated = service.update_data_store_node_fields(
            flow.id, "store", [{"schemaFieldId": "hp", "logic": "{{health}} + 5"}, {"name": "gold", "logic": "3"}]
        ).unwrap()

        fields = updated.get_node("store").data.dataStoreFields
        assert [(f.id, f.schemaFieldId, f.logic) for f in fields][0] == ("f1", "hp", "{{health}} + 5")
        assert (fields[1].schemaFieldId, fields[1].logic) == ("gd", "3")
        assert updated.get_node("check") == flow.get_node("check")

    def test_unknown_schema_field(self, service, flow):
        result = service.update_data_store_node_fields(flow.id, "store", [{"name": "mana", "logic": "1"}])
        assert isinstance(result.error, NotFound)

    def test_wrong_node_type(self, service, flow):
        result = service.update_data_store_node_fields(flow.id, "check", [{"name": "gold", "logic": "1"}])
        assert isinstance(result.error, TypeMismatch)
        assert result.error.expected == NodeType.DATA_STORE

    def test_add_update_remove_field(self, service, flow):
        field = service.add_data_store_field(flow.id, "store", "gold", "{{gold}} + 1").unwrap()
        assert not service.add_data_store_field(flow.id, "store", "gold").is_ok

        updated = service.update_data_store_field(flow.id, "store", field.id, logic="2").unwrap()
        assert updated.logic == "2"
        assert isinstance(service.update_data_store_field(flow.id, "store", field.id, bogus=1).error, ValidationFailure)

        flow = service.remove_data_store_field(flow.id, "store", field.id).unwrap()
        assert [f.id for f in flow.get_node("store").data.dataStoreFields] == ["f1"]
        assert isinstance(service.remove_data_store_field(flow.id, "store", field.id).error, NotFound)


class TestSchemaFields:
    def test_add_normalises_name(self, service, flow):
        field = service.add_schema_field(flow.id, "Mana Points", type="integer", initialValue="5").unwrap()
        assert field.name == "mana_points"
        assert not service.add_schema_field(flow.id, "mana points").is_ok

    def test_update(self, service, flow):
        updated = service.update_schema_field(flow.id, "gd", name="Coins", maxValue=10).unwrap()
        assert (updated.name, updated.maxValue) == ("coins", 10)
        assert not service.update_schema_field(flow.id, "gd", name="health").is_ok

    def test_remove_cascades(self, service, flow):
        removed = service.remove_schema_field(flow.id, "hp").unwrap()

        stored = service.get_flow(flow.id).unwrap()
        assert removed == ["f1"]
        assert stored.get_node("store").data.dataStoreFields == []
        assert [f.id for f in stored.schema_fields] == ["gd"]
        assert stored.readyState == ReadyState.DRAFT

    def test_remove_keeps_error_state(self, service, flow):
        service.set_ready_state(flow.id, ReadyState.ERROR)
        service.remove_schema_field(flow.id, "gd")
        assert service.get_flow(flow.id).unwrap().readyState == ReadyState.ERROR


class TestIfNodes:
    def test_update_operator_and_conditions(self, service, flow):
        updated = service.update_if_node(
            flow.id,
            "check",
            logic_operator="OR",
            conditions=[{"dataType": "string", "operator": "string_contains", "value1": "{{x}}", "value2": "y"}],
        ).unwrap()

        data = updated.get_node("check").data
        assert data.logicOperator == "OR"
        assert [c.operator for c in data.conditions] == ["string_contains"]
        assert data.conditions[0].id

    def test_invalid_operator(self, service, flow):
        result = service.update_if_node(
            flow.id, "check", conditions=[{"dataType": "boolean", "operator": "number_greater_than"}]
        )
        assert isinstance(result.error, ValidationFailure)
        assert not service.update_if_node(flow.id, "check", logic_operator="XOR").is_ok

    def test_condition_crud(self, service, flow):
        condition = service.add_if_condition(flow.id, "check", {"dataType": "number"}).unwrap()
        updated = service.update_if_condition(flow.id, "check", condition.id, operator="number_equals").unwrap()
        assert updated.id == condition.id
        assert updated.operator == "number_equals"

        stored = service.remove_if_condition(flow.id, "check", "c1").unwrap()
        assert [c.id for c in stored.get_node("check").data.conditions] == [condition.id]

    def test_not_an_if_node(self, service, flow):
        assert isinstance(service.add_if_condition(flow.id, "store").error, TypeMismatch)


class TestValidation:
    def test_valid_flow_becomes_ready(self, service, flow_repository):
        flow = flow_repository.save_flow(make_flow([start_node(), end_node()]))

        issues = service.run_validation(flow.id).unwrap()

        assert [issue for issue in issues if issue.severity == IssueSeverity.ERROR] == []
        assert service.get_flow(flow.id).unwrap().readyState == ReadyState.READY

    def test_unbuildable_flow_is_not_ready(self, service, flow_repository):
        nodes = [start_node(), if_node("check"), end_node()]
        flow = flow_repository.save_flow(make_flow(nodes, ["start - check", "check:true - end", "check:false - end"]))
        extra = {"id": "extra", "source": "check", "target": "end", "sourceHandle": "true"}
        flow = flow_repository.save_flow(flow.update(edges=[*flow.edges, extra]))

        service.run_validation(flow.id).unwrap()

        assert service.get_flow(flow.id).unwrap().readyState == ReadyState.ERROR
        assert not service.get_connectivity(flow.id).unwrap().has_valid_flow

    def test_errors_are_persisted(self, service, flow_repository):
        flow = flow_repository.save_flow(branching_flow())

        issues = service.run_validation(flow.id).unwrap()

        stored = service.get_flow(flow.id).unwrap()
        assert stored.readyState == ReadyState.ERROR
        assert [issue.code for issue in stored.validationIssues] == [issue.code for issue in issues]


class TestAgents:
    def test_upsert_prompt_messages_saves(self, service, agent_repository):
        agent = agent_repository.save_agent(AgentFactory())

        result = service.upsert_prompt_messages(agent.id, [{"role": "system", "content": "Later"}]).unwrap()

        assert result.system_role_fixed == 1
        assert len(agent_repository.get_agent(agent.id).promptMessages) == 2

    def test_upsert_output_fields(self, service, agent_repository):
        agent = agent_repository.save_agent(AgentFactory())
        service.upsert_output_fields(agent.id, [{"name": "Mood", "type": "string", "description": "d"}])
        assert agent_repository.get_agent(agent.id).schemaFields[0].name == "mood"

    def test_history_message(self, service, agent_repository):
        agent = agent_repository.save_agent(AgentFactory())
        assert service.set_history_message(agent.id, {"end": 4}).is_ok
        assert isinstance(service.set_history_message(agent.id, {}, replace=False).error, ValidationFailure)
        assert service.get_agent(agent.id).unwrap().history_message.end == 4

    def test_missing_agent(self, service):
        assert isinstance(service.upsert_prompt_messages("nope", []).error, NotFound)


def test_clone_flow(service, flow_repository, agent_repository):
    agent_repository.save_agent(AgentFactory(id="a"))
    flow = flow_repository.save_flow(branching_flow(name="Tale"))

    cloned = service.clone_flow(flow.id).unwrap()

    assert cloned.name == "Tale (Copy)"
    assert cloned.id != flow.id
    new_agent_id = cloned.get_node(cloned.nodes[1].id).resource_id
    assert service.get_agent(new_agent_id).is_ok


def test_available_variables(service, flow):
    names = {variable.name for variable in service.available_variables(flow.id, "check").unwrap()}
    assert {"health", "gold"} <= names
    assert isinstance(service.available_variables(flow.id, "missing").error, NotFound)
