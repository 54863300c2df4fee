import factory

from apps.flows.agents import Agent, PlainPromptMessage, PromptBlock
from apps.flows.const import DataStoreFieldType, MessageRole
from apps.flows.flow import DataStoreSchema, DataStoreSchemaField, Flow, IfCondition


class PromptBlockFactory(factory.Factory):
    class Meta:
        model = PromptBlock

    id = factory.Faker("uuid4")
    name = "Instructions"
    template = "You are a helpful narrator."


class PlainPromptMessageFactory(factory.Factory):
    class Meta:
        model = PlainPromptMessage

    id = factory.Faker("uuid4")
    role = MessageRole.USER
    blocks = factory.LazyFunction(lambda: [PromptBlockFactory()])


class AgentFactory(factory.Factory):
    class Meta:
        model = Agent

    id = factory.Faker("uuid4")
    name = factory.Sequence(lambda n: f"Agent {n}")
    description = "Test agent"
    promptMessages = factory.LazyFunction(lambda: [PlainPromptMessageFactory(role=MessageRole.SYSTEM)])
    schemaFields = []
    enabledStructuredOutput = False


class DataStoreSchemaFieldFactory(factory.Factory):
    class Meta:
        model = DataStoreSchemaField

    id = factory.Faker("uuid4")
    name = factory.Sequence(lambda n: f"field_{n}")
    type = DataStoreFieldType.NUMBER
    initialValue = "0"


class IfConditionFactory(factory.Factory):
    class Meta:
        model = IfCondition

    id = factory.Faker("uuid4")
    dataType = DataStoreFieldType.NUMBER
    value1 = "{{score}}"
    operator = "number_greater_than"
    value2 = "0"


class FlowFactory(factory.Factory):
    class Meta:
        model = Flow

    id = factory.Faker("uuid4")
    name = "Test Flow"
    nodes = []
    edges = []
    dataStoreSchema = factory.LazyFunction(DataStoreSchema)
