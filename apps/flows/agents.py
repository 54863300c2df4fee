"""Agent configuration: prompt messages and structured-output schema fields.

Prompt messages are an ordered list of plain messages plus at most one history message.
Mutations never modify an agent in place; they return an updated copy together with a
``BatchResult`` describing what happened to each requested item.
"""

import logging
from typing import Annotated, Literal, Self

import pydantic
from pydantic import Field, ValidationError, model_validator

from apps.flows.const import HistoryType, MessageRole
from apps.flows.exceptions import ValidationFailure
from apps.flows.flow import validation_failure
from apps.flows.results import BatchResult, ItemAction
from apps.flows.utils import new_id, snake_case

logger = logging.getLogger("flows.agents")


class PromptBlock(pydantic.BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    template: str = ""
    enabled: bool = True


class PlainPromptMessage(pydantic.BaseModel):
    type: Literal["plain"] = "plain"
    id: str = Field(default_factory=new_id)
    role: MessageRole = MessageRole.USER
    blocks: list[PromptBlock] = []
    enabled: bool = True

    @property
    def content(self) -> str:
        return "\n".join(block.template for block in self.blocks if block.enabled)


class RoleMapping(pydantic.BaseModel):
    userMessageRole: Literal["user", "assistant"] = "user"
    charMessageRole: Literal["user", "assistant"] = "assistant"
    subCharMessageRole: Literal["user", "assistant"] = "user"


class HistoryPromptMessage(pydantic.BaseModel):
    type: Literal["history"] = "history"
    id: str = Field(default_factory=new_id)
    historyType: HistoryType = HistoryType.SPLIT
    start: int = Field(default=0, ge=0)
    end: int = Field(default=8, ge=0)
    countFromEnd: bool = True
    userBlocks: list[PromptBlock] = []
    assistantBlocks: list[PromptBlock] = []
    roleMapping: RoleMapping = Field(default_factory=RoleMapping)
    enabled: bool = True


PromptMessage = Annotated[PlainPromptMessage | HistoryPromptMessage, Field(discriminator="type")]


class SchemaField(pydantic.BaseModel):
    name: str
    type: Literal["string", "number", "integer", "boolean"] = "string"
    description: str = ""
    required: bool = True
    array: bool = False
    minimum: float | None = None
    maximum: float | None = None


class Agent(pydantic.BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    promptMessages: list[PromptMessage] = []
    schemaFields: list[SchemaField] = []
    enabledStructuredOutput: bool = False
    modelTier: Literal["light", "heavy"] = "light"
    apiSource: str | None = None
    modelId: str | None = None
    modelName: str | None = None

    @model_validator(mode="after")
    def _single_history_message(self) -> Self:
        history = [message for message in self.promptMessages if isinstance(message, HistoryPromptMessage)]
        if len(history) > 1:
            raise ValueError("an agent can have at most one history message")
        return self

    @property
    def namespace(self) -> str:
        """Prefix for this agent's output variables, e.g. ``story_teller`` for "Story Teller"."""
        return snake_case(self.name)

    @property
    def history_message(self) -> HistoryPromptMessage | None:
        return next((m for m in self.promptMessages if isinstance(m, HistoryPromptMessage)), None)

    def message_by_id(self, message_id: str) -> PlainPromptMessage | HistoryPromptMessage | None:
        return next((message for message in self.promptMessages if message.id == message_id), None)

    def schema_field(self, name: str) -> SchemaField | None:
        name = snake_case(name)
        return next((field for field in self.schemaFields if snake_case(field.name) == name), None)

    def replace(self, **changes) -> Self:
        try:
            return type(self).model_validate({**self.model_dump(), **changes})
        except ValidationError as e:
            raise validation_failure(e, f"Invalid agent '{self.name}'") from e


class PromptMessageOp(pydantic.BaseModel):
    role: MessageRole | None = None
    content: str | None = None
    messageId: str | None = None
    index: int | None = None
    delete: bool = False


class OutputFieldOp(pydantic.BaseModel):
    name: str
    type: Literal["string", "number", "integer", "boolean"] | None = None
    description: str | None = None
    required: bool | None = None
    array: bool | None = None
    minimum: float | None = None
    maximum: float | None = None
    delete: bool = False


def normalize_system_roles(messages: list) -> tuple[list, int]:
    """Demote every plain ``system`` message after the first position to ``user``.

    Returns the new list and the number of messages that were changed. The input is not modified.
    """
    normalized = []
    fixed = 0
    for index, message in enumerate(messages):
        if index > 0 and isinstance(message, PlainPromptMessage) and message.role == MessageRole.SYSTEM:
            message = message.model_copy(update={"role": MessageRole.USER})
            fixed += 1
        normalized.append(message)
    return normalized, fixed


def _set_content(message: PlainPromptMessage, content: str) -> PlainPromptMessage:
    if message.blocks:
        blocks = [message.blocks[0].model_copy(update={"template": content}), *message.blocks[1:]]
    else:
        blocks = [PromptBlock(name="Content", template=content)]
    return message.model_copy(update={"blocks": blocks})


def upsert_prompt_messages(agent: Agent, ops: list[PromptMessageOp | dict]) -> tuple[Agent, BatchResult]:
    """Create, update or delete plain prompt messages.

    For each item: ``delete`` removes the message ``messageId``; a ``messageId`` without
    ``delete`` updates role and / or content in place; otherwise ``role`` and ``content`` are
    required and a new message is inserted at ``index`` (appended when ``index`` is missing
    or out of range). System roles are normalised after the batch.
    """
    messages = list(agent.promptMessages)
    result = BatchResult()

    for raw in ops:
        try:
            op = raw if isinstance(raw, PromptMessageOp) else PromptMessageOp.model_validate(raw)
        except ValidationError as e:
            result.record_failure(ItemAction.CREATE, None, f"invalid operation: {e.errors()[0]['msg']}")
            continue

        if op.delete:
            _delete_message(messages, op, result)
        elif op.messageId:
            _update_message(messages, op, result)
        else:
            _create_message(messages, op, result)

    messages, result.system_role_fixed = normalize_system_roles(messages)
    if result.system_role_fixed:
        logger.debug("Demoted %d system message(s) on agent %s", result.system_role_fixed, agent.id)
    return agent.model_copy(update={"promptMessages": messages}), result


def _message_index(messages: list, message_id: str) -> int | None:
    return next((i for i, message in enumerate(messages) if message.id == message_id), None)


def _delete_message(messages: list, op: PromptMessageOp, result: BatchResult):
    if not op.messageId:
        result.record_failure(ItemAction.DELETE, None, "messageId is required to delete a message")
        return
    index = _message_index(messages, op.messageId)
    if index is None:
        result.record_failure(ItemAction.DELETE, op.messageId, "message not found")
        return
    del messages[index]
    result.record(ItemAction.DELETE, op.messageId)


def _update_message(messages: list, op: PromptMessageOp, result: BatchResult):
    index = _message_index(messages, op.messageId)
    if index is None:
        result.record_failure(ItemAction.UPDATE, op.messageId, "message not found")
        return
    message = messages[index]
    if isinstance(message, HistoryPromptMessage):
        result.record_failure(ItemAction.UPDATE, op.messageId, "history messages cannot be updated")
        return
    if op.role is not None:
        message = message.model_copy(update={"role": op.role})
    if op.content is not None:
        message = _set_content(message, op.content)
    messages[index] = message
    result.record(ItemAction.UPDATE, op.messageId)


def _create_message(messages: list, op: PromptMessageOp, result: BatchResult):
    if op.role is None or op.content is None:
        result.record_failure(ItemAction.CREATE, None, "role and content are required to create a message")
        return
    message = _set_content(PlainPromptMessage(role=op.role), op.content)
    if op.index is not None and 0 <= op.index < len(messages):
        messages.insert(op.index, message)
    else:
        messages.append(message)
    result.record(ItemAction.CREATE, message.id)


def set_history_message(agent: Agent, message: HistoryPromptMessage, index: int | None = None) -> Agent:
    """Put ``message`` in the agent's history slot.

    An existing history message is replaced in place; otherwise the message is inserted at
    ``index`` (appended when ``index`` is missing or out of range).
    """
    messages = list(agent.promptMessages)
    existing = agent.history_message
    if existing is not None:
        messages[_message_index(messages, existing.id)] = message
    elif index is not None and 0 <= index < len(messages):
        messages.insert(index, message)
    else:
        messages.append(message)
    return agent.model_copy(update={"promptMessages": messages})


def add_history_message(agent: Agent, message: HistoryPromptMessage, index: int | None = None) -> Agent:
    if agent.history_message is not None:
        raise ValidationFailure(f"Agent '{agent.name}' already has a history message")
    return set_history_message(agent, message, index)


def upsert_output_fields(agent: Agent, ops: list[OutputFieldOp | dict]) -> tuple[Agent, BatchResult]:
    """Create, update or delete structured-output fields by name.

    Names are converted to snake_case before lookup. Creating a field requires ``type`` and
    ``description``; ``required`` defaults to True.
    """
    fields = list(agent.schemaFields)
    result = BatchResult()

    for raw in ops:
        try:
            op = raw if isinstance(raw, OutputFieldOp) else OutputFieldOp.model_validate(raw)
        except ValidationError as e:
            result.record_failure(ItemAction.CREATE, None, f"invalid operation: {e.errors()[0]['msg']}")
            continue

        name = snake_case(op.name)
        if not name:
            result.record_failure(ItemAction.CREATE, op.name, "field name is empty")
            continue
        index = next((i for i, field in enumerate(fields) if snake_case(field.name) == name), None)

        if op.delete:
            if index is None:
                result.record_failure(ItemAction.DELETE, name, "field not found")
                continue
            del fields[index]
            result.record(ItemAction.DELETE, name)
        elif index is not None:
            changes = op.model_dump(
                include={"type", "description", "required", "array", "minimum", "maximum"}, exclude_none=True
            )
            fields[index] = fields[index].model_copy(update={"name": name, **changes})
            result.record(ItemAction.UPDATE, name)
        else:
            if op.type is None or op.description is None:
                result.record_failure(ItemAction.CREATE, name, "type and description are required")
                continue
            fields.append(
                SchemaField(
                    name=name,
                    type=op.type,
                    description=op.description,
                    required=True if op.required is None else op.required,
                    array=bool(op.array),
                    minimum=op.minimum,
                    maximum=op.maximum,
                )
            )
            result.record(ItemAction.CREATE, name)

    return agent.model_copy(update={"schemaFields": fields}), result
