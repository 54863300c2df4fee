"""Render an agent's prompt messages into langchain messages for a turn."""

import logging

import pydantic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from apps.flows.agents import Agent, HistoryPromptMessage, PlainPromptMessage, PromptBlock
from apps.flows.config import get_settings
from apps.flows.const import HistoryType, MessageRole
from apps.flows.utils import render_template
from apps.flows.variables import VariableRegistry

logger = logging.getLogger("flows.prompts")

MESSAGE_CLASSES = {
    MessageRole.SYSTEM: SystemMessage,
    MessageRole.USER: HumanMessage,
    MessageRole.ASSISTANT: AIMessage,
}


class HistoryTurn(pydantic.BaseModel):
    """One message of the conversation history."""

    content: str
    char_id: str | None = None
    char_name: str | None = None
    # True for messages written by the user's persona
    is_user: bool = False


def history_window(history: list[HistoryTurn], message: HistoryPromptMessage) -> list[HistoryTurn]:
    """Select turns ``[start, end)``, counted from the most recent turn when ``countFromEnd`` is set."""
    end = min(message.end, get_settings().max_history_turns)
    start = min(message.start, end)
    if message.countFromEnd:
        total = len(history)
        return history[max(total - end, 0) : max(total - start, 0)]
    return history[start:end]


def _render_blocks(blocks: list[PromptBlock], context: dict) -> str:
    rendered = (render_template(block.template, context) for block in blocks if block.enabled)
    return "\n".join(text for text in rendered if text.strip())


def _turn_context(context: dict, turn: HistoryTurn) -> dict:
    return {**context, "turn": {"char_id": turn.char_id, "char_name": turn.char_name, "content": turn.content}}


def _render_history(message: HistoryPromptMessage, history: list[HistoryTurn], context: dict) -> list[BaseMessage]:
    turns = history_window(history, message)
    rendered = []
    for turn in turns:
        blocks = message.userBlocks if turn.is_user else message.assistantBlocks
        text = _render_blocks(blocks, _turn_context(context, turn)) if blocks else turn.content
        if turn.is_user:
            role = message.roleMapping.userMessageRole
        else:
            role = message.roleMapping.charMessageRole
        rendered.append((MessageRole(role), text))

    if message.historyType == HistoryType.MERGE:
        merged = "\n".join(text for _, text in rendered if text.strip())
        return [HumanMessage(content=merged)] if merged else []
    return [MESSAGE_CLASSES[role](content=text) for role, text in rendered if text.strip()]


def render_agent_messages(
    agent: Agent, registry: VariableRegistry, history: list[HistoryTurn] | None = None
) -> list[BaseMessage]:
    context = registry.as_context()
    messages = []
    for message in agent.promptMessages:
        if not message.enabled:
            continue
        if isinstance(message, HistoryPromptMessage):
            messages.extend(_render_history(message, history or [], context))
        elif isinstance(message, PlainPromptMessage):
            text = _render_blocks(message.blocks, context)
            if text:
                messages.append(MESSAGE_CLASSES[message.role](content=text))
    logger.debug("Rendered %d message(s) for agent %s", len(messages), agent.id)
    return messages
