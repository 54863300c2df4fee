from enum import StrEnum


class NodeType(StrEnum):
    START = "start"
    END = "end"
    AGENT = "agent"
    IF = "if"
    DATA_STORE = "dataStore"


PROCESS_NODE_TYPES = frozenset({NodeType.AGENT, NodeType.IF, NodeType.DATA_STORE})


class ReadyState(StrEnum):
    DRAFT = "draft"
    READY = "ready"
    ERROR = "error"


class LogicOperator(StrEnum):
    AND = "AND"
    OR = "OR"


class BranchHandle(StrEnum):
    TRUE = "true"
    FALSE = "false"


class DataStoreFieldType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    INTEGER = "integer"


class MessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class HistoryType(StrEnum):
    SPLIT = "split"
    MERGE = "merge"


class IssueSeverity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssueCode(StrEnum):
    MISSING_AGENT_NAME = "MISSING_AGENT_NAME"
    DUPLICATE_AGENT_NAME = "DUPLICATE_AGENT_NAME"
    MISSING_PROMPT = "MISSING_PROMPT"
    MISSING_STRUCTURED_OUTPUT_SCHEMA = "MISSING_STRUCTURED_OUTPUT_SCHEMA"
    SYSTEM_MESSAGE_IN_MIDDLE = "SYSTEM_MESSAGE_IN_MIDDLE"
    UNDEFINED_OUTPUT_VARIABLE = "UNDEFINED_OUTPUT_VARIABLE"
    INVALID_FLOW_STRUCTURE = "INVALID_FLOW_STRUCTURE"
    IF_NODE_MISSING_BRANCHES = "IF_NODE_MISSING_BRANCHES"
    IF_NODE_BRANCH_NOT_REACHING_END = "IF_NODE_BRANCH_NOT_REACHING_END"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    DATA_STORE_INVALID_INITIAL_VALUE = "DATA_STORE_INVALID_INITIAL_VALUE"
    DATA_STORE_MISSING_INITIAL_VALUE = "DATA_STORE_MISSING_INITIAL_VALUE"


# Replacing any of these flow fields counts as a structural edit
STRUCTURAL_FIELDS = frozenset({"nodes", "edges", "responseTemplate"})

DEFAULT_START_LABEL = "Start"
DEFAULT_END_LABEL = "End"
