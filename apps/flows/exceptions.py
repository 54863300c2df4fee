class FlowError(Exception):
    """Base class for all errors raised by the flow engine.

    Every subclass carries a ``kind`` so that the service layer can report the failure
    without inspecting the exception type.
    """

    kind = "flow_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_json(self):
        return {"kind": self.kind, "message": self.message}


class NotFound(FlowError):
    """A flow, node, agent or other resource does not exist."""

    kind = "not_found"

    def __init__(self, message: str, resource: str = None, resource_id: str = None):
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id

    def to_json(self):
        return {**super().to_json(), "resource": self.resource, "resource_id": self.resource_id}


class TypeMismatch(FlowError):
    """An operation was applied to a node of the wrong type."""

    kind = "type_mismatch"

    def __init__(self, message: str, node_id: str = None, expected: str = None, actual: str = None):
        super().__init__(message)
        self.node_id = node_id
        self.expected = expected
        self.actual = actual

    def to_json(self):
        return {**super().to_json(), "node_id": self.node_id, "expected": self.expected, "actual": self.actual}


class GraphIncomplete(FlowError):
    """The graph is missing an expected edge, handle or node."""

    kind = "graph_incomplete"

    def __init__(self, message: str, node_id: str = None, edge_ids: list[str] = None):
        """
        Parameters:
            message (str): A descriptive error message explaining what is missing.
            node_id (str, optional): Identifier of the node where the problem was found. Defaults to None.
            edge_ids (list[str], optional): List of edge identifiers related to the error. Defaults to None.
        """
        super().__init__(message)
        self.node_id = node_id
        self.edge_ids = edge_ids

    def to_json(self):
        if self.node_id:
            return {"kind": self.kind, "node": {self.node_id: {"root": self.message}}, "edge": self.edge_ids}
        return {"kind": self.kind, "flow": self.message, "edge": self.edge_ids}


class FormulaError(FlowError):
    """A data-store logic string or condition operand could not be evaluated."""

    kind = "formula_error"

    def __init__(self, message: str, variable: str = None, logic: str = None):
        """
        Parameters:
            message (str): A descriptive error message.
            variable (str, optional): The variable that could not be resolved, if any.
            logic (str, optional): The logic string being evaluated.
        """
        super().__init__(message)
        self.variable = variable
        self.logic = logic

    def to_json(self):
        return {**super().to_json(), "variable": self.variable, "logic": self.logic}


class ValidationFailure(FlowError):
    """Aggregated validation problems.

    Raised for caller-detectable input problems (malformed ids, unknown fields). The
    issue list produced by a validation run is attached to the flow instead of raised.
    """

    kind = "validation_failure"

    def __init__(self, message: str, issues: list = None):
        super().__init__(message)
        self.issues = issues or []

    def to_json(self):
        return {**super().to_json(), "issues": [_issue_json(issue) for issue in self.issues]}


class FlowCancelled(FlowError):
    """The turn was cancelled before it completed. No partial state is committed."""

    kind = "cancelled"


class StepLimitExceeded(FlowError):
    """The turn did not reach the end node within the configured number of steps."""

    kind = "step_limit_exceeded"


def _issue_json(issue):
    if hasattr(issue, "model_dump"):
        return issue.model_dump(mode="json", exclude_none=True)
    return issue
