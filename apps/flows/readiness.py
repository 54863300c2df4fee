"""Readiness of a flow: ``draft`` -> ``ready`` / ``error``.

* An explicitly requested state always wins.
* A structural edit on a ``ready`` flow drops it back to ``draft``.
* A structural edit on an ``error`` flow leaves it in ``error``: the error only clears when
  a validation pass is run again.
"""

from collections.abc import Iterable

from apps.flows.const import IssueSeverity, ReadyState


def next_ready_state(
    current: ReadyState,
    *,
    explicit: ReadyState | None = None,
    structural_change: bool = False,
) -> ReadyState:
    if explicit is not None:
        return ReadyState(explicit)
    if structural_change and current == ReadyState.READY:
        return ReadyState.DRAFT
    return ReadyState(current)


def ready_state_from_issues(issues: Iterable) -> ReadyState:
    """The state a validation pass produces for the given issues."""
    if any(issue.severity == IssueSeverity.ERROR for issue in issues):
        return ReadyState.ERROR
    return ReadyState.READY
