import pytest

from apps.flows.const import IssueSeverity, ReadyState
from apps.flows.flow import ValidationIssue
from apps.flows.readiness import next_ready_state, ready_state_from_issues


@pytest.mark.parametrize(
    ("current", "explicit", "structural_change", "expected"),
    [
        (ReadyState.DRAFT, None, False, ReadyState.DRAFT),
        (ReadyState.DRAFT, None, True, ReadyState.DRAFT),
        (ReadyState.READY, None, False, ReadyState.READY),
        (ReadyState.READY, None, True, ReadyState.DRAFT),
        (ReadyState.ERROR, None, True, ReadyState.ERROR),
        (ReadyState.ERROR, ReadyState.READY, True, ReadyState.READY),
        (ReadyState.READY, ReadyState.ERROR, False, ReadyState.ERROR),
    ],
)
def test_next_ready_state(current, explicit, structural_change, expected):
    assert next_ready_state(current, explicit=explicit, structural_change=structural_change) == expected


def _issue(severity):
    return ValidationIssue(id="i", code="X", severity=severity, title="t")


@pytest.mark.parametrize(
    ("severities", "expected"),
    [
        ([], ReadyState.READY),
        ([IssueSeverity.WARNING], ReadyState.READY),
        ([IssueSeverity.WARNING, IssueSeverity.ERROR], ReadyState.ERROR),
    ],
)
def test_ready_state_from_issues(severities, expected):
    assert ready_state_from_issues([_issue(severity) for severity in severities]) == expected
