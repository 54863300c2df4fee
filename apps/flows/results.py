"""Explicit success / failure values returned by the service layer."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from apps.flows.exceptions import FlowError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: FlowError | None = None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: FlowError) -> "Result[T]":
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    def to_json(self):
        if self.error is not None:
            return {"success": False, "error": self.error.to_json()}
        return {"success": True}


class ItemAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class BatchStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ItemOutcome:
    action: ItemAction
    key: str | None
    ok: bool = True
    error: str | None = None


@dataclass
class BatchResult:
    """Per-item outcomes for a batch operation.

    Every item is processed independently; a failing item never stops the batch.
    """

    outcomes: list[ItemOutcome] = field(default_factory=list)
    # number of messages whose role was rewritten by the post-batch normalisation
    system_role_fixed: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def record(self, action: ItemAction, key: str | None):
        self.outcomes.append(ItemOutcome(action=action, key=key))

    def record_failure(self, action: ItemAction, key: str | None, error: str):
        self.outcomes.append(ItemOutcome(action=action, key=key, ok=False, error=error))

    def _count(self, action: ItemAction) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok and outcome.action == action)

    @property
    def created(self) -> int:
        return self._count(ItemAction.CREATE)

    @property
    def updated(self) -> int:
        return self._count(ItemAction.UPDATE)

    @property
    def deleted(self) -> int:
        return self._count(ItemAction.DELETE)

    @property
    def skipped(self) -> int:
        return self._count(ItemAction.SKIP)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)

    @property
    def errors(self) -> list[str]:
        return [f"{outcome.key}: {outcome.error}" for outcome in self.outcomes if not outcome.ok]

    @property
    def success(self) -> bool:
        return self.failed == 0

    @property
    def status(self) -> BatchStatus:
        if self.failed == 0:
            return BatchStatus.SUCCESS
        if self.failed == len(self.outcomes):
            return BatchStatus.FAILURE
        return BatchStatus.PARTIAL

    def to_json(self):
        return {
            "success": self.success,
            "status": str(self.status),
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
            "systemRoleFixed": self.system_role_fixed,
            "errors": self.errors,
            **self.details,
        }
