from enum import StrEnum

import pydantic
from pydantic import Field

from apps.flows.utils import new_id


class FlowRunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class LogEntry(pydantic.BaseModel):
    time: str
    level: str
    message: str
    output: str | None = None
    input: str | None = None


class FlowRun(pydantic.BaseModel):
    """Record of one turn executed through a flow."""

    id: str = Field(default_factory=new_id)
    flowId: str
    # ids of the nodes executed by the run; only these appear in the log
    nodeIds: list[str] = []
    status: FlowRunStatus = FlowRunStatus.RUNNING
    log: dict = Field(default_factory=lambda: {"entries": []})
    error: str | None = None

    @property
    def entries(self) -> list[dict]:
        return self.log["entries"]
