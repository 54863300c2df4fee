"""Run log for a turn.

Every flow node that starts, finishes or fails adds a ``LogEntry`` to ``FlowRun.log``. Entries
go through a loguru sink bound to the run, which ``close()`` detaches again.
"""

import uuid

from langchain_core.callbacks import BaseCallbackHandler
from loguru import logger

from apps.flows.runs import FlowRun, FlowRunStatus, LogEntry

HIDDEN_TAG = "langsmith:hidden"
LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


class FlowLoggingCallbackHandler(BaseCallbackHandler):
    """Logs the flow nodes of a turn to the run log.

    Langgraph invokes callbacks from worker threads; entries are only ever appended.
    """

    def __init__(self, flow_run: FlowRun) -> None:
        self.flow_run = flow_run
        self.sink = RunLogSink(flow_run)
        self.logger = self.sink.logger
        # langchain run id -> flow node id
        self._nodes_by_run = {}

    def _node_id(self, kwargs) -> str | None:
        if HIDDEN_TAG in (kwargs.get("tags") or []):
            return None

        run_id = kwargs.get("run_id")
        if run_id in self._nodes_by_run:
            return self._nodes_by_run[run_id]

        name = kwargs.get("name")
        if name in self.flow_run.nodeIds:
            self._nodes_by_run[run_id] = name
            return name
        return None

    def on_chain_start(self, serialized, inputs, *args, **kwargs):
        node_id = self._node_id(kwargs)
        if node_id is not None:
            self.logger.info(f"{node_id} starting", input=_previous_node(inputs))

    def on_chain_end(self, outputs, **kwargs):
        node_id = self._node_id(kwargs)
        if node_id is not None:
            content = outputs.get("content") if isinstance(outputs, dict) else outputs
            self.logger.info(f"{node_id} finished", output=content)

    def on_chain_error(self, error, *args, **kwargs):
        self.flow_run.status = FlowRunStatus.ERROR
        self.logger.error(str(error))

    def close(self):
        self.sink.remove()


def _previous_node(inputs):
    if isinstance(inputs, str):
        return inputs
    if isinstance(inputs, dict) and inputs.get("path"):
        return inputs["path"][-1]
    return None


class RunLogSink:
    """loguru sink that writes the records bound to one run into ``FlowRun.log``."""

    def __init__(self, flow_run: FlowRun):
        self.flow_run = flow_run
        self.key = uuid.uuid4().hex
        self.logger = logger.bind(run_log=self.key)
        self.handler_id = logger.add(self, level="DEBUG", filter=self._accepts)

    def _accepts(self, record) -> bool:
        return record["extra"].get("run_log") == self.key

    def __call__(self, message):
        record = message.record
        output = record["extra"].get("output")
        input = record["extra"].get("input")
        entry = LogEntry(
            time=record["time"].strftime(LOG_TIME_FORMAT),
            level=record["level"].name,
            message=record["message"],
            output=str(output) if output else None,
            input=str(input) if input else None,
        )
        self.flow_run.entries.append(entry.model_dump())

    def remove(self):
        if self.handler_id is not None:
            logger.remove(self.handler_id)
            self.handler_id = None
