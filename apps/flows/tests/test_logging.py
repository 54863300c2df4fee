from uuid import uuid4

from apps.flows.logging import FlowLoggingCallbackHandler
from apps.flows.runs import FlowRun, FlowRunStatus


def _run():
    return FlowRun(flowId="flow", nodeIds=["start", "narrator"])


def test_only_flow_nodes_are_logged():
    run = _run()
    handler = FlowLoggingCallbackHandler(run)
    run_id = uuid4()

    handler.on_chain_start({}, {"path": ["start"]}, run_id=run_id, name="narrator")
    handler.on_chain_start({}, {}, run_id=uuid4(), name="RunnableSequence")
    handler.on_chain_end({"content": "Hello"}, run_id=run_id)
    handler.close()

    assert [(entry["message"], entry["input"], entry["output"]) for entry in run.entries] == [
        ("narrator starting", "start", None),
        ("narrator finished", None, "Hello"),
    ]


def test_hidden_steps_are_skipped():
    run = _run()
    handler = FlowLoggingCallbackHandler(run)
    handler.on_chain_start({}, {}, run_id=uuid4(), name="narrator", tags=["langsmith:hidden"])
    handler.close()
    assert run.entries == []


def test_error_marks_run():
    run = _run()
    handler = FlowLoggingCallbackHandler(run)

    handler.on_chain_error(ValueError("boom"), run_id=uuid4())
    handler.close()

    assert run.status == FlowRunStatus.ERROR
    assert run.entries[0]["level"] == "ERROR"
    assert run.entries[0]["message"] == "boom"


def test_close_detaches_handler():
    run = _run()
    handler = FlowLoggingCallbackHandler(run)
    handler.close()

    handler.logger.info("after close")

    assert run.entries == []
