import pytest
from taskflow_engine.models.run import Node, Run, RunStatus
from taskflow_engine.services.exceptions import InvalidTransition, TerminalStateViolation
from taskflow_engine.services.run_state import (
    active_run_view, check_transition, effective_status, is_terminal
)

ALL_STATUSES = list(RunStatus)


def make_run(status, **kwargs):
    return Run(id="run-1", flow_id="flow-1", account_id="acc", status=status.value, **kwargs)


def make_node(status, **kwargs):
    return Node(id="node-1", run_id="run-1", name="task", status=status.value, **kwargs)


def test_effective_status_without_node_is_run_status():
    for status in ALL_STATUSES:
        assert effective_status(make_run(status)) == status


@pytest.mark.parametrize("node_status", ALL_STATUSES)
def test_running_run_mirrors_its_node(node_status):
    assert effective_status(make_run(RunStatus.RUNNING), make_node(node_status)) == node_status


@pytest.mark.parametrize("node_status", ALL_STATUSES)
def test_run_level_question_outranks_node(node_status):
    run = make_run(RunStatus.ASK_USER_FOR_INPUT)
    assert effective_status(run, make_node(node_status)) == RunStatus.ASK_USER_FOR_INPUT


@pytest.mark.parametrize("run_status", [RunStatus.QUEUED, RunStatus.COMPLETED, RunStatus.ERROR])
def test_other_run_statuses_ignore_node(run_status):
    assert effective_status(make_run(run_status), make_node(RunStatus.ASK_USER_FOR_INPUT)) == run_status


@pytest.mark.parametrize("current,target", [
    (RunStatus.QUEUED, RunStatus.RUNNING),
    (RunStatus.QUEUED, RunStatus.ERROR),
    (RunStatus.RUNNING, RunStatus.ASK_USER_FOR_INPUT),
    (RunStatus.RUNNING, RunStatus.COMPLETED),
    (RunStatus.RUNNING, RunStatus.ERROR),
    (RunStatus.ASK_USER_FOR_INPUT, RunStatus.RUNNING),
    (RunStatus.ASK_USER_FOR_INPUT, RunStatus.ERROR),
])
def test_legal_transitions(current, target):
    check_transition("Run", "run-1", current.value, target)


@pytest.mark.parametrize("current", [RunStatus.COMPLETED, RunStatus.ERROR])
@pytest.mark.parametrize("target", ALL_STATUSES)
def test_terminal_states_are_final(current, target):
    assert is_terminal(current)
    with pytest.raises(TerminalStateViolation):
        check_transition("Run", "run-1", current.value, target)


@pytest.mark.parametrize("current,target", [
    (RunStatus.QUEUED, RunStatus.COMPLETED),
    (RunStatus.QUEUED, RunStatus.ASK_USER_FOR_INPUT),
    (RunStatus.ASK_USER_FOR_INPUT, RunStatus.COMPLETED),
    (RunStatus.RUNNING, RunStatus.QUEUED),
])
def test_illegal_transitions(current, target):
    with pytest.raises(InvalidTransition):
        check_transition("Run", "run-1", current.value, target)


def test_active_run_view_prefers_run_level_wait():
    run = make_run(
        RunStatus.ASK_USER_FOR_INPUT,
        live_status="waiting",
        input_wait={"id": "w1", "status": "pending", "question": "Which city?"}
    )
    node = make_node(
        RunStatus.ASK_USER_FOR_INPUT,
        input_wait={"id": "w2", "status": "pending", "question": "Which day?"}
    )

    view = active_run_view(run, node)

    assert view.run_status == RunStatus.ASK_USER_FOR_INPUT
    assert view.input_wait["id"] == "w1"
    assert view.input_wait["runId"] == "run-1"
    assert "nodeId" not in view.input_wait


def test_active_run_view_surfaces_node_wait_and_live_status():
    run = make_run(RunStatus.RUNNING, live_status="run status")
    node = make_node(
        RunStatus.ASK_USER_FOR_INPUT,
        live_status="node status",
        input_wait={"id": "w2", "status": "pending", "question": "Which day?"}
    )

    view = active_run_view(run, node)

    assert view.run_status == RunStatus.ASK_USER_FOR_INPUT
    assert view.live_status == "node status"
    assert view.input_wait == {
        "id": "w2", "status": "pending", "question": "Which day?", "nodeId": "node-1", "runId": "run-1"
    }


def test_active_run_view_ignores_answered_waits():
    run = make_run(RunStatus.RUNNING)
    node = make_node(RunStatus.RUNNING, input_wait={"id": "w2", "status": "completed"})
    assert active_run_view(run, node).input_wait is None


def test_active_run_view_without_run():
    view = active_run_view(None)
    assert view.run_id is None
    assert view.run_status is None
