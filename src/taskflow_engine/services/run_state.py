"""Run/Node status vocabulary, legal transitions and read-time derivations.

A run's externally observed status is never stored separately from the run
row: it is derived at read time from the run and the node it is currently
working on.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from taskflow_engine.models.run import Node, Run, RunStatus
from taskflow_engine.services.exceptions import InvalidTransition, TerminalStateViolation

TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.ERROR})

ALLOWED_TRANSITIONS = {
    RunStatus.QUEUED: {RunStatus.RUNNING, RunStatus.ERROR},
    RunStatus.RUNNING: {RunStatus.ASK_USER_FOR_INPUT, RunStatus.COMPLETED, RunStatus.ERROR},
    RunStatus.ASK_USER_FOR_INPUT: {RunStatus.RUNNING, RunStatus.ERROR},
    RunStatus.COMPLETED: set(),
    RunStatus.ERROR: set(),
}

INPUT_WAIT_PENDING = "pending"
INPUT_WAIT_COMPLETED = "completed"


def as_status(value: Union[str, RunStatus]) -> RunStatus:
    return value if isinstance(value, RunStatus) else RunStatus(value)


def is_terminal(status: Union[str, RunStatus]) -> bool:
    return as_status(status) in TERMINAL_STATUSES


def check_transition(entity: str, entity_id: str, current: Union[str, RunStatus], target: RunStatus) -> None:
    """Raise unless ``current -> target`` is a legal move."""
    current = as_status(current)
    if current in TERMINAL_STATUSES:
        raise TerminalStateViolation(entity, entity_id, current.value, target.value)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(entity, entity_id, current.value, target.value)


def effective_status(run: Run, node: Optional[Node] = None) -> RunStatus:
    """Status a caller should see for ``run`` given its working node.

    A run-level question outranks anything the node reports; otherwise a
    running run mirrors the node it is working on.
    """
    run_status = as_status(run.status)
    if node is None:
        return run_status
    if run_status == RunStatus.ASK_USER_FOR_INPUT:
        return run_status
    if run_status == RunStatus.RUNNING:
        return as_status(node.status)
    return run_status


def pending_input_wait(input_wait: Optional[Dict[str, Any]]) -> bool:
    return bool(input_wait) and input_wait.get("status") == INPUT_WAIT_PENDING


@dataclass
class ActiveRunView:
    run_id: Optional[str]
    run_status: Optional[RunStatus]
    input_wait: Optional[Dict[str, Any]]
    live_status: Optional[str]


def active_run_view(run: Optional[Run], node: Optional[Node] = None) -> ActiveRunView:
    if run is None:
        return ActiveRunView(run_id=None, run_status=None, input_wait=None, live_status=None)

    status = effective_status(run, node)
    live_status = run.live_status
    input_wait = None

    if as_status(run.status) == RunStatus.ASK_USER_FOR_INPUT and pending_input_wait(run.input_wait):
        input_wait = {**run.input_wait, "runId": run.id}
    elif node is not None and as_status(run.status) == RunStatus.RUNNING:
        if node.live_status:
            live_status = node.live_status
        if as_status(node.status) == RunStatus.ASK_USER_FOR_INPUT and pending_input_wait(node.input_wait):
            input_wait = {**node.input_wait, "nodeId": node.id, "runId": run.id}

    return ActiveRunView(run_id=run.id, run_status=status, input_wait=input_wait, live_status=live_status)
