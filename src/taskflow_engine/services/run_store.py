"""Linearizable read-modify-write access to run and node rows.

Every status change goes through ``transition_run``/``transition_node``: the
row is re-read under a per-entity lock, the move is checked against the state
machine, and the write is a compare-and-set on the status that was read. A
writer in another process that got there first makes the write match no row,
which surfaces as ``TransitionConflict`` instead of a silent overwrite.
"""
from typing import Any, Callable, Dict, List, Optional, Union
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.database.repositories import (
    FlowRepository, MessageLogRepository, NodeRepository, RunRepository, ThreadRepository
)
from taskflow_engine.models.flow import Flow
from taskflow_engine.models.run import Node, Run, RunStatus, Thread
from taskflow_engine.services.exceptions import NotFound, TransitionConflict
from taskflow_engine.services.run_state import check_transition
from taskflow_engine.utils.locks import KeyedLocks

Values = Union[Dict[str, Any], Callable[[Any], Dict[str, Any]], None]
Precondition = Optional[Callable[[Any], None]]


def _resolve(values: Values, entity) -> Dict[str, Any]:
    if values is None:
        return {}
    if callable(values):
        return values(entity)
    return values


class RunStore:
    def __init__(self, session_factory: async_sessionmaker, locks: Optional[KeyedLocks] = None):
        self.session_factory = session_factory
        self.locks = locks or KeyedLocks()

    def run_lock(self, run_id: str):
        return self.locks.hold(f"run:{run_id}")

    def node_lock(self, node_id: str):
        return self.locks.hold(f"node:{node_id}")

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with self.session_factory() as session:
            return await FlowRepository(session).get_by_id(flow_id)

    async def get_run(self, run_id: str) -> Optional[Run]:
        async with self.session_factory() as session:
            return await RunRepository(session).get_by_id(run_id)

    async def get_node(self, node_id: str, run_id: Optional[str] = None) -> Optional[Node]:
        async with self.session_factory() as session:
            return await NodeRepository(session).get_by_id(node_id, run_id=run_id)

    async def create_run(self, flow: Flow, trigger_input: str, event_payload: Optional[Dict[str, Any]] = None) -> Run:
        async with self.session_factory() as session:
            return await RunRepository(session).create(flow, trigger_input, event_payload)

    async def transition_run(
        self,
        run_id: str,
        target: RunStatus,
        values: Values = None,
        precondition: Precondition = None
    ) -> Run:
        async with self.run_lock(run_id):
            async with self.session_factory() as session:
                repository = RunRepository(session)
                run = await repository.get_by_id(run_id)
                if not run:
                    raise NotFound(f"Run {run_id} not found")
                if precondition:
                    precondition(run)
                check_transition("Run", run_id, run.status, target)

                if not await repository.transition(run_id, run.status, target, **_resolve(values, run)):
                    raise TransitionConflict("Run", run_id, run.status)
                return await repository.get_by_id(run_id)

    async def transition_node(
        self,
        node_id: str,
        target: RunStatus,
        values: Values = None,
        precondition: Precondition = None
    ) -> Node:
        async with self.node_lock(node_id):
            async with self.session_factory() as session:
                repository = NodeRepository(session)
                node = await repository.get_by_id(node_id)
                if not node:
                    raise NotFound(f"Node {node_id} not found")
                if precondition:
                    precondition(node)
                check_transition("Node", node_id, node.status, target)

                if not await repository.transition(node_id, node.status, target, **_resolve(values, node)):
                    raise TransitionConflict("Node", node_id, node.status)
                return await repository.get_by_id(node_id)

    async def update_run(self, run_id: str, values: Values, precondition: Precondition = None) -> Run:
        """Read-modify-write of non-status run fields."""
        async with self.run_lock(run_id):
            async with self.session_factory() as session:
                repository = RunRepository(session)
                run = await repository.get_by_id(run_id)
                if not run:
                    raise NotFound(f"Run {run_id} not found")
                if precondition:
                    precondition(run)
                await repository.update_fields(run_id, **_resolve(values, run))
                return await repository.get_by_id(run_id)

    async def update_node(self, node_id: str, values: Values, precondition: Precondition = None) -> Node:
        async with self.node_lock(node_id):
            async with self.session_factory() as session:
                repository = NodeRepository(session)
                node = await repository.get_by_id(node_id)
                if not node:
                    raise NotFound(f"Node {node_id} not found")
                if precondition:
                    precondition(node)
                await repository.update_fields(node_id, **_resolve(values, node))
                return await repository.get_by_id(node_id)

    async def start_node(self, run_id: str, name: str, node_input: Optional[str], precondition: Precondition) -> Node:
        """Create a running node and make it the run's working node."""
        async with self.run_lock(run_id):
            async with self.session_factory() as session:
                runs = RunRepository(session)
                run = await runs.get_by_id(run_id)
                if not run:
                    raise NotFound(f"Run {run_id} not found")
                precondition(run)

                node = await NodeRepository(session).create(run, name, node_input)
                private_data = {**(run.private_data or {}), "workingOnNodeId": node.id}
                await runs.update_fields(run_id, private_data=private_data)
                return node

    async def create_thread(self, run_id: str, name: str, node_id: Optional[str] = None,
                            data: Optional[Dict[str, Any]] = None) -> Thread:
        async with self.session_factory() as session:
            return await ThreadRepository(session).create(run_id, name, node_id=node_id, data=data)

    async def log_messages(self, run: Run, messages: List[Dict[str, Any]], segment: str,
                           node_id: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            await MessageLogRepository(session).create(
                flow_id=run.flow_id,
                run_id=run.id,
                node_id=node_id,
                account_id=run.account_id,
                segment=segment,
                messages=messages
            )
