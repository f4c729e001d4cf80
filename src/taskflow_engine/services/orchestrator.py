"""Drives runs from creation to a terminal state.

A run is executed by a *run handler*: an async callable receiving a
``RunContext`` and returning a ``RunResult`` (the run completed) or ``None``
(the handler asked a human something and the run is now suspended). When the
question is answered the handler is invoked again with the persisted state
and conversation, and picks up from where it stopped.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from taskflow_engine.config.logging import get_logger
from taskflow_engine.config.settings import settings
from taskflow_engine.models.flow import Flow
from taskflow_engine.models.run import Node, Run, RunStatus, Thread
from taskflow_engine.services.exceptions import InvalidTransition, NotFound, TaskflowError
from taskflow_engine.services.input_wait import InputWaitCoordinator
from taskflow_engine.services.llm_ensemble import CorrelationKey, LLMEnsemble
from taskflow_engine.services.run_state import as_status, is_terminal
from taskflow_engine.services.run_store import RunStore

# Run lifecycle gets its own log file
run_logger = logging.getLogger("runs")
logger = get_logger("orchestrator")


@dataclass
class RunResult:
    output: Optional[str] = None
    structured_output: Optional[Dict[str, Any]] = None
    reasoning: Optional[str] = None


RunHandler = Callable[["RunContext"], Awaitable[Optional[RunResult]]]


def describe_failure(error: Exception) -> str:
    if isinstance(error, TaskflowError):
        return error.message
    return f"{type(error).__name__}: {error}"


class RunContext:
    """What a run handler sees of its run."""

    def __init__(self, orchestrator: "RunOrchestrator", run: Run, flow: Flow):
        self.orchestrator = orchestrator
        self.run_id = run.id
        self.flow_id = flow.id
        self.account_id = run.account_id
        self.input = run.input
        self.trigger_input = run.trigger_input
        self.event_payload = run.event_payload
        self.flow_metadata = dict(flow.flow_metadata or {})
        self.state: Dict[str, Any] = dict((run.private_data or {}).get("state") or {})
        self.working_node_id: Optional[str] = run.working_on_node_id

    @property
    def resumed(self) -> bool:
        return bool(self.state)

    async def start_node(self, name: str, node_input: Optional[str] = None) -> Node:
        node = await self.orchestrator.start_node(self.run_id, name, node_input)
        self.working_node_id = node.id
        return node

    async def get_node(self, node_id: str) -> Node:
        node = await self.orchestrator.store.get_node(node_id, run_id=self.run_id)
        if not node:
            raise NotFound(f"Node {node_id} not found in run {self.run_id}")
        return node

    async def complete_node(self, node_id: str, output: Optional[str] = None,
                            structured_output: Optional[Dict[str, Any]] = None) -> Node:
        node = await self.orchestrator.complete_node(self.run_id, node_id, output, structured_output)
        if self.working_node_id == node_id:
            self.working_node_id = None
        return node

    async def fail_node(self, node_id: str, error: str) -> Node:
        return await self.orchestrator.fail_node(node_id, error)

    async def ask_user(self, prompt: Dict[str, Any], node_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.orchestrator.input_waits.request_input(self.run_id, prompt, node_id=node_id)

    async def set_live_status(self, text: str, node_id: Optional[str] = None) -> None:
        await self.orchestrator.set_live_status(self.run_id, text, node_id=node_id)

    async def save_structured_output(self, partial: Dict[str, Any]) -> None:
        await self.orchestrator.save_structured_output(self.run_id, partial)

    async def save_state(self, **values) -> None:
        self.state.update(values)
        await self.orchestrator.save_state(self.run_id, self.state)

    async def start_thread(self, name: str, node_id: Optional[str] = None,
                           data: Optional[Dict[str, Any]] = None) -> Thread:
        return await self.orchestrator.store.create_thread(self.run_id, name, node_id=node_id, data=data)

    async def conversation(self, node_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Messages humans have submitted to the run, or to one of its nodes."""
        if node_id:
            entity = await self.get_node(node_id)
        else:
            entity = await self.orchestrator.store.get_run(self.run_id)
        return list((entity.private_data or {}).get("conversation") or [])

    async def call_llm(
        self,
        messages: List[Dict[str, str]],
        models: Optional[List[str]] = None,
        max_attempts: Optional[int] = None,
        usecase: str = "run",
        node_id: Optional[str] = None,
        **kwargs
    ) -> Any:
        metadata = {
            "usecase": usecase,
            "accountId": self.account_id,
            "flowId": self.flow_id,
            "runId": self.run_id,
        }
        if node_id:
            metadata["nodeId"] = node_id
        return await self.orchestrator.ensemble.call(
            messages=messages,
            models=models or settings.task_model_list,
            metadata=metadata,
            max_attempts=max_attempts or settings.task_max_attempts,
            correlation=CorrelationKey("runId", self.run_id),
            **kwargs
        )


class RunOrchestrator:
    def __init__(self, store: RunStore, ensemble: LLMEnsemble, handler: Optional[RunHandler] = None):
        self.store = store
        self.ensemble = ensemble
        self.handler = handler
        self.input_waits = InputWaitCoordinator(store, resume=self.resume)
        self._tasks: Set[asyncio.Task] = set()
        self._executing: Set[str] = set()
        self._resume_requested: Set[str] = set()

    async def create_run(self, flow: Flow, trigger_input: str,
                         event_payload: Optional[Dict[str, Any]] = None) -> Run:
        run = await self.store.create_run(flow, trigger_input, event_payload)
        run_logger.info(f"Run {run.id} queued for flow {flow.id} (trigger={trigger_input})")
        return run

    def launch(self, run_id: str) -> asyncio.Task:
        """Execute the run in the background."""
        task = asyncio.create_task(self.execute_run(run_id), name=f"run_{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Run task failed", task=task.get_name(), error=describe_failure(error))

    async def resume(self, run_id: str) -> None:
        run_logger.info(f"Resuming run {run_id}")
        if run_id in self._executing:
            # The handler is still unwinding; run again once it has
            self._resume_requested.add(run_id)
            return
        self.launch(run_id)

    async def execute_run(self, run_id: str) -> None:
        if run_id in self._executing:
            # The handler is still unwinding; run again once it has
            self._resume_requested.add(run_id)
            return

        self._executing.add(run_id)
        try:
            await self._execute(run_id)
        finally:
            self._executing.discard(run_id)
            if run_id in self._resume_requested:
                self._resume_requested.discard(run_id)
                if await self.input_waits.is_runnable(run_id):
                    self.launch(run_id)

    async def _execute(self, run_id: str) -> None:
        run = await self.store.get_run(run_id)
        if not run:
            logger.error("Run not found", run_id=run_id)
            return

        status = as_status(run.status)
        if status == RunStatus.QUEUED:
            run = await self.store.transition_run(run_id, RunStatus.RUNNING)
            run_logger.info(f"Run {run_id} started")
        elif status != RunStatus.RUNNING:
            run_logger.info(f"Run {run_id} is {status.value}; nothing to execute")
            return
        elif not await self.input_waits.is_runnable(run_id):
            run_logger.info(f"Run {run_id} is waiting on node input; nothing to execute")
            return

        flow = await self.store.get_flow(run.flow_id)
        if self.handler is None:
            await self.fail_run(run_id, "No run handler configured")
            return

        context = RunContext(self, run, flow)
        try:
            result = await self.handler(context)
        except Exception as e:
            run_logger.error(f"Run {run_id} failed: {describe_failure(e)}")
            await self.fail_run(run_id, describe_failure(e))
            return

        if result is None:
            if run_id in self._resume_requested:
                run_logger.info(f"Run {run_id} was answered before its handler returned; resuming")
                return
            if await self._is_waiting(run_id):
                run_logger.info(f"Run {run_id} suspended awaiting user input")
                return
            await self.fail_run(run_id, "Run handler returned without a result or a pending question")
            return

        await self.complete_run(run_id, result)

    async def _is_waiting(self, run_id: str) -> bool:
        run = await self.store.get_run(run_id)
        if as_status(run.status) == RunStatus.ASK_USER_FOR_INPUT:
            return True
        if run.working_on_node_id:
            node = await self.store.get_node(run.working_on_node_id)
            return node is not None and as_status(node.status) == RunStatus.ASK_USER_FOR_INPUT
        return False

    async def start_node(self, run_id: str, name: str, node_input: Optional[str] = None) -> Node:
        def run_is_running(run):
            if as_status(run.status) != RunStatus.RUNNING:
                raise InvalidTransition("Run", run_id, run.status, f"start node '{name}'")

        node = await self.store.start_node(run_id, name, node_input, precondition=run_is_running)
        run_logger.info(f"Run {run_id} working on node {node.id} ({name})")
        return node

    async def complete_node(self, run_id: str, node_id: str, output: Optional[str] = None,
                            structured_output: Optional[Dict[str, Any]] = None) -> Node:
        node = await self.store.transition_node(
            node_id, RunStatus.COMPLETED,
            values={"output": output, "structured_output": structured_output}
        )

        def release_working_node(run):
            private_data = dict(run.private_data or {})
            if private_data.get("workingOnNodeId") == node_id:
                private_data["workingOnNodeId"] = None
            return {"private_data": private_data}

        await self.store.update_run(run_id, release_working_node)
        run_logger.info(f"Node {node_id} of run {run_id} completed")
        return node

    async def fail_node(self, node_id: str, error: str) -> Node:
        node = await self.store.transition_node(node_id, RunStatus.ERROR, values={"error": error})
        run_logger.info(f"Node {node_id} failed: {error}")
        return node

    async def complete_run(self, run_id: str, result: RunResult) -> Run:
        def final_values(run):
            return {
                "output": result.output,
                "reasoning": result.reasoning,
                "structured_output": {**(run.structured_output or {}), **(result.structured_output or {})},
                "live_status": None,
            }

        run = await self.store.transition_run(run_id, RunStatus.COMPLETED, values=final_values)
        run_logger.info(f"Run {run_id} completed")
        return run

    async def fail_run(self, run_id: str, error: str) -> Run:
        """Put the run, and the node it was working on, into ``error``.

        Structured output saved so far is kept.
        """
        run = await self.store.get_run(run_id)
        if not run:
            raise NotFound(f"Run {run_id} not found")

        if run.working_on_node_id:
            node = await self.store.get_node(run.working_on_node_id)
            if node and not is_terminal(node.status):
                await self.fail_node(node.id, error)

        run = await self.store.transition_run(run_id, RunStatus.ERROR, values={"error": error, "live_status": None})
        run_logger.error(f"Run {run_id} errored: {error}")
        return run

    async def set_live_status(self, run_id: str, text: str, node_id: Optional[str] = None) -> None:
        if node_id:
            await self.store.update_node(node_id, {"live_status": text})
        else:
            await self.store.update_run(run_id, {"live_status": text})

    async def save_structured_output(self, run_id: str, partial: Dict[str, Any]) -> Run:
        return await self.store.update_run(
            run_id, lambda run: {"structured_output": {**(run.structured_output or {}), **partial}}
        )

    async def save_state(self, run_id: str, state: Dict[str, Any]) -> Run:
        return await self.store.update_run(
            run_id, lambda run: {"private_data": {**(run.private_data or {}), "state": dict(state)}}
        )

    async def wait_idle(self) -> None:
        """Wait for every launched run task, including resumes they schedule."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
