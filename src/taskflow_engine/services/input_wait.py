import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from taskflow_engine.models.llm_call import MessageSegment
from taskflow_engine.models.run import RunStatus
from taskflow_engine.services.exceptions import NotFound, StaleInputWait
from taskflow_engine.services.run_state import (
    INPUT_WAIT_COMPLETED, INPUT_WAIT_PENDING, as_status, pending_input_wait
)
from taskflow_engine.services.run_store import RunStore

run_logger = logging.getLogger("runs")


def _append_conversation(private_data: Optional[Dict[str, Any]], messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    private_data = dict(private_data or {})
    private_data["conversation"] = list(private_data.get("conversation") or []) + list(messages)
    return private_data


class InputWaitCoordinator:
    """Suspends a run or one of its nodes on a human question, and resumes it.

    Run-level and node-level waits are independent: answering one never
    clears or resumes the other. A paused scope stays paused until it is
    answered; there is no timeout.
    """

    def __init__(self, store: RunStore, resume: Callable[[str], Awaitable[None]]):
        self.store = store
        self.resume = resume

    async def request_input(self, run_id: str, prompt: Dict[str, Any], node_id: Optional[str] = None) -> Dict[str, Any]:
        """Pause the run, or one of its nodes, on a question for the user.

        The question also goes into the scope's conversation so a resumed
        handler sees it next to the answer.
        """
        input_wait = {
            **prompt,
            "id": str(uuid.uuid4()),
            "runId": run_id,
            "status": INPUT_WAIT_PENDING,
            "createdAt": datetime.utcnow().isoformat(),
        }

        question = [{"role": "assistant", "content": prompt.get("question") or prompt}]

        def waiting(entity):
            return {
                "input_wait": input_wait,
                "private_data": _append_conversation(entity.private_data, question),
            }

        if node_id:
            input_wait["nodeId"] = node_id

            def node_belongs_to_run(node):
                if node.run_id != run_id:
                    raise NotFound(f"Node {node_id} not found in run {run_id}")

            await self.store.transition_node(
                node_id, RunStatus.ASK_USER_FOR_INPUT,
                values=waiting,
                precondition=node_belongs_to_run
            )
        else:
            await self.store.transition_run(run_id, RunStatus.ASK_USER_FOR_INPUT, values=waiting)

        run = await self.store.get_run(run_id)
        await self.store.log_messages(
            run,
            question,
            MessageSegment.DEBUG.value,
            node_id=node_id
        )
        run_logger.info(f"Run {run_id} waiting for user input (wait={input_wait['id']}, node={node_id})")
        return input_wait

    async def submit_input(
        self,
        run_id: str,
        input_wait_id: str,
        messages: List[Dict[str, Any]],
        node_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Answer the pending wait of the run (or of ``node_id``) and resume if runnable.

        Raises:
            StaleInputWait: the scope is not waiting, or waits on another id.
        """
        scope = f"node {node_id}" if node_id else f"run {run_id}"

        def matches_pending_wait(entity):
            if node_id and entity.run_id != run_id:
                raise NotFound(f"Node {node_id} not found in run {run_id}")
            if as_status(entity.status) != RunStatus.ASK_USER_FOR_INPUT or not pending_input_wait(entity.input_wait):
                raise StaleInputWait(f"{scope} is not waiting for input")
            if entity.input_wait.get("id") != input_wait_id:
                raise StaleInputWait(f"Input wait {input_wait_id} does not match the pending wait of {scope}")

        def answered(entity):
            return {
                "input_wait": {
                    **entity.input_wait,
                    "status": INPUT_WAIT_COMPLETED,
                    "answeredAt": datetime.utcnow().isoformat(),
                },
                "private_data": _append_conversation(entity.private_data, messages),
            }

        if node_id:
            entity = await self.store.transition_node(
                node_id, RunStatus.RUNNING, values=answered, precondition=matches_pending_wait
            )
        else:
            entity = await self.store.transition_run(
                run_id, RunStatus.RUNNING, values=answered, precondition=matches_pending_wait
            )

        run = await self.store.get_run(run_id)
        await self.store.log_messages(run, messages, MessageSegment.USER.value, node_id=node_id)
        run_logger.info(f"Input submitted for {scope} (wait={input_wait_id})")

        if await self.is_runnable(run_id):
            await self.resume(run_id)
        else:
            run_logger.info(f"Run {run_id} still waiting on another input request; not resuming")
        return entity.input_wait

    async def is_runnable(self, run_id: str) -> bool:
        run = await self.store.get_run(run_id)
        if not run or as_status(run.status) != RunStatus.RUNNING:
            return False
        if run.working_on_node_id:
            node = await self.store.get_node(run.working_on_node_id)
            if node and as_status(node.status) == RunStatus.ASK_USER_FOR_INPUT:
                return False
        return True
