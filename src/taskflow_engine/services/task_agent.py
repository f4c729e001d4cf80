import json
from typing import Any, Dict, List, Optional
from taskflow_engine.config.logging import get_logger
from taskflow_engine.services.orchestrator import RunContext, RunResult

logger = get_logger("task_agent")

COMPLETE = "complete"
ASK_USER = "ask_user"

# Stop asking once this many questions went unresolved
MAX_QUESTIONS = 5

SYSTEM_PROMPT = """You carry out a user's automated task.
Reply with a single JSON object:
{"action": "complete" | "ask_user",
 "question": "<question for the user, only when action is ask_user>",
 "output": "<final answer for the user, when action is complete>",
 "structured_output": {<machine readable result, optional>},
 "reasoning": "<short explanation of what you did>"}
Only ask the user when the task cannot be finished without their answer."""


def validate_step(result: Any) -> bool:
    if not isinstance(result, dict):
        raise TypeError("expected a JSON object")
    action = result.get("action")
    if action == ASK_USER:
        return bool(result.get("question"))
    if action == COMPLETE:
        structured = result.get("structured_output")
        return structured is None or isinstance(structured, dict)
    raise ValueError(f"unknown action '{action}'")


def _task_messages(ctx: RunContext, conversation: List[Dict[str, Any]], questions_asked: int) -> List[Dict[str, str]]:
    task = f"Task: {ctx.input}\nTriggered by: {ctx.trigger_input}"
    if ctx.event_payload:
        task += f"\nEvent payload: {json.dumps(ctx.event_payload)}"

    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": task},
    ]
    for message in conversation:
        messages.append({
            "role": message.get("role", "user"),
            "content": str(message.get("content", "")),
        })
    if questions_asked >= MAX_QUESTIONS:
        messages.append({"role": "user", "content": "Do not ask further questions; complete the task now."})
    return messages


class TaskAgent:
    """Default run handler: a single ``task`` node backed by the ensemble.

    The node may pause on a question to the user. When it is answered the
    agent is invoked again, finds its node in the run state and continues
    with the user's answers in the conversation.
    """

    def __init__(self, models: Optional[List[str]] = None, max_attempts: Optional[int] = None):
        self.models = models
        self.max_attempts = max_attempts

    async def __call__(self, ctx: RunContext) -> Optional[RunResult]:
        node_id = ctx.state.get("nodeId")
        if node_id is None:
            node = await ctx.start_node("task", node_input=ctx.input)
            node_id = node.id
            await ctx.save_state(nodeId=node_id, questionsAsked=0)
            await ctx.start_thread("task", node_id=node_id)

        questions_asked = ctx.state.get("questionsAsked", 0)
        await ctx.set_live_status("Working on the task", node_id=node_id)
        conversation = await ctx.conversation(node_id=node_id)

        step = await ctx.call_llm(
            _task_messages(ctx, conversation, questions_asked),
            models=self.models,
            max_attempts=self.max_attempts,
            usecase="task",
            node_id=node_id,
            validator=validate_step
        )

        if step["action"] == ASK_USER and questions_asked < MAX_QUESTIONS:
            await ctx.save_state(questionsAsked=questions_asked + 1)
            await ctx.ask_user({"question": step["question"], "type": "text"}, node_id=node_id)
            logger.info("Task agent asked the user", run_id=ctx.run_id, node_id=node_id)
            return None

        structured_output = step.get("structured_output") or {}
        if structured_output:
            await ctx.save_structured_output(structured_output)
        await ctx.complete_node(node_id, output=step.get("output"), structured_output=structured_output)

        return RunResult(
            output=step.get("output") or step.get("question"),
            structured_output=structured_output,
            reasoning=step.get("reasoning")
        )
