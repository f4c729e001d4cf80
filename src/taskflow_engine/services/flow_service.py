from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.config.logging import get_logger
from taskflow_engine.config.settings import settings
from taskflow_engine.database.repositories import FlowRepository
from taskflow_engine.models.flow import Flow, FlowStatus
from taskflow_engine.services.exceptions import (
    InvalidFlowStatus, InvalidTransition, InvalidTriggerFormat, NotFound, TransitionConflict
)
from taskflow_engine.services.llm_ensemble import CorrelationKey, LLMEnsemble
from taskflow_engine.services.scheduler import TriggerScheduler
from taskflow_engine.services.triggers import DEFAULT_TRIGGER, normalize_trigger, parse_triggers
from taskflow_engine.utils.timeutils import format_utc_offset, readable_from_utc_to_local

logger = get_logger("flow_service")

NAMING_PROMPT = (
    "Create a simple readable_name (max 4-5 words) and readable_description "
    "(max 2-3 sentences) based on the user's initial message."
)

TRIGGER_PROMPT = """Given the following task that the user wants to run (entered in natural language):
------------
{task}
------------

Figure out when to run the task, i.e. which triggers apply.

Available triggers:
1. "once|<delay>|" creates one run after the delay, in milliseconds.
   Use it when the user asked to run something once, with a delay, or did not mention any other trigger.
2. "crontab|<5-field cron expression>|" creates a run on every tick while the flow is active.
   Use it when the user asked to run something repeatedly at a specific time, day or routine.
3. "event.once|<event_id>|" creates one run the next time the event is delivered.
4. "event.every|<event_id>|" creates a run every time the event is delivered.
   Only use event ids listed below.

At least one trigger is mandatory. When in doubt use "once|0|".

Event ids available to the task's agents:
{events}

Current date and time in the user's timezone: {user_time}
Current date and time in the server's timezone: {server_time}
The server runs in {server_timezone}. The user's offset is {offset} ({offset_seconds} seconds).

Rules:
- Delays and crontab expressions are evaluated by the server, so convert the user's local times to server time.
- Example: the user's time is 4PM and they say run at 5PM: the delay is one hour.
- Example: the user's time is 4PM and they say run at 3PM: the delay is 23 hours.
- Example: the user's time is 4PM Monday, server time is 2PM Monday, and they say every Monday at 5PM: the crontab is "0 15 * * 1".

Output format (JSON):
{{
    "readableDescriptionOfTriggers": "<the triggers described for the user>",
    "triggers": ["trigger1", "trigger2"]
}}

ONLY output the JSON, nothing else."""


def validate_naming(result: Any) -> bool:
    return isinstance(result, dict) and isinstance(result.get("readable_name"), str)


def validate_trigger_proposal(result: Any) -> bool:
    """Reject proposals with no triggers or with any trigger that does not parse."""
    if not isinstance(result, dict) or not isinstance(result.get("triggers"), list):
        return False
    try:
        parse_triggers(result["triggers"])
    except InvalidTriggerFormat as e:
        raise ValueError(e.message)
    return True


def _describe_events(agent_codes: List[str]) -> str:
    events = settings.get_event_ids_for_agents(agent_codes)
    if not events:
        return "(none)"
    return "\n".join(f"- {code}: {', '.join(event_ids)}" for code, event_ids in events.items())


class FlowService:
    """Flow lifecycle: generation, creation, status changes and archival.

    Every status change happens under the scheduler's per-flow lock and arms
    or disarms the flow's triggers before the lock is released.
    """

    def __init__(self, session_factory: async_sessionmaker, ensemble: LLMEnsemble, scheduler: TriggerScheduler):
        self.session_factory = session_factory
        self.ensemble = ensemble
        self.scheduler = scheduler

    async def generate_flow(
        self,
        account_id: str,
        user_id: Optional[str],
        init_message: str,
        agent_codes: Optional[List[str]] = None,
        timezone_offset_seconds: int = 0
    ) -> Flow:
        """Infer naming and triggers for a natural-language task and create the flow."""
        agent_codes = agent_codes or []
        correlation = CorrelationKey.new("generator")
        metadata = {"usecase": "generator", "accountId": account_id}

        naming = await self.ensemble.call(
            messages=[
                {"role": "system", "content": NAMING_PROMPT},
                {"role": "user", "content": (
                    f"Initial message: {init_message}\n\n"
                    "Output format (JSON):\n"
                    '{"readable_name": "<readable_name>", "readable_description": "<readable_description>"}\n'
                    "ONLY output the JSON, nothing else."
                )},
            ],
            models=settings.generator_model_list,
            metadata=metadata,
            max_attempts=settings.generator_max_attempts,
            validator=validate_naming,
            correlation=correlation
        )

        proposal = await self.ensemble.call(
            messages=[
                {"role": "system", "content": "You are a helpful assistant that figures out when to run a task."},
                {"role": "user", "content": TRIGGER_PROMPT.format(
                    task=init_message,
                    events=_describe_events(agent_codes),
                    user_time=readable_from_utc_to_local(offset_seconds=timezone_offset_seconds),
                    server_time=readable_from_utc_to_local(offset_seconds=0),
                    server_timezone=self.scheduler.timezone,
                    offset=format_utc_offset(timezone_offset_seconds),
                    offset_seconds=timezone_offset_seconds
                )},
            ],
            models=settings.trigger_model_list,
            metadata=metadata,
            max_attempts=settings.trigger_max_attempts,
            validator=validate_trigger_proposal,
            correlation=correlation
        )

        flow = await self.create_flow(
            account_id=account_id,
            user_id=user_id,
            task=init_message,
            triggers=proposal["triggers"],
            readable_name=naming.get("readable_name") or "Flow",
            readable_description=naming.get("readable_description") or "Flow",
            metadata={
                "agent_codes": agent_codes,
                "initMessage": init_message,
                "readableDescriptionOfTriggers": proposal.get("readableDescriptionOfTriggers") or "",
            }
        )

        await self.ensemble.enrich(correlation, {"flowId": flow.id})
        return flow

    async def create_flow(
        self,
        account_id: str,
        user_id: Optional[str],
        task: str,
        triggers: Optional[List[str]] = None,
        readable_name: str = "Flow",
        readable_description: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: FlowStatus = FlowStatus.ACTIVE
    ) -> Flow:
        """Create a flow with explicit triggers and arm it if it is active.

        Raises:
            InvalidTriggerFormat: a trigger does not parse; nothing is stored.
        """
        canonical = [normalize_trigger(text) for text in (triggers or [DEFAULT_TRIGGER])]
        parse_triggers(canonical)

        async with self.session_factory() as session:
            flow = await FlowRepository(session).create(
                account_id=account_id,
                user_id=user_id,
                task=task,
                triggers=canonical,
                readable_name=readable_name,
                readable_description=readable_description,
                data=data,
                metadata=metadata,
                status=status
            )

        logger.info("Flow created", flow_id=flow.id, account_id=account_id, triggers=canonical, status=flow.status)
        if flow.status == FlowStatus.ACTIVE.value:
            await self.scheduler.arm_flow(flow)
        return flow

    async def get_flow(self, flow_id: str, account_id: Optional[str] = None) -> Flow:
        async with self.session_factory() as session:
            flow = await FlowRepository(session).get_by_id(flow_id, account_id=account_id)
        if not flow:
            raise NotFound(f"Flow {flow_id} not found")
        return flow

    async def change_flow_status(self, flow_id: str, account_id: Optional[str], status: str) -> Flow:
        """Activate or deactivate a flow.

        Deactivation never aborts runs already in progress; it only stops
        future firings.
        """
        try:
            target = FlowStatus(status)
        except ValueError:
            raise InvalidFlowStatus(status)
        if target == FlowStatus.ERROR:
            raise InvalidFlowStatus(status)

        async with self.scheduler.flow_lock(flow_id):
            async with self.session_factory() as session:
                repository = FlowRepository(session)
                flow = await repository.get_by_id(flow_id, account_id=account_id)
                if not flow:
                    raise NotFound(f"Flow {flow_id} not found")
                if flow.status == target.value:
                    return flow
                if target == FlowStatus.ACTIVE and flow.is_archived:
                    raise InvalidTransition("Flow", flow_id, "archived", target.value)

                if not await repository.update_status(flow_id, target, expected_status=flow.status):
                    raise TransitionConflict("Flow", flow_id, flow.status)
                flow = await repository.get_by_id(flow_id)

            if target == FlowStatus.ACTIVE:
                self.scheduler.arm(flow)
            else:
                self.scheduler.disarm(flow_id)

        logger.info("Flow status changed", flow_id=flow_id, previous_status=flow.previous_status, status=flow.status)
        return flow

    async def archive_flow(self, flow_id: str, account_id: Optional[str]) -> Flow:
        async with self.scheduler.flow_lock(flow_id):
            async with self.session_factory() as session:
                repository = FlowRepository(session)
                flow = await repository.get_by_id(flow_id, account_id=account_id)
                if not flow:
                    raise NotFound(f"Flow {flow_id} not found")
                if flow.status not in (FlowStatus.INACTIVE.value, FlowStatus.ERROR.value):
                    raise InvalidTransition("Flow", flow_id, flow.status, "archived")

                await repository.update_metadata(flow_id, {**(flow.flow_metadata or {}), "archived": True})
                flow = await repository.get_by_id(flow_id)

            self.scheduler.disarm(flow_id)

        logger.info("Flow archived", flow_id=flow_id)
        return flow
