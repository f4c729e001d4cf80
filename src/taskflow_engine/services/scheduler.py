"""Trigger scheduler.

Owns the registry of armed triggers, keyed by flow id. ``once`` and
``crontab`` triggers become asyncio timer tasks, ``event.*`` triggers become
interests keyed by event id. Every firing goes through ``fire``, which
re-reads the flow under the flow's lock right before a run is created; the
status-change path takes the same lock, so once a deactivation has returned
no further run can appear for that flow.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.config.logging import get_logger
from taskflow_engine.config.settings import settings
from taskflow_engine.database.repositories import FlowRepository, RunRepository
from taskflow_engine.models.flow import Flow, FlowStatus
from taskflow_engine.models.run import Run
from taskflow_engine.services.exceptions import InvalidTriggerFormat, SchedulingRaceError
from taskflow_engine.services.triggers import (
    Crontab, EventEvery, EventOnce, Once, Trigger, build_cron_trigger, format_trigger, is_one_shot, parse_trigger
)
from taskflow_engine.utils.locks import KeyedLocks

logger = get_logger("scheduler")


@dataclass(eq=False)
class ArmedTrigger:
    flow_id: str
    trigger: Trigger
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def canonical(self) -> str:
        return format_trigger(self.trigger)


class TriggerScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        orchestrator,
        timezone: Optional[str] = None,
        locks: Optional[KeyedLocks] = None,
        launch_runs: bool = True
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.timezone = timezone or settings.scheduler_timezone
        self.locks = locks or KeyedLocks()
        self.launch_runs = launch_runs
        self._armed: Dict[str, List[ArmedTrigger]] = {}
        self._interests: Dict[str, List[ArmedTrigger]] = {}

    def flow_lock(self, flow_id: str):
        return self.locks.hold(f"flow:{flow_id}")

    def armed_triggers(self, flow_id: str) -> List[str]:
        return [armed.canonical for armed in self._armed.get(flow_id, [])]

    def is_armed(self, flow_id: str) -> bool:
        return bool(self._armed.get(flow_id))

    @property
    def armed_flow_count(self) -> int:
        return len(self._armed)

    async def arm_flow(self, flow: Flow, skip: Iterable[str] = ()) -> int:
        async with self.flow_lock(flow.id):
            return self.arm(flow, skip)

    async def disarm_flow(self, flow_id: str) -> int:
        async with self.flow_lock(flow_id):
            return self.disarm(flow_id)

    def arm(self, flow: Flow, skip: Iterable[str] = ()) -> int:
        """Arm every trigger of the flow, replacing what was armed before.

        The caller must hold ``flow_lock(flow.id)``.
        """
        self.disarm(flow.id)
        skip = set(skip)
        armed_list = []

        for text in flow.triggers or []:
            try:
                trigger = parse_trigger(text)
            except InvalidTriggerFormat as e:
                logger.error("Skipping invalid stored trigger", flow_id=flow.id, trigger=text, error=e.message)
                continue
            if format_trigger(trigger) in skip:
                logger.info("Skipping already fired trigger", flow_id=flow.id, trigger=text)
                continue

            armed = ArmedTrigger(flow_id=flow.id, trigger=trigger)
            if isinstance(trigger, Once):
                armed.task = asyncio.create_task(self._run_once(armed), name=f"once_{flow.id}")
            elif isinstance(trigger, Crontab):
                armed.task = asyncio.create_task(self._run_crontab(armed), name=f"cron_{flow.id}")
            else:
                self._interests.setdefault(trigger.event_id, []).append(armed)
            armed_list.append(armed)

        if armed_list:
            self._armed[flow.id] = armed_list
        logger.info("Flow armed", flow_id=flow.id, triggers=[armed.canonical for armed in armed_list])
        return len(armed_list)

    def disarm(self, flow_id: str) -> int:
        """Cancel the flow's timers and drop its event interests.

        The caller must hold ``flow_lock(flow_id)``.
        """
        armed_list = self._armed.pop(flow_id, [])
        for armed in armed_list:
            self._release(armed)
        if armed_list:
            logger.info("Flow disarmed", flow_id=flow_id, triggers=len(armed_list))
        return len(armed_list)

    def _release(self, armed: ArmedTrigger) -> None:
        if armed.task is not None and armed.task is not asyncio.current_task():
            armed.task.cancel()
        if isinstance(armed.trigger, (EventOnce, EventEvery)):
            interests = self._interests.get(armed.trigger.event_id, [])
            if armed in interests:
                interests.remove(armed)
            if not interests:
                self._interests.pop(armed.trigger.event_id, None)

    def _forget(self, armed: ArmedTrigger) -> None:
        armed_list = self._armed.get(armed.flow_id, [])
        if armed in armed_list:
            armed_list.remove(armed)
            if not armed_list:
                del self._armed[armed.flow_id]
        self._release(armed)

    def _is_registered(self, armed: ArmedTrigger) -> bool:
        return armed in self._armed.get(armed.flow_id, [])

    async def fire(
        self,
        flow_id: str,
        trigger: Trigger,
        payload: Optional[Dict[str, Any]] = None,
        armed: Optional[ArmedTrigger] = None
    ) -> Optional[Run]:
        """Create and launch a run for the trigger if the flow is still active.

        Returns the new run, or ``None`` when the firing was dropped.
        """
        async with self.flow_lock(flow_id):
            if armed is not None and not self._is_registered(armed):
                logger.info("Trigger was disarmed before it fired", flow_id=flow_id, trigger=armed.canonical)
                return None

            async with self.session_factory() as session:
                flow = await FlowRepository(session).get_by_id(flow_id)

            if flow is None or flow.status != FlowStatus.ACTIVE.value or flow.is_archived:
                race = SchedulingRaceError(flow_id, flow.status if flow else None)
                logger.warning("Dropped trigger firing", flow_id=flow_id, trigger=format_trigger(trigger),
                               error=race.message)
                if armed is not None and is_one_shot(trigger):
                    self._forget(armed)
                return None

            run = await self.orchestrator.create_run(flow, format_trigger(trigger), payload)
            if armed is not None and is_one_shot(trigger):
                self._forget(armed)

        logger.info("Trigger fired", flow_id=flow_id, trigger=format_trigger(trigger), run_id=run.id)
        if self.launch_runs:
            self.orchestrator.launch(run.id)
        return run

    async def emit_event(self, event_id: str, payload: Optional[Dict[str, Any]] = None) -> List[Run]:
        """Deliver an external event to every flow armed for it."""
        interests = list(self._interests.get(event_id, []))
        logger.info("Event received", event_id=event_id, interested_flows=len(interests))

        runs = []
        for armed in interests:
            run = await self.fire(armed.flow_id, armed.trigger, payload, armed=armed)
            if run is not None:
                runs.append(run)
        return runs

    async def _run_once(self, armed: ArmedTrigger) -> None:
        await asyncio.sleep(armed.trigger.delay_ms / 1000)
        try:
            await self.fire(armed.flow_id, armed.trigger, armed=armed)
        except Exception as e:
            logger.error("Once trigger failed to fire", flow_id=armed.flow_id, trigger=armed.canonical, error=str(e))

    def next_fire_time(self, expression: str, previous: Optional[datetime] = None,
                       now: Optional[datetime] = None) -> Optional[datetime]:
        """Next cron tick in the scheduler's timezone; missed ticks are skipped."""
        cron = build_cron_trigger(expression, self.timezone)
        now = now or datetime.now().astimezone()
        next_fire = cron.get_next_fire_time(previous, now)
        if previous is not None and next_fire is not None and next_fire < now:
            next_fire = cron.get_next_fire_time(None, now)
        return next_fire

    async def _run_crontab(self, armed: ArmedTrigger) -> None:
        previous = None
        while True:
            next_fire = self.next_fire_time(armed.trigger.expression, previous)
            if next_fire is None:
                logger.info("Cron schedule has no further ticks", flow_id=armed.flow_id)
                return
            delay = (next_fire - datetime.now(next_fire.tzinfo)).total_seconds()
            await asyncio.sleep(max(delay, 0))
            previous = next_fire

            try:
                await self.fire(armed.flow_id, armed.trigger, armed=armed)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One failed tick must not stop the schedule
                logger.error("Cron tick failed", flow_id=armed.flow_id, trigger=armed.canonical, error=str(e))

    async def rearm_active_flows(self) -> int:
        """Arm every active, non-archived flow, e.g. at startup.

        One-shot triggers that already produced a run are not armed again.
        """
        async with self.session_factory() as session:
            flows = await FlowRepository(session).get_active_flows()

        armed_flows = 0
        for flow in flows:
            fired = []
            async with self.session_factory() as session:
                runs = RunRepository(session)
                for text in flow.triggers or []:
                    try:
                        trigger = parse_trigger(text)
                    except InvalidTriggerFormat:
                        continue
                    canonical = format_trigger(trigger)
                    if is_one_shot(trigger) and await runs.has_run_for_trigger(flow.id, canonical):
                        fired.append(canonical)

            if await self.arm_flow(flow, skip=fired):
                armed_flows += 1

        logger.info("Active flows re-armed", flows=len(flows), armed=armed_flows)
        return armed_flows

    async def shutdown(self) -> None:
        tasks = []
        for flow_id in list(self._armed):
            for armed in self._armed.pop(flow_id):
                if armed.task is not None:
                    armed.task.cancel()
                    tasks.append(armed.task)
        self._interests.clear()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped", cancelled_timers=len(tasks))
