import asyncio
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.clients.llm_client import CompletionProvider, OpenAICompatibleClient
from taskflow_engine.config.logging import get_logger
from taskflow_engine.database.connection import AsyncSessionLocal
from taskflow_engine.services.flow_queries import FlowQueries
from taskflow_engine.services.flow_service import FlowService
from taskflow_engine.services.llm_ensemble import LLMEnsemble
from taskflow_engine.services.orchestrator import RunHandler, RunOrchestrator
from taskflow_engine.services.run_dispatcher import RunDispatcher
from taskflow_engine.services.run_store import RunStore
from taskflow_engine.services.scheduler import TriggerScheduler
from taskflow_engine.services.task_agent import TaskAgent
from taskflow_engine.utils.locks import KeyedLocks
from taskflow_engine.utils.rate_limiter import ExponentialBackoff

logger = get_logger("runtime")


class TaskflowRuntime:
    """Wires the engine's services around one session factory and one lock registry."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        provider: Optional[CompletionProvider] = None,
        handler: Optional[RunHandler] = None,
        backoff: Optional[ExponentialBackoff] = None,
        timezone: Optional[str] = None,
        dispatch_interval_seconds: Optional[int] = None
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.locks = KeyedLocks()
        self.provider = provider or OpenAICompatibleClient()
        self.ensemble = LLMEnsemble(self.provider, self.session_factory, backoff=backoff)
        self.store = RunStore(self.session_factory, locks=self.locks)
        self.orchestrator = RunOrchestrator(self.store, self.ensemble, handler=handler or TaskAgent())
        self.scheduler = TriggerScheduler(self.session_factory, self.orchestrator, timezone=timezone, locks=self.locks)
        self.flows = FlowService(self.session_factory, self.ensemble, self.scheduler)
        self.queries = FlowQueries(self.session_factory)
        self.dispatcher = RunDispatcher(
            self.session_factory, self.orchestrator, interval_seconds=dispatch_interval_seconds
        )
        self._dispatch_task: Optional[asyncio.Task] = None

    @property
    def input_waits(self):
        return self.orchestrator.input_waits

    async def start(self, dispatch: bool = True) -> None:
        armed = await self.scheduler.rearm_active_flows()
        if dispatch:
            self._dispatch_task = asyncio.create_task(self.dispatcher.start(), name="run_dispatcher")
        logger.info("Taskflow runtime started", armed_flows=armed, dispatcher=dispatch)

    async def stop(self) -> None:
        self.dispatcher.stop()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None
        await self.scheduler.shutdown()
        await self.orchestrator.shutdown()
        logger.info("Taskflow runtime stopped")


_runtime: Optional[TaskflowRuntime] = None


def get_runtime() -> TaskflowRuntime:
    global _runtime
    if _runtime is None:
        _runtime = TaskflowRuntime()
    return _runtime


def set_runtime(runtime: Optional[TaskflowRuntime]) -> None:
    global _runtime
    _runtime = runtime
