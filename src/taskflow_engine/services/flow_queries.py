"""Read-only views over flows, runs, messages and LLM calls."""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.database.repositories import (
    FlowRepository, LLMCallRepository, MessageLogRepository, NodeRepository, RunRepository, ThreadRepository
)
from taskflow_engine.models.flow import Flow
from taskflow_engine.models.llm_call import LLMCall, MessageLog, MessageSegment
from taskflow_engine.models.run import Node, Run, Thread
from taskflow_engine.services.exceptions import NotFound
from taskflow_engine.services.run_state import ActiveRunView, active_run_view

MAX_PAGE_SIZE = 50


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return MAX_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


def message_segment(segment: str) -> str:
    # The agent's side of the conversation is stored as "debug"
    if segment == "agent":
        return MessageSegment.DEBUG.value
    return MessageSegment(segment).value


@dataclass
class RunChart:
    run: Run
    nodes: List[Node]
    threads: List[Thread]


class FlowQueries:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _require_flow(self, session, flow_id: str, account_id: Optional[str]) -> Flow:
        flow = await FlowRepository(session).get_by_id(flow_id, account_id=account_id)
        if not flow:
            raise NotFound(f"Flow {flow_id} not found")
        return flow

    async def flows_before(self, account_id: str, before: datetime, limit: int = MAX_PAGE_SIZE) -> List[Flow]:
        async with self.session_factory() as session:
            return await FlowRepository(session).list_before(account_id, before, clamp_limit(limit))

    async def flows_after(self, account_id: str, after: datetime, limit: int = MAX_PAGE_SIZE) -> List[Flow]:
        async with self.session_factory() as session:
            return await FlowRepository(session).list_after(account_id, after, clamp_limit(limit))

    async def flow_details(self, flow_id: str, account_id: Optional[str] = None) -> Flow:
        async with self.session_factory() as session:
            return await self._require_flow(session, flow_id, account_id)

    async def active_run_status(self, flow_id: str, account_id: Optional[str] = None) -> ActiveRunView:
        """Effective status, pending question and live status of the flow's active run."""
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            run = await RunRepository(session).get_active_run(flow_id)
            node = None
            if run is not None and run.working_on_node_id:
                node = await NodeRepository(session).get_by_id(run.working_on_node_id, run_id=run.id)
        return active_run_view(run, node)

    async def runs_page(
        self,
        flow_id: str,
        account_id: str,
        page_number: int = 1,
        page_size: int = MAX_PAGE_SIZE,
        sort: str = "DESC"
    ) -> Tuple[List[Run], int]:
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            return await RunRepository(session).get_runs_page(
                flow_id,
                account_id,
                page_number=max(page_number, 1),
                page_size=clamp_limit(page_size),
                newest_first=sort.upper() != "ASC"
            )

    async def data_before(self, flow_id: str, account_id: Optional[str], before: datetime,
                          limit: int = MAX_PAGE_SIZE) -> List[Run]:
        """Finished runs (completed or errored) created before ``before``, newest first."""
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            return await RunRepository(session).get_finished_runs_before(flow_id, before, clamp_limit(limit))

    async def data_after(self, flow_id: str, account_id: Optional[str], after: datetime,
                         limit: int = MAX_PAGE_SIZE) -> List[Run]:
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            return await RunRepository(session).get_finished_runs_after(flow_id, after, clamp_limit(limit))

    async def messages_before(self, flow_id: str, account_id: Optional[str], before: datetime,
                              segment: str = "user", limit: int = MAX_PAGE_SIZE) -> List[MessageLog]:
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            return await MessageLogRepository(session).list_before(
                flow_id, before, message_segment(segment), clamp_limit(limit)
            )

    async def messages_after(self, flow_id: str, account_id: Optional[str], after: datetime,
                             segment: str = "user", limit: int = MAX_PAGE_SIZE) -> List[MessageLog]:
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            return await MessageLogRepository(session).list_after(
                flow_id, after, message_segment(segment), clamp_limit(limit)
            )

    async def llm_calls_page(self, flow_id: str, account_id: str, page_number: int = 1,
                             page_size: int = MAX_PAGE_SIZE) -> Tuple[List[LLMCall], int]:
        async with self.session_factory() as session:
            await self._require_flow(session, flow_id, account_id)
            return await LLMCallRepository(session).get_calls_page(
                account_id, flow_id, page_number=max(page_number, 1), page_size=clamp_limit(page_size)
            )

    async def run_chart(self, run_id: str, account_id: Optional[str] = None) -> RunChart:
        async with self.session_factory() as session:
            run = await RunRepository(session).get_by_id(run_id)
            if not run or (account_id is not None and run.account_id != account_id):
                raise NotFound(f"Run {run_id} not found")
            nodes = await NodeRepository(session).get_nodes_for_run(run_id, limit=MAX_PAGE_SIZE)
            threads = await ThreadRepository(session).get_threads_for_run(run_id, limit=MAX_PAGE_SIZE)
        return RunChart(run=run, nodes=nodes, threads=threads)
