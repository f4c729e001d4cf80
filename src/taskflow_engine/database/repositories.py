from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, or_
from taskflow_engine.models.flow import Flow, FlowStatus
from taskflow_engine.models.run import Run, Node, Thread, RunStatus
from taskflow_engine.models.llm_call import LLMCall, MessageLog


def _not_archived():
    archived = Flow.flow_metadata["archived"].as_boolean()
    return or_(archived.is_(None), archived.is_(False))


class FlowRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        account_id: str,
        user_id: Optional[str],
        task: str,
        triggers: List[str],
        readable_name: str = "Flow",
        readable_description: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: FlowStatus = FlowStatus.ACTIVE
    ) -> Flow:
        flow = Flow(
            account_id=account_id,
            user_id=user_id,
            task=task,
            triggers=triggers,
            readable_name=readable_name,
            readable_description=readable_description,
            data=data or {},
            flow_metadata=metadata or {},
            status=status.value
        )
        self.session.add(flow)
        await self.session.commit()
        await self.session.refresh(flow)
        return flow

    async def get_by_id(self, flow_id: str, account_id: Optional[str] = None) -> Optional[Flow]:
        query = select(Flow).where(Flow.id == flow_id)
        if account_id is not None:
            query = query.where(Flow.account_id == account_id)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def update_status(self, flow_id: str, status: FlowStatus, expected_status: str) -> bool:
        """Compare-and-set the flow status, remembering the status it replaced."""
        result = await self.session.execute(
            update(Flow)
            .where(Flow.id == flow_id, Flow.status == expected_status)
            .values(status=status.value, previous_status=expected_status, updated_at=datetime.utcnow())
        )
        await self.session.commit()
        return result.rowcount > 0

    async def update_metadata(self, flow_id: str, metadata: Dict[str, Any]) -> bool:
        result = await self.session.execute(
            update(Flow)
            .where(Flow.id == flow_id)
            .values(flow_metadata=metadata, updated_at=datetime.utcnow())
        )
        await self.session.commit()
        return result.rowcount > 0

    async def get_active_flows(self) -> List[Flow]:
        result = await self.session.execute(
            select(Flow)
            .where(Flow.status == FlowStatus.ACTIVE.value, _not_archived())
            .order_by(Flow.created_at.asc())
        )
        return result.scalars().all()

    async def list_before(self, account_id: str, before: datetime, limit: int = 50) -> List[Flow]:
        result = await self.session.execute(
            select(Flow)
            .where(Flow.account_id == account_id, Flow.created_at < before, _not_archived())
            .order_by(Flow.status, Flow.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_after(self, account_id: str, after: datetime, limit: int = 50) -> List[Flow]:
        result = await self.session.execute(
            select(Flow)
            .where(
                Flow.account_id == account_id,
                or_(Flow.created_at > after, Flow.updated_at > after),
                _not_archived()
            )
            .order_by(Flow.status, Flow.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()


class RunRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        flow: Flow,
        trigger_input: str,
        event_payload: Optional[Dict[str, Any]] = None
    ) -> Run:
        run = Run(
            flow_id=flow.id,
            account_id=flow.account_id,
            user_id=flow.user_id,
            input=flow.task,
            trigger_input=trigger_input,
            event_payload=event_payload,
            status=RunStatus.QUEUED.value,
            private_data={}
        )
        self.session.add(run)
        await self.session.commit()
        await self.session.refresh(run)
        return run

    async def get_by_id(self, run_id: str) -> Optional[Run]:
        result = await self.session.execute(
            select(Run).where(Run.id == run_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(self, run_id: str, expected_status: str, status: RunStatus, **values) -> bool:
        """Move a run to ``status`` only if it is still in ``expected_status``."""
        update_data = {"status": status.value, "updated_at": datetime.utcnow(), **values}

        if status == RunStatus.RUNNING and expected_status == RunStatus.QUEUED.value:
            update_data["started_at"] = datetime.utcnow()
        elif status in [RunStatus.COMPLETED, RunStatus.ERROR]:
            update_data["completed_at"] = datetime.utcnow()

        result = await self.session.execute(
            update(Run)
            .where(Run.id == run_id, Run.status == expected_status)
            .values(**update_data)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def update_fields(self, run_id: str, **values) -> bool:
        result = await self.session.execute(
            update(Run)
            .where(Run.id == run_id)
            .values(updated_at=datetime.utcnow(), **values)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def get_active_run(self, flow_id: str) -> Optional[Run]:
        """Oldest run of the flow that has not completed."""
        result = await self.session.execute(
            select(Run)
            .where(Run.flow_id == flow_id, Run.status != RunStatus.COMPLETED.value)
            .order_by(Run.created_at.asc(), Run.id.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_queued_runs(self, limit: int = 100, created_before: Optional[datetime] = None) -> List[Run]:
        query = select(Run).where(Run.status == RunStatus.QUEUED.value)
        if created_before is not None:
            query = query.where(Run.created_at < created_before)
        result = await self.session.execute(query.order_by(Run.created_at.asc()).limit(limit))
        return result.scalars().all()

    async def has_run_for_trigger(self, flow_id: str, trigger_input: str) -> bool:
        result = await self.session.execute(
            select(func.count(Run.id)).where(Run.flow_id == flow_id, Run.trigger_input == trigger_input)
        )
        return result.scalar_one() > 0

    async def get_runs_page(
        self,
        flow_id: str,
        account_id: str,
        page_number: int = 1,
        page_size: int = 50,
        newest_first: bool = True
    ) -> Tuple[List[Run], int]:
        order = Run.created_at.desc() if newest_first else Run.created_at.asc()
        total = await self.session.execute(
            select(func.count(Run.id)).where(Run.flow_id == flow_id, Run.account_id == account_id)
        )
        result = await self.session.execute(
            select(Run)
            .where(Run.flow_id == flow_id, Run.account_id == account_id)
            .order_by(order)
            .limit(page_size)
            .offset((page_number - 1) * page_size)
        )
        return result.scalars().all(), total.scalar_one()

    async def get_finished_runs_before(self, flow_id: str, before: datetime, limit: int = 50) -> List[Run]:
        result = await self.session.execute(
            select(Run)
            .where(
                Run.flow_id == flow_id,
                Run.status.in_([RunStatus.COMPLETED.value, RunStatus.ERROR.value]),
                Run.created_at < before
            )
            .order_by(Run.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def get_finished_runs_after(self, flow_id: str, after: datetime, limit: int = 50) -> List[Run]:
        result = await self.session.execute(
            select(Run)
            .where(
                Run.flow_id == flow_id,
                Run.status.in_([RunStatus.COMPLETED.value, RunStatus.ERROR.value]),
                Run.created_at > after
            )
            .order_by(Run.created_at.asc())
            .limit(limit)
        )
        return result.scalars().all()


class NodeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, run: Run, name: str, node_input: Optional[str] = None) -> Node:
        node = Node(
            run_id=run.id,
            flow_id=run.flow_id,
            account_id=run.account_id,
            name=name,
            input=node_input,
            status=RunStatus.RUNNING.value,
            private_data={}
        )
        self.session.add(node)
        await self.session.commit()
        await self.session.refresh(node)
        return node

    async def get_by_id(self, node_id: str, run_id: Optional[str] = None) -> Optional[Node]:
        query = select(Node).where(Node.id == node_id)
        if run_id is not None:
            query = query.where(Node.run_id == run_id)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def transition(self, node_id: str, expected_status: str, status: RunStatus, **values) -> bool:
        update_data = {"status": status.value, "updated_at": datetime.utcnow(), **values}
        if status in [RunStatus.COMPLETED, RunStatus.ERROR]:
            update_data["completed_at"] = datetime.utcnow()

        result = await self.session.execute(
            update(Node)
            .where(Node.id == node_id, Node.status == expected_status)
            .values(**update_data)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def update_fields(self, node_id: str, **values) -> bool:
        result = await self.session.execute(
            update(Node)
            .where(Node.id == node_id)
            .values(updated_at=datetime.utcnow(), **values)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def get_nodes_for_run(self, run_id: str, limit: int = 50) -> List[Node]:
        result = await self.session.execute(
            select(Node).where(Node.run_id == run_id).order_by(Node.created_at.asc()).limit(limit)
        )
        return result.scalars().all()


class ThreadRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, run_id: str, name: str, node_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> Thread:
        thread = Thread(run_id=run_id, node_id=node_id, name=name, data=data or {})
        self.session.add(thread)
        await self.session.commit()
        await self.session.refresh(thread)
        return thread

    async def get_threads_for_run(self, run_id: str, limit: int = 50) -> List[Thread]:
        result = await self.session.execute(
            select(Thread).where(Thread.run_id == run_id).order_by(Thread.created_at.asc()).limit(limit)
        )
        return result.scalars().all()


class LLMCallRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **values) -> LLMCall:
        llm_call = LLMCall(**values)
        self.session.add(llm_call)
        await self.session.commit()
        await self.session.refresh(llm_call)
        return llm_call

    async def get_by_correlation(self, key: str, value: str) -> List[LLMCall]:
        result = await self.session.execute(
            select(LLMCall)
            .where(LLMCall.correlation_key == key, LLMCall.correlation_value == value)
            .order_by(LLMCall.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def get_by_metadata(self, key: str, value: str) -> List[LLMCall]:
        result = await self.session.execute(
            select(LLMCall)
            .where(LLMCall.call_metadata[key].as_string() == value)
            .order_by(LLMCall.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def update_metadata(self, key: str, value: str, patch: Dict[str, Any]) -> int:
        """Merge ``patch`` into the metadata of every call whose metadata has key/value."""
        calls = await self.get_by_metadata(key, value)
        for llm_call in calls:
            await self.session.execute(
                update(LLMCall)
                .where(LLMCall.id == llm_call.id)
                .values(call_metadata={**(llm_call.call_metadata or {}), **patch})
            )
        await self.session.commit()
        return len(calls)

    async def get_calls_page(
        self,
        account_id: str,
        flow_id: str,
        page_number: int = 1,
        page_size: int = 50
    ) -> Tuple[List[LLMCall], int]:
        condition = (LLMCall.account_id == account_id) & (LLMCall.call_metadata["flowId"].as_string() == flow_id)
        total = await self.session.execute(select(func.count(LLMCall.id)).where(condition))
        result = await self.session.execute(
            select(LLMCall)
            .where(condition)
            .order_by(LLMCall.created_at.desc())
            .limit(page_size)
            .offset((page_number - 1) * page_size)
        )
        return result.scalars().all(), total.scalar_one()


class MessageLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        flow_id: str,
        messages: List[Dict[str, Any]],
        segment: str,
        run_id: Optional[str] = None,
        node_id: Optional[str] = None,
        account_id: Optional[str] = None
    ) -> MessageLog:
        log = MessageLog(
            flow_id=flow_id,
            run_id=run_id,
            node_id=node_id,
            account_id=account_id,
            segment=segment,
            messages=messages
        )
        self.session.add(log)
        await self.session.commit()
        await self.session.refresh(log)
        return log

    async def list_before(self, flow_id: str, before: datetime, segment: str, limit: int = 50) -> List[MessageLog]:
        result = await self.session.execute(
            select(MessageLog)
            .where(MessageLog.flow_id == flow_id, MessageLog.created_at < before, MessageLog.segment == segment)
            .order_by(MessageLog.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_after(self, flow_id: str, after: datetime, segment: str, limit: int = 50) -> List[MessageLog]:
        result = await self.session.execute(
            select(MessageLog)
            .where(MessageLog.flow_id == flow_id, MessageLog.created_at > after, MessageLog.segment == segment)
            .order_by(MessageLog.created_at.asc())
            .limit(limit)
        )
        return result.scalars().all()
