from typing import Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import text
from taskflow_engine.api.schemas import (
    ActiveRunStatusResponse, ArchiveFlowRequest, CreateFlowRequest, EventRequest, EventResponse,
    FlowListResponse, FlowResponse, FlowStatusRequest, GenerateFlowRequest, HealthResponse,
    LLMCallResponse, LLMCallsPageResponse, MessageLogResponse, MessagesResponse, NodeResponse,
    RunChartResponse, RunListResponse, RunResponse, RunsPageResponse, SubmitInputRequest,
    SubmitInputResponse, ThreadResponse, TriggerValidationRequest, TriggerValidationResponse
)
from taskflow_engine.config.settings import settings
from taskflow_engine.models.flow import FlowStatus
from taskflow_engine.services.exceptions import InvalidTriggerFormat
from taskflow_engine.services.runtime import TaskflowRuntime, get_runtime
from taskflow_engine.services.triggers import format_trigger, parse_triggers
from taskflow_engine.utils.timeutils import from_epoch_ms

security = HTTPBearer(auto_error=False)


async def get_api_key(credentials: HTTPAuthorizationCredentials = Security(security)):
    """Validate API key for protected endpoints."""
    if not settings.api_key:
        # No API key configured: open access
        return True

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials != settings.api_key:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


router = APIRouter(dependencies=[Depends(get_api_key)])
public_router = APIRouter()


@router.post("/flows/generate", response_model=FlowResponse)
async def generate_flow(request: GenerateFlowRequest, runtime: TaskflowRuntime = Depends(get_runtime)):
    """Create a flow from a natural-language task; naming and triggers are inferred."""
    flow = await runtime.flows.generate_flow(
        account_id=request.account_id,
        user_id=request.user_id,
        init_message=request.init_message,
        agent_codes=request.agent_codes,
        timezone_offset_seconds=request.timezone_offset_seconds
    )
    return FlowResponse.model_validate(flow)


@router.post("/flows", response_model=FlowResponse)
async def create_flow(request: CreateFlowRequest, runtime: TaskflowRuntime = Depends(get_runtime)):
    flow = await runtime.flows.create_flow(
        account_id=request.account_id,
        user_id=request.user_id,
        task=request.task,
        triggers=request.triggers,
        readable_name=request.readable_name,
        readable_description=request.readable_description,
        data=request.data,
        metadata=request.metadata,
        status=FlowStatus(request.status)
    )
    return FlowResponse.model_validate(flow)


@router.get("/flows", response_model=FlowListResponse)
async def list_flows(
    account_id: str = Query(...),
    before: Optional[int] = Query(None, description="Epoch milliseconds; defaults to now"),
    after: Optional[int] = Query(None, description="Epoch milliseconds; returns flows created or updated since"),
    limit: int = Query(50, ge=1),
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    if after is not None:
        flows = await runtime.queries.flows_after(account_id, from_epoch_ms(after), limit)
    else:
        flows = await runtime.queries.flows_before(account_id, from_epoch_ms(before), limit)
    return FlowListResponse(flows=[FlowResponse.model_validate(flow) for flow in flows])


@router.get("/flows/{flow_id}", response_model=FlowResponse)
async def get_flow(flow_id: str, account_id: Optional[str] = None, runtime: TaskflowRuntime = Depends(get_runtime)):
    flow = await runtime.queries.flow_details(flow_id, account_id)
    return FlowResponse.model_validate(flow)


@router.post("/flows/{flow_id}/status", response_model=FlowResponse)
async def change_flow_status(flow_id: str, request: FlowStatusRequest, runtime: TaskflowRuntime = Depends(get_runtime)):
    flow = await runtime.flows.change_flow_status(flow_id, request.account_id, request.status)
    return FlowResponse.model_validate(flow)


@router.post("/flows/{flow_id}/archive", response_model=FlowResponse)
async def archive_flow(
    flow_id: str,
    request: Optional[ArchiveFlowRequest] = None,
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    flow = await runtime.flows.archive_flow(flow_id, request.account_id if request else None)
    return FlowResponse.model_validate(flow)


@router.get("/flows/{flow_id}/active-run-status", response_model=ActiveRunStatusResponse)
async def get_active_run_status(
    flow_id: str,
    account_id: Optional[str] = None,
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    view = await runtime.queries.active_run_status(flow_id, account_id)
    return ActiveRunStatusResponse(
        run_id=view.run_id,
        run_status=view.run_status.value if view.run_status else None,
        input_wait=view.input_wait,
        live_status=view.live_status
    )


@router.get("/flows/{flow_id}/runs", response_model=RunsPageResponse)
async def get_runs(
    flow_id: str,
    account_id: str = Query(...),
    page_number: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    sort: Literal["ASC", "DESC"] = "DESC",
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    runs, total = await runtime.queries.runs_page(flow_id, account_id, page_number, page_size, sort)
    return RunsPageResponse(
        runs=[RunResponse.model_validate(run) for run in runs],
        total=total,
        page_number=page_number,
        page_size=min(page_size, 50)
    )


@router.get("/flows/{flow_id}/data", response_model=RunListResponse)
async def get_flow_data(
    flow_id: str,
    account_id: Optional[str] = None,
    before: Optional[int] = None,
    after: Optional[int] = None,
    limit: int = Query(50, ge=1),
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    """Finished runs of the flow with their outputs."""
    if after is not None:
        runs = await runtime.queries.data_after(flow_id, account_id, from_epoch_ms(after), limit)
    else:
        runs = await runtime.queries.data_before(flow_id, account_id, from_epoch_ms(before), limit)
    return RunListResponse(runs=[RunResponse.model_validate(run) for run in runs])


@router.get("/flows/{flow_id}/messages", response_model=MessagesResponse)
async def get_flow_messages(
    flow_id: str,
    account_id: Optional[str] = None,
    segment: Literal["user", "agent", "debug"] = "user",
    before: Optional[int] = None,
    after: Optional[int] = None,
    limit: int = Query(50, ge=1),
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    if after is not None:
        logs = await runtime.queries.messages_after(flow_id, account_id, from_epoch_ms(after), segment, limit)
    else:
        logs = await runtime.queries.messages_before(flow_id, account_id, from_epoch_ms(before), segment, limit)
    return MessagesResponse(messages=[MessageLogResponse.model_validate(log) for log in logs])


@router.get("/flows/{flow_id}/llm-calls", response_model=LLMCallsPageResponse)
async def get_flow_llm_calls(
    flow_id: str,
    account_id: str = Query(...),
    page_number: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    calls, total = await runtime.queries.llm_calls_page(flow_id, account_id, page_number, page_size)
    return LLMCallsPageResponse(
        llm_calls=[LLMCallResponse.model_validate(call) for call in calls],
        total=total,
        page_number=page_number,
        page_size=min(page_size, 50)
    )


@router.get("/runs/{run_id}/chart", response_model=RunChartResponse)
async def get_run_chart(run_id: str, account_id: Optional[str] = None, runtime: TaskflowRuntime = Depends(get_runtime)):
    chart = await runtime.queries.run_chart(run_id, account_id)
    return RunChartResponse(
        run=RunResponse.model_validate(chart.run),
        nodes=[NodeResponse.model_validate(node) for node in chart.nodes],
        threads=[ThreadResponse.model_validate(thread) for thread in chart.threads]
    )


@router.post("/runs/{run_id}/input", response_model=SubmitInputResponse)
async def submit_run_input(run_id: str, request: SubmitInputRequest, runtime: TaskflowRuntime = Depends(get_runtime)):
    """Answer the run's pending question."""
    input_wait = await runtime.input_waits.submit_input(run_id, request.input_wait_id, request.messages)
    return SubmitInputResponse(input_wait=input_wait)


@router.post("/runs/{run_id}/nodes/{node_id}/input", response_model=SubmitInputResponse)
async def submit_node_input(
    run_id: str,
    node_id: str,
    request: SubmitInputRequest,
    runtime: TaskflowRuntime = Depends(get_runtime)
):
    """Answer a node's pending question."""
    input_wait = await runtime.input_waits.submit_input(
        run_id, request.input_wait_id, request.messages, node_id=node_id
    )
    return SubmitInputResponse(input_wait=input_wait)


@router.post("/events/{event_id}", response_model=EventResponse)
async def deliver_event(event_id: str, request: Optional[EventRequest] = None,
                        runtime: TaskflowRuntime = Depends(get_runtime)):
    """Deliver an external event to every flow armed for it."""
    runs = await runtime.scheduler.emit_event(event_id, request.payload if request else None)
    return EventResponse(event_id=event_id, run_ids=[run.id for run in runs])


@router.post("/triggers/validate", response_model=TriggerValidationResponse)
async def validate_triggers(request: TriggerValidationRequest):
    try:
        triggers = parse_triggers(request.triggers)
    except InvalidTriggerFormat as e:
        return TriggerValidationResponse(valid=False, error=e.message)
    return TriggerValidationResponse(valid=True, triggers=[format_trigger(trigger) for trigger in triggers])


@public_router.get("/health", response_model=HealthResponse)
async def health_check(runtime: TaskflowRuntime = Depends(get_runtime)):
    database = "healthy"
    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        database = f"unhealthy: {e}"

    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        database=database,
        armed_flows=runtime.scheduler.armed_flow_count
    )
