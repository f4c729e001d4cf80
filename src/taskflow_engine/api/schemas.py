from datetime import datetime
from typing import Dict, Any, Optional, List, Literal
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OrmModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class GenerateFlowRequest(BaseModel):
    account_id: str
    user_id: Optional[str] = None
    init_message: str = Field(..., min_length=1, description="The task in natural language")
    agent_codes: List[str] = Field(default_factory=list)
    timezone_offset_seconds: int = Field(0, description="User's offset from UTC, in seconds")


class CreateFlowRequest(BaseModel):
    account_id: str
    user_id: Optional[str] = None
    task: str
    triggers: Optional[List[str]] = Field(None, description="Trigger strings; defaults to ['once|0|']")
    readable_name: str = "Flow"
    readable_description: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    status: Literal["active", "inactive"] = "active"


class FlowResponse(OrmModel):
    id: str
    account_id: str
    user_id: Optional[str] = None
    readable_name: str
    readable_description: Optional[str] = None
    task: str
    triggers: List[str]
    data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("flow_metadata", "metadata"))
    status: str
    previous_status: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class FlowListResponse(BaseModel):
    flows: List[FlowResponse]


class FlowStatusRequest(BaseModel):
    account_id: Optional[str] = None
    status: str


class ArchiveFlowRequest(BaseModel):
    account_id: Optional[str] = None


class ActiveRunStatusResponse(BaseModel):
    run_id: Optional[str] = None
    run_status: Optional[str] = None
    input_wait: Optional[Dict[str, Any]] = None
    live_status: Optional[str] = None


class RunResponse(OrmModel):
    id: str
    flow_id: str
    account_id: str
    input: Optional[str] = None
    trigger_input: Optional[str] = None
    event_payload: Optional[Dict[str, Any]] = None
    status: str
    live_status: Optional[str] = None
    input_wait: Optional[Dict[str, Any]] = None
    output: Optional[str] = None
    structured_output: Optional[Dict[str, Any]] = None
    reasoning: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunsPageResponse(BaseModel):
    runs: List[RunResponse]
    total: int
    page_number: int
    page_size: int


class RunListResponse(BaseModel):
    runs: List[RunResponse]


class NodeResponse(OrmModel):
    id: str
    run_id: str
    name: str
    input: Optional[str] = None
    status: str
    live_status: Optional[str] = None
    input_wait: Optional[Dict[str, Any]] = None
    output: Optional[str] = None
    structured_output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ThreadResponse(OrmModel):
    id: str
    run_id: str
    node_id: Optional[str] = None
    name: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    created_at: datetime


class RunChartResponse(BaseModel):
    run: RunResponse
    nodes: List[NodeResponse]
    threads: List[ThreadResponse]


class MessageLogResponse(OrmModel):
    id: str
    run_id: Optional[str] = None
    node_id: Optional[str] = None
    segment: str
    messages: List[Dict[str, Any]]
    created_at: datetime


class MessagesResponse(BaseModel):
    messages: List[MessageLogResponse]


class LLMCallResponse(OrmModel):
    id: str
    metadata: Dict[str, Any] = Field(validation_alias=AliasChoices("call_metadata", "metadata"))
    usecase: Optional[str] = None
    model: str
    attempt: int
    status: str
    error: Optional[str] = None
    response: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime


class LLMCallsPageResponse(BaseModel):
    llm_calls: List[LLMCallResponse]
    total: int
    page_number: int
    page_size: int


class SubmitInputRequest(BaseModel):
    input_wait_id: str = Field(..., description="Id of the pending input wait being answered")
    messages: List[Dict[str, Any]] = Field(..., min_length=1)


class SubmitInputResponse(BaseModel):
    input_wait: Dict[str, Any]


class EventRequest(BaseModel):
    payload: Optional[Dict[str, Any]] = None


class EventResponse(BaseModel):
    event_id: str
    run_ids: List[str]


class TriggerValidationRequest(BaseModel):
    triggers: List[str]


class TriggerValidationResponse(BaseModel):
    valid: bool
    triggers: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    database: str
    armed_flows: int
