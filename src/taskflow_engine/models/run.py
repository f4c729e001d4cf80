from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Text, JSON, ForeignKey
from taskflow_engine.models.flow import Base, new_id


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    ASK_USER_FOR_INPUT = "ask_user_for_input"
    COMPLETED = "completed"
    ERROR = "error"


class Run(Base):
    __tablename__ = "runs"

    id = Column(String(36), primary_key=True, default=new_id)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    account_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100))

    input = Column(Text)
    trigger_input = Column(String(500))
    event_payload = Column(JSON)

    status = Column(String(30), nullable=False, default=RunStatus.QUEUED.value, index=True)
    live_status = Column(Text)
    input_wait = Column(JSON)
    private_data = Column(JSON)

    output = Column(Text)
    structured_output = Column(JSON)
    reasoning = Column(Text)
    error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    @property
    def working_on_node_id(self):
        return (self.private_data or {}).get("workingOnNodeId")


class Node(Base):
    __tablename__ = "nodes"

    id = Column(String(36), primary_key=True, default=new_id)
    run_id = Column(String(36), ForeignKey("runs.id"), nullable=False, index=True)
    flow_id = Column(String(36), index=True)
    account_id = Column(String(100))

    name = Column(String(200), nullable=False)
    input = Column(Text)

    status = Column(String(30), nullable=False, default=RunStatus.QUEUED.value)
    live_status = Column(Text)
    input_wait = Column(JSON)
    private_data = Column(JSON)

    output = Column(Text)
    structured_output = Column(JSON)
    error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)


class Thread(Base):
    """Parallel execution lane under a run; kept for visualization only."""

    __tablename__ = "threads"

    id = Column(String(36), primary_key=True, default=new_id)
    run_id = Column(String(36), ForeignKey("runs.id"), nullable=False, index=True)
    node_id = Column(String(36))
    name = Column(String(200))
    data = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
