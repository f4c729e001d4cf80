"""Audit rows for LLM attempts and the human/agent message log."""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from taskflow_engine.models.flow import Base, new_id


class LLMCallStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LLMCall(Base):
    __tablename__ = "llm_calls"

    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(100), index=True)
    call_metadata = Column("metadata", JSON, nullable=False)
    correlation_key = Column(String(100), index=True)
    correlation_value = Column(String(200), index=True)
    usecase = Column(String(100))

    model = Column(String(100), nullable=False)
    attempt = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    error = Column(Text)
    messages = Column(JSON)
    response = Column(Text)
    duration_ms = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class MessageSegment(str, Enum):
    USER = "user"
    DEBUG = "debug"


class MessageLog(Base):
    __tablename__ = "message_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    flow_id = Column(String(36), nullable=False, index=True)
    run_id = Column(String(36), index=True)
    node_id = Column(String(36))
    account_id = Column(String(100))
    segment = Column(String(20), nullable=False, default=MessageSegment.USER.value)
    messages = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
