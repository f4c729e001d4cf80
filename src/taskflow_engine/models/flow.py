import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class FlowStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class Flow(Base):
    __tablename__ = "flows"

    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), index=True)

    readable_name = Column(String(200), nullable=False, default="Flow")
    readable_description = Column(Text)
    task = Column(Text, nullable=False, default="")
    triggers = Column(JSON, nullable=False)
    data = Column(JSON)
    flow_metadata = Column("metadata", JSON)

    status = Column(String(20), nullable=False, default=FlowStatus.ACTIVE.value, index=True)
    previous_status = Column(String(20))

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_archived(self) -> bool:
        return bool((self.flow_metadata or {}).get("archived"))

    def __repr__(self):
        return f"<Flow(id='{self.id}', status='{self.status}', triggers={self.triggers})>"
