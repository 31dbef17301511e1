import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from oyadeki.database import Base, JSONType


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text, nullable=False)
    action_type = Column(Text, nullable=False)
    meta = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
