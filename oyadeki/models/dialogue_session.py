import uuid

from sqlalchemy import Column, DateTime, Index, Integer, Text, Uuid

from oyadeki.database import Base, JSONType


class DialogueSession(Base):
    __tablename__ = "dialogue_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text, nullable=False)  # LINE user id
    status = Column(Text, nullable=False)  # analyzing, questioning, completed, cancelled
    kind = Column(Text, nullable=False)  # media_dialogue, media_confirm, open_ended_dialogue
    visual_summary = Column(Text, nullable=False, default="")
    candidate = Column(JSONType)
    turn_history = Column(JSONType, nullable=False, default=list)
    rejected_titles = Column(JSONType, nullable=False, default=list)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_dialogue_sessions_owner_status", "owner_id", "status"),)
    __mapper_args__ = {"version_id_col": version}
