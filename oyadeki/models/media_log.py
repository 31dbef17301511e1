import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, Text, Uuid

from oyadeki.database import Base, JSONType


class MediaLog(Base):
    __tablename__ = "media_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text, nullable=False)
    session_id = Column(Uuid, ForeignKey("dialogue_sessions.id"))
    media_type = Column(Text, nullable=False)  # movie, tv_show, anime, sports, music, book, other
    title = Column(Text, nullable=False)
    subtitle = Column(Text)
    artist_or_cast = Column(Text)
    year = Column(Integer)
    trivia = Column(Text)
    poster_url = Column(Text)
    synopsis = Column(Text)
    score = Column(Float)
    genres = Column(JSONType)
    external_url = Column(Text)
    external_source = Column(Text)
    rating = Column(Integer)  # 1-5, set by the user after recording
    watched_at = Column(DateTime(timezone=True), nullable=False)
