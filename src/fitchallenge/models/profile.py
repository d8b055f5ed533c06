from sqlalchemy import Column, String, DateTime

from .base import Base, utcnow

class Profile(Base):
    __tablename__ = "profiles"

    id            = Column(String, primary_key=True)
    nickname      = Column(String, nullable=True)
    avatar_url    = Column(String, nullable=True)
    # "km" or "miles"; display only, storage is always kilometers
    distance_unit = Column(String, default="km", nullable=False)
    created_at    = Column(DateTime, default=utcnow, nullable=False)
