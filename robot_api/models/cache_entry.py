from sqlalchemy import Column, String, DateTime, Text, Integer
from robot_api.db import Base
from robot_api.utils.clock import utcnow


class CacheEntry(Base):
    __tablename__ = "cache_entries"
    fingerprint = Column(String(64), primary_key=True)
    url = Column(Text, nullable=False)
    object_key = Column(String(255), nullable=False)
    hit_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
