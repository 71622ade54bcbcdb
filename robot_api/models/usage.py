from sqlalchemy import Column, String, DateTime, Text, Integer
from robot_api.db import Base
from robot_api.utils.clock import utcnow, isoformat

SUCCESS = "success"
CACHED = "cached"
BLOCKED = "blocked"
ERROR = "error"


class UsageLog(Base):
    """Append-only; rows are never updated after insert."""
    __tablename__ = "usage_logs"
    id = Column(String(36), primary_key=True)
    owner_key_id = Column(String(32), index=True, nullable=True)
    job_id = Column(String(36), nullable=True)
    url = Column(Text, nullable=False)
    status = Column(String(16), nullable=False)
    token_usage = Column(Integer, nullable=False, default=0)
    latency_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "url": self.url,
            "status": self.status,
            "token_usage": self.token_usage,
            "latency_ms": self.latency_ms,
            "created_at": isoformat(self.created_at),
        }
