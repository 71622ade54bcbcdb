from sqlalchemy import Column, String, DateTime, JSON, Text, Integer, Boolean
from robot_api.db import Base
from robot_api.utils.clock import utcnow, isoformat

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
BLOCKED = "blocked"

TERMINAL_STATUSES = (COMPLETED, FAILED, BLOCKED)
ALL_STATUSES = (QUEUED, PROCESSING) + TERMINAL_STATUSES


class Job(Base):
    __tablename__ = "jobs"
    id = Column(String(36), primary_key=True)  # uuid4
    owner_key_id = Column(String(32), index=True, nullable=True)  # null for anonymous sync calls
    schedule_id = Column(String(36), index=True, nullable=True)
    url = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=QUEUED, index=True)
    mode = Column(String(8), nullable=False, default="async")  # sync|async
    fields = Column(JSON, nullable=True)
    schema_json = Column(JSON, nullable=True)
    instructions = Column(Text, nullable=True)
    options = Column(JSON, nullable=False, default=dict)
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(String(256), nullable=True)
    result_path = Column(String(255), nullable=True)
    error_msg = Column(Text, nullable=True)
    token_usage = Column(Integer, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    cache_hit = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, prefix: str = ""):
        return {
            "id": self.id,
            "url": self.url,
            "status": self.status,
            "mode": self.mode,
            "schedule_id": self.schedule_id,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "result_url": f"{prefix}/jobs/{self.id}/result" if self.result_path else None,
            "error_msg": self.error_msg,
            "token_usage": self.token_usage,
            "latency_ms": self.latency_ms,
            "cache_hit": self.cache_hit,
        }
