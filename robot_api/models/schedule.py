from sqlalchemy import Column, String, DateTime, JSON, Text, Boolean
from robot_api.db import Base
from robot_api.utils.clock import utcnow, isoformat


class Schedule(Base):
    __tablename__ = "schedules"
    id = Column(String(36), primary_key=True)
    owner_key_id = Column(String(32), index=True, nullable=False)
    url = Column(Text, nullable=False)
    cron = Column(String(128), nullable=False)
    fields_config = Column(JSON, nullable=True)
    schema_json = Column(JSON, nullable=True)
    instructions = Column(Text, nullable=True)
    webhook_url = Column(Text, nullable=False)
    webhook_secret = Column(String(256), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    next_run_at = Column(DateTime, nullable=True, index=True)
    last_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        # webhook_secret is write-only
        return {
            "id": self.id,
            "url": self.url,
            "cron": self.cron,
            "fields": self.fields_config,
            "schema": self.schema_json,
            "instructions": self.instructions,
            "webhook_url": self.webhook_url,
            "has_webhook_secret": bool(self.webhook_secret),
            "is_active": self.is_active,
            "next_run_at": isoformat(self.next_run_at),
            "last_run_at": isoformat(self.last_run_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
