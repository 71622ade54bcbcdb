from sqlalchemy import Column, String, DateTime, JSON, Integer
from robot_api.db import Base
from robot_api.utils.clock import utcnow

PENDING = "pending"
DONE = "done"


class IdempotencyEntry(Base):
    __tablename__ = "idempotency_entries"
    id = Column(String(64), primary_key=True)  # sha256(owner scope + caller key)
    request_hash = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=PENDING)
    status_code = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
