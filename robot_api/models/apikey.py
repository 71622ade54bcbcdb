from sqlalchemy import Column, String, DateTime, Boolean, Integer
from robot_api.db import Base
from robot_api.utils.clock import utcnow, isoformat


class ApiKey(Base):
    __tablename__ = "api_keys"
    id = Column(String(32), primary_key=True)
    hash = Column(String(64), nullable=False, unique=True, index=True)  # sha256 of the plaintext key
    prefix = Column(String(16), nullable=False)
    owner_id = Column(String(128), nullable=False, index=True)
    tier = Column(String(16), nullable=False, default="free")
    is_active = Column(Boolean, nullable=False, default=True)
    remaining_credits = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "prefix": self.prefix,
            "owner_id": self.owner_id,
            "tier": self.tier,
            "is_active": self.is_active,
            "remaining_credits": self.remaining_credits,
            "last_used_at": isoformat(self.last_used_at),
            "created_at": isoformat(self.created_at),
        }
