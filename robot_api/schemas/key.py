from typing import Literal, Optional

from pydantic import BaseModel, Field


class KeyCreate(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    tier: Literal["free", "github", "pro"] = "free"
    credits: Optional[int] = Field(None, ge=0)


class CreditGrant(BaseModel):
    amount: int = Field(..., gt=0, le=1_000_000)
