"""
API Key Management Endpoints
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import errors
from ..auth import Caller
from ..auth.deps import require_admin, require_key
from ..db import get_db
from ..errors import ApiError
from ..schemas.key import CreditGrant, KeyCreate
from ..services import ledger

log = logging.getLogger("app")

router = APIRouter(tags=["Keys"])


@router.get("/keys/me")
async def my_key(caller: Caller = Depends(require_key)):
    """Summary of the key making the request"""
    return {"success": True, "key": caller.key.to_dict()}


@router.post("/keys", status_code=201, dependencies=[Depends(require_admin)])
async def create_key(body: KeyCreate, db: Session = Depends(get_db)):
    """Create a key (admin only); the plaintext is only ever returned here and on rotation"""
    key, plaintext = ledger.create_key(db, body.owner_id, body.tier, body.credits)
    return JSONResponse({"success": True, "api_key": plaintext, "key": key.to_dict()}, status_code=201)


@router.post("/keys/{key_id}/rotate", dependencies=[Depends(require_admin)])
async def rotate_key(key_id: str, db: Session = Depends(get_db)):
    rotated = ledger.rotate_key(db, key_id)
    if rotated is None:
        raise ApiError(errors.NOT_FOUND, "API key not found")
    key, plaintext = rotated
    return {"success": True, "api_key": plaintext, "key": key.to_dict()}


@router.post("/keys/{key_id}/deactivate", dependencies=[Depends(require_admin)])
async def deactivate_key(key_id: str, db: Session = Depends(get_db)):
    key = ledger.deactivate_key(db, key_id)
    if key is None:
        raise ApiError(errors.NOT_FOUND, "API key not found")
    return {"success": True, "key": key.to_dict()}


@router.post("/keys/{key_id}/credits", dependencies=[Depends(require_admin)])
async def grant_credits(key_id: str, body: CreditGrant, db: Session = Depends(get_db)):
    remaining = ledger.grant_credits(db, key_id, body.amount)
    if remaining is None:
        raise ApiError(errors.NOT_FOUND, "API key not found")
    return {"success": True, "key_id": key_id, "remaining_credits": remaining}
