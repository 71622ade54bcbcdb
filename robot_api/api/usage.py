"""
Usage API: dashboard aggregates and CSV export
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from .. import errors
from ..auth import Caller
from ..auth.deps import require_key
from ..db import get_db
from ..errors import ApiError
from ..services import usage

router = APIRouter(tags=["Usage"])


def _span(value: Optional[str]):
    ok, span = usage.parse_range(value)
    if not ok:
        raise ApiError(errors.BAD_REQUEST, span)
    return span


@router.get("/usage")
async def get_usage(range: Optional[str] = Query(None), caller: Caller = Depends(require_key),
                    db: Session = Depends(get_db)):
    return {"success": True, **usage.usage_report(db, caller.key_id, _span(range))}


@router.get("/usage/export")
async def export_usage(range: Optional[str] = Query(None),
                       limit: int = Query(usage.EXPORT_DEFAULT_LIMIT, ge=1, le=usage.EXPORT_MAX_LIMIT),
                       caller: Caller = Depends(require_key), db: Session = Depends(get_db)):
    text, filename = usage.export_csv(db, caller.key_id, _span(range), limit=limit)
    return Response(
        content=text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
