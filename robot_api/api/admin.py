"""
Admin endpoints: webhook dead-letter statistics
"""

from fastapi import APIRouter, Depends

from ..auth.deps import require_admin
from ..services.dlq import get_dlq
from ..services.prometheus_metrics import prometheus_metrics

router = APIRouter(tags=["Admin"], dependencies=[Depends(require_admin)])


@router.get("/admin/webhooks/dlq")
async def webhook_dlq_stats():
    stats = get_dlq().get_dlq_stats()
    prometheus_metrics.set_webhook_dlq_depth(stats["total_files"])
    return {"success": True, "dlq": stats}
