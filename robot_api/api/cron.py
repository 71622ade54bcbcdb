"""
Cron tick endpoint, called by an external timer
"""

from fastapi import APIRouter, BackgroundTasks, Depends

from ..auth.deps import require_cron
from ..services import schedules
from ..services.collaborators import Collaborators, get_collaborators

router = APIRouter(tags=["Schedules"])


@router.post("/cron/tick", dependencies=[Depends(require_cron)])
async def cron_tick(background_tasks: BackgroundTasks,
                    collaborators: Collaborators = Depends(get_collaborators)):
    """Fire every due schedule; the jobs run after the response is sent"""
    tick = schedules.fire_due()
    background_tasks.add_task(schedules.dispatch, tick, collaborators)
    return {"success": True, **tick.to_dict()}
