# api_server/routers/scheduler.py
from fastapi import APIRouter, Depends

from api_server.auth import verify_api_key
from api_server.schemas.scheduler import SchedulerStatusResponse, SchedulerTickResponse
from api_server.services.scheduler import get_scheduler

router = APIRouter()


@router.get("/scheduler", response_model=SchedulerStatusResponse)
def scheduler_status_endpoint(api_key: str = Depends(verify_api_key)):
    """Scheduler state and effective configuration."""
    return SchedulerStatusResponse.model_validate(get_scheduler().get_status())


@router.post("/scheduler/tick", response_model=SchedulerTickResponse)
def scheduler_tick_endpoint(api_key: str = Depends(verify_api_key)):
    """Run one delayed-run pass and one cron pass now, whether or not the threads are running."""
    scheduler = get_scheduler()
    return SchedulerTickResponse(
        delayed_runs=scheduler.process_delayed_runs(),
        time_based_triggers=scheduler.process_time_based_triggers(),
    )
