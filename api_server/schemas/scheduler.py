# api_server/schemas/scheduler.py
from pydantic import BaseModel


class SchedulerConfigResponse(BaseModel):
    enabled: bool
    poll_interval_ms: int
    batch_size: int
    cron_check_interval_ms: int


class SchedulerStatusResponse(BaseModel):
    is_running: bool
    config: SchedulerConfigResponse


class SchedulerTickResponse(BaseModel):
    """Items handled by a manual tick."""

    delayed_runs: int
    time_based_triggers: int
