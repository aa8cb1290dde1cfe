# automation/nodes/delay.py
from __future__ import annotations

import logging
from datetime import timedelta

from automation.events import EventBus
from automation.nodes.base import WorkflowStep
from automation.nodes.models import DelayConfig, NodeRunResult, NodeType, RunState, WorkflowGraph
from automation.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)


class DelayStep(WorkflowStep[DelayConfig]):
    """Suspends the run until ``now + duration``; the scheduler resumes it."""

    node_type = NodeType.DELAY
    config_model = DelayConfig

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        wait_until = isoformat(utcnow() + timedelta(milliseconds=self.config.duration_ms))

        logger.info(
            "Delay scheduled for run %s: %s %s (until %s)",
            run.run_id,
            self.config.duration,
            self.config.unit.value,
            wait_until,
        )
        return NodeRunResult(
            success=True,
            output={
                "duration": self.config.duration,
                "unit": self.config.unit.value,
                "waitUntil": wait_until,
            },
            metadata={"waitUntil": wait_until},
        )
