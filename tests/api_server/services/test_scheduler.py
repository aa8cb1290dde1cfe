# tests/api_server/services/test_scheduler.py
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

from api_server.db import runs as runs_db
from api_server.db import workflows as workflows_db
from api_server.services import executor
from api_server.services.scheduler import WorkflowScheduler, get_scheduler
from automation.events import WorkflowSubjects
from automation.timeutils import as_utc, utcnow
from tests.fixtures.graphs import CONTACT, TENANT, delay_graph, stored_workflow


def _scheduler(**kwargs) -> WorkflowScheduler:
    options = dict(enabled=True, poll_interval_ms=50, batch_size=10, cron_check_interval_ms=50)
    options.update(kwargs)
    return WorkflowScheduler(**options)


def _waiting_run(workflow, contact_id=CONTACT):
    run = runs_db.create_run(TENANT, workflow.id, contact_id, {}, "start")
    executor.execute_run(run.id, TENANT)
    return run


def _make_due(run_id):
    runs_db._transition(run_id, ["waiting"], {"next_execution_at": utcnow() - timedelta(seconds=1)})


class TestProcessDelayedRuns:
    """Test process_delayed_runs()."""

    def test_nothing_due(self, db):
        assert _scheduler().process_delayed_runs() == 0

    def test_waiting_run_not_resumed_before_wakeup(self, db):
        workflow = stored_workflow(delay_graph())
        run = _waiting_run(workflow)

        assert _scheduler().process_delayed_runs() == 0
        assert runs_db.get_run(run.id).status == "waiting"

    def test_resumes_due_runs(self, db, event_bus):
        workflow = stored_workflow(delay_graph())
        run = _waiting_run(workflow)
        _make_due(run.id)

        assert _scheduler().process_delayed_runs() == 1
        assert runs_db.get_run(run.id).status == "completed"
        assert len(event_bus.of(WorkflowSubjects.SEND_MESSAGE)) == 2

    def test_error_does_not_abort_batch(self, db):
        workflow = stored_workflow(delay_graph())
        first = _waiting_run(workflow, "c1")
        second = _waiting_run(workflow, "c2")
        _make_due(first.id)
        _make_due(second.id)

        resumed = []
        real_resume = executor.resume_run

        def flaky_resume(run_id, tenant_id):
            resumed.append(run_id)
            if len(resumed) == 1:
                raise RuntimeError("boom")
            return real_resume(run_id, tenant_id)

        with patch("api_server.services.scheduler.executor.resume_run", side_effect=flaky_resume):
            assert _scheduler().process_delayed_runs() == 2

        assert len(resumed) == 2

    def test_respects_batch_size(self, db):
        workflow = stored_workflow(delay_graph())
        for i in range(3):
            _make_due(_waiting_run(workflow, f"c{i}").id)

        with patch("api_server.services.scheduler.executor.resume_run") as mock_resume:
            assert _scheduler(batch_size=2).process_delayed_runs() == 2
        assert mock_resume.call_count == 2

    def test_overlapping_tick_is_skipped(self, db):
        scheduler = _scheduler()
        scheduler._delay_tick_lock.acquire()
        try:
            with patch("api_server.services.scheduler.runs_db.find_due_runs") as mock_find:
                assert scheduler.process_delayed_runs() == 0
            mock_find.assert_not_called()
        finally:
            scheduler._delay_tick_lock.release()


class TestProcessTimeBasedTriggers:
    """Test process_time_based_triggers()."""

    CONFIG = {"cronExpression": "0 9 * * *", "segmentId": "seg-1"}

    def test_fires_due_workflow_and_advances_schedule(self, db, event_bus, no_inline_execution):
        workflow = stored_workflow(trigger_type="time_based", trigger_config=self.CONFIG)
        workflows_db.set_next_trigger_at(workflow.id, utcnow() - timedelta(minutes=1))

        assert _scheduler().process_time_based_triggers() == 1

        runs, total = runs_db.list_runs(TENANT, workflow_id=workflow.id)
        assert total == 1
        assert runs[0].contact_id is None
        assert runs[0].context["triggerEvent"]["type"] == "schedule.due"
        assert runs[0].context["triggerEvent"]["payload"]["segmentId"] == "seg-1"

        upcoming = as_utc(workflows_db.get_workflow(workflow.id).next_trigger_at)
        assert upcoming > utcnow()
        assert upcoming.hour == 9 and upcoming.minute == 0

        [matched] = event_bus.of(WorkflowSubjects.TRIGGER_MATCHED)
        assert matched.payload["triggerType"] == "time_based"

    def test_not_due(self, db, no_inline_execution):
        workflow = stored_workflow(trigger_type="time_based", trigger_config=self.CONFIG)
        workflows_db.set_next_trigger_at(workflow.id, utcnow() + timedelta(minutes=5))

        assert _scheduler().process_time_based_triggers() == 0

    def test_unpublished_workflow_is_ignored(self, db, no_inline_execution):
        workflow = stored_workflow(trigger_type="time_based", trigger_config=self.CONFIG, published=False)
        workflows_db.set_next_trigger_at(workflow.id, utcnow() - timedelta(minutes=1))

        assert _scheduler().process_time_based_triggers() == 0

    def test_invalid_cron_disables_schedule(self, db, no_inline_execution):
        workflow = stored_workflow(trigger_type="time_based", trigger_config={"cronExpression": "nope"})
        workflows_db.set_next_trigger_at(workflow.id, utcnow() - timedelta(minutes=1))

        _scheduler().process_time_based_triggers()

        assert workflows_db.get_workflow(workflow.id).next_trigger_at is None
        assert _scheduler().process_time_based_triggers() == 0


class TestLifecycle:
    """Test start()/stop() and status."""

    def test_disabled_scheduler_does_not_start(self):
        scheduler = _scheduler(enabled=False)
        assert scheduler.start() is False
        assert not scheduler.is_running

    def test_start_and_stop(self):
        scheduler = _scheduler()
        ticked = threading.Event()

        def tick():
            ticked.set()
            return 0

        with patch.object(scheduler, "process_delayed_runs", side_effect=tick), patch.object(
            scheduler, "process_time_based_triggers", return_value=0
        ):
            assert scheduler.start() is True
            assert scheduler.start() is False
            assert ticked.wait(timeout=2)
            scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.get_status()["is_running"] is False

    def test_manual_tick_after_stop(self, db, event_bus):
        scheduler = _scheduler()
        with patch.object(scheduler, "process_delayed_runs", return_value=0), patch.object(
            scheduler, "process_time_based_triggers", return_value=0
        ):
            scheduler.start()
            scheduler.stop()

        workflow = stored_workflow(delay_graph())
        run = _waiting_run(workflow)
        _make_due(run.id)

        assert scheduler.process_delayed_runs() == 1
        assert runs_db.get_run(run.id).status == "completed"

    def test_loop_survives_tick_errors(self):
        scheduler = _scheduler()
        calls = MagicMock(side_effect=[RuntimeError("db down"), 0, 0, 0, 0, 0, 0, 0, 0, 0])
        second_call = threading.Event()

        def tick():
            try:
                return calls()
            finally:
                if calls.call_count >= 2:
                    second_call.set()

        with patch.object(scheduler, "process_delayed_runs", side_effect=tick), patch.object(
            scheduler, "process_time_based_triggers", return_value=0
        ):
            scheduler.start()
            assert second_call.wait(timeout=2)
            scheduler.stop()

    def test_status(self):
        status = _scheduler(batch_size=7).get_status()
        assert status == {
            "is_running": False,
            "config": {
                "enabled": True,
                "poll_interval_ms": 50,
                "batch_size": 7,
                "cron_check_interval_ms": 50,
            },
        }

    def test_global_scheduler_is_shared(self):
        assert get_scheduler() is get_scheduler()
