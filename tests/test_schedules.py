"""Tests for scheduled workflow runs."""

from datetime import datetime, timedelta

import pytest

from autoflow.core.exceptions import ConfigurationError, StorageError
from autoflow.core.execution_engine import ExecutionEngine
from autoflow.core.node_executors import build_default_registry
from autoflow.core.reentry import ReentryController
from autoflow.core.workflow_scheduler import (
    RUN_COMPLETED,
    RUN_FAILED,
    SCHEDULE_TRIGGER_TYPE,
    ScheduledWorkflowRunner,
    ScheduleManager,
    first_run_time,
    following_run_time,
    next_cron_time,
)
from autoflow.models.core import (
    ExecutionStatusEnum,
    ScheduleConfig,
    ScheduleType,
    WorkflowSchedule,
    WorkflowStatusEnum,
)
from autoflow.storage.models import ContactModel

from helpers import CONTACT_ID, ORG_ID, START_TIME, chain, make_workflow, node, trigger


def scheduled_workflow(workflow_id="wf_sched", status=WorkflowStatusEnum.ACTIVE, **trigger_config):
    return make_workflow(
        [trigger(trigger_type="date_time", **trigger_config), node("msg", "message", text="Hi {{first_name}}")],
        chain("trigger", "msg"),
        workflow_id=workflow_id,
        status=status,
    )


def add_contacts(session_factory, *contacts):
    session = session_factory()
    try:
        for contact_id, tags in contacts:
            session.add(ContactModel(id=contact_id, organization_id=ORG_ID, phone="+15550002222",
                                     name=contact_id.title(), tags=tags, custom_fields={}, lists=[]))
        session.commit()
    finally:
        session.close()


@pytest.fixture
def schedule_manager(session_factory, clock):
    return ScheduleManager(session_factory, clock=clock)


@pytest.fixture
def engine_factory(state_manager, channel, clock):
    registry = build_default_registry(channel_factory=lambda credentials: channel, clock=clock)
    return lambda workflow: ExecutionEngine(workflow, state_manager=state_manager, executors=registry, clock=clock)


@pytest.fixture
def runner(schedule_manager, workflow_manager, engine_factory, contact_directory, state_manager, clock):
    return ScheduledWorkflowRunner(schedule_manager, workflow_manager, engine_factory, contact_directory,
                                   reentry=ReentryController(state_manager), clock=clock)


class TestRunTimes:
    def test_once_runs_at_scheduled_time(self):
        config = ScheduleConfig(scheduled_at=START_TIME + timedelta(days=1))

        assert first_run_time(ScheduleType.ONCE, config, "UTC", START_TIME) == START_TIME + timedelta(days=1)

    def test_recurring_starts_now_unless_start_given(self):
        assert first_run_time(ScheduleType.RECURRING, ScheduleConfig(interval_minutes=30), "UTC",
                              START_TIME) == START_TIME
        later = START_TIME + timedelta(hours=3)
        assert first_run_time(ScheduleType.RECURRING, ScheduleConfig(interval_minutes=30, start_at=later),
                              "UTC", START_TIME) == later

    @pytest.mark.parametrize("schedule_type, config", [
        (ScheduleType.ONCE, ScheduleConfig()),
        (ScheduleType.RECURRING, ScheduleConfig()),
        (ScheduleType.CRON, ScheduleConfig()),
        (ScheduleType.CRON, ScheduleConfig(cron_expression="not a cron")),
    ])
    def test_missing_timing_is_rejected(self, schedule_type, config):
        with pytest.raises(ConfigurationError):
            first_run_time(schedule_type, config, "UTC", START_TIME)

    @pytest.mark.parametrize("expression, expected", [
        ("30 9 * * *", datetime(2024, 1, 15, 9, 30)),
        ("0 8 * * *", datetime(2024, 1, 16, 8, 0)),
        ("0 12 1 * *", datetime(2024, 2, 1, 12, 0)),
    ])
    def test_next_cron_time(self, expression, expected):
        assert next_cron_time(expression, START_TIME) == expected

    def test_unknown_timezone_is_rejected(self):
        with pytest.raises(ConfigurationError):
            next_cron_time("30 9 * * *", START_TIME, "Mars/Olympus_Mons")

    def test_following_run_times(self):
        recurring = WorkflowSchedule(workflow_id="wf", organization_id=ORG_ID, schedule_type=ScheduleType.RECURRING,
                                     config=ScheduleConfig(interval_minutes=90,
                                                           end_at=START_TIME + timedelta(hours=2)))
        once = WorkflowSchedule(workflow_id="wf", organization_id=ORG_ID, schedule_type=ScheduleType.ONCE,
                                config=ScheduleConfig(scheduled_at=START_TIME))

        assert following_run_time(recurring, START_TIME) == START_TIME + timedelta(minutes=90)
        assert following_run_time(recurring, START_TIME + timedelta(hours=1)) is None
        assert following_run_time(once, START_TIME) is None


class TestScheduleManager:
    def test_create_and_get(self, schedule_manager):
        created = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.CRON,
                                                   ScheduleConfig(cron_expression="30 9 * * *"))

        stored = schedule_manager.get_schedule(created.id)

        assert stored.id.startswith("sched_")
        assert stored.is_active is True
        assert stored.next_run_at == datetime(2024, 1, 15, 9, 30)
        assert stored.config.cron_expression == "30 9 * * *"
        assert stored.execution_count == 0

    def test_get_missing_returns_none(self, schedule_manager):
        assert schedule_manager.get_schedule("sched_missing") is None

    def test_create_without_run_time_raises(self, schedule_manager):
        with pytest.raises(ConfigurationError):
            schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE, ScheduleConfig())

        assert schedule_manager.list_due_schedules(START_TIME + timedelta(days=365)) == []

    def test_list_due_schedules(self, schedule_manager):
        early = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE,
                                                 ScheduleConfig(scheduled_at=START_TIME - timedelta(hours=2)))
        late = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE,
                                                ScheduleConfig(scheduled_at=START_TIME - timedelta(hours=1)))
        schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE,
                                         ScheduleConfig(scheduled_at=START_TIME + timedelta(hours=1)))
        stopped = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE,
                                                   ScheduleConfig(scheduled_at=START_TIME - timedelta(hours=3)))
        schedule_manager.deactivate_schedule(stopped.id)

        due = schedule_manager.list_due_schedules(START_TIME)

        assert [schedule.id for schedule in due] == [early.id, late.id]
        assert len(schedule_manager.list_due_schedules(START_TIME, limit=1)) == 1

    def test_record_run_plans_next_interval(self, schedule_manager):
        schedule = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.RECURRING,
                                                    ScheduleConfig(interval_minutes=60))

        updated = schedule_manager.record_run(schedule, START_TIME)

        assert updated.execution_count == 1
        assert updated.last_run_at == START_TIME
        assert updated.last_run_status == RUN_COMPLETED
        assert updated.next_run_at == START_TIME + timedelta(hours=1)
        assert updated.is_active is True

    def test_max_executions_deactivates(self, schedule_manager):
        schedule = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.RECURRING,
                                                    ScheduleConfig(interval_minutes=60), max_executions=2)

        schedule = schedule_manager.record_run(schedule, START_TIME)
        schedule = schedule_manager.record_run(schedule, START_TIME + timedelta(hours=1))

        assert schedule.execution_count == 2
        assert schedule.is_active is False
        assert schedule.next_run_at is None

    def test_one_time_schedule_deactivates_after_run(self, schedule_manager):
        schedule = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE,
                                                    ScheduleConfig(scheduled_at=START_TIME))

        updated = schedule_manager.record_run(schedule, START_TIME)

        assert updated.is_active is False
        assert schedule_manager.list_due_schedules(START_TIME + timedelta(days=1)) == []

    def test_deactivate_missing_schedule(self, schedule_manager):
        assert schedule_manager.deactivate_schedule("sched_missing") is False

    def test_record_failure_keeps_next_run(self, schedule_manager):
        schedule = schedule_manager.create_schedule("wf_1", ORG_ID, ScheduleType.ONCE,
                                                    ScheduleConfig(scheduled_at=START_TIME))

        schedule_manager.record_failure(schedule.id, "database is locked")
        stored = schedule_manager.get_schedule(schedule.id)

        assert stored.last_run_status == RUN_FAILED
        assert stored.last_error == "database is locked"
        assert stored.next_run_at == START_TIME
        assert stored.is_active is True


class TestScheduledWorkflowRunner:
    def test_starts_workflow_for_tagged_contacts(self, runner, schedule_manager, workflow_manager, state_manager,
                                                 channel, session_factory, seeded_contact):
        add_contacts(session_factory, ("contact_vip", ["vip"]), ("contact_cold", ["cold"]))
        workflow_manager.create_workflow(scheduled_workflow(tag_ids=["lead", "vip"]))
        schedule = schedule_manager.create_schedule("wf_sched", ORG_ID, ScheduleType.ONCE,
                                                    ScheduleConfig(scheduled_at=START_TIME))

        result = runner.process_due_schedules()

        assert result.schedules_processed == 1
        assert result.executions_started == 2
        executions = state_manager.list_executions(workflow_id="wf_sched")
        assert sorted(context.contact_id for context in executions) == [CONTACT_ID, "contact_vip"]
        for context in executions:
            assert context.status == ExecutionStatusEnum.COMPLETED
            assert context.trigger_type == SCHEDULE_TRIGGER_TYPE
            assert context.input_data == {"schedule_id": schedule.id}
        assert len(channel.sent) == 2
        assert schedule_manager.get_schedule(schedule.id).is_active is False

    def test_without_tag_filter_targets_every_contact(self, runner, schedule_manager, workflow_manager,
                                                      session_factory, seeded_contact):
        add_contacts(session_factory, ("contact_cold", ["cold"]))
        workflow_manager.create_workflow(scheduled_workflow())
        schedule_manager.create_schedule("wf_sched", ORG_ID, ScheduleType.ONCE,
                                         ScheduleConfig(scheduled_at=START_TIME))

        assert runner.process_due_schedules().executions_started == 2

    def test_max_contacts_caps_a_run(self, schedule_manager, workflow_manager, engine_factory, contact_directory,
                                     session_factory, seeded_contact, clock):
        add_contacts(session_factory, ("contact_2", []), ("contact_3", []))
        workflow_manager.create_workflow(scheduled_workflow())
        schedule_manager.create_schedule("wf_sched", ORG_ID, ScheduleType.ONCE,
                                         ScheduleConfig(scheduled_at=START_TIME))
        runner = ScheduledWorkflowRunner(schedule_manager, workflow_manager, engine_factory, contact_directory,
                                         max_contacts=2, clock=clock)

        assert runner.process_due_schedules().executions_started == 2

    def test_inactive_workflow_starts_nothing(self, runner, schedule_manager, workflow_manager, state_manager,
                                              seeded_contact):
        workflow_manager.create_workflow(scheduled_workflow(status=WorkflowStatusEnum.INACTIVE))
        schedule = schedule_manager.create_schedule("wf_sched", ORG_ID, ScheduleType.RECURRING,
                                                    ScheduleConfig(interval_minutes=60))

        result = runner.process_due_schedules()

        assert result.executions_started == 0
        assert state_manager.list_executions(workflow_id="wf_sched") == []
        stored = schedule_manager.get_schedule(schedule.id)
        assert stored.execution_count == 1
        assert stored.next_run_at == START_TIME + timedelta(hours=1)

    def test_recurring_schedule_runs_again_when_due(self, runner, schedule_manager, workflow_manager, clock,
                                                    seeded_contact):
        workflow = scheduled_workflow()
        workflow.settings.allow_reentry = True
        workflow_manager.create_workflow(workflow)
        schedule_manager.create_schedule("wf_sched", ORG_ID, ScheduleType.RECURRING,
                                         ScheduleConfig(interval_minutes=60))

        assert runner.process_due_schedules().executions_started == 1
        assert runner.process_due_schedules().schedules_processed == 0
        clock.advance(hours=1)
        assert runner.process_due_schedules().executions_started == 1

    def test_failed_run_is_retried(self, schedule_manager, workflow_manager, engine_factory, contact_directory,
                                   clock, seeded_contact):
        class UnavailableDirectory:
            def list_contacts(self, organization_id, tag_ids=None, limit=1000):
                raise StorageError("Failed to list contacts: database is locked", operation="list_contacts")

        workflow_manager.create_workflow(scheduled_workflow())
        schedule = schedule_manager.create_schedule("wf_sched", ORG_ID, ScheduleType.ONCE,
                                                    ScheduleConfig(scheduled_at=START_TIME))
        failing = ScheduledWorkflowRunner(schedule_manager, workflow_manager, engine_factory,
                                          UnavailableDirectory(), clock=clock)

        result = failing.process_due_schedules()

        assert result.executions_started == 0
        assert result.errors == [{"schedule_id": schedule.id,
                                  "error": "Failed to list contacts: database is locked"}]
        stored = schedule_manager.get_schedule(schedule.id)
        assert stored.last_run_status == RUN_FAILED
        assert stored.next_run_at == START_TIME
        assert stored.execution_count == 0

        healthy = ScheduledWorkflowRunner(schedule_manager, workflow_manager, engine_factory, contact_directory,
                                          clock=clock)
        assert healthy.process_due_schedules().executions_started == 1
        assert schedule_manager.get_schedule(schedule.id).last_run_status == RUN_COMPLETED
