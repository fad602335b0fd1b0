"""
Tests for the job scheduler
"""

from datetime import date

import pytest

from conftest import RecordingPublisher
from taktgeber.core.errors import (
    ImmutableFieldError,
    JobNotFoundError,
    TerminalStateError,
    ValidationError,
)
from taktgeber.core.models import CRONJOB_TRIGGER, JobKind, JobSpec
from taktgeber.core.scheduler import JobScheduler, is_valid_cron
from taktgeber.core.timeformat import parse_absolute

EVERY_MINUTE = "* * * * *"


def make_scheduler(publisher, clock, **kwargs):
    return JobScheduler(publisher, clock=clock, **kwargs)


def fired_job_ids(publisher):
    return [event.data["jobId"] for _, event in publisher.events]


class TestJobCreation:
    """Creating and validating jobs"""

    @pytest.mark.asyncio
    async def test_create_recurring_job(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        job = await scheduler.create_job({
            "name": "morning report",
            "type": "recurring",
            "schedule": "0 9 * * *",
            "payload": {"chat": "team"},
        })

        assert job.kind == JobKind.RECURRING
        assert job.enabled is True
        assert job.executed is False
        assert job.created_at == clock.now
        assert job.updated_at == clock.now
        assert scheduler.get_job(job.id) == job
        assert scheduler.active_job_count() == 1
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_create_accepts_spec_model(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        job = await scheduler.create_job(JobSpec(name="reminder", kind=JobKind.ONE_TIME, delay="10m"))

        assert job.scheduled_time == clock.now + 600_000
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_create_one_time_from_absolute_text(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        job = await scheduler.create_job({
            "name": "call back",
            "type": "one-time",
            "scheduled_time": "20300107100000",
        })

        assert job.scheduled_time == parse_absolute("20300107100000")
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_create_one_time_from_unquoted_absolute_time(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        job = await scheduler.create_job({"name": "call back", "type": "one-time", "scheduled_time": 20300107093015})

        assert job.scheduled_time == parse_absolute("20300107093015")
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_unserializable_payload_rejected(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({
                "name": "new year",
                "type": "one-time",
                "delay": "1m",
                "payload": {"when": date(2030, 1, 1)},
            })

        assert exc_info.value.field == "payload"
        assert scheduler.list_jobs() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("schedule", ["every day", "0 25 * * *", "61 * * * *"])
    async def test_invalid_cron_rejected(self, publisher, clock, schedule):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({"name": "bad", "type": "recurring", "schedule": schedule})

        assert exc_info.value.field == "schedule"
        assert scheduler.list_jobs() == []

    @pytest.mark.asyncio
    async def test_recurring_requires_schedule(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({"name": "no schedule", "type": "recurring"})

        assert exc_info.value.field == "schedule"

    @pytest.mark.asyncio
    async def test_one_time_requires_scheduled_time(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({"name": "no time", "type": "one-time"})

        assert exc_info.value.field == "scheduled_time"

    @pytest.mark.asyncio
    async def test_past_fire_time_rejected(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({
                "name": "too late",
                "type": "one-time",
                "scheduled_time": clock.now - 1000,
            })

        assert exc_info.value.field == "scheduled_time"
        assert "future" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({"name": "weekly", "type": "weekly", "schedule": "0 9 * * 1"})

        assert exc_info.value.field == "kind"

    @pytest.mark.asyncio
    async def test_invalid_delay_rejected(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.create_job({"name": "soon", "type": "one-time", "delay": "90m"})

        assert exc_info.value.field == "delay"

    @pytest.mark.asyncio
    async def test_disabled_job_is_not_armed(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        await scheduler.create_job({"name": "paused", "type": "recurring", "schedule": EVERY_MINUTE, "enabled": False})
        await clock.advance(120)

        assert publisher.events == []
        assert scheduler.active_job_count() == 0

    def test_is_valid_cron(self):
        assert is_valid_cron("*/5 * * * *")
        assert not is_valid_cron("")
        assert not is_valid_cron(None)
        assert not is_valid_cron("61 * * * *")


class TestFiring:
    """Timers and the events they publish"""

    @pytest.mark.asyncio
    async def test_recurring_job_fires_each_tick(self, publisher, clock, start_ms):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        await clock.advance(29)
        assert publisher.events == []

        await clock.advance(1)
        assert len(publisher.events) == 1

        await clock.advance(120)
        assert len(publisher.events) == 3

        scheduled = [event.data["scheduledTime"] for _, event in publisher.events]
        nine = parse_absolute("20300107090000")
        assert scheduled == [nine, nine + 60_000, nine + 120_000]
        assert fired_job_ids(publisher) == [job.id] * 3
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_trigger_event_shape(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock, stream_name="jobs:test")
        job = await scheduler.create_job({
            "name": "report",
            "type": "recurring",
            "schedule": EVERY_MINUTE,
            "payload": {"to": "628111222333", "text": "hi"},
        })

        await clock.advance(30)

        stream_name, event = publisher.events[0]
        assert stream_name == "jobs:test"
        assert event.type == CRONJOB_TRIGGER
        assert event.source == "cronjob"
        assert event.timestamp == clock.now
        assert event.data == {
            "jobId": job.id,
            "jobName": "report",
            "scheduledTime": parse_absolute("20300107090000"),
            "payload": {"to": "628111222333", "text": "hi"},
        }
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_one_time_job_fires_once(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        await clock.advance(10)
        await clock.advance(3600)

        assert fired_job_ids(publisher) == [job.id]
        executed = scheduler.get_job(job.id)
        assert executed.executed is True
        assert executed.enabled is False
        assert executed.executed_at == job.scheduled_time
        assert executed.is_terminal
        assert scheduler.active_job_count() == 0

    @pytest.mark.asyncio
    async def test_fired_payload_is_independent_copy(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({
            "name": "copy",
            "type": "recurring",
            "schedule": EVERY_MINUTE,
            "payload": {"items": [1, 2]},
        })

        await clock.advance(30)
        publisher.events[0][1].data["payload"]["items"].append(3)

        assert scheduler.get_job(job.id).payload == {"items": [1, 2]}
        await scheduler.stop_all()


class TestJobLifecycle:
    """Start, stop, update and delete"""

    @pytest.mark.asyncio
    async def test_stop_prevents_firing(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        await scheduler.stop_job(job.id)
        await clock.advance(300)

        assert publisher.events == []
        assert scheduler.get_job(job.id).enabled is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        await scheduler.start_job(job.id)
        await scheduler.start_job(job.id)
        await clock.advance(90)

        assert len(publisher.events) == 2
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        await scheduler.stop_job(job.id)
        await clock.advance(60)
        await scheduler.start_job(job.id)
        await clock.advance(60)

        assert len(publisher.events) == 1
        assert scheduler.get_job(job.id).enabled is True
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_start_elapsed_one_time_job(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        await scheduler.stop_job(job.id)
        await clock.advance(20)

        with pytest.raises(ValidationError):
            await scheduler.start_job(job.id)
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_executed_job_is_terminal(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "5s"})
        await clock.advance(5)

        with pytest.raises(TerminalStateError):
            await scheduler.start_job(job.id)
        with pytest.raises(TerminalStateError):
            await scheduler.update_job(job.id, {"name": "again"})

        # Stopping an executed job is a no-op
        await scheduler.stop_job(job.id)
        assert scheduler.get_job(job.id).executed is True

    @pytest.mark.asyncio
    async def test_unknown_job(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)

        with pytest.raises(JobNotFoundError):
            await scheduler.update_job("missing", {"name": "x"})
        with pytest.raises(JobNotFoundError):
            await scheduler.start_job("missing")
        with pytest.raises(JobNotFoundError):
            await scheduler.stop_job("missing")
        assert await scheduler.delete_job("missing") is False
        assert scheduler.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_update_reschedules(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        await clock.advance(5)
        updated = await scheduler.update_job(job.id, {"schedule": "0 10 * * *", "name": "ten o'clock"})
        await clock.advance(120)

        assert publisher.events == []
        assert updated.name == "ten o'clock"
        assert updated.updated_at == clock.now - 120_000
        assert updated.created_at == job.created_at
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_update_one_time_delay(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        updated = await scheduler.update_job(job.id, {"delay": "1m"})
        await clock.advance(30)
        assert publisher.events == []

        await clock.advance(30)
        assert fired_job_ids(publisher) == [job.id]
        assert updated.scheduled_time == job.created_at + 60_000

    @pytest.mark.asyncio
    async def test_failed_update_keeps_previous_timer(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        with pytest.raises(ValidationError):
            await scheduler.update_job(job.id, {"schedule": "not a cron"})
        await clock.advance(30)

        assert scheduler.get_job(job.id).schedule == EVERY_MINUTE
        assert len(publisher.events) == 1
        await scheduler.stop_all()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["id", "created_at", "executed", "last_error"])
    async def test_immutable_fields(self, publisher, clock, field):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        with pytest.raises(ImmutableFieldError) as exc_info:
            await scheduler.update_job(job.id, {field: "changed"})

        assert exc_info.value.field == field
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_kind_cannot_change(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        with pytest.raises(ImmutableFieldError):
            await scheduler.update_job(job.id, {"type": "one-time"})

        # Restating the current kind is allowed
        updated = await scheduler.update_job(job.id, {"type": "recurring", "name": "renamed"})
        assert updated.name == "renamed"
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_delete_cancels_timer(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        assert await scheduler.delete_job(job.id) is True
        assert await scheduler.delete_job(job.id) is False
        await clock.advance(300)

        assert publisher.events == []
        assert scheduler.list_jobs() == []

    @pytest.mark.asyncio
    async def test_stop_all_keeps_definitions(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        await scheduler.create_job({"name": "a", "type": "recurring", "schedule": EVERY_MINUTE})
        await scheduler.create_job({"name": "b", "type": "one-time", "delay": "30s"})

        await scheduler.stop_all()
        await clock.advance(300)

        assert publisher.events == []
        assert [job.enabled for job in scheduler.list_jobs()] == [True, True]

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({
            "name": "copy",
            "type": "recurring",
            "schedule": "0 9 * * *",
            "payload": {"tags": ["a"]},
        })

        snapshot = scheduler.get_job(job.id)
        snapshot.payload["tags"].append("b")
        job.payload["tags"].append("c")

        assert scheduler.get_job(job.id).payload == {"tags": ["a"]}
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_job_stats(self, publisher, clock):
        scheduler = make_scheduler(publisher, clock)
        await scheduler.create_job({"name": "a", "type": "recurring", "schedule": EVERY_MINUTE})
        await scheduler.create_job({"name": "b", "type": "recurring", "schedule": EVERY_MINUTE, "enabled": False})
        await scheduler.create_job({"name": "c", "type": "one-time", "delay": "1s"})
        await clock.advance(1)

        stats = scheduler.get_job_stats()

        assert stats.total == 3
        assert stats.recurring == 2
        assert stats.one_time == 1
        assert stats.active == 1
        assert stats.executed == 1
        await scheduler.stop_all()


class TestPublishFailures:
    """Behaviour when the stream store rejects an event"""

    @pytest.mark.asyncio
    async def test_recurring_failure_recorded_and_retried_next_tick(self, clock):
        publisher = RecordingPublisher(failures=1)
        scheduler = make_scheduler(publisher, clock)
        job = await scheduler.create_job({"name": "tick", "type": "recurring", "schedule": EVERY_MINUTE})

        await clock.advance(30)
        failed = scheduler.get_job(job.id)
        assert publisher.events == []
        assert "connection refused" in failed.last_error
        assert failed.enabled is True

        await clock.advance(60)
        assert len(publisher.events) == 1
        assert scheduler.stats['publish_failures'] == 1
        await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_one_time_retry_succeeds(self, clock):
        publisher = RecordingPublisher(failures=1)
        scheduler = make_scheduler(publisher, clock, one_time_retries=1, retry_delay=5.0)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        await clock.advance(10)
        pending = scheduler.get_job(job.id)
        assert pending.executed is False
        assert pending.last_error is not None

        await clock.advance(5)
        done = scheduler.get_job(job.id)
        assert publisher.attempts == 2
        assert fired_job_ids(publisher) == [job.id]
        assert done.executed is True
        assert done.last_error is None

    @pytest.mark.asyncio
    async def test_one_time_gives_up_after_retries(self, clock):
        publisher = RecordingPublisher(failures=5)
        scheduler = make_scheduler(publisher, clock, one_time_retries=2, retry_delay=1.0)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        await clock.advance(60)

        final = scheduler.get_job(job.id)
        assert publisher.attempts == 3
        assert final.executed is True
        assert final.enabled is False
        assert "connection refused" in final.last_error

    @pytest.mark.asyncio
    async def test_update_during_retry_wait_supersedes_retry(self, clock):
        publisher = RecordingPublisher(failures=1)
        scheduler = make_scheduler(publisher, clock, one_time_retries=1, retry_delay=5.0)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        await clock.advance(10)
        await scheduler.update_job(job.id, {"delay": "1m"})
        await clock.advance(30)
        assert publisher.attempts == 1

        await clock.advance(30)
        assert publisher.attempts == 2
        assert scheduler.get_job(job.id).executed is True

    @pytest.mark.asyncio
    async def test_rejected_update_during_retry_wait_keeps_retry(self, clock):
        publisher = RecordingPublisher(failures=1)
        scheduler = make_scheduler(publisher, clock, one_time_retries=1, retry_delay=5.0)
        job = await scheduler.create_job({"name": "once", "type": "one-time", "delay": "10s"})

        await clock.advance(10)
        with pytest.raises(ValidationError):
            await scheduler.update_job(job.id, {"name": "renamed"})
        await clock.advance(1)

        # No immediate re-fire with a fresh retry budget
        assert publisher.attempts == 1
        assert scheduler.get_job(job.id).name == "once"

        await clock.advance(4)
        assert publisher.attempts == 2
        assert scheduler.get_job(job.id).executed is True
