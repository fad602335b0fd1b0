"""
Job Scheduler for Taktgeber

Owns the table of active jobs and their timers. Recurring jobs follow a cron
expression; one-time jobs fire once at an absolute time. Each firing builds a
``cronjob:trigger`` DomainEvent and hands it to the event publisher.

Concurrency:
- Table insertions and removals happen under the scheduler lock.
- Every per-job mutation and every firing happens under the job's own lock.
  A firing holds that lock across its publish call, so a job cannot be
  updated while its timer is delivering an event.
- Timer handles are asyncio tasks kept next to the job definition and
  cancelled before any mutation.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from croniter import croniter
from pydantic import ValidationError as PydanticValidationError

from .clock import Clock, system_clock
from .errors import (
    ValidationError,
    JobNotFoundError,
    ImmutableFieldError,
    TerminalStateError,
)
from .models import (
    CRONJOB_SOURCE,
    CRONJOB_TRIGGER,
    IMMUTABLE_FIELDS,
    DomainEvent,
    JobDefinition,
    JobKind,
    JobSpec,
    JobStats,
    JobUpdate,
    as_validation_error,
)
from .timeformat import format_absolute, parse_duration

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "cronjob:events"


def is_valid_cron(expression: Optional[str]) -> bool:
    """Check a cron expression without scheduling anything"""
    return bool(expression) and croniter.is_valid(expression)


@dataclass
class JobRunner:
    """A job definition paired with its live timer"""
    definition: JobDefinition
    handle: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def cancel(self) -> None:
        """Cancel the live timer, if any"""
        if self.handle is not None:
            if not self.handle.done() and self.handle is not asyncio.current_task():
                self.handle.cancel()
            self.handle = None


class JobScheduler:
    """
    Schedules recurring and one-time jobs and publishes an event per firing

    The publisher only needs an ``async publish(stream_name, event)`` method
    returning the stream entry id.
    """

    def __init__(
        self,
        publisher,
        stream_name: str = DEFAULT_STREAM,
        clock: Optional[Clock] = None,
        one_time_retries: int = 1,
        retry_delay: float = 5.0,
        source: str = CRONJOB_SOURCE,
    ):
        self.publisher = publisher
        self.stream_name = stream_name
        self.clock = clock or system_clock
        self.one_time_retries = max(0, one_time_retries)
        self.retry_delay = retry_delay
        self.source = source

        self._jobs: Dict[str, JobRunner] = {}
        self._lock = asyncio.Lock()

        self.stats = {
            'fired': 0,
            'published': 0,
            'publish_failures': 0,
        }

    # Job operations

    async def create_job(self, spec: Union[JobSpec, Mapping[str, Any]]) -> JobDefinition:
        """
        Create a job and arm its timer when enabled

        Raises:
            ValidationError: missing or invalid schedule, fire time not in the
                future, unknown kind, or malformed fields
        """
        spec = self._parse(JobSpec, spec)
        now = self.clock.now_ms()

        definition = JobDefinition(
            name=spec.name,
            kind=spec.kind,
            schedule=spec.schedule,
            scheduled_time=self._resolve_fire_time(spec.scheduled_time, spec.delay, now),
            enabled=spec.enabled,
            payload=copy.deepcopy(spec.payload),
            created_at=now,
            updated_at=now,
        )
        self._validate(definition, now, require_future=True)

        runner = JobRunner(definition)
        async with self._lock:
            self._jobs[definition.id] = runner
            if definition.enabled:
                self._arm(runner)

        logger.info(
            f"Job created: {definition.name} ({definition.id}), kind={definition.kind.value}, "
            f"schedule={definition.schedule}, scheduled_time={definition.scheduled_time}, "
            f"enabled={definition.enabled}"
        )
        return definition.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[JobDefinition]:
        """Snapshot of a job, or None if it does not exist"""
        runner = self._jobs.get(job_id)
        return runner.definition.model_copy(deep=True) if runner else None

    def list_jobs(self) -> List[JobDefinition]:
        """Snapshots of all jobs in creation order"""
        return [runner.definition.model_copy(deep=True) for runner in list(self._jobs.values())]

    async def update_job(self, job_id: str, partial: Union[JobUpdate, Mapping[str, Any]]) -> JobDefinition:
        """
        Merge a partial update into a job and re-arm its timer

        The merged definition is validated before the existing timer is
        touched, so a rejected update leaves the running timer (including a
        pending publish retry) as it was.

        Raises:
            JobNotFoundError, ImmutableFieldError, TerminalStateError, ValidationError
        """
        runner = self._get_runner(job_id)
        async with runner.lock:
            self._ensure_current(job_id, runner)
            definition = runner.definition
            update = self._parse_update(definition, partial)

            if definition.is_terminal:
                raise TerminalStateError(job_id, "update")

            updated = self._merge(definition, update, self.clock.now_ms())

            runner.cancel()
            runner.definition = updated
            if updated.enabled:
                self._arm(runner)

        logger.info(f"Job updated: {job_id} ({', '.join(sorted(update.changes())) or 'no changes'})")
        return updated.model_copy(deep=True)

    async def delete_job(self, job_id: str) -> bool:
        """Cancel a job's timer and remove it; returns whether it existed"""
        runner = self._jobs.get(job_id)
        if runner is None:
            return False

        async with runner.lock:
            async with self._lock:
                if self._jobs.get(job_id) is not runner:
                    return False
                runner.cancel()
                del self._jobs[job_id]

        logger.info(f"Job deleted: {job_id}")
        return True

    async def start_job(self, job_id: str) -> None:
        """
        Enable a job and arm its timer

        Raises:
            JobNotFoundError: unknown job
            TerminalStateError: one-time job already executed
            ValidationError: one-time fire time has already passed
        """
        runner = self._get_runner(job_id)
        async with runner.lock:
            self._ensure_current(job_id, runner)
            definition = runner.definition

            if definition.is_terminal:
                raise TerminalStateError(job_id, "start")

            now = self.clock.now_ms()
            if definition.kind == JobKind.ONE_TIME and definition.scheduled_time <= now:
                raise ValidationError(
                    f"Cannot start one-time job: scheduled time {format_absolute(definition.scheduled_time)} has passed",
                    field="scheduled_time",
                    expected="a time after now",
                )

            runner.cancel()
            runner.definition = definition.model_copy(update={"enabled": True, "updated_at": now})
            self._arm(runner)

        logger.info(f"Job started: {job_id}")

    async def stop_job(self, job_id: str) -> None:
        """Disable a job and cancel its timer; a no-op for executed jobs"""
        runner = self._get_runner(job_id)
        async with runner.lock:
            self._ensure_current(job_id, runner)
            runner.cancel()
            if runner.definition.enabled:
                runner.definition = runner.definition.model_copy(
                    update={"enabled": False, "updated_at": self.clock.now_ms()}
                )

        logger.info(f"Job stopped: {job_id}")

    async def stop_all(self) -> None:
        """Cancel every live timer, leaving job definitions untouched"""
        handles = []
        for job_id, runner in list(self._jobs.items()):
            if runner.handle is not None:
                handles.append(runner.handle)
                runner.cancel()
                logger.info(f"Job stopped: {job_id}")

        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    def active_job_count(self) -> int:
        """Number of enabled jobs"""
        return sum(1 for runner in self._jobs.values() if runner.definition.enabled)

    def get_job_stats(self) -> JobStats:
        """Counts of jobs by kind and state"""
        definitions = [runner.definition for runner in self._jobs.values()]
        return JobStats(
            total=len(definitions),
            recurring=sum(1 for d in definitions if d.kind == JobKind.RECURRING),
            one_time=sum(1 for d in definitions if d.kind == JobKind.ONE_TIME),
            active=sum(1 for d in definitions if d.enabled),
            executed=sum(1 for d in definitions if d.is_terminal),
        )

    # Validation

    def _parse(self, model_cls, data):
        if isinstance(data, model_cls):
            return data
        try:
            return model_cls.model_validate(data)
        except PydanticValidationError as e:
            raise as_validation_error(e) from e

    def _parse_update(self, definition: JobDefinition, partial) -> JobUpdate:
        if not isinstance(partial, JobUpdate) and isinstance(partial, Mapping):
            for name in IMMUTABLE_FIELDS:
                if name in partial:
                    raise ImmutableFieldError(name, definition.id)
            for name in ("kind", "type"):
                if name in partial and partial[name] != definition.kind.value and partial[name] != definition.kind:
                    raise ImmutableFieldError("kind", definition.id)

        update = self._parse(JobUpdate, partial)
        if update.kind is not None and update.kind != definition.kind:
            raise ImmutableFieldError("kind", definition.id)
        return update

    def _resolve_fire_time(self, scheduled_time: Optional[int], delay: Optional[str], now: int) -> Optional[int]:
        if delay is None:
            return scheduled_time
        if scheduled_time is not None:
            raise ValidationError("Specify either scheduled_time or delay, not both", field="delay")
        return now + parse_duration(delay)

    def _merge(self, definition: JobDefinition, update: JobUpdate, now: int) -> JobDefinition:
        changes = update.changes()
        delay = changes.pop("delay", None)
        if delay is not None:
            changes["scheduled_time"] = self._resolve_fire_time(changes.get("scheduled_time"), delay, now)
        if "payload" in changes:
            changes["payload"] = copy.deepcopy(changes["payload"])

        updated = definition.model_copy(update={**changes, "updated_at": now})
        self._validate(updated, now, require_future=updated.enabled or "scheduled_time" in changes)
        return updated

    def _validate(self, definition: JobDefinition, now: int, require_future: bool) -> None:
        if definition.kind == JobKind.RECURRING:
            if not definition.schedule:
                raise ValidationError("Recurring jobs require a schedule",
                                      field="schedule", expected="a cron expression")
            if not is_valid_cron(definition.schedule):
                raise ValidationError(f"Invalid cron expression: {definition.schedule!r}",
                                      field="schedule", expected="a cron expression such as '0 9 * * *'")
            if definition.scheduled_time is not None:
                raise ValidationError("Recurring jobs do not take a scheduled_time",
                                      field="scheduled_time")
            return

        if definition.scheduled_time is None:
            raise ValidationError("One-time jobs require a scheduled_time",
                                  field="scheduled_time", expected="epoch milliseconds or YYYYMMDDHHMMSS")
        if definition.schedule:
            raise ValidationError("One-time jobs do not take a schedule", field="schedule")
        if require_future and definition.scheduled_time <= now:
            raise ValidationError(
                f"scheduled_time must be in the future. Received: {definition.scheduled_time} "
                f"({format_absolute(definition.scheduled_time)}), current: {now} ({format_absolute(now)})",
                field="scheduled_time",
                expected="a time after now",
            )

    # Timers

    def _get_runner(self, job_id: str) -> JobRunner:
        runner = self._jobs.get(job_id)
        if runner is None:
            raise JobNotFoundError(job_id)
        return runner

    def _ensure_current(self, job_id: str, runner: JobRunner) -> None:
        # The job may have been deleted while we waited for its lock
        if self._jobs.get(job_id) is not runner:
            raise JobNotFoundError(job_id)

    def _arm(self, runner: JobRunner) -> None:
        definition = runner.definition
        if definition.kind == JobKind.RECURRING:
            timer = self._run_recurring(definition.id, definition.schedule)
        else:
            delay_ms = definition.scheduled_time - self.clock.now_ms()
            logger.info(
                f"Arming one-time job {definition.id} for {format_absolute(definition.scheduled_time)} "
                f"(in {round(delay_ms / 1000)}s)"
            )
            timer = self._run_one_time(definition.id, definition.scheduled_time)

        runner.handle = asyncio.create_task(timer, name=f"job-{definition.id}")
        runner.handle.add_done_callback(self._on_timer_done)

    async def _run_recurring(self, job_id: str, schedule: str) -> None:
        last_tick = self.clock.now_ms()
        while True:
            # Never compute a tick at or before the one just fired
            base = max(self.clock.now_ms(), last_tick)
            next_tick = croniter(schedule, self.clock.local_datetime(base)).get_next(float)
            tick = int(round(next_tick * 1000))

            await self.clock.sleep((tick - self.clock.now_ms()) / 1000)
            last_tick = tick
            await self._fire(job_id, tick)

    async def _run_one_time(self, job_id: str, fire_time: int) -> None:
        await self.clock.sleep((fire_time - self.clock.now_ms()) / 1000)

        attempts = self.one_time_retries + 1
        for attempt in range(1, attempts + 1):
            final = attempt == attempts
            outcome = await self._fire(job_id, fire_time, final=final)
            if outcome is not False or final:
                return
            logger.warning(
                f"Retrying one-time job {job_id} in {self.retry_delay}s (attempt {attempt + 1}/{attempts})"
            )
            await self.clock.sleep(self.retry_delay)

    async def _fire(self, job_id: str, fire_time: int, final: bool = True) -> Optional[bool]:
        """
        Publish one trigger event for a job

        Returns True when delivered, False when the publish failed, and None
        when the firing was skipped because the job was removed or re-armed.
        """
        runner = self._jobs.get(job_id)
        if runner is None:
            logger.warning(f"Job not found during execution: {job_id}")
            return None

        async with runner.lock:
            if self._jobs.get(job_id) is not runner or runner.handle is not asyncio.current_task():
                logger.debug(f"Skipping superseded timer for job {job_id}")
                return None

            definition = runner.definition
            event = DomainEvent(
                type=CRONJOB_TRIGGER,
                source=self.source,
                timestamp=self.clock.now_ms(),
                data={
                    "jobId": definition.id,
                    "jobName": definition.name,
                    "scheduledTime": fire_time,
                    "payload": copy.deepcopy(definition.payload),
                },
            )
            logger.info(f"Firing job {definition.name} ({definition.id}), event {event.event_id}")
            self.stats['fired'] += 1

            try:
                entry_id = await self.publisher.publish(self.stream_name, event)
            except Exception as e:
                self.stats['publish_failures'] += 1
                logger.error(f"Failed to publish event for job {definition.id}: {e}")
                runner.definition = definition.model_copy(update={"last_error": str(e)})
                if definition.kind == JobKind.ONE_TIME and final:
                    self._mark_executed(runner)
                    logger.error(
                        f"One-time job {definition.id} gave up after {self.one_time_retries + 1} "
                        f"attempt(s); event {event.event_id} was not delivered"
                    )
                return False

            self.stats['published'] += 1
            logger.info(f"Event {event.event_id} published to {self.stream_name} as {entry_id}")

            if definition.kind == JobKind.ONE_TIME:
                runner.definition = runner.definition.model_copy(update={"last_error": None})
                self._mark_executed(runner)
                logger.info(f"One-time job executed and disabled: {definition.id}")
            return True

    def _mark_executed(self, runner: JobRunner) -> None:
        now = self.clock.now_ms()
        runner.definition = runner.definition.model_copy(
            update={"executed": True, "executed_at": now, "enabled": False, "updated_at": now}
        )
        # The timer is consumed; nothing can fire this job again
        runner.handle = None

    def _on_timer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Timer {task.get_name()} stopped unexpectedly: {error!r}")
