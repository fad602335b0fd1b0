"""
Scheduler Service

Wires the Redis connection, the event publisher and the job scheduler into a
long-running process, seeds jobs from configuration and handles shutdown.
"""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .config import ServiceConfig
from .core.clock import Clock
from .core.errors import TaktgeberError
from .core.models import JobDefinition
from .core.scheduler import JobScheduler
from .events.publisher import EventPublisher
from .events.redis_client import close_redis_client

logger = logging.getLogger(__name__)

SERVICE_NAME = "cronjob"


class SchedulerService:
    """Runs a JobScheduler that publishes to the configured stream"""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        redis_client=None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or ServiceConfig()
        self.redis = redis_client
        self.clock = clock

        self.publisher: Optional[EventPublisher] = None
        self.scheduler: Optional[JobScheduler] = None
        self.running = False
        self.started_at: Optional[datetime] = None
        # Created inside the running loop by run_forever() or start()
        self._shutdown: Optional[asyncio.Event] = None

    async def start(self) -> List[JobDefinition]:
        """Connect, build the scheduler and seed configured jobs; returns the seeded jobs"""
        if self.running:
            logger.warning("Scheduler service already running")
            return []

        logger.info(f"Starting scheduler service, stream={self.config.stream_name}")

        self.publisher = EventPublisher(self.redis, self.config)
        await self.publisher.initialize()

        self.scheduler = JobScheduler(
            self.publisher,
            stream_name=self.config.stream_name,
            clock=self.clock,
            one_time_retries=self.config.one_time_retries,
            retry_delay=self.config.publish_retry_delay,
        )

        self.running = True
        self.started_at = datetime.now(timezone.utc)
        if self._shutdown is None:
            self._shutdown = asyncio.Event()

        seeded = await self.seed_jobs(self.config.jobs)
        logger.info(f"Scheduler service started with {len(seeded)} seeded job(s)")
        return seeded

    async def seed_jobs(self, specs: List[Dict[str, Any]]) -> List[JobDefinition]:
        """Create each job spec, logging and skipping the ones that are rejected"""
        created = []
        for spec in specs:
            try:
                created.append(await self.scheduler.create_job(spec))
            except TaktgeberError as e:
                label = spec.get('name', '<unnamed>') if isinstance(spec, Mapping) else repr(spec)
                logger.error(f"Skipping configured job {label}: {e}")
        return created

    def health(self) -> Dict[str, Any]:
        """Service health summary"""
        stats = self.scheduler.get_job_stats() if self.scheduler else None
        return {
            'service': SERVICE_NAME,
            'status': 'healthy' if self.running else 'stopped',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'active_jobs': self.scheduler.active_job_count() if self.scheduler else 0,
            'jobs': stats.model_dump() if stats else None,
            'publishing': dict(self.scheduler.stats) if self.scheduler else None,
        }

    async def stop(self) -> None:
        """Cancel all timers and release the Redis connection"""
        if not self.running:
            return

        logger.info("Shutting down scheduler service")
        self.running = False

        if self.scheduler:
            await self.scheduler.stop_all()

        # Only the shared client is ours to close
        if self.redis is None:
            await close_redis_client()

        if self._shutdown is not None:
            self._shutdown.set()
        logger.info("Scheduler service stopped")

    def request_shutdown(self) -> None:
        """Signal-safe request to stop ``run_forever``"""
        logger.info("Shutdown requested")
        if self._shutdown is not None:
            self._shutdown.set()

    async def run_forever(self) -> None:
        """Start, then block until SIGINT/SIGTERM or ``request_shutdown()``"""
        self._shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform or outside the main thread
                logger.debug(f"Cannot install handler for {sig.name}")

        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()
