"""
Job scheduler for periodic dispatch passes.

Wraps APScheduler with execution tracking, missed job handling
and health reporting for daemon mode.
"""

import logging
from typing import Optional, Callable, Dict, Any, List
from datetime import datetime, timedelta
from enum import Enum
from dataclasses import dataclass, field
import sys

try:
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.interval import IntervalTrigger
    from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, EVENT_JOB_MAX_INSTANCES
    from apscheduler.jobstores.memory import MemoryJobStore
    from apscheduler.executors.pool import ThreadPoolExecutor
    import pytz
except ImportError as e:
    print(f"Missing required dependencies: {e}")
    print("Please install: pip install apscheduler pytz")
    sys.exit(1)


DISPATCH_JOB_NAME = "whatsapp_dispatch"


class JobStatus(str, Enum):
    """Job execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    scheduled_time: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: JobStatus = JobStatus.PENDING
    result: Optional[Any] = None
    error: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def is_failed(self) -> bool:
        return self.status == JobStatus.FAILED


@dataclass
class JobConfig:
    """Configuration for a scheduled job."""
    name: str
    function: Callable
    interval_seconds: int
    timezone: str = "America/Argentina/Buenos_Aires"
    max_instances: int = 1
    misfire_grace_time: int = 30
    coalesce: bool = True
    enabled: bool = True
    # Maps a returned result to an error message when the run should count as failed
    failure_check: Optional[Callable[[Any], Optional[str]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class JobScheduler:
    """Background job scheduler with execution tracking."""

    def __init__(self,
                 timezone: str = "America/Argentina/Buenos_Aires",
                 max_workers: int = 1,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize job scheduler.

        Args:
            timezone: Default timezone for scheduling
            max_workers: Maximum number of concurrent jobs
            logger: Logger instance
        """
        self.timezone = pytz.timezone(timezone)
        self.logger = logger or logging.getLogger(__name__)

        self.scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=max_workers)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 30
            },
            timezone=self.timezone
        )

        self.job_executions: List[JobExecution] = []
        self.running_jobs: Dict[str, JobExecution] = {}

        self.stats = {
            'jobs_scheduled': 0,
            'jobs_executed': 0,
            'jobs_failed': 0,
            'jobs_missed': 0,
            'total_execution_time': 0.0,
        }

        self.started = False
        self._setup_event_listeners()

        self.logger.info("Job scheduler initialized")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start the scheduler."""
        if not self.scheduler.running:
            self.scheduler.start()
            self.started = True
            self.logger.info("Job scheduler started")
        else:
            self.logger.warning("Job scheduler is already running")

    def shutdown(self, wait: bool = True):
        """
        Shutdown the scheduler.

        Args:
            wait: Whether to wait for running jobs to complete
        """
        if self.scheduler.running:
            self.logger.info("Shutting down job scheduler...")
            self.scheduler.shutdown(wait=wait)
            self.logger.info("Job scheduler shutdown complete")

    def add_job(self, config: JobConfig) -> Optional[str]:
        """
        Add a job to the scheduler.

        Args:
            config: Job configuration

        Returns:
            Job ID, or None when the job is disabled
        """
        if not config.enabled:
            self.logger.info(f"Job {config.name} is disabled, skipping")
            return None

        job = self.scheduler.add_job(
            self._wrap_job_function(config),
            trigger=IntervalTrigger(seconds=config.interval_seconds, timezone=config.timezone),
            id=config.name,
            name=config.name,
            max_instances=config.max_instances,
            misfire_grace_time=config.misfire_grace_time,
            coalesce=config.coalesce,
            replace_existing=True
        )

        self.stats['jobs_scheduled'] += 1

        next_run = getattr(job, 'next_run_time', None)
        self.logger.info(
            f"Job '{config.name}' scheduled",
            extra={
                "job_id": job.id,
                "interval_seconds": config.interval_seconds,
                "next_run": next_run.isoformat() if next_run else None
            }
        )

        return job.id

    def get_scheduler_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        success_rate = 0.0
        avg_execution_time = 0.0
        if self.stats['jobs_executed'] > 0:
            successful_jobs = self.stats['jobs_executed'] - self.stats['jobs_failed']
            success_rate = successful_jobs / self.stats['jobs_executed']
            avg_execution_time = self.stats['total_execution_time'] / self.stats['jobs_executed']

        return {
            'scheduler_running': self.scheduler.running,
            'total_jobs': len(self.scheduler.get_jobs()),
            'running_jobs': len(self.running_jobs),
            'stats': {
                **self.stats,
                'success_rate': success_rate,
                'avg_execution_time_seconds': avg_execution_time
            },
            'last_updated': datetime.now().isoformat()
        }

    def _wrap_job_function(self, config: JobConfig) -> Callable:
        """Wrap job function with execution tracking."""

        def wrapped_function():
            execution = JobExecution(
                job_id=config.name,
                scheduled_time=datetime.now(self.timezone)
            )

            self.running_jobs[config.name] = execution
            self.job_executions.append(execution)

            execution.start_time = datetime.now()
            execution.status = JobStatus.RUNNING

            self.logger.debug(f"Starting job '{config.name}'")

            try:
                result = config.function()

                execution.end_time = datetime.now()
                execution.duration_seconds = (execution.end_time - execution.start_time).total_seconds()
                execution.result = result

                self.stats['jobs_executed'] += 1
                self.stats['total_execution_time'] += execution.duration_seconds

                failure = config.failure_check(result) if config.failure_check else None
                if failure:
                    execution.status = JobStatus.FAILED
                    execution.error = failure
                    self.stats['jobs_failed'] += 1

                    self.logger.warning(
                        f"Job '{config.name}' reported failure: {failure}",
                        extra={"job_id": config.name, "duration_seconds": execution.duration_seconds}
                    )
                    return result

                execution.status = JobStatus.COMPLETED

                self.logger.info(
                    f"Job '{config.name}' completed",
                    extra={
                        "job_id": config.name,
                        "duration_seconds": execution.duration_seconds,
                    }
                )
                return result

            except Exception as e:
                execution.end_time = datetime.now()
                execution.duration_seconds = (execution.end_time - execution.start_time).total_seconds()
                execution.status = JobStatus.FAILED
                execution.error = str(e)

                self.stats['jobs_executed'] += 1
                self.stats['jobs_failed'] += 1

                self.logger.error(
                    f"Job '{config.name}' failed: {e}",
                    extra={"job_id": config.name, "duration_seconds": execution.duration_seconds},
                    exc_info=True
                )
                raise

            finally:
                self.running_jobs.pop(config.name, None)

                # keep last 100
                if len(self.job_executions) > 100:
                    self.job_executions = self.job_executions[-100:]

        return wrapped_function

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners."""

        def job_error(event):
            self.logger.debug(f"Job error: {event.job_id} - {event.exception}")

        def job_missed(event):
            self.stats['jobs_missed'] += 1
            self.logger.warning(f"Job missed: {event.job_id} at {event.scheduled_run_time}")

            self.job_executions.append(JobExecution(
                job_id=event.job_id,
                scheduled_time=event.scheduled_run_time,
                status=JobStatus.MISSED
            ))

        def max_instances_reached(event):
            # Previous pass still running; the next tick will pick up what is left
            self.logger.warning(f"Max instances reached for job: {event.job_id}")

        self.scheduler.add_listener(job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed, EVENT_JOB_MISSED)
        self.scheduler.add_listener(max_instances_reached, EVENT_JOB_MAX_INSTANCES)

    def health_check(self) -> Dict[str, Any]:
        """Perform scheduler health check."""
        is_healthy = True
        issues = []

        if not self.scheduler.running:
            is_healthy = False
            issues.append("Scheduler is not running")

        recent_executions = [
            e for e in self.job_executions
            if e.start_time and e.start_time > datetime.now() - timedelta(hours=1)
        ]

        if recent_executions:
            failed_executions = [e for e in recent_executions if e.is_failed]
            failure_rate = len(failed_executions) / len(recent_executions)

            if failure_rate > 0.5:
                is_healthy = False
                issues.append(f"High failure rate: {failure_rate:.1%}")

        return {
            'healthy': is_healthy,
            'issues': issues,
            'running_jobs': len(self.running_jobs),
            'recent_executions': len(recent_executions),
            'scheduler_running': self.scheduler.running,
            'timestamp': datetime.now().isoformat()
        }


def create_dispatch_scheduler(dispatch_function: Callable,
                              interval_seconds: int = 60,
                              timezone: str = "America/Argentina/Buenos_Aires",
                              logger: Optional[logging.Logger] = None,
                              failure_check: Optional[Callable[[Any], Optional[str]]] = None) -> JobScheduler:
    """
    Create a scheduler that runs a dispatch pass every ``interval_seconds``.

    Args:
        dispatch_function: Zero-argument callable running one pass
        interval_seconds: Seconds between pass starts
        timezone: Timezone for scheduling
        logger: Logger instance
        failure_check: Turns a pass result into an error message when the
            pass should be tracked as failed

    Returns:
        Configured JobScheduler instance
    """
    scheduler = JobScheduler(timezone=timezone, logger=logger)

    scheduler.add_job(JobConfig(
        name=DISPATCH_JOB_NAME,
        function=dispatch_function,
        interval_seconds=interval_seconds,
        timezone=timezone,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=max(1, interval_seconds // 2),
        failure_check=failure_check,
        metadata={'description': 'Periodic WhatsApp notification dispatch'}
    ))

    return scheduler

