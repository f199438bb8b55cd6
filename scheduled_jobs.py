#!/usr/bin/env python3
"""
Scheduled Jobs for the NPR story sync CLI

Periodically refreshes the story queue from subscribed topics and drains it
into the content store, using the `schedule` library for timing.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import schedule

from config import QUEUE_BATCH_SIZE, QUEUE_INTERVAL
from logging_config import logger
from npr_api.story_queue import StoryQueue, StoryQueueWorker
from npr_api.utils import clear_reports, save_reports


class JobStatus(Enum):
    """Job execution status"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobType(Enum):
    """Types of scheduled jobs"""

    UPDATE_QUEUE = "update_queue"
    PROCESS_QUEUE = "process_queue"


@dataclass
class JobExecution:
    """Represents a job execution record"""

    job_type: JobType
    started: datetime
    ended: Optional[datetime] = None
    status: JobStatus = JobStatus.PENDING
    output: str = ""
    error: str = ""


class QueueJobs:
    """Queue refresh and queue processing on a fixed interval"""

    def __init__(
        self,
        pull_client,
        queue: StoryQueue,
        interval: int = QUEUE_INTERVAL,
        batch_size: int = QUEUE_BATCH_SIZE,
        scheduler: Optional[schedule.Scheduler] = None,
        store=None,
    ):
        self.pull_client = pull_client
        self.store = store
        self.queue = queue
        self.interval = interval
        self.batch_size = batch_size
        self.scheduler = scheduler or schedule.Scheduler()
        self.executions: List[JobExecution] = []

        self.jobs: Dict[JobType, Callable[[], str]] = {
            JobType.UPDATE_QUEUE: self.update_queue,
            JobType.PROCESS_QUEUE: self.process_queue,
        }

    def update_queue(self) -> str:
        """Refresh the queue once the configured interval has passed"""
        settings = self.pull_client.settings
        if not settings.get("pull", "queue_enable"):
            return "skipped: queue is disabled"

        elapsed = (datetime.now().astimezone() - self.pull_client.get_last_update_time()).total_seconds()
        if elapsed < int(settings.get("pull", "queue_interval") or 0):
            return "skipped: interval has not passed"

        if not self.pull_client.update_queue():
            raise RuntimeError("The story queue could not be updated")
        return f"{self.queue.number_of_items()} items queued"

    def process_queue(self) -> str:
        stats = StoryQueueWorker(self.pull_client).run(self.queue, limit=self.batch_size)
        # Tallies do not carry over between batches
        if self.store is not None:
            save_reports(self.store)
        else:
            clear_reports()
        logger.log_queue_run(stats)
        return f"{stats['processed']} processed, {stats['failed']} failed, {stats['remaining']} remaining"

    def run_job(self, job_type: JobType) -> JobExecution:
        """Execute a job immediately; failures are logged, never raised"""
        execution = JobExecution(job_type=job_type, started=datetime.now(), status=JobStatus.RUNNING)
        self.executions.append(execution)
        logger.log_operation_start("execute_scheduled_job", job_type=job_type.value)

        try:
            execution.output = self.jobs[job_type]()
            execution.status = (
                JobStatus.SKIPPED if execution.output.startswith("skipped") else JobStatus.COMPLETED
            )
        except Exception as e:
            execution.status = JobStatus.FAILED
            execution.error = str(e)
            logger.log_error(e, {"job_type": job_type.value})

        execution.ended = datetime.now()
        logger.log_operation_end(
            "execute_scheduled_job",
            execution.status != JobStatus.FAILED,
            job_type=job_type.value,
            output=execution.output,
            duration=(execution.ended - execution.started).total_seconds(),
        )
        return execution

    def register(self):
        """Schedule both jobs every interval"""
        self.scheduler.clear()
        for job_type in (JobType.UPDATE_QUEUE, JobType.PROCESS_QUEUE):
            self.scheduler.every(self.interval).seconds.do(self.run_job, job_type)
        logger.log_operation_end("register_scheduled_jobs", True, interval=self.interval)

    def run_pending(self):
        self.scheduler.run_pending()

    def run_forever(self, max_loops: Optional[int] = None, sleep: Callable[[float], None] = time.sleep):
        """Run both jobs now, then keep running scheduled jobs"""
        self.register()
        self.scheduler.run_all()

        loops = 0
        while max_loops is None or loops < max_loops:
            self.scheduler.run_pending()
            sleep(1)
            loops += 1

    def get_job_history(self, job_type: Optional[JobType] = None, limit: int = 50) -> List[JobExecution]:
        """Get job execution history, most recent first"""
        executions = [e for e in self.executions if job_type is None or e.job_type == job_type]
        executions.sort(key=lambda x: x.started, reverse=True)
        return executions[:limit]
