"""Submit-and-poll state machine for asynchronous report jobs."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from adrev.common.logging import StructuredLogger, setup_integrations_logger

from .errors import GamReportError, JobFailedError

IN_PROGRESS_STATUSES = {"IN_PROGRESS", "PENDING"}
COMPLETED = "COMPLETED"
FAILED = "FAILED"


class JobState(str, enum.Enum):
    SUBMITTED = "SUBMITTED"
    POLLING = "POLLING"
    DONE = "DONE"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class ReportApi(Protocol):
    def submit_job(self, network_code: str, start_date: date, end_date: date) -> str:
        ...

    def poll_status(self, network_code: str, job_id: str) -> str:
        ...


@dataclass
class ReportJob:
    job_id: str
    start_date: date
    end_date: date
    status: str = "IN_PROGRESS"
    state: JobState = JobState.SUBMITTED
    attempts: int = 0

    @property
    def terminal(self) -> bool:
        return self.state in (JobState.DONE, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED)


class ReportJobRunner:
    """
    Drive one report job from submission to a terminal state.

    The job starts as ``IN_PROGRESS``; every ``poll_interval`` seconds the
    status is re-read until it leaves ``IN_PROGRESS``/``PENDING`` or
    ``max_attempts`` polls were made.  With ``tolerate_poll_errors`` a failed
    poll is logged and counted as still in progress.
    """

    def __init__(
        self,
        client: ReportApi,
        *,
        poll_interval: float = 10.0,
        max_attempts: int = 90,
        tolerate_poll_errors: bool = True,
        stop_event: Optional[threading.Event] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.tolerate_poll_errors = tolerate_poll_errors
        self.stop_event = stop_event or threading.Event()
        self.logger = logger or setup_integrations_logger("gam_reports")

    def run(self, network_code: str, start_date: date, end_date: date) -> ReportJob:
        """Submit and wait; returns the job in state ``DONE`` or raises :class:`JobFailedError`."""
        job_id = self.client.submit_job(network_code, start_date, end_date)
        job = ReportJob(job_id=job_id, start_date=start_date, end_date=end_date)
        return self.wait(network_code, job)

    def wait(self, network_code: str, job: ReportJob) -> ReportJob:
        job.state = JobState.POLLING
        while job.status in IN_PROGRESS_STATUSES and job.attempts < self.max_attempts:
            if self.stop_event.wait(self.poll_interval):
                job.state = JobState.CANCELLED
                raise JobFailedError(
                    "Report job polling cancelled",
                    state=job.state.value,
                    job_id=job.job_id,
                )
            job.attempts += 1
            try:
                job.status = self.client.poll_status(network_code, job.job_id)
            except GamReportError as exc:
                if not self.tolerate_poll_errors:
                    job.state = JobState.FAILED
                    raise
                self.logger.warning(
                    "Polling error, treating job as still in progress",
                    metrics={
                        "network_code": network_code,
                        "job_id": job.job_id,
                        "attempt": job.attempts,
                        "error": str(exc),
                    },
                )
                continue
            self.logger.debug(
                "Report job status",
                metrics={
                    "job_id": job.job_id,
                    "status": job.status,
                    "attempt": job.attempts,
                    "max_attempts": self.max_attempts,
                },
            )

        if job.status == COMPLETED:
            job.state = JobState.DONE
            self.logger.info(
                "Report job completed",
                metrics={"network_code": network_code, "job_id": job.job_id, "polls": job.attempts},
            )
            return job

        job.state = JobState.TIMED_OUT if job.status in IN_PROGRESS_STATUSES else JobState.FAILED
        raise JobFailedError(
            f"Report job failed with status: {job.status}",
            state=job.state.value,
            job_id=job.job_id,
            details={"status": job.status, "polls": job.attempts},
        )
