from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator


class JobStatus(str, Enum):
    solving = "solving"
    success = "success"
    failure = "failure"
    unknown = "unknown"


class OutcomeStatus(str, Enum):
    success = "success"
    failure = "failure"
    timed_out = "timed_out"


class LoginResult(BaseModel):
    status: Optional[str] = None
    session: Optional[str] = None
    errormessage: Optional[str] = None


class UploadResult(BaseModel):
    status: Optional[str] = None
    subid: Optional[Union[int, str]] = None
    errormessage: Optional[str] = None


class SubmissionStatus(BaseModel):
    jobs: List[Optional[Union[int, str]]] = []

    @property
    def job_id(self) -> Optional[str]:
        """First job of the submission, if the service has assigned one yet"""
        if self.jobs and self.jobs[0]:
            return str(self.jobs[0])
        return None


class JobStatusResult(BaseModel):
    status: JobStatus
    raw_status: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict) -> "JobStatusResult":
        raw_status = data.get("status")
        return cls(status=raw_status, raw_status=raw_status)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_unknown(cls, value):
        # the service may grow new status values; those are not terminal
        try:
            return JobStatus(value)
        except ValueError:
            return JobStatus.unknown


class CalibrationResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    # kept exactly as the service sends them
    ra: Any = None
    dec: Any = None
    radius: Any = None
    pixscale: Any = None
    orientation: Any = None
    parity: Any = None
    job_id: Any = None


class JobOutcome(BaseModel):
    job_id: str
    status: OutcomeStatus
    calibration: Optional[CalibrationResult] = None


class RetryBudget(BaseModel):
    max_attempts: int
    delay: float


class PollingConfig(BaseModel):
    submission: RetryBudget = RetryBudget(max_attempts=30, delay=5.0)
    job: RetryBudget = RetryBudget(max_attempts=30, delay=15.0)
    request_timeout: float = 30.0
