"""Exception types shared across pipeline components."""

from __future__ import annotations

from typing import Optional

from app.core.constants import ErrorCode


class PipelineError(RuntimeError):
    def __init__(self, message: str, *, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.code = code


class InsufficientSuccessRateError(PipelineError):
    def __init__(self, success_rate: float, threshold: float) -> None:
        super().__init__(
            f"{ErrorCode.INSUFFICIENT_SUCCESS_RATE.value}: success rate {success_rate * 100:.1f}% "
            f"is below minimum threshold {threshold * 100:.1f}%",
            code=ErrorCode.INSUFFICIENT_SUCCESS_RATE,
        )
        self.success_rate = success_rate
        self.threshold = threshold


class JobNotFoundError(LookupError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class StepStateError(RuntimeError):
    pass


class StaleAttemptError(PipelineError):
    """A write came from a claim that no longer owns the job."""

    def __init__(self, job_id: int, attempt: int) -> None:
        super().__init__(f"job {job_id}: attempt {attempt} no longer owns the job")
        self.job_id = job_id
        self.attempt = attempt
