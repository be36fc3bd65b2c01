from fastapi import HTTPException, status

from app.models.enums import JobStatus

JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.CANCELLED, JobStatus.EXPIRED},
    JobStatus.ASSIGNED: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED},
    JobStatus.COMPLETED: {JobStatus.CLOSED},
    JobStatus.CLOSED: set(),
    JobStatus.CANCELLED: set(),
    JobStatus.EXPIRED: set(),
}

FINALIZED_JOB_STATUSES = (
    JobStatus.COMPLETED,
    JobStatus.CLOSED,
    JobStatus.CANCELLED,
    JobStatus.EXPIRED,
)


def can_transition_job(current: str | JobStatus, new: str | JobStatus) -> bool:
    return JobStatus(new) in JOB_TRANSITIONS.get(JobStatus(current), set())


def validate_job_transition(current: str | JobStatus, new: str | JobStatus) -> None:
    """Raises HTTP 409 when the job cannot move from ``current`` to ``new``."""
    current = JobStatus(current)
    new = JobStatus(new)
    if new not in JOB_TRANSITIONS.get(current, set()):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot transition job from '{current.value}' to '{new.value}'",
        )
