"""
Error taxonomy for the matching pipeline.

Only JobError is fatal to a batch job. Everything else is recovered where
it is raised: stages are skipped or treated as empty, records are
reported individually, and invalid normalized records are still emitted.
"""

from typing import Optional


class CrosswalkError(Exception):
    """Base class for matching pipeline errors."""


class StageUnavailable(CrosswalkError):
    """An optional stage dependency is not configured or cannot be reached."""

    def __init__(self, stage: str, reason: str):
        super().__init__(f"{stage} unavailable: {reason}")
        self.stage = stage
        self.reason = reason


class StageError(CrosswalkError):
    """A stage matcher raised or returned a payload that could not be parsed."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage


class ExternalCallError(CrosswalkError):
    """Transient failure of an external call (rate limit, server error)."""

    def __init__(self, stage: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{stage} call failed: {message}")
        self.stage = stage
        self.status_code = status_code


class ValidationError(CrosswalkError):
    """A normalized record does not conform to the canonical schema."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class RecordError(CrosswalkError):
    """A single competitor record could not be resolved inside a job."""

    def __init__(self, index: int, sku: str, company: str, message: str, kind: str = "record"):
        super().__init__(f"[{index}] {sku} ({company}): {message}")
        self.index = index
        self.sku = sku
        self.company = company
        self.message = message
        self.kind = kind

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "sku": self.sku,
            "company": self.company,
            "error": self.message,
            "kind": self.kind,
        }


class JobError(CrosswalkError):
    """Failure outside per-record handling; terminates the job."""

    def __init__(self, job_id: str, message: str):
        super().__init__(f"job {job_id} failed: {message}")
        self.job_id = job_id
