"""
Exceptions
==========
Error taxonomy for insight collection.

Fatal (abort the run):
    ConfigurationError    — missing token, malformed filters, unknown project
    AuthenticationError   — credentials rejected by the CI platform

Scoped to one pipeline (accumulated, never fatal):
    TransientFetchError   — network failure, rate limit, 5xx; retried first
    MalformedResponseError — unexpected API shape; not retried
    DependencyCycleError  — job graph of a pipeline contains a cycle

Recovered locally:
    CacheCorruptionError  — unreadable cache entry, treated as a miss
"""
from typing import List, Optional


class CILensError(Exception):
    """Base class for all CILens errors."""


class ConfigurationError(CILensError):
    pass


class AuthenticationError(CILensError):
    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Authentication rejected (HTTP {status_code})")


class FetchError(CILensError):
    """A single API request could not produce usable data."""


class TransientFetchError(FetchError):
    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 0) -> None:
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class MalformedResponseError(FetchError):
    pass


class CacheCorruptionError(CILensError):
    pass


class DependencyCycleError(CILensError):
    def __init__(self, pipeline_id: str, cycle: List[str]) -> None:
        self.pipeline_id = pipeline_id
        self.cycle = cycle
        super().__init__(
            f"Dependency cycle in pipeline {pipeline_id}: {' -> '.join(cycle)}"
        )
