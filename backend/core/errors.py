"""
Domain error taxonomy shared by every component.

Structural errors (NotFoundError, ValidationError, CircularDependencyError)
abort the calling operation. Step failures surface as StepTimeoutError or
StepExecutionError only after the retry budget is spent. Drift and
monitoring conditions are never raised; they become Alerts or result flags.
"""

from typing import Any


class MLOpsError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFoundError(MLOpsError):
    """Unknown id passed to an accessor or mutator."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(MLOpsError):
    """Schema mismatch or malformed reference. `errors` lists every violation."""

    def __init__(self, message: str, errors: list[str] | None = None, **context: Any):
        super().__init__(message, **context)
        self.errors = errors or []


class CircularDependencyError(ValidationError):
    """Workflow dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Circular dependency detected in workflow: {' -> '.join(cycle)}",
            errors=[f"cycle: {' -> '.join(cycle)}"],
            cycle=cycle,
        )
        self.cycle = cycle


class StepTimeoutError(MLOpsError, TimeoutError):
    """Workflow step exceeded its timeout on every attempt."""

    def __init__(self, step_id: str, timeout_seconds: float, attempts: int):
        super().__init__(
            f"Step {step_id} timed out after {attempts} attempt(s) of {timeout_seconds}s",
            step_id=step_id,
            timeout_seconds=timeout_seconds,
            attempts=attempts,
        )
        self.step_id = step_id
        self.attempts = attempts


class StepExecutionError(MLOpsError):
    """Workflow step failed on every attempt."""

    def __init__(self, step_id: str, attempts: int, reason: str):
        super().__init__(
            f"Step {step_id} failed after {attempts} attempt(s): {reason}",
            step_id=step_id,
            attempts=attempts,
        )
        self.step_id = step_id
        self.attempts = attempts
