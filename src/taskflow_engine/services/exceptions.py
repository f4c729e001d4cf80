"""Error taxonomy shared by the scheduler, orchestrator, ensemble and API."""
from typing import List, Optional


class TaskflowError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFound(TaskflowError):
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class InvalidTriggerFormat(TaskflowError):
    def __init__(self, trigger: str, reason: str):
        self.trigger = trigger
        self.reason = reason
        super().__init__(f"Invalid trigger '{trigger}': {reason}", status_code=400)


class SchedulingRaceError(TaskflowError):
    """A trigger fired for a flow that is no longer active."""

    def __init__(self, flow_id: str, status: Optional[str]):
        self.flow_id = flow_id
        self.flow_status = status
        super().__init__(f"Flow {flow_id} is not active (status={status})", status_code=409)


class ProviderFailure(TaskflowError):
    """A single backend attempt failed."""

    def __init__(self, model: str, message: str):
        self.model = model
        super().__init__(f"{model}: {message}", status_code=502)


class EnsembleExhausted(TaskflowError):
    def __init__(self, attempts: int, failures: List[ProviderFailure]):
        self.attempts = attempts
        self.failures = failures
        last = failures[-1].message if failures else "no attempts made"
        super().__init__(
            f"All {attempts} LLM attempts failed. Last error: {last}",
            status_code=502
        )


class StaleInputWait(TaskflowError):
    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class TerminalStateViolation(TaskflowError):
    def __init__(self, entity: str, entity_id: str, status: str, target: str):
        super().__init__(
            f"{entity} {entity_id} is {status}; cannot transition to {target}",
            status_code=409
        )


class InvalidTransition(TaskflowError):
    def __init__(self, entity: str, entity_id: str, status: str, target: str):
        super().__init__(
            f"{entity} {entity_id} cannot move from {status} to {target}",
            status_code=409
        )


class TransitionConflict(TaskflowError):
    """Another writer changed the status between our read and our write."""

    def __init__(self, entity: str, entity_id: str, expected: str):
        super().__init__(
            f"{entity} {entity_id} changed concurrently (expected status {expected})",
            status_code=409
        )


class InvalidFlowStatus(TaskflowError):
    def __init__(self, status: str):
        super().__init__(f"Invalid flow status '{status}'; expected 'active' or 'inactive'", status_code=400)
