"""Exception taxonomy for pipeline execution.

Stage-local failures (StepFailure, TimeoutExceeded, GateDenied, GateTimedOut)
are turned into StageResults by the stage executor. PipelineError subclasses
fail the whole run at the point they are raised.
"""

from typing import Optional


class GantryError(Exception):
    """Base class for all gantry errors."""


class ConfigurationError(GantryError, ValueError):
    """Invalid run request, pipeline definition or service configuration."""


class ParameterError(ConfigurationError):
    """A pipeline or gate parameter failed validation."""

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter


class StepFailure(GantryError):
    """A step finished unsuccessfully (non-zero exit, failed downstream job, ...)."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class TimeoutExceeded(GantryError):
    """A stage or the whole run ran past its deadline."""

    def __init__(self, message: str, scope: str = "stage"):
        super().__init__(message)
        self.scope = scope


class RunAborted(GantryError):
    """The run was aborted by an operator."""


class GateDenied(GantryError):
    """An input gate was denied."""

    def __init__(self, message: str, approver: Optional[str] = None):
        super().__init__(message)
        self.approver = approver


class GateTimedOut(GantryError):
    """An input gate expired before anyone answered it."""


class ApprovalRejected(GantryError):
    """An approval event was not accepted (unknown gate or approver not allowed)."""


class GateNotFound(ApprovalRejected):
    """No open gate matches the approval event."""


class PipelineError(GantryError):
    """Errors that fail the run immediately where they are raised."""


class UnrecognizedStrategy(PipelineError):
    """No pipeline builder is registered for the requested application."""

    def __init__(self, application: Optional[str]):
        super().__init__(f"No pipeline strategy registered for application '{application}'")
        self.application = application


class ConflictError(PipelineError):
    """An artifact coordinate already exists and overwrite was not requested."""


class NotFoundError(PipelineError):
    """An artifact coordinate does not exist."""


class TriggerError(PipelineError):
    """A downstream job could not be triggered or observed."""


class CapabilityMissing(PipelineError):
    """A step needs a capability (artifact store, trigger, ...) the engine was not given."""
