"""Error taxonomy for workflow validation and execution."""

from enum import Enum


class ErrorKind(str, Enum):
    """Kinds of errors recorded on node states and run results"""

    STRUCTURAL = "StructuralError"
    UNRESOLVED_REFERENCE = "UnresolvedReference"
    PATH_NOT_FOUND = "PathNotFound"
    UNKNOWN_STEP = "UnknownStep"
    NO_MATCHING_BRANCH = "NoMatchingBranch"
    STEP_EXECUTION = "StepExecutionError"
    CANCELLED = "Cancelled"


class WorkflowError(Exception):
    """Base class for engine errors. Subclasses pin their ErrorKind."""

    kind: ErrorKind = ErrorKind.STEP_EXECUTION


class StructuralError(WorkflowError):
    """Workflow definition violates a structural invariant. The run never starts."""

    kind = ErrorKind.STRUCTURAL

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        details = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f"Invalid workflow definition:\n{details}")


class ResolutionError(WorkflowError):
    """A template reference could not be resolved."""

    def __init__(self, reference: str, message: str):
        self.reference = reference
        super().__init__(message)


class UnresolvedReferenceError(ResolutionError):
    """Referenced node has no succeeded state."""

    kind = ErrorKind.UNRESOLVED_REFERENCE


class PathNotFoundError(ResolutionError):
    """Field path cannot be traversed on the referenced output."""

    kind = ErrorKind.PATH_NOT_FOUND


class UnknownStepError(WorkflowError):
    """No step is registered under the requested action key."""

    kind = ErrorKind.UNKNOWN_STEP


class NoMatchingBranchError(WorkflowError):
    """Switch node matched no rule and has no default output."""

    kind = ErrorKind.NO_MATCHING_BRANCH


class StepExecutionError(WorkflowError):
    """A step raised while executing or was given unusable configuration."""

    kind = ErrorKind.STEP_EXECUTION


class RunCancelledError(WorkflowError):
    """Run aborted by timeout or external cancellation."""

    kind = ErrorKind.CANCELLED


class ConfigError(Exception):
    """Invalid engine configuration."""

    pass
