"""
Error taxonomy for the execution engine.

Every failure a node invocation can produce is mapped onto one of three kinds
by the error policy (see ``nodeflow.graph.retry``):

- InputError: bad parameters or unresolvable expressions. Never retried.
- OperationalError: transient trouble (network, timeouts, rate limits). Retried
  while the node's retry budget lasts.
- FatalError: a programming error in a node or in the engine. Aborts the run.

GraphValidationError is raised before a run starts and never reaches the
policy. SuspensionTokenError guards the resume entry point.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification of a node failure."""

    RETRIABLE = "retriable"
    FATAL = "fatal"
    INPUT_ERROR = "input_error"


class NodeflowError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, *, description: str | None = None):
        super().__init__(message)
        self.message = message
        self.description = description


class GraphValidationError(NodeflowError):
    """The graph was rejected before execution started."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid workflow graph: {'; '.join(self.errors)}")


class InputError(NodeflowError):
    """Malformed node parameters or an expression that cannot be resolved."""

    kind = ErrorKind.INPUT_ERROR


class ExpressionError(InputError):
    """An expression in a node parameter failed to parse or evaluate."""

    def __init__(self, message: str, *, expression: str | None = None):
        super().__init__(message, description=expression)
        self.expression = expression


class CredentialNotFoundError(InputError):
    """A node asked for a credential that is not configured or not stored."""


class OperationalError(NodeflowError):
    """Transient failure: network trouble, timeouts, rate limits."""

    kind = ErrorKind.RETRIABLE


class NodeTimeoutError(OperationalError):
    """A node invocation exceeded its configured timeout."""

    def __init__(self, node: str, timeout_seconds: float):
        super().__init__(f"Node '{node}' timed out after {timeout_seconds}s")
        self.node = node
        self.timeout_seconds = timeout_seconds


class FatalError(NodeflowError):
    """Programming error inside a node implementation or the engine itself."""

    kind = ErrorKind.FATAL


class RunDataConflictError(FatalError):
    """Attempt to overwrite an already recorded (node, run index) slot."""

    def __init__(self, node: str, run_index: int):
        super().__init__(f"Run data for node '{node}' run {run_index} is already recorded")
        self.node = node
        self.run_index = run_index


class SubWorkflowError(NodeflowError):
    """
    A nested run failed.

    The parent node sees exactly one classified failure. The nested outcome is
    kept on ``outcome`` for callers that want to unwrap it.
    """

    def __init__(self, message: str, *, kind: ErrorKind, outcome: Any = None):
        super().__init__(message)
        self.kind = kind
        self.outcome = outcome


class SuspensionTokenError(NodeflowError):
    """A suspension token could not be used to resume a run."""
