"""
errors.py

Exceptions raised while talking to a robot and sequencing runs on it.
Robot and run failures derive from RobotError; bad input raises
TemplateError or SequenceDefinitionError. All of them carry the index of
the work item they interrupted.
"""

from __future__ import annotations

from typing import Any, Optional


class ItemContext:
    """
    Where in a sequence an error happened.

    Attributes
    ----------
    item_index :
        Index of the work item being executed when the error was raised.
        Filled in by RunOrchestrator.run_sequence, None outside a sequence.
    item :
        The work item itself (after any feedback hook adjustment).
    """

    item_index: Optional[int] = None
    item: Any = None

    def describe(self) -> str:
        if self.item_index is None:
            return str(self)
        return f"item {self.item_index}: {self}"


class RobotError(ItemContext, RuntimeError):
    """Base class for robot communication and run sequencing failures."""


class NetworkError(RobotError):
    """Raised when the robot cannot be reached (connection error, request timeout)."""


class _HTTPFailure(RobotError):
    """Shared shape of errors produced by a rejected or unreachable request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UploadError(_HTTPFailure):
    """Raised when a protocol cannot be registered with the robot."""


class StartError(_HTTPFailure):
    """Raised when a run cannot be created or its play action is rejected."""


class RequestRejectedError(_HTTPFailure):
    """Raised when the robot answers a query (health, run status) with a non-2xx status."""


class RunInProgressError(RobotError):
    """Raised when a run is started while another one has not reached a terminal status."""

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} is still active")
        self.run_id = run_id



class MalformedResponseError(RobotError):
    """Raised when a robot response is not JSON or lacks an expected field."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class RunFailedError(RobotError):
    """Raised when a run resolves to `failed`. Carries the robot's error payload."""

    def __init__(self, run_id: str, errors: Any = None):
        super().__init__(f"Run {run_id} failed: {errors}")
        self.run_id = run_id
        self.errors = errors


class RunStoppedError(RobotError):
    """Raised by run_sequence when a run ends `stopped` instead of `succeeded`."""

    def __init__(self, run_id: str, status: str = "stopped"):
        super().__init__(f"Run {run_id} ended with status '{status}'")
        self.run_id = run_id
        self.status = status


class RunTimeoutError(RobotError, TimeoutError):
    """
    Raised when a run does not reach a terminal status in time.

    The timeout is local only: the run keeps going on the robot.
    """

    def __init__(self, run_id: str, timeout: float, last_status: Optional[str] = None):
        super().__init__(
            f"Run {run_id} not finished after {timeout}s (last status: {last_status})"
        )
        self.run_id = run_id
        self.timeout = timeout
        self.last_status = last_status


class SequenceAborted(RobotError):
    """Raised when the caller aborted the sequence before it finished."""


class TemplateError(ItemContext, ValueError):
    """Raised when a protocol template cannot be rendered with the given params."""


class SequenceDefinitionError(ItemContext, ValueError):
    """Raised when a sequence definition file is missing, unreadable or invalid."""
