"""
Error taxonomy shared by the planner, executor and state store.

Every error names the resource address (or lease) it is about; the
underlying cause is kept both as an attribute and as ``__cause__``.
"""
from typing import Optional


class StackplanError(Exception):
    """Base class for everything the CLI reports as a failed run."""

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(message)
        self.address = address


class ValidationError(StackplanError):
    """Bad declaration, reference or dependency graph. Raised before any API call."""


class ProvisionError(StackplanError):
    """A cloud API call failed. The plan halts; earlier operations are kept."""

    def __init__(self, address: str, cause: BaseException) -> None:
        super().__init__(f"{address}: {cause}", address=address)
        self.cause = cause


class ProtectedResourceError(StackplanError):
    """A delete was planned for a resource marked protected."""

    def __init__(self, address: str) -> None:
        super().__init__(
            f"{address} is protected (prevent_destroy) and cannot be deleted; "
            "remove the protection before destroying it",
            address=address,
        )


class OperationTimeoutError(StackplanError, TimeoutError):
    """An operation did not reach a terminal status within its wait budget."""

    def __init__(self, address: str, timeout: float) -> None:
        super().__init__(
            f"{address}: operation did not complete within {timeout:g}s",
            address=address,
        )
        self.timeout = timeout


class LockHeldError(StackplanError):
    """Another invocation holds the state lease."""

    def __init__(self, message: str, lease=None) -> None:
        super().__init__(message)
        self.lease = lease
