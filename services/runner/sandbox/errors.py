"""
Sandbox Errors

Every error here is fatal to the request that raised it. Nothing is retried.
"""
from typing import Optional


class SandboxError(Exception):
    """Base class for failures at the host/guest boundary."""
    pass


class BoundaryViolation(SandboxError):
    """Raised when an (offset, length) pair falls outside guest memory."""

    def __init__(self, base: int, length: int, memory_size: int, message: Optional[str] = None):
        self.base = base
        self.length = length
        self.memory_size = memory_size
        super().__init__(
            message or f"buffer [{base}, +{length}) outside guest memory of {memory_size} bytes"
        )


class CompilationError(SandboxError):
    """The module artifact could not be loaded or compiled."""
    pass


class InstantiationError(SandboxError):
    """Missing import/export or signature mismatch. Indicates a build defect."""
    pass


class GuestTrapError(SandboxError):
    """The guest trapped or terminated unexpectedly while running."""
    pass


class InvalidStateError(SandboxError):
    """An execution step was attempted out of order."""
    pass
