"""
computetest Errors

Defines exception classes raised while discovering, dispatching and
verifying compute kernel tests.
"""

from typing import Optional


class ComputeTestError(Exception):
    """Base exception for all computetest errors."""

    def __init__(self, message: str, line: Optional[int] = None,
                 filename: Optional[str] = None):
        self.message = message
        self.line = line
        self.filename = filename
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with location information."""
        if self.filename and self.line is not None:
            return f"{self.filename}:{self.line}: {self.message}"
        if self.filename:
            return f"{self.filename}: {self.message}"
        if self.line is not None:
            return f"line {self.line}: {self.message}"
        return self.message


class DiscoveryError(ComputeTestError):
    """Raised when a kernel file, module or entry point cannot be found."""
    pass


class BackendUnavailableError(ComputeTestError):
    """Raised when a compute backend cannot be created."""
    pass


class NoAssertionsError(ComputeTestError):
    """Raised when a dispatch completed without executing any ASSERT."""
    pass


class KernelAssertionError(ComputeTestError, AssertionError):
    """Raised for the first failing in-kernel assertion of a dispatch."""

    def __init__(self, source: str, line: int, filename: str):
        self.source = source
        super().__init__(f"{source} failed at {filename}:{line}",
                         line=line, filename=filename)

    def _format_message(self) -> str:
        # The message already carries the location
        return self.message


class ChannelOverflowError(ComputeTestError):
    """Raised when more assertions ran than the result channel can hold."""

    def __init__(self, claimed: int, capacity: int, filename: Optional[str] = None):
        self.claimed = claimed
        self.capacity = capacity
        super().__init__(
            f"{claimed} assertions executed but the result channel holds only "
            f"{capacity}; {claimed - capacity} verdicts were dropped",
            filename=filename
        )


class DispatchTimeoutError(ComputeTestError):
    """Raised when an emulated dispatch does not finish in time."""
    pass


class KernelExecutionError(ComputeTestError):
    """Raised when an emulated kernel invocation raises."""
    pass
