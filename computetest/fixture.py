"""
computetest Test Fixtures

A fixture bundles one discovered kernel test: its setup method, compiled
kernel, dispatch size, kernel source for failure messages, the variables
bound by setup and the callbacks to run after a passing dispatch.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Type

from .backends.base import DeviceBuffer, Dim3, Kernel, KernelModule
from .source import KernelSource

COMPUTE_TEST_ATTR = "__compute_test_file__"


def compute_test(func: Callable) -> Callable:
    """
    Mark a method as the setup function of a compute kernel test.

    The kernel has the same name as the method and lives in a kernel file
    with the same base name as the file defining the method, e.g.
    ``test_math.py`` pairs with ``test_math.slang`` or ``test_math.pyk``.

    Example:
        class TestMath(ComputeUnitTest):
            @compute_test
            def test_addition(self, fixture):
                fixture.set_int("Count", 4)
    """
    setattr(func, COMPUTE_TEST_ATTR, func.__code__.co_filename)
    # Collected through ComputeUnitTest.test_compute_kernel, not directly
    func.__test__ = False
    return func


def is_compute_test(obj: Any) -> bool:
    return callable(obj) and hasattr(obj, COMPUTE_TEST_ATTR)


def find_compute_tests(cls: Type) -> List[Tuple[str, Path]]:
    """
    Find the compute tests declared directly on a class.

    Args:
        cls: Test class

    Returns:
        List of (method name, defining file) in definition order
    """
    return [
        (name, Path(getattr(member, COMPUTE_TEST_ATTR)))
        for name, member in vars(cls).items()
        if is_compute_test(member)
    ]


class RunState(Enum):
    """Lifecycle of one fixture run."""
    IDLE = "idle"
    CLEARED = "cleared"
    SETUP_COMPLETE = "setup_complete"
    DISPATCHED = "dispatched"
    DECODED = "decoded"
    PASSED = "passed"
    FAILED_ON_ASSERTION = "failed_on_assertion"
    FAILED_NO_ASSERTIONS = "failed_no_assertions"
    FAILED_OVERFLOW = "failed_overflow"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.PASSED, RunState.FAILED_ON_ASSERTION,
                        RunState.FAILED_NO_ASSERTIONS, RunState.FAILED_OVERFLOW)


class ComputeTestFixture:
    """One discovered kernel test."""

    def __init__(self, name: str, module: KernelModule, kernel: Kernel,
                 source: KernelSource, dispatch_size: Dim3 = (1, 1, 1)):
        self.name = name
        self.module = module
        self.kernel = kernel
        self.source = source
        self.dispatch_size = dispatch_size
        self.state = RunState.IDLE
        self.variables: Dict[str, Any] = {}
        self._after_dispatch: List[Callable[[], None]] = []

    @property
    def kernel_name(self) -> str:
        return self.kernel.name

    @property
    def source_lines(self) -> List[str]:
        return self.source.lines

    @property
    def filename(self) -> str:
        return self.source.filename

    # =========================================================================
    # Setup API
    # =========================================================================

    def set_buffer(self, name: str, buffer: DeviceBuffer) -> None:
        """Bind a buffer to a kernel global."""
        if not isinstance(buffer, DeviceBuffer):
            raise TypeError(f"Expected a DeviceBuffer for '{name}', got {type(buffer).__name__}")
        self.variables[name] = buffer

    def set_int(self, name: str, value: int) -> None:
        self.variables[name] = int(value)

    def set_float(self, name: str, value: float) -> None:
        self.variables[name] = float(value)

    def set_value(self, name: str, value: Any) -> None:
        """Bind any value the backend accepts (vectors, structs)."""
        self.variables[name] = value

    def after_dispatch(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a host-side check to run after a passing dispatch.

        Can be used as a decorator inside the setup method.
        """
        self._after_dispatch.append(callback)
        return callback

    # =========================================================================
    # Orchestrator hooks
    # =========================================================================

    def reset(self) -> None:
        """Forget bindings, callbacks and dispatch size from a previous run."""
        self.variables = {}
        self._after_dispatch = []
        self.dispatch_size = (1, 1, 1)
        self.state = RunState.IDLE

    def post_dispatch(self) -> None:
        for callback in self._after_dispatch:
            callback()

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"ComputeTestFixture({self.name!r}, {self.filename}, state={self.state.value})"
