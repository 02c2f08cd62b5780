"""
computetest - Unit Tests Inside Compute Kernels

computetest lets a kernel make assertions that are reported as ordinary
pytest results, with the kernel source line of the first failing
assertion. Kernels run on a GPU through SlangPy, or on the CPU for
debugging and machines without a GPU.

Example:
    import numpy as np
    from computetest import ComputeUnitTest, compute_test

    class TestSquares(ComputeUnitTest):
        device = "cpu"

        @compute_test
        def test_square(self, fixture):
            values = self.get_test_buffer("Values", 64, np.float32)
            self.write_buffer(values, np.arange(64, dtype=np.float32))
            fixture.set_buffer("Values", values)
"""

from .backends import ComputeBackend, DeviceBuffer, CPUBackend, create_backend
from .channel import RESULT_BUFFER_SIZE, Verdict, decode_verdicts
from .config import HarnessConfig, resolve_config
from .errors import (
    ComputeTestError,
    DiscoveryError,
    BackendUnavailableError,
    NoAssertionsError,
    KernelAssertionError,
    ChannelOverflowError,
    DispatchTimeoutError,
    KernelExecutionError,
)
from .fixture import ComputeTestFixture, RunState, compute_test
from .orchestrator import Orchestrator
from .testing import ComputeUnitTest

__version__ = "0.1.0"

__all__ = [
    # pytest API
    'ComputeUnitTest',
    'compute_test',
    'ComputeTestFixture',
    'RunState',

    # Orchestration
    'Orchestrator',
    'HarnessConfig',
    'resolve_config',

    # Backends
    'ComputeBackend',
    'DeviceBuffer',
    'CPUBackend',
    'create_backend',

    # Result channel
    'RESULT_BUFFER_SIZE',
    'Verdict',
    'decode_verdicts',

    # Errors
    'ComputeTestError',
    'DiscoveryError',
    'BackendUnavailableError',
    'NoAssertionsError',
    'KernelAssertionError',
    'ChannelOverflowError',
    'DispatchTimeoutError',
    'KernelExecutionError',
]


def version() -> str:
    """Get computetest version string."""
    return __version__
