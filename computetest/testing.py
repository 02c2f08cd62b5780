"""
computetest pytest Integration

Subclass ComputeUnitTest and mark setup methods with @compute_test. Each
marked method becomes one pytest test that runs the kernel of the same
name from the paired kernel file.

Example (test_math.py, kernels in test_math.pyk or test_math.slang):

    class TestMath(ComputeUnitTest):

        @compute_test
        def test_square(self, fixture):
            data = self.get_test_buffer("Input", 64, np.float32)
            self.write_buffer(data, np.arange(64, dtype=np.float32))
            fixture.set_buffer("Input", data)
            fixture.dispatch_size = (1, 1, 1)
"""

from typing import Any, Optional, Sequence
import numpy as np
import pytest

from .backends.base import DeviceBuffer
from .config import HarnessConfig, resolve_config
from .fixture import find_compute_tests
from .meshes import Mesh
from .orchestrator import Orchestrator


class ComputeUnitTest:
    """
    Base class for compute kernel test suites.

    One orchestrator (and so one result channel and one device) is shared
    by all tests of a class and torn down after the last one.

    Class attributes (None means: use the pytest option, environment
    variable or default):
        device: "cpu" or "gpu"
        capacity: Result channel capacity
        dispatch_timeout: CPU dispatch timeout in seconds
        max_workers: CPU thread pool size
        debug: Print harness debug output
        kernel_search_paths: Extra directories searched for the kernel file
    """

    device: Optional[str] = None
    capacity: Optional[int] = None
    dispatch_timeout: Optional[float] = None
    max_workers: Optional[int] = None
    debug: Optional[bool] = None
    kernel_search_paths: Sequence = ()

    orchestrator: Optional[Orchestrator] = None

    def pytest_generate_tests(self, metafunc):
        if "compute_test_name" in metafunc.fixturenames:
            names = [name for name, _ in find_compute_tests(metafunc.cls)]
            metafunc.parametrize("compute_test_name", names, ids=names)

    @pytest.fixture(scope="class", autouse=True)
    @classmethod
    def compute_orchestrator(cls, request):
        config = resolve_config(cls, request.config)
        orchestrator = config.create_orchestrator(name=cls.__name__,
                                                  kernel_search_paths=cls.kernel_search_paths)
        cls.orchestrator = orchestrator
        yield orchestrator
        orchestrator.teardown()
        cls.orchestrator = None

    def test_compute_kernel(self, compute_test_name):
        fixture = self.orchestrator.load_fixture(self, compute_test_name)
        self.orchestrator.run(fixture, self)

    # =========================================================================
    # Helpers for setup methods
    # =========================================================================

    @classmethod
    def harness_config(cls) -> HarnessConfig:
        """The configuration this class resolves to outside of pytest."""
        return resolve_config(cls)

    def get_test_buffer(self, name: str, count: int, dtype: Any) -> DeviceBuffer:
        """Create a buffer that is released when the test class finishes."""
        return self.orchestrator.get_test_buffer(f"{type(self).__name__}.{name}", count, dtype)

    def write_buffer(self, buffer: DeviceBuffer, data: np.ndarray) -> None:
        self.orchestrator.backend.write_buffer(buffer, data)

    def read_buffer(self, buffer: DeviceBuffer) -> np.ndarray:
        return self.orchestrator.backend.read_buffer(buffer)

    @property
    def triangle_mesh(self) -> Mesh:
        """Triangle with verts at (0,0,0), (1,0,0), (0,1,0), uploaded on first use."""
        return self.orchestrator.triangle_mesh.value

    @property
    def quad_mesh(self) -> Mesh:
        """1x1 quad with verts at (0,0,0), (1,0,0), (0,1,0), (1,1,0), uploaded on first use."""
        return self.orchestrator.quad_mesh.value
