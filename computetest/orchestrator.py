"""
computetest Orchestrator

Drives kernel tests on the host: discovers fixtures, runs each one
(clear -> setup -> bind -> dispatch -> read back -> decode -> report)
and releases every device resource at teardown.
"""

from pathlib import Path
from typing import Any, List, Optional, Sequence

from .backends.base import ComputeBackend, DeviceBuffer
from .channel import (
    RESULT_BUFFER_SIZE, ResultChannel, Verdict,
    check_overflow, decode_verdicts, first_failure,
)
from .errors import (
    ChannelOverflowError, DiscoveryError, KernelAssertionError, NoAssertionsError,
)
from .fixture import (
    COMPUTE_TEST_ATTR, ComputeTestFixture, RunState, find_compute_tests, is_compute_test,
)
from .meshes import Lazy, Mesh, build_quad_mesh, build_triangle_mesh
from .source import KernelSource


class Orchestrator:
    """
    Runs compute kernel tests against one backend.

    The orchestrator owns the result channel, every buffer created through
    get_test_buffer(), the kernels of all loaded fixtures and the backend
    itself. Runs are strictly sequential.

    Example:
        orchestrator = Orchestrator(create_backend("cpu"))
        for fixture in orchestrator.discover(test_instance):
            orchestrator.run(fixture, test_instance)
        orchestrator.teardown()
    """

    def __init__(self,
                 backend: ComputeBackend,
                 capacity: int = RESULT_BUFFER_SIZE,
                 name: str = "ComputeUnitTest",
                 kernel_search_paths: Sequence[Path] = (),
                 debug: Optional[bool] = None):
        """
        Create an orchestrator.

        Args:
            backend: Compute backend to run kernels on
            capacity: Result channel capacity
            name: Prefix for buffer debug names
            kernel_search_paths: Extra directories searched for kernel files
            debug: Enable debug output (default: the backend's setting)
        """
        self.backend = backend
        self.name = name
        self.debug = backend.debug if debug is None else debug
        self.kernel_search_paths = [Path(p) for p in kernel_search_paths]

        self._test_buffers: List[DeviceBuffer] = []
        self._fixtures: List[ComputeTestFixture] = []
        self._closed = False

        self.channel = ResultChannel(self.get_test_buffer, backend, capacity, name)

        self.triangle_mesh = Lazy(lambda: self._build_mesh(build_triangle_mesh, "TriangleMesh"))
        self.quad_mesh = Lazy(lambda: self._build_mesh(build_quad_mesh, "QuadMesh"))

    @property
    def capacity(self) -> int:
        return self.channel.capacity

    @property
    def fixtures(self) -> List[ComputeTestFixture]:
        return list(self._fixtures)

    # =========================================================================
    # Resources
    # =========================================================================

    def get_test_buffer(self, name: str, count: int, dtype: Any) -> DeviceBuffer:
        """
        Create a buffer that is released at teardown.

        Args:
            name: Debug name
            count: Number of elements
            dtype: numpy dtype of one element

        Returns:
            DeviceBuffer
        """
        buffer = self.backend.create_buffer(name, count, dtype)
        self._test_buffers.append(buffer)
        return buffer

    def _build_mesh(self, factory, name: str) -> Mesh:
        mesh = factory()
        mesh.upload(self.backend, f"{self.name}.{name}")
        return mesh

    # =========================================================================
    # Discovery
    # =========================================================================

    def resolve_kernel_path(self, source_file: Path) -> Path:
        """
        Find the kernel file paired with a test source file.

        The kernel file has the same base name as the source file and the
        backend's kernel extension. It is looked up beside the source file
        first, then in kernel_search_paths.
        """
        source_file = Path(source_file)
        filename = source_file.with_suffix(self.backend.kernel_suffix).name

        for directory in [source_file.parent] + self.kernel_search_paths:
            candidate = directory / filename
            if candidate.is_file():
                return candidate

        raise DiscoveryError(f"Unable to find kernel file {filename}",
                             filename=str(source_file))

    def load_fixture(self, instance: Any, name: str) -> ComputeTestFixture:
        """
        Load the kernel of one compute test.

        Args:
            instance: Test class instance owning the setup method
            name: Setup method name, identical to the kernel entry point

        Returns:
            The fixture, owned by this orchestrator

        Raises:
            DiscoveryError: If the kernel file, module or entry point is missing
        """
        method = getattr(type(instance), name, None)
        if not is_compute_test(method):
            raise DiscoveryError(f"{type(instance).__name__}.{name} is not a compute test")

        kernel_path = self.resolve_kernel_path(Path(getattr(method, COMPUTE_TEST_ATTR)))
        module = self.backend.load_module(kernel_path)

        if not module.has_kernel(name):
            raise DiscoveryError(
                f"Cannot find kernel {name} in {kernel_path}. "
                f"(Did the kernel compile correctly?)"
            )

        fixture = ComputeTestFixture(
            name=name,
            module=module,
            kernel=module.find_kernel(name),
            source=KernelSource.from_file(kernel_path),
        )
        self._fixtures.append(fixture)

        if self.debug:
            print(f"Discovered {name} in {kernel_path.name}")

        return fixture

    def discover(self, instance: Any) -> List[ComputeTestFixture]:
        """Load a fixture for every compute test declared on the instance's class."""
        return [
            self.load_fixture(instance, name)
            for name, _ in find_compute_tests(type(instance))
        ]

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, fixture: ComputeTestFixture, instance: Any) -> List[Verdict]:
        """
        Run one kernel test.

        Args:
            fixture: Fixture returned by load_fixture()
            instance: Test class instance owning the setup method

        Returns:
            The verdicts of the dispatch, all passed

        Raises:
            ChannelOverflowError: More assertions ran than the channel holds
            NoAssertionsError: The kernel executed no assertion
            KernelAssertionError: An assertion failed (the first one is reported)
        """
        fixture.reset()

        # Clear the test results buffers
        self.channel.clear()
        self.channel.reset_cursor()
        fixture.state = RunState.CLEARED

        # Run test setup
        getattr(instance, fixture.name)(fixture)
        fixture.state = RunState.SETUP_COMPLETE

        # Bind test results buffers
        variables = dict(fixture.variables)
        self.channel.bind(variables)

        self.backend.dispatch(fixture.kernel, fixture.dispatch_size, variables)
        fixture.state = RunState.DISPATCHED

        slots, claimed = self.channel.read()
        verdicts = decode_verdicts(slots)
        fixture.state = RunState.DECODED

        if self.debug:
            print(f"{fixture.name}: {len(verdicts)} verdicts, cursor={claimed}")

        return self.verify(fixture, verdicts, claimed)

    def verify(self, fixture: ComputeTestFixture, verdicts: List[Verdict],
               claimed: int) -> List[Verdict]:
        """Report decoded verdicts and run post-dispatch callbacks if all passed."""
        try:
            check_overflow(claimed, self.capacity, filename=fixture.filename)
        except ChannelOverflowError:
            fixture.state = RunState.FAILED_OVERFLOW
            raise

        if not verdicts:
            fixture.state = RunState.FAILED_NO_ASSERTIONS
            raise NoAssertionsError(f"No assertions found in kernel {fixture.kernel_name}",
                                    filename=fixture.filename)

        failure = first_failure(verdicts)
        if failure is not None:
            fixture.state = RunState.FAILED_ON_ASSERTION
            raise KernelAssertionError(fixture.source.line_text(failure.line),
                                       failure.line, fixture.filename)

        fixture.post_dispatch()
        fixture.state = RunState.PASSED
        return verdicts

    # =========================================================================
    # Teardown
    # =========================================================================

    def teardown(self) -> None:
        """Release buffers, kernels, meshes and the backend. Safe to call twice."""
        if self._closed:
            return

        for buffer in self._test_buffers:
            if not buffer.released:
                self.backend.release_buffer(buffer)
        self._test_buffers = []

        for fixture in self._fixtures:
            if not fixture.kernel.destroyed:
                self.backend.destroy_kernel(fixture.kernel)
        self._fixtures = []

        for mesh in (self.triangle_mesh, self.quad_mesh):
            if mesh.is_value_created:
                mesh.value.release(self.backend)

        self.backend.close()
        self._closed = True
