"""
computetest Orchestrator Tests

Runs the kernels of test_orchestrator.pyk on the CPU backend through the
full clear -> setup -> dispatch -> read back -> decode -> report sequence.
"""

from pathlib import Path

import numpy as np
import pytest

from computetest import (
    CPUBackend,
    ChannelOverflowError,
    DiscoveryError,
    DispatchTimeoutError,
    KernelAssertionError,
    KernelExecutionError,
    NoAssertionsError,
    Orchestrator,
    RunState,
    Verdict,
    compute_test,
)
from computetest.backends.base import Kernel
from computetest.fixture import COMPUTE_TEST_ATTR, ComputeTestFixture
from computetest.source import KernelSource

KERNEL_FILE = Path(__file__).with_suffix(".pyk")
KERNEL_LINES = KERNEL_FILE.read_text(encoding="utf-8").splitlines()


def kernel_line(text: str) -> int:
    """1-based line of the first kernel source line containing text."""
    for number, line in enumerate(KERNEL_LINES, start=1):
        if text in line:
            return number
    raise LookupError(text)


# =============================================================================
# Setup methods (not collected by pytest; run through the orchestrator)
# =============================================================================

class OrchestratorSuite:
    """Setup methods paired with the kernels of test_orchestrator.pyk."""

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator
        self.callback_calls = 0
        self.repeat = 1
        self.groups = 1
        self.enabled = 0
        self.delay = 0.0
        self.output = None
        self.counter = None

    @compute_test
    def all_pass(self, fixture):
        fixture.set_int("Value", 7)

        @fixture.after_dispatch
        def count_call():
            self.callback_calls += 1

    @compute_test
    def first_failure(self, fixture):
        fixture.after_dispatch(self._unexpected_callback)

    @compute_test
    def no_assertions(self, fixture):
        fixture.set_int("Enabled", self.enabled)
        if not self.enabled:
            fixture.after_dispatch(self._unexpected_callback)

    @compute_test
    def fill_channel(self, fixture):
        fixture.set_int("Repeat", self.repeat)
        fixture.dispatch_size = (self.groups, 1, 1)

    @compute_test
    def parallel_square(self, fixture):
        values = np.arange(16 * self.groups, dtype=np.float32) - 8
        source = self.orchestrator.get_test_buffer("Input", values.size, np.float32)
        self.output = self.orchestrator.get_test_buffer("Output", values.size, np.float32)
        self.orchestrator.backend.write_buffer(source, values)
        fixture.set_buffer("Input", source)
        fixture.set_buffer("Output", self.output)
        fixture.dispatch_size = (self.groups, 1, 1)

        @fixture.after_dispatch
        def check_output():
            result = self.orchestrator.backend.read_buffer(self.output)
            np.testing.assert_allclose(result, values * values)
            self.callback_calls += 1

    @compute_test
    def count_invocations(self, fixture):
        self.counter = self.orchestrator.get_test_buffer("Counter", 1, np.uint32)
        fixture.set_buffer("Counter", self.counter)
        fixture.set_int("Groups", self.groups)
        fixture.dispatch_size = (self.groups, 1, 1)

    @compute_test
    def raises_error(self, fixture):
        fixture.set_int("Divisor", 0)

    @compute_test
    def sleeps(self, fixture):
        fixture.set_float("Delay", self.delay)

    @compute_test
    def uses_mesh(self, fixture):
        mesh = self.orchestrator.triangle_mesh.value
        fixture.set_buffer("Triangles", mesh.buffers["triangles"])
        fixture.set_buffer("Vertices", mesh.buffers["vertices"])

    def _unexpected_callback(self):
        raise AssertionError("post-dispatch callback must not run")


class HelperSuite:
    """Setup method whose kernel function lacks @numthreads."""

    @compute_test
    def helper_not_a_kernel(self, fixture):
        pass


class CountingCPUBackend(CPUBackend):
    """CPU backend that records releases for teardown tests."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.released = []
        self.destroyed = []
        self.closed = False

    def release_buffer(self, buffer):
        self.released.append(buffer.name)
        super().release_buffer(buffer)

    def destroy_kernel(self, kernel):
        self.destroyed.append(kernel.name)
        super().destroy_kernel(kernel)

    def close(self):
        self.closed = True


@pytest.fixture
def orchestrator():
    orchestrator = Orchestrator(CPUBackend(), capacity=64)
    yield orchestrator
    orchestrator.teardown()


@pytest.fixture
def suite(orchestrator):
    return OrchestratorSuite(orchestrator)


def run(orchestrator, suite, name):
    fixture = orchestrator.load_fixture(suite, name)
    return fixture, orchestrator.run(fixture, suite)


# =============================================================================
# Discovery
# =============================================================================

class TestDiscovery:
    """Pairing of setup methods with kernel files and entry points."""

    def test_discover_all_compute_tests(self, orchestrator, suite):
        fixtures = orchestrator.discover(suite)
        assert [f.name for f in fixtures] == [
            "all_pass", "first_failure", "no_assertions", "fill_channel", "parallel_square",
            "count_invocations", "raises_error", "sleeps", "uses_mesh",
        ]
        assert all(f.state is RunState.IDLE for f in fixtures)
        assert all(f.filename == "test_orchestrator.pyk" for f in fixtures)

    def test_fixture_metadata(self, orchestrator, suite):
        fixture = orchestrator.load_fixture(suite, "parallel_square")
        assert fixture.kernel_name == "parallel_square"
        assert fixture.dispatch_size == (1, 1, 1)
        assert fixture.kernel.thread_group_size == (16, 1, 1)
        assert fixture.source_lines == KERNEL_LINES
        assert str(fixture) == "parallel_square"

    def test_resolve_kernel_path(self, orchestrator):
        assert orchestrator.resolve_kernel_path(Path(__file__)) == KERNEL_FILE

    def test_kernel_search_paths(self, tmp_path):
        (tmp_path / "elsewhere.pyk").write_text(
            "@numthreads(1, 1, 1)\ndef found(tid):\n    ASSERT(True)\n"
        )
        orchestrator = Orchestrator(CPUBackend(), capacity=8, kernel_search_paths=[tmp_path])
        try:
            path = orchestrator.resolve_kernel_path(Path("/nonexistent/elsewhere.py"))
            assert path == tmp_path / "elsewhere.pyk"
        finally:
            orchestrator.teardown()

    def test_missing_kernel_file(self, orchestrator, tmp_path):
        class MissingFile:
            @compute_test
            def lonely(self, fixture):
                pass

        setattr(MissingFile.lonely, COMPUTE_TEST_ATTR, str(tmp_path / "missing.py"))

        with pytest.raises(DiscoveryError, match="Unable to find kernel file missing.pyk"):
            orchestrator.load_fixture(MissingFile(), "lonely")

    def test_missing_entry_point(self, orchestrator, suite):
        # Defined in the kernel file but not marked with @numthreads
        with pytest.raises(DiscoveryError, match="Cannot find kernel helper_not_a_kernel"):
            orchestrator.load_fixture(HelperSuite(), "helper_not_a_kernel")

    def test_not_a_compute_test(self, orchestrator, suite):
        with pytest.raises(DiscoveryError, match="is not a compute test"):
            orchestrator.load_fixture(suite, "_unexpected_callback")

    def test_compile_failure(self, tmp_path):
        (tmp_path / "broken.pyk").write_text("@numthreads(1, 1, 1)\ndef broken(tid)\n    pass\n")

        class Broken:
            @compute_test
            def broken(self, fixture):
                pass

        setattr(Broken.broken, COMPUTE_TEST_ATTR, str(tmp_path / "broken.py"))
        orchestrator = Orchestrator(CPUBackend(), capacity=8)
        try:
            with pytest.raises(DiscoveryError, match="failed to compile"):
                orchestrator.load_fixture(Broken(), "broken")
        finally:
            orchestrator.teardown()


# =============================================================================
# Run
# =============================================================================

class TestRun:
    """End-to-end runs on the CPU backend."""

    def test_all_pass(self, orchestrator, suite):
        fixture, verdicts = run(orchestrator, suite, "all_pass")

        assert [v.passed for v in verdicts] == [True, True, True]
        assert [v.line for v in verdicts] == [
            kernel_line("ASSERT(1 + 1 == 2)"),
            kernel_line("ASSERT(Value == 7)"),
            kernel_line("ASSERT(tid.x == 0)"),
        ]
        assert suite.callback_calls == 1
        assert fixture.state is RunState.PASSED

    def test_first_failure_reported(self, orchestrator, suite):
        fixture = orchestrator.load_fixture(suite, "first_failure")

        with pytest.raises(KernelAssertionError) as excinfo:
            orchestrator.run(fixture, suite)

        line = kernel_line("ASSERT(2 + 2 == 5)")
        assert excinfo.value.line == line
        assert str(excinfo.value) == f"ASSERT(2 + 2 == 5) failed at test_orchestrator.pyk:{line}"
        assert "3 + 3" not in str(excinfo.value)
        assert fixture.state is RunState.FAILED_ON_ASSERTION

    def test_kernel_assertion_is_assertion_error(self, orchestrator, suite):
        with pytest.raises(AssertionError):
            run(orchestrator, suite, "first_failure")

    def test_no_assertions(self, orchestrator, suite):
        fixture = orchestrator.load_fixture(suite, "no_assertions")

        with pytest.raises(NoAssertionsError, match="No assertions found in kernel no_assertions"):
            orchestrator.run(fixture, suite)

        assert fixture.state is RunState.FAILED_NO_ASSERTIONS

    @pytest.mark.parametrize("name, repeat, state", [
        ("all_pass", 1, RunState.PASSED),
        ("first_failure", 1, RunState.FAILED_ON_ASSERTION),
        ("no_assertions", 1, RunState.FAILED_NO_ASSERTIONS),
        ("fill_channel", 65, RunState.FAILED_OVERFLOW),
    ])
    def test_run_ends_terminal(self, orchestrator, suite, name, repeat, state):
        suite.repeat = repeat
        fixture = orchestrator.load_fixture(suite, name)
        try:
            orchestrator.run(fixture, suite)
        except (AssertionError, NoAssertionsError, ChannelOverflowError):
            pass

        assert fixture.state is state
        assert fixture.state.is_terminal

    def test_intermediate_states_not_terminal(self):
        for state in (RunState.IDLE, RunState.CLEARED, RunState.SETUP_COMPLETE,
                      RunState.DISPATCHED, RunState.DECODED):
            assert not state.is_terminal

    def test_enabled_branch_asserts(self, orchestrator, suite):
        suite.enabled = 1
        fixture, verdicts = run(orchestrator, suite, "no_assertions")
        assert len(verdicts) == 1
        assert fixture.state is RunState.PASSED

    def test_parallel_dispatch_and_callback(self, orchestrator, suite):
        suite.groups = 3
        _, verdicts = run(orchestrator, suite, "parallel_square")

        assert len(verdicts) == 48
        assert all(v.passed for v in verdicts)
        assert suite.callback_calls == 1

    def test_interlocked_add(self, orchestrator, suite):
        suite.groups = 4
        _, verdicts = run(orchestrator, suite, "count_invocations")

        assert len(verdicts) == 32
        assert orchestrator.backend.read_buffer(suite.counter)[0] == 32

    def test_kernel_exception(self, orchestrator, suite):
        with pytest.raises(KernelExecutionError, match="ZeroDivisionError"):
            run(orchestrator, suite, "raises_error")

    def test_dispatch_timeout(self):
        orchestrator = Orchestrator(CPUBackend(dispatch_timeout=0.05), capacity=8)
        suite = OrchestratorSuite(orchestrator)
        suite.delay = 0.5
        try:
            with pytest.raises(DispatchTimeoutError, match="did not finish"):
                run(orchestrator, suite, "sleeps")
        finally:
            orchestrator.teardown()

    def test_mesh_buffers(self, orchestrator, suite):
        _, verdicts = run(orchestrator, suite, "uses_mesh")
        assert len(verdicts) == 2
        assert orchestrator.triangle_mesh.is_value_created
        assert not orchestrator.quad_mesh.is_value_created


class TestChannelCapacity:
    """Capacity boundary and clearing between runs."""

    def test_exactly_capacity(self, orchestrator, suite):
        suite.repeat = orchestrator.capacity
        _, verdicts = run(orchestrator, suite, "fill_channel")

        assert len(verdicts) == orchestrator.capacity
        slots, claimed = orchestrator.channel.read()
        assert claimed == orchestrator.capacity
        assert (slots["line"] != -1).all()

    def test_overflow_fails_loudly(self, orchestrator, suite):
        suite.repeat = orchestrator.capacity + 1
        fixture = orchestrator.load_fixture(suite, "fill_channel")

        with pytest.raises(ChannelOverflowError) as excinfo:
            orchestrator.run(fixture, suite)

        assert excinfo.value.claimed == orchestrator.capacity + 1
        assert excinfo.value.capacity == orchestrator.capacity
        assert fixture.state is RunState.FAILED_OVERFLOW

        # The last slot keeps the verdict that claimed it
        slots, _ = orchestrator.channel.read()
        assert slots[-1]["line"] == kernel_line("ASSERT(i < Repeat)")
        assert slots[-1]["outcome"] == 1

    def test_overflow_across_threads(self, orchestrator, suite):
        suite.repeat = 1
        suite.groups = orchestrator.capacity + 1
        with pytest.raises(ChannelOverflowError):
            run(orchestrator, suite, "fill_channel")

    def test_no_leak_between_runs(self, orchestrator, suite):
        suite.repeat = 40
        run(orchestrator, suite, "fill_channel")

        # A smaller run on the reused channel sees only its own verdicts
        _, verdicts = run(orchestrator, suite, "all_pass")
        assert len(verdicts) == 3

        with pytest.raises(NoAssertionsError):
            run(orchestrator, suite, "no_assertions")

    def test_fixture_rerun_resets_callbacks(self, orchestrator, suite):
        fixture = orchestrator.load_fixture(suite, "all_pass")
        orchestrator.run(fixture, suite)
        orchestrator.run(fixture, suite)
        assert suite.callback_calls == 2

    def test_rerun_resets_dispatch_size(self, orchestrator, suite):
        fixture = orchestrator.load_fixture(suite, "all_pass")
        fixture.dispatch_size = (4, 1, 1)

        # all_pass does not set a dispatch size; tid.x == 0 fails past one group
        verdicts = orchestrator.run(fixture, suite)
        assert len(verdicts) == 3
        assert fixture.dispatch_size == (1, 1, 1)


# =============================================================================
# Verify
# =============================================================================

class TestVerify:
    """Reporting of decoded verdict sequences."""

    def make_fixture(self):
        lines = ["" for _ in range(40)]
        lines[11] = "    ASSERT(a == b);   "
        lines[29] = "    ASSERT(c == d);"
        source = KernelSource(path=Path("kernels/example.slang"), lines=lines)
        kernel = Kernel(name="example", module_path=source.path)
        return ComputeTestFixture("example", None, kernel, source)

    def test_first_failure_only(self, orchestrator):
        fixture = self.make_fixture()
        verdicts = [Verdict(3, True), Verdict(5, True), Verdict(12, False), Verdict(30, False)]

        with pytest.raises(KernelAssertionError) as excinfo:
            orchestrator.verify(fixture, verdicts, claimed=4)

        assert excinfo.value.line == 12
        assert excinfo.value.source == "ASSERT(a == b);"
        assert str(excinfo.value) == "ASSERT(a == b); failed at example.slang:12"
        assert "30" not in str(excinfo.value)

    def test_all_pass_invokes_callback_once(self, orchestrator):
        fixture = self.make_fixture()
        calls = []
        fixture.after_dispatch(lambda: calls.append(1))

        verdicts = [Verdict(1, True), Verdict(2, True), Verdict(3, True)]
        assert orchestrator.verify(fixture, verdicts, claimed=3) == verdicts
        assert calls == [1]
        assert fixture.state is RunState.PASSED

    def test_empty_is_not_a_pass(self, orchestrator):
        fixture = self.make_fixture()
        with pytest.raises(NoAssertionsError):
            orchestrator.verify(fixture, [], claimed=0)

    def test_overflow_checked_first(self, orchestrator):
        fixture = self.make_fixture()
        verdicts = [Verdict(12, False)] * orchestrator.capacity
        with pytest.raises(ChannelOverflowError):
            orchestrator.verify(fixture, verdicts, claimed=orchestrator.capacity + 3)


# =============================================================================
# Teardown
# =============================================================================

class TestTeardown:
    """Release of buffers, kernels and lazily built meshes."""

    def test_releases_everything(self):
        backend = CountingCPUBackend()
        orchestrator = Orchestrator(backend, capacity=64, name="Suite")
        suite = OrchestratorSuite(orchestrator)

        run(orchestrator, suite, "parallel_square")
        run(orchestrator, suite, "uses_mesh")
        orchestrator.teardown()

        assert "Suite.TestResults" in backend.released
        assert "Suite.TestCaseCounter" in backend.released
        assert "Input" in backend.released
        assert "Output" in backend.released
        assert "Suite.TriangleMesh.vertices" in backend.released
        assert not any(name.startswith("Suite.QuadMesh") for name in backend.released)
        assert backend.destroyed == ["parallel_square", "uses_mesh"]
        assert backend.closed

    def test_teardown_twice(self):
        backend = CountingCPUBackend()
        orchestrator = Orchestrator(backend, capacity=8)
        orchestrator.teardown()
        released = list(backend.released)
        orchestrator.teardown()
        assert backend.released == released
        assert orchestrator.fixtures == []
