"""
computetest CPU Backend

Runs kernels on the CPU, every invocation on a pool of daemon worker
threads. Used for debugging and as a fallback when no GPU is available.

CPU kernels live in ``.pyk`` files next to the test module. A kernel is a
top-level function decorated with ``@numthreads(x, y, z)`` that takes the
dispatch thread id:

    @numthreads(64, 1, 1)
    def test_square(tid):
        ASSERT(Output[tid.x] == Input[tid.x] * Input[tid.x])

Variables bound by the test's setup method (buffers and scalars) are
visible as module globals during the dispatch. ``ASSERT`` and
``InterlockedAdd`` are provided by the backend.
"""

import ast
import inspect
import itertools
import os
import threading
import time
from collections import namedtuple
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import numpy as np

from .base import ComputeBackend, DeviceBuffer, Dim3, Kernel, KernelModule
from ..channel import COUNTER_NAME, PASS_FAIL_NAME
from ..errors import DiscoveryError, DispatchTimeoutError, KernelExecutionError
from ..recorder import ASSERT_NAME, AssertionRecorder, AtomicOps, SlotCursor, rewrite_assertions

KERNEL_SUFFIX = ".pyk"

ThreadId = namedtuple("ThreadId", ["x", "y", "z"])


def numthreads(x: int = 1, y: int = 1, z: int = 1) -> Callable:
    """Mark a function as a kernel entry point with the given group size."""
    if min(x, y, z) < 1:
        raise ValueError(f"numthreads({x}, {y}, {z}): group size must be positive")

    def decorator(func: Callable) -> Callable:
        func.numthreads = (x, y, z)
        return func
    return decorator


def _assert_unbound(condition, line: int = 0) -> None:
    raise KernelExecutionError(
        "ASSERT called without a bound result channel", line=line or None
    )


def _interlocked_add_unbound(buffer, index, value):
    raise KernelExecutionError("InterlockedAdd called outside of a dispatch")


# Dispatch token of the invocation running on the current worker thread
_invocation = threading.local()


def _bind_to_dispatch(name: str, func: Callable, token: object) -> Callable:
    """
    Restrict a device intrinsic to the invocations of one dispatch.

    Invocations left running by a timed out dispatch still see the module
    globals, so without this they would record into a later dispatch.
    """
    def intrinsic(*args):
        if getattr(_invocation, 'dispatch', None) is not token:
            raise KernelExecutionError(f"{name} called by an invocation of a finished dispatch")
        return func(*args)
    return intrinsic


def default_max_workers() -> int:
    """Worker thread count used when max_workers is not given."""
    return min(32, (os.cpu_count() or 1) + 4)


def thread_ids(dispatch_size: Dim3, group_size: Dim3) -> List[ThreadId]:
    """Enumerate the dispatch thread ids of a dispatch, x fastest."""
    extent = [d * g for d, g in zip(dispatch_size, group_size)]
    return [
        ThreadId(x, y, z)
        for z, y, x in itertools.product(range(extent[2]), range(extent[1]), range(extent[0]))
    ]


class CPUKernelModule(KernelModule):
    """A loaded ``.pyk`` kernel file."""

    def __init__(self, path: Path, namespace: Dict[str, Any]):
        super().__init__(path)
        self.namespace = namespace
        self._kernels = {
            name: obj for name, obj in namespace.items()
            if inspect.isfunction(obj) and hasattr(obj, 'numthreads')
        }

    @property
    def kernel_names(self) -> List[str]:
        return list(self._kernels)

    def find_kernel(self, name: str) -> Kernel:
        if name not in self._kernels:
            raise DiscoveryError(f"Cannot find kernel {name}", filename=str(self.path))
        func = self._kernels[name]
        return Kernel(
            name=name,
            module_path=self.path,
            thread_group_size=tuple(func.numthreads),
            native=func
        )


class CPUBackend(ComputeBackend):
    """
    Emulated compute device.

    Buffers are numpy arrays; every invocation of a dispatch runs on a
    pool of worker threads so kernels see real concurrency on shared buffers.
    """

    device_name = "cpu"
    kernel_suffix = KERNEL_SUFFIX

    def __init__(self,
                 max_workers: Optional[int] = None,
                 dispatch_timeout: Optional[float] = None,
                 debug: bool = False):
        """
        Create a CPU backend.

        Args:
            max_workers: Worker thread count (default: default_max_workers())
            dispatch_timeout: Seconds to wait for a dispatch, None to wait forever
            debug: Enable debug output
        """
        super().__init__(debug=debug)
        self.max_workers = max_workers
        self.dispatch_timeout = dispatch_timeout

    # =========================================================================
    # Kernel Loading
    # =========================================================================

    def load_module(self, path: Path) -> CPUKernelModule:
        path = Path(path)
        if not path.is_file():
            raise DiscoveryError("Unable to find kernel file", filename=str(path))

        with open(path, 'r', encoding='utf-8') as f:
            source = f.read()

        try:
            tree = ast.parse(source, filename=str(path))
            tree = rewrite_assertions(tree, filename=str(path))
            code = compile(tree, str(path), 'exec')
        except SyntaxError as e:
            raise DiscoveryError(f"Kernel failed to compile: {e.msg}",
                                 line=e.lineno, filename=str(path)) from e

        namespace = {
            '__name__': path.stem,
            '__file__': str(path),
            'np': np,
            'numthreads': numthreads,
            ASSERT_NAME: _assert_unbound,
            'InterlockedAdd': _interlocked_add_unbound,
        }
        try:
            exec(code, namespace)
        except Exception as e:
            raise DiscoveryError(f"Kernel module failed to load: {e}",
                                 filename=str(path)) from e

        module = CPUKernelModule(path, namespace)

        if self.debug:
            print(f"Loaded {path.name}: kernels={module.kernel_names}")

        return module

    # =========================================================================
    # Buffers
    # =========================================================================

    def create_buffer(self, name: str, count: int, dtype: Any) -> DeviceBuffer:
        dtype = np.dtype(dtype)
        return DeviceBuffer(name=name, count=count, dtype=dtype,
                            native=np.zeros(count, dtype=dtype))

    def write_buffer(self, buffer: DeviceBuffer, data: np.ndarray) -> None:
        self._check_live(buffer)
        data = self._check_buffer_data(buffer, data)
        buffer.native[:data.size] = data

    def read_buffer(self, buffer: DeviceBuffer) -> np.ndarray:
        self._check_live(buffer)
        return buffer.native.copy()

    def _check_live(self, buffer: DeviceBuffer) -> None:
        if buffer.released:
            raise ValueError(f"Buffer '{buffer.name}' has been released")

    # =========================================================================
    # Dispatch
    # =========================================================================

    def dispatch(self, kernel: Kernel, dispatch_size: Dim3,
                 variables: Dict[str, Any]) -> None:
        if kernel.destroyed:
            raise ValueError(f"Kernel '{kernel.name}' has been destroyed")

        func = kernel.native
        namespace = func.__globals__
        atomics = AtomicOps()
        token = object()

        for name, value in variables.items():
            if isinstance(value, DeviceBuffer):
                self._check_live(value)
                namespace[name] = value.native
            else:
                namespace[name] = value

        if PASS_FAIL_NAME in variables and COUNTER_NAME in variables:
            cursor = SlotCursor(variables[COUNTER_NAME].native, atomics)
            recorder = AssertionRecorder(variables[PASS_FAIL_NAME].native, cursor)
            namespace[ASSERT_NAME] = _bind_to_dispatch(ASSERT_NAME, recorder, token)
        else:
            namespace[ASSERT_NAME] = _assert_unbound
        namespace['InterlockedAdd'] = _bind_to_dispatch('InterlockedAdd',
                                                        atomics.interlocked_add, token)

        ids = thread_ids(dispatch_size, kernel.thread_group_size)

        if self.debug:
            print(f"CPU dispatch {kernel.name}: groups={tuple(dispatch_size)}, "
                  f"group_size={kernel.thread_group_size}, threads={len(ids)}")

        try:
            self._run_threads(kernel, func, ids, token)
        finally:
            namespace[ASSERT_NAME] = _assert_unbound
            namespace['InterlockedAdd'] = _interlocked_add_unbound

    def _run_threads(self, kernel: Kernel, func: Callable, ids: List[ThreadId],
                     token: object) -> None:
        """
        Run every invocation on daemon worker threads and wait for all of them.

        Workers are daemon threads: an invocation that never returns is
        abandoned after a timeout and does not keep the process alive.

        Raises:
            DispatchTimeoutError: If invocations are still running after dispatch_timeout
            KernelExecutionError: If an invocation raised (lowest thread index reported)
        """
        work = iter(enumerate(ids))
        lock = threading.Lock()
        stop = threading.Event()
        errors: Dict[int, Exception] = {}
        finished = [0]

        def worker():
            _invocation.dispatch = token
            while not stop.is_set():
                with lock:
                    item = next(work, None)
                if item is None:
                    return
                index, tid = item
                try:
                    func(tid)
                except Exception as e:
                    with lock:
                        errors[index] = e
                with lock:
                    finished[0] += 1

        count = max(1, min(self.max_workers or default_max_workers(), len(ids)))
        workers = [
            threading.Thread(target=worker, name=f"kernel-{kernel.name}-{i}", daemon=True)
            for i in range(count)
        ]
        for thread in workers:
            thread.start()

        deadline = None
        if self.dispatch_timeout is not None:
            deadline = time.monotonic() + self.dispatch_timeout
        for thread in workers:
            thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))

        if any(thread.is_alive() for thread in workers):
            # Running invocations cannot be interrupted; queued ones are dropped
            stop.set()
            with lock:
                pending = len(ids) - finished[0]
            raise DispatchTimeoutError(
                f"Kernel {kernel.name} did not finish within {self.dispatch_timeout}s "
                f"({pending} of {len(ids)} invocations pending)",
                filename=str(kernel.module_path)
            )

        if errors:
            index = min(errors)
            raise KernelExecutionError(
                f"Kernel {kernel.name} raised at thread {tuple(ids[index])}: {errors[index]!r}",
                filename=str(kernel.module_path)
            ) from errors[index]
