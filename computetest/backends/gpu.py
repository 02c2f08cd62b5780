"""
computetest GPU Backend

Compiles Slang kernels and dispatches them on a GPU via SlangPy.

GPU kernels live in ``.slang`` files next to the test module and include
the assertion runtime:

    #include "ComputeTest.slang"

    [shader("compute")]
    [numthreads(1, 1, 1)]
    void test_addition(uint3 tid: SV_DispatchThreadID)
    {
        ASSERT(1 + 1 == 2);
    }
"""

from pathlib import Path
from typing import Any, Dict, List
import numpy as np

from .base import ComputeBackend, DeviceBuffer, Dim3, Kernel, KernelModule
from ..errors import BackendUnavailableError, DiscoveryError

# Runtime directory for Slang modules
RUNTIME_DIR = Path(__file__).parent.parent / "runtime"

KERNEL_SUFFIX = ".slang"


class SlangKernelModule(KernelModule):
    """A compiled ``.slang`` kernel file."""

    def __init__(self, backend: 'SlangBackend', path: Path, session: Any, module: Any):
        super().__init__(path)
        self._backend = backend
        self._session = session
        self._module = module

    @property
    def module_path(self) -> str:
        # Module path without extension
        return str(self.path.with_suffix(''))

    @property
    def kernel_names(self) -> List[str]:
        return [entry_point.name for entry_point in self._module.entry_points]

    def find_kernel(self, name: str) -> Kernel:
        import slangpy

        if not self.has_kernel(name):
            raise DiscoveryError(f"Cannot find kernel {name}", filename=str(self.path))

        # Load program with specific entry point
        program = self._session.load_program(self.module_path, [name])

        desc = slangpy.ComputeKernelDesc()
        desc.program = program
        native = self._backend.device.create_compute_kernel(desc)

        group = native.thread_group_size
        return Kernel(
            name=name,
            module_path=self.path,
            thread_group_size=(int(group.x), int(group.y), int(group.z)),
            native=native
        )


class SlangBackend(ComputeBackend):
    """Compute device backed by SlangPy."""

    device_name = "gpu"
    kernel_suffix = KERNEL_SUFFIX

    def __init__(self, debug: bool = False):
        """
        Create the device.

        Args:
            debug: Enable debug output

        Raises:
            BackendUnavailableError: If slangpy is missing or no device can be created
        """
        super().__init__(debug=debug)

        try:
            import slangpy
        except ImportError as e:
            raise BackendUnavailableError(
                "GPU kernel tests require slangpy. Install with: pip install computetest[gpu]"
            ) from e

        try:
            self.device = slangpy.Device()
        except Exception as e:
            raise BackendUnavailableError(f"Unable to create a GPU device: {e}") from e

        self._usage = slangpy.BufferUsage.shader_resource | slangpy.BufferUsage.unordered_access

        # One session per kernel directory, keyed by include path
        self._sessions: Dict[Path, Any] = {}

        if self.debug:
            print(f"GPU initialized: {self.device}")

    def _get_session(self, directory: Path) -> Any:
        """Get or create a Slang session that can include the runtime."""
        import slangpy

        if directory not in self._sessions:
            opts = slangpy.SlangCompilerOptions()
            opts.include_paths = [str(RUNTIME_DIR), str(directory)]
            self._sessions[directory] = self.device.create_slang_session(compiler_options=opts)
        return self._sessions[directory]

    # =========================================================================
    # Kernel Loading
    # =========================================================================

    def load_module(self, path: Path) -> SlangKernelModule:
        path = Path(path)
        if not path.is_file():
            raise DiscoveryError("Unable to find kernel file", filename=str(path))

        session = self._get_session(path.parent.resolve())
        try:
            module = session.load_module(str(path.with_suffix('')))
        except Exception as e:
            raise DiscoveryError(f"Kernel failed to compile: {e}", filename=str(path)) from e

        kernel_module = SlangKernelModule(self, path, session, module)

        if self.debug:
            print(f"Loaded {path.name}: kernels={kernel_module.kernel_names}")

        return kernel_module

    # =========================================================================
    # Buffers
    # =========================================================================

    def create_buffer(self, name: str, count: int, dtype: Any) -> DeviceBuffer:
        dtype = np.dtype(dtype)
        native = self.device.create_buffer(
            size=count * dtype.itemsize,
            usage=self._usage
        )
        buffer = DeviceBuffer(name=name, count=count, dtype=dtype, native=native)
        self.write_buffer(buffer, np.zeros(count, dtype=dtype))
        return buffer

    def write_buffer(self, buffer: DeviceBuffer, data: np.ndarray) -> None:
        data = self._check_buffer_data(buffer, data)
        if data.size < buffer.count:
            padded = np.zeros(buffer.count, dtype=buffer.dtype)
            padded[:data.size] = data
            data = padded
        buffer.native.copy_from_numpy(np.ascontiguousarray(data).view(np.uint8))

    def read_buffer(self, buffer: DeviceBuffer) -> np.ndarray:
        raw = buffer.native.to_numpy().tobytes()
        return np.frombuffer(raw, dtype=buffer.dtype, count=buffer.count).copy()

    # =========================================================================
    # Dispatch
    # =========================================================================

    def dispatch(self, kernel: Kernel, dispatch_size: Dim3,
                 variables: Dict[str, Any]) -> None:
        import slangpy

        group = kernel.thread_group_size
        thread_count = [d * g for d, g in zip(dispatch_size, group)]

        native_vars = {
            name: value.native if isinstance(value, DeviceBuffer) else value
            for name, value in variables.items()
        }

        if self.debug:
            print(f"GPU dispatch {kernel.name}: groups={tuple(dispatch_size)}, "
                  f"thread_count={tuple(thread_count)}")

        kernel.native.dispatch(
            thread_count=slangpy.uint3(thread_count[0], thread_count[1], thread_count[2]),
            vars=native_vars
        )

    def close(self) -> None:
        self._sessions.clear()
        device = getattr(self, 'device', None)
        if device is not None and hasattr(device, 'close'):
            device.close()
        self.device = None
