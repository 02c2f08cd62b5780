"""
computetest Compute Backend Interface

A backend compiles kernel modules, allocates device buffers and
dispatches kernels. The orchestrator only talks to this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple
import numpy as np

Dim3 = Tuple[int, int, int]


@dataclass(eq=False)
class DeviceBuffer:
    """
    A typed device buffer.

    ``native`` is the backend's own buffer object (a numpy array for the
    CPU backend, a slangpy Buffer for the GPU backend).
    """
    name: str
    count: int
    dtype: np.dtype
    native: Any = field(default=None, repr=False)
    released: bool = False

    @property
    def size(self) -> int:
        """Size in bytes."""
        return self.count * self.dtype.itemsize


@dataclass(eq=False)
class Kernel:
    """A compiled kernel entry point."""
    name: str
    module_path: Path
    thread_group_size: Dim3 = (1, 1, 1)
    native: Any = field(default=None, repr=False)
    destroyed: bool = False


class KernelModule(ABC):
    """A compiled kernel source file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    @abstractmethod
    def kernel_names(self) -> List[str]:
        """Names of the entry points defined by the module."""

    def has_kernel(self, name: str) -> bool:
        return name in self.kernel_names

    @abstractmethod
    def find_kernel(self, name: str) -> Kernel:
        """Create a kernel for the named entry point."""


class ComputeBackend(ABC):
    """Interface to a compute device."""

    # Device name accepted by create_backend()
    device_name: str = ""

    # Extension of the kernel files this backend loads
    kernel_suffix: str = ""

    def __init__(self, debug: bool = False):
        self.debug = debug

    @abstractmethod
    def load_module(self, path: Path) -> KernelModule:
        """
        Compile a kernel file.

        Raises:
            DiscoveryError: If the file is missing or fails to compile
        """

    @abstractmethod
    def create_buffer(self, name: str, count: int, dtype: Any) -> DeviceBuffer:
        """Allocate a zeroed buffer of count elements."""

    @abstractmethod
    def write_buffer(self, buffer: DeviceBuffer, data: np.ndarray) -> None:
        """Upload data into a buffer."""

    @abstractmethod
    def read_buffer(self, buffer: DeviceBuffer) -> np.ndarray:
        """Read a buffer back as an array of its dtype."""

    @abstractmethod
    def dispatch(self, kernel: Kernel, dispatch_size: Dim3,
                 variables: Dict[str, Any]) -> None:
        """
        Dispatch a kernel and wait for it to complete.

        Args:
            kernel: Kernel to run
            dispatch_size: Number of work groups in x, y, z
            variables: Global bindings; DeviceBuffer values are bound as buffers
        """

    def release_buffer(self, buffer: DeviceBuffer) -> None:
        buffer.native = None
        buffer.released = True

    def destroy_kernel(self, kernel: Kernel) -> None:
        kernel.native = None
        kernel.destroyed = True

    def close(self) -> None:
        """Release the device."""
        pass

    def _check_buffer_data(self, buffer: DeviceBuffer, data: np.ndarray) -> np.ndarray:
        data = np.asarray(data)
        if data.dtype != buffer.dtype:
            data = data.astype(buffer.dtype)
        if data.size > buffer.count:
            raise ValueError(
                f"Cannot write {data.size} elements into buffer '{buffer.name}' "
                f"of {buffer.count} elements"
            )
        return data.reshape(-1)
