"""
computetest Compute Backends

    cpu  - emulated device running Python kernels (.pyk) on a thread pool
    gpu  - Slang kernels (.slang) dispatched through SlangPy
"""

from typing import Optional

from .base import ComputeBackend, DeviceBuffer, Kernel, KernelModule
from .cpu import CPUBackend

DEVICES = ("cpu", "gpu")


def create_backend(device: str = "cpu",
                   max_workers: Optional[int] = None,
                   dispatch_timeout: Optional[float] = None,
                   debug: bool = False) -> ComputeBackend:
    """
    Create a compute backend.

    Args:
        device: "cpu" or "gpu"
        max_workers: CPU thread pool size
        dispatch_timeout: CPU dispatch timeout in seconds
        debug: Enable debug output

    Returns:
        ComputeBackend instance
    """
    if device == "cpu":
        return CPUBackend(max_workers=max_workers,
                          dispatch_timeout=dispatch_timeout,
                          debug=debug)

    if device == "gpu":
        from .gpu import SlangBackend
        if debug and dispatch_timeout is not None:
            print("GPU dispatches cannot be cancelled; dispatch_timeout is ignored")
        return SlangBackend(debug=debug)

    raise ValueError(f"Unknown compute device '{device}', expected one of {DEVICES}")


__all__ = [
    'ComputeBackend',
    'DeviceBuffer',
    'Kernel',
    'KernelModule',
    'CPUBackend',
    'DEVICES',
    'create_backend',
]
