"""
computetest Test Meshes

Small meshes for kernels that process geometry, built on first use and
uploaded as device buffers.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
import numpy as np

from .backends.base import ComputeBackend, DeviceBuffer


@dataclass
class Mesh:
    """Triangle mesh with per-vertex normals and uvs."""
    vertices: np.ndarray
    normals: np.ndarray
    uv: np.ndarray
    triangles: np.ndarray
    buffers: Dict[str, DeviceBuffer] = field(default_factory=dict, repr=False)

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def triangle_count(self) -> int:
        return len(self.triangles) // 3

    def upload(self, backend: ComputeBackend, name: str = "Mesh") -> Dict[str, DeviceBuffer]:
        """
        Upload the mesh as float3/float3/float2/uint buffers.

        Returns:
            Buffers keyed by "vertices", "normals", "uv", "triangles"
        """
        arrays = {
            'vertices': self.vertices.reshape(-1),
            'normals': self.normals.reshape(-1),
            'uv': self.uv.reshape(-1),
            'triangles': self.triangles.reshape(-1),
        }
        for key, data in arrays.items():
            buffer = backend.create_buffer(f"{name}.{key}", data.size, data.dtype)
            backend.write_buffer(buffer, data)
            self.buffers[key] = buffer
        return self.buffers

    def release(self, backend: ComputeBackend) -> None:
        for buffer in self.buffers.values():
            backend.release_buffer(buffer)
        self.buffers = {}


def build_triangle_mesh() -> Mesh:
    """Triangle with verts at (0,0,0), (1,0,0), (0,1,0)."""
    return Mesh(
        vertices=np.array([
            [0.0, 0.0, 0.0],
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
        ], dtype=np.float32),
        normals=np.tile(np.array([0.0, 0.0, 1.0], dtype=np.float32), (3, 1)),
        uv=np.array([
            [0.0, 0.0],
            [1.0, 0.0],
            [0.0, 1.0],
        ], dtype=np.float32),
        triangles=np.array([0, 1, 2], dtype=np.uint32),
    )


def build_quad_mesh() -> Mesh:
    """1x1 quad with verts at (0,0,0), (1,0,0), (0,1,0) and (1,1,0)."""
    return Mesh(
        vertices=np.array([
            [0.0, 0.0, 0.0],
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [1.0, 1.0, 0.0],
        ], dtype=np.float32),
        normals=np.tile(np.array([0.0, 0.0, 1.0], dtype=np.float32), (4, 1)),
        uv=np.array([
            [0.0, 0.0],
            [1.0, 0.0],
            [0.0, 1.0],
            [1.0, 1.0],
        ], dtype=np.float32),
        triangles=np.array([0, 1, 2, 2, 1, 3], dtype=np.uint32),
    )


class Lazy:
    """A value built by factory on first access."""

    def __init__(self, factory: Callable[[], Any]):
        self._factory = factory
        self._value: Optional[Any] = None
        self._created = False

    @property
    def is_value_created(self) -> bool:
        return self._created

    @property
    def value(self) -> Any:
        if not self._created:
            self._value = self._factory()
            self._created = True
        return self._value
