"""
computetest Configuration

Harness settings. Values come from, in order of precedence: attributes of
the test class, pytest command-line options, environment variables, and
the defaults below.
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Sequence

from .backends import ComputeBackend, create_backend
from .channel import RESULT_BUFFER_SIZE
from .orchestrator import Orchestrator

ENV_DEVICE = "COMPUTETEST_DEVICE"
ENV_DEBUG = "COMPUTETEST_DEBUG"
ENV_TIMEOUT = "COMPUTETEST_TIMEOUT"
ENV_CAPACITY = "COMPUTETEST_CAPACITY"

# pytest option dest -> HarnessConfig field
PYTEST_OPTIONS = {
    'compute_device': 'device',
    'compute_debug': 'debug',
    'compute_timeout': 'dispatch_timeout',
}

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class HarnessConfig:
    """Settings for one test-suite run."""
    device: str = "cpu"
    capacity: int = RESULT_BUFFER_SIZE
    dispatch_timeout: Optional[float] = None
    max_workers: Optional[int] = None
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'HarnessConfig':
        """Read settings from COMPUTETEST_* environment variables."""
        environ = os.environ if environ is None else environ
        overrides = {}

        if environ.get(ENV_DEVICE):
            overrides['device'] = environ[ENV_DEVICE].strip().lower()
        if environ.get(ENV_DEBUG):
            overrides['debug'] = environ[ENV_DEBUG].strip().lower() in _TRUE_VALUES
        if environ.get(ENV_TIMEOUT):
            overrides['dispatch_timeout'] = float(environ[ENV_TIMEOUT])
        if environ.get(ENV_CAPACITY):
            overrides['capacity'] = int(environ[ENV_CAPACITY])

        return cls().merged(**overrides)

    def merged(self, **overrides: Any) -> 'HarnessConfig':
        """Return a copy with every non-None override applied."""
        names = {f.name for f in fields(self)}
        unknown = set(overrides) - names
        if unknown:
            raise TypeError(f"Unknown harness settings: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def create_backend(self) -> ComputeBackend:
        return create_backend(self.device,
                              max_workers=self.max_workers,
                              dispatch_timeout=self.dispatch_timeout,
                              debug=self.debug)

    def create_orchestrator(self, name: str = "ComputeUnitTest",
                            kernel_search_paths: Sequence = ()) -> Orchestrator:
        return Orchestrator(self.create_backend(),
                            capacity=self.capacity,
                            name=name,
                            kernel_search_paths=kernel_search_paths,
                            debug=self.debug)


def resolve_config(test_class: Optional[type] = None, pytest_config: Any = None,
                   environ: Optional[Mapping[str, str]] = None) -> HarnessConfig:
    """
    Build the effective configuration for a test class.

    Args:
        test_class: Class whose non-None attributes named like
            HarnessConfig fields override everything else
        pytest_config: pytest Config carrying --compute-* options
        environ: Environment mapping (default: os.environ)

    Returns:
        HarnessConfig
    """
    config = HarnessConfig.from_env(environ)

    if pytest_config is not None:
        config = config.merged(**{
            field_name: pytest_config.getoption(option, default=None)
            for option, field_name in PYTEST_OPTIONS.items()
        })

    if test_class is not None:
        config = config.merged(**{
            f.name: getattr(test_class, f.name, None) for f in fields(HarnessConfig)
        })

    return config
