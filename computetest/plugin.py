"""
computetest pytest plugin

Adds command-line options for ComputeUnitTest suites. Registered through
the ``pytest11`` entry point.
"""

from .backends import DEVICES


def pytest_addoption(parser):
    group = parser.getgroup("computetest", "compute kernel tests")
    group.addoption(
        "--compute-device",
        action="store",
        default=None,
        choices=DEVICES,
        help="Device to run compute kernel tests on (default: cpu)",
    )
    group.addoption(
        "--compute-debug",
        action="store_true",
        default=None,
        help="Print compute harness debug output",
    )
    group.addoption(
        "--compute-timeout",
        action="store",
        type=float,
        default=None,
        help="Seconds to wait for a CPU kernel dispatch",
    )


def pytest_report_header(config):
    device = config.getoption("compute_device", default=None)
    if device:
        return f"computetest: device={device}"
    return None
