"""
computetest Result Channel

The result channel is the buffer that carries assertion verdicts from a
kernel back to the host. Every slot is an ``int2`` of (line, outcome):

    line     1-based kernel source line, or UNSET
    outcome  PASS / FAIL once line is set, UNSET otherwise

Slots are claimed through the ``TestCaseCounter`` cursor with an atomic
fetch-and-increment, so the occupied slots always form a dense prefix
starting at index 0. The host pre-fills the channel with (UNSET, UNSET)
before every dispatch and stops decoding at the first unset slot.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass
import numpy as np

from .errors import ChannelOverflowError

# Reference capacity, shared by convention with runtime/ComputeTest.slang
RESULT_BUFFER_SIZE = 1024

# Binding names used by the in-kernel recorder
PASS_FAIL_NAME = "PassFail"
COUNTER_NAME = "TestCaseCounter"

# Slot values
UNSET = -1
FAIL = 0
PASS = 1

# Slot layout: int2 (line: i32, outcome: i32) = 8 bytes
SLOT_DTYPE = np.dtype([
    ('line', np.int32),
    ('outcome', np.int32),
])

COUNTER_DTYPE = np.dtype(np.uint32)


@dataclass(frozen=True)
class Verdict:
    """A decoded (source line, pass/fail) pair from one channel slot."""
    line: int
    passed: bool


def initial_slots(capacity: int = RESULT_BUFFER_SIZE) -> np.ndarray:
    """Create a channel image with every slot set to (UNSET, UNSET)."""
    slots = np.empty(capacity, dtype=SLOT_DTYPE)
    slots['line'] = UNSET
    slots['outcome'] = UNSET
    return slots


def occupied_count(slots: np.ndarray) -> int:
    """
    Count the slots of the dense prefix.

    Args:
        slots: Channel contents read back from the device

    Returns:
        Index of the first unset slot, or the capacity if every slot is set
    """
    unset = (slots['line'] < 0) | (slots['outcome'] < 0)
    if not unset.any():
        return len(slots)
    return int(np.argmax(unset))


def decode_verdicts(slots: np.ndarray) -> List[Verdict]:
    """
    Decode the occupied prefix of a channel into verdicts, in slot order.

    Args:
        slots: Channel contents read back from the device

    Returns:
        List of verdicts; empty if no assertion executed
    """
    count = occupied_count(slots)
    return [
        Verdict(line=int(line), passed=int(outcome) != FAIL)
        for line, outcome in zip(slots['line'][:count], slots['outcome'][:count])
    ]


def first_failure(verdicts: List[Verdict]) -> Optional[Verdict]:
    """Return the first failing verdict, or None if all passed."""
    for verdict in verdicts:
        if not verdict.passed:
            return verdict
    return None


def check_overflow(claimed: int, capacity: int, filename: Optional[str] = None) -> None:
    """
    Raise ChannelOverflowError if more slots were claimed than exist.

    The recorder keeps counting past the end of the channel but never
    writes there, so a cursor above capacity means verdicts were dropped.
    """
    if claimed > capacity:
        raise ChannelOverflowError(claimed, capacity, filename=filename)


class ResultChannel:
    """
    Host-side owner of the result channel and slot cursor buffers.

    The channel is created once per test-suite run and reused for every
    dispatch; clear() and reset_cursor() must run before each dispatch.
    """

    def __init__(self, allocate: Callable[[str, int, np.dtype], Any],
                 backend: Any,
                 capacity: int = RESULT_BUFFER_SIZE,
                 name: str = "ComputeUnitTest"):
        """
        Create the channel buffers.

        Args:
            allocate: Buffer factory taking (name, count, dtype)
            backend: ComputeBackend used to write and read the buffers
            capacity: Number of verdict slots
            name: Prefix for the debug names of the buffers
        """
        if capacity <= 0:
            raise ValueError(f"Result channel capacity must be positive, got {capacity}")

        self.capacity = capacity
        self._backend = backend
        self._initial_data = initial_slots(capacity)
        self._counter_initial_data = np.zeros(1, dtype=COUNTER_DTYPE)

        self.slots_buffer = allocate(f"{name}.TestResults", capacity, SLOT_DTYPE)
        self.counter_buffer = allocate(f"{name}.TestCaseCounter", 1, COUNTER_DTYPE)

    def clear(self) -> None:
        """Fill every slot with (UNSET, UNSET)."""
        self._backend.write_buffer(self.slots_buffer, self._initial_data)

    def reset_cursor(self) -> None:
        """Zero the slot cursor."""
        self._backend.write_buffer(self.counter_buffer, self._counter_initial_data)

    def bind(self, variables: Dict[str, Any]) -> None:
        """Add the channel buffers to a kernel's variable bindings."""
        variables[PASS_FAIL_NAME] = self.slots_buffer
        variables[COUNTER_NAME] = self.counter_buffer

    def read(self) -> Tuple[np.ndarray, int]:
        """
        Read the channel back from the device.

        Returns:
            Tuple of (slots, claimed) where claimed is the final cursor value
        """
        slots = self._backend.read_buffer(self.slots_buffer)
        counter = self._backend.read_buffer(self.counter_buffer)
        return slots, int(counter[0])
