"""
computetest Assertion Recorder

Host-side model of the in-kernel ASSERT used by the CPU backend. Each
assertion claims a slot with an atomic fetch-and-increment on the
dispatch's slot cursor and writes (line, outcome) into the claimed slot.

Line numbers are captured before the kernel runs: ASSERT(cond) calls in
kernel source are rewritten to ASSERT(cond, <line>) when the module is
loaded, the same way the Slang macro bakes in __LINE__.
"""

import ast
import threading
from typing import Optional
import numpy as np

from .channel import PASS, FAIL

ASSERT_NAME = "ASSERT"


class AtomicOps:
    """
    Atomic read-modify-write operations on device buffers.

    One instance is shared by every invocation of a dispatch; all
    operations go through a single lock.
    """

    def __init__(self, lock: Optional[threading.Lock] = None):
        self._lock = lock or threading.Lock()

    def interlocked_add(self, buffer: np.ndarray, index: int, value: int) -> int:
        """
        Add value to buffer[index] and return the original value.

        Args:
            buffer: Device buffer contents
            index: Element index
            value: Amount to add

        Returns:
            The element value before the add
        """
        with self._lock:
            original = buffer[index].item()
            buffer[index] = original + value
        return original


class SlotCursor:
    """The TestCaseCounter: hands out unique, increasing slot indices."""

    def __init__(self, counter: np.ndarray, atomics: Optional[AtomicOps] = None):
        self._counter = counter
        self._atomics = atomics or AtomicOps()

    @property
    def value(self) -> int:
        return int(self._counter[0])

    def fetch_add(self, count: int = 1) -> int:
        """Claim count slots, returning the first claimed index."""
        return self._atomics.interlocked_add(self._counter, 0, count)

    def reset(self) -> None:
        self._counter[0] = 0


class AssertionRecorder:
    """Writes assertion verdicts into a result channel."""

    def __init__(self, slots: np.ndarray, cursor: SlotCursor):
        self._slots = slots
        self._cursor = cursor

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def record(self, condition, line: int) -> int:
        """
        Record one assertion.

        Slots past the end of the channel are claimed but never written;
        the host sees the overflow through the cursor value.

        Args:
            condition: Assertion condition, tested for truthiness
            line: 1-based source line of the ASSERT call

        Returns:
            The claimed slot index
        """
        slot = self._cursor.fetch_add()
        if slot < len(self._slots):
            self._slots[slot] = (line, PASS if condition else FAIL)
        return slot

    __call__ = record


class AssertionLineTransformer(ast.NodeTransformer):
    """Rewrites ASSERT(cond) calls into ASSERT(cond, <line literal>)."""

    def __init__(self, name: str = ASSERT_NAME, filename: str = "<kernel>"):
        self.name = name
        self.filename = filename
        self.count = 0

    def visit_Call(self, node: ast.Call) -> ast.AST:
        self.generic_visit(node)
        if not (isinstance(node.func, ast.Name) and node.func.id == self.name):
            return node

        if len(node.args) != 1 or node.keywords:
            raise SyntaxError(
                f"{self.name}() takes exactly one condition argument",
                (self.filename, node.lineno, node.col_offset + 1, None)
            )

        node.args.append(ast.copy_location(ast.Constant(value=node.lineno), node))
        self.count += 1
        return node


def rewrite_assertions(tree: ast.AST, filename: str = "<kernel>") -> ast.AST:
    """
    Bake call-site line numbers into every ASSERT call of a module.

    Args:
        tree: Parsed kernel module
        filename: Kernel filename for error messages

    Returns:
        The rewritten tree, ready to compile
    """
    tree = AssertionLineTransformer(filename=filename).visit(tree)
    return ast.fix_missing_locations(tree)
