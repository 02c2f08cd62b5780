"""
computetest Kernel Source

Keeps a copy of a kernel's source lines so failing verdicts can be
reported with the assertion text at the failing line.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .channel import Verdict


@dataclass
class KernelSource:
    """Source lines and filename of a kernel file."""

    path: Path
    lines: List[str] = field(default_factory=list, repr=False)

    @property
    def filename(self) -> str:
        return self.path.name

    @classmethod
    def from_file(cls, path: Path) -> 'KernelSource':
        """Read a kernel file."""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()
        return cls(path=path, lines=lines)

    def line_text(self, line: int) -> str:
        """
        Get the trimmed source text of a 1-based line.

        Args:
            line: 1-based line number

        Returns:
            The stripped line, or a placeholder if the line does not exist
        """
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1].strip()
        return f"<line {line} not in {self.filename}>"

    def location(self, line: int) -> str:
        return f"{self.filename}:{line}"

    def describe(self, verdict: Verdict) -> str:
        """Describe a verdict as '<source> passed|failed at <file>:<line>'."""
        outcome = "passed" if verdict.passed else "failed"
        return f"{self.line_text(verdict.line)} {outcome} at {self.location(verdict.line)}"
