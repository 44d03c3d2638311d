# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ConfigError(Exception):
    """Malformed or incomplete matrix. Aborts the run before any cell is dispatched."""
    reason: str

    def __str__(self) -> str:
        return f"config error: {self.reason}"


@dataclass
class ProvisioningError(Exception):
    """
    The runner could not establish the environment a cell needs
    (missing service, missing privilege, toolchain install failure).
    Fatal to that cell only.
    """
    cell: str
    message: str
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"provisioning failed: {self.message}", f"cell={self.cell}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    cell: str
    phase: str
    step: str
    exit_code: Optional[int]
    timed_out: bool = False
    output: str = ""

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.cell}] {self.phase} step timed out: {self.step}"
        return f"[{self.cell}] {self.phase} step failed (exit={self.exit_code}): {self.step}"


@dataclass
class AggregateFailure(Exception):
    """One or more cells failed. Carries the identity of every failing cell."""
    failures: List[str]

    def __str__(self) -> str:
        lines = [f"{len(self.failures)} cell(s) failed:"]
        lines.extend(f"  {name}" for name in self.failures)
        return "\n".join(lines)
