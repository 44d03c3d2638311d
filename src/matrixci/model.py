# model.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Per-cell install/script source: Inherit | Override(commands) | Skip
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Inherit:
    """Field not given on the cell: use the global default."""

    def __repr__(self) -> str:
        return "INHERIT"


@dataclass(frozen=True)
class Skip:
    """Cell deliberately runs nothing for this field (`install: skip`)."""

    def __repr__(self) -> str:
        return "SKIP"


@dataclass(frozen=True)
class Override:
    """Whole-sequence replacement of the global default."""
    commands: Tuple[str, ...]


INHERIT = Inherit()
SKIP = Skip()

StepSource = Union[Inherit, Override, Skip]


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class GlobalDefaults:
    language: str = "generic"
    env: Dict[str, str] = field(default_factory=dict)
    install: Tuple[str, ...] = ()
    script: Tuple[str, ...] = ()
    cache: Optional[str] = None          # cache policy token, e.g. "cargo"
    cache_dirs: Tuple[str, ...] = ()     # extra dirs from `cache: {directories: [...]}`
    services: Tuple[str, ...] = ()
    privileged: bool = False
    target_var: str = "TARGET"


@dataclass(frozen=True)
class MatrixCell:
    env: Dict[str, str] = field(default_factory=dict)
    toolchain: Optional[str] = None
    install: StepSource = INHERIT
    script: StepSource = INHERIT
    components: Tuple[str, ...] = ()
    targets: Tuple[str, ...] = ()
    name: Optional[str] = None


@dataclass(frozen=True)
class MatrixConfig:
    defaults: GlobalDefaults
    cells: Tuple[MatrixCell, ...]


# ---------------------------------------------------------------------
# Resolved plans and results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionPlan:
    """Fully resolved, ready-to-run form of one matrix cell."""
    index: int
    toolchain: str
    env: Dict[str, str]
    install: Tuple[str, ...]
    script: Tuple[str, ...]
    cell_env: Dict[str, str] = field(default_factory=dict)
    language: str = "generic"
    components: Tuple[str, ...] = ()
    targets: Tuple[str, ...] = ()
    cache: Optional[str] = None
    cache_dirs: Tuple[str, ...] = ()
    services: Tuple[str, ...] = ()
    privileged: bool = False
    target_var: str = "TARGET"
    name: Optional[str] = None

    @property
    def target(self) -> str:
        return self.env[self.target_var]

    @property
    def identity(self) -> str:
        # cell vars in declaration order, then the toolchain
        parts = [f"{k}={v}" for k, v in self.cell_env.items()]
        parts.append(f"toolchain={self.toolchain}")
        return " ".join(parts)

    @property
    def label(self) -> str:
        return f"#{self.index + 1} {self.name or self.identity}"

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "name": self.name,
            "language": self.language,
            "toolchain": self.toolchain,
            "target": self.target,
            "env": dict(self.env),
            "install": list(self.install),
            "script": list(self.script),
            "components": list(self.components),
            "targets": list(self.targets),
            "cache": self.cache,
            "cache_dirs": list(self.cache_dirs),
            "services": list(self.services),
            "privileged": self.privileged,
        }


@dataclass(frozen=True)
class CellResult:
    plan: ExecutionPlan
    success: bool
    exit_code: Optional[int] = 0
    phase: Optional[str] = None           # "provision" | "install" | "script"
    failed_step: Optional[str] = None
    error: Optional[str] = None
    output: str = ""
    duration: float = 0.0

    @property
    def identity(self) -> str:
        return self.plan.identity


@dataclass(frozen=True)
class RunVerdict:
    results: Tuple[CellResult, ...]

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failures(self) -> Tuple[CellResult, ...]:
        return tuple(r for r in self.results if not r.success)

    @property
    def failing_cells(self) -> list[str]:
        """
        Identity of every failed cell. Cells that share env and toolchain
        (say, differing only in their script) get their cell number appended.
        """
        seen = Counter(r.identity for r in self.results)
        return [
            r.identity if seen[r.identity] == 1 else f"{r.identity} #{r.plan.index + 1}"
            for r in self.failures
        ]

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def raise_for_failure(self) -> None:
        from .errors import AggregateFailure

        if not self.success:
            raise AggregateFailure(failures=self.failing_cells)
