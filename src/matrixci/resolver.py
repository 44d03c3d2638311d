# resolver.py
# Expands GlobalDefaults + MatrixCells into ExecutionPlans. Pure: no I/O.
from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .errors import ConfigError
from .model import (
    ExecutionPlan,
    GlobalDefaults,
    Inherit,
    MatrixCell,
    MatrixConfig,
    Override,
    Skip,
    StepSource,
)


def _resolve_steps(source: StepSource, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if isinstance(source, Skip):
        return ()
    if isinstance(source, Override) and source.commands:
        return tuple(source.commands)
    if isinstance(source, (Inherit, Override)):
        # empty override falls back to the default
        return tuple(default)
    raise ConfigError(f"unknown step source: {source!r}")


def resolve_cell(defaults: GlobalDefaults, cell: MatrixCell, index: int = 0) -> ExecutionPlan:
    """
    Resolve one cell against the global defaults.

    Raises:
        ConfigError: missing toolchain version or missing target variable.
    """
    where = f"matrix.include[{index}]"

    toolchain = (cell.toolchain or "").strip()
    if not toolchain:
        raise ConfigError(f"{where}: a toolchain version is required for every cell")

    target = cell.env.get(defaults.target_var)
    if target is None or not str(target).strip():
        raise ConfigError(
            f"{where}: env.{defaults.target_var} is required "
            f"(got env keys {sorted(cell.env)})"
        )

    env = dict(defaults.env)
    env.update(cell.env)

    return ExecutionPlan(
        index=index,
        toolchain=toolchain,
        env=env,
        install=_resolve_steps(cell.install, defaults.install),
        script=_resolve_steps(cell.script, defaults.script),
        cell_env=dict(cell.env),
        language=defaults.language,
        components=tuple(cell.components),
        targets=tuple(cell.targets),
        cache=defaults.cache,
        cache_dirs=tuple(defaults.cache_dirs),
        services=tuple(defaults.services),
        privileged=defaults.privileged,
        target_var=defaults.target_var,
        name=cell.name,
    )


def resolve_matrix(
    config: MatrixConfig | GlobalDefaults,
    cells: Optional[Iterable[MatrixCell]] = None,
) -> List[ExecutionPlan]:
    """
    Produce one ExecutionPlan per cell, in input order.

    Accepts either a MatrixConfig or (GlobalDefaults, cells). Fails fast on the
    first malformed cell: no partial plan list is ever returned.
    """
    if isinstance(config, MatrixConfig):
        defaults = config.defaults
        cell_list = list(config.cells)
    else:
        defaults = config
        cell_list = list(cells or [])

    if not cell_list:
        raise ConfigError("matrix.include is empty: at least one cell is required")

    return [resolve_cell(defaults, cell, i) for i, cell in enumerate(cell_list)]


def filter_plans(plans: List[ExecutionPlan], targets: Iterable[str]) -> List[ExecutionPlan]:
    """Keep plans whose target is one of `targets` (all plans if `targets` is empty)."""
    wanted = set(targets)
    if not wanted:
        return list(plans)
    return [p for p in plans if p.target in wanted]
