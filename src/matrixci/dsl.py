# dsl.py
from __future__ import annotations

from typing import Dict, Iterable, Optional, Sequence, Union

from .model import (
    INHERIT,
    SKIP,
    GlobalDefaults,
    MatrixCell,
    MatrixConfig,
    Override,
    Skip,
    StepSource,
)

Commands = Union[str, Sequence[str], Skip, None]


def _steps(value: Commands) -> StepSource:
    if value is None:
        return INHERIT
    if isinstance(value, Skip):
        return SKIP
    if isinstance(value, str):
        return Override((value,))
    return Override(tuple(value))


def _tuple(value: Union[str, Iterable[str], None]) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


# ---------------------------------------------------------------------
# Global defaults
# ---------------------------------------------------------------------

def defaults(
    language: str = "generic",
    *,
    install: Union[str, Sequence[str], None] = None,
    script: Union[str, Sequence[str], None] = None,
    env: Optional[Dict[str, str]] = None,
    cache: Optional[str] = None,
    cache_dirs: Optional[Sequence[str]] = None,
    services: Union[str, Sequence[str], None] = None,
    privileged: bool = False,
    target_var: str = "TARGET",
) -> GlobalDefaults:
    return GlobalDefaults(
        language=language,
        env={k: str(v) for k, v in (env or {}).items()},
        install=_tuple(install),
        script=_tuple(script),
        cache=cache,
        cache_dirs=_tuple(cache_dirs),
        services=_tuple(services),
        privileged=privileged,
        target_var=target_var,
    )


# ---------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------

def cell(
    target: Optional[str],
    toolchain: Optional[str],
    *,
    install: Commands = None,
    script: Commands = None,
    env: Optional[Dict[str, str]] = None,
    components: Union[str, Sequence[str], None] = None,
    targets: Union[str, Sequence[str], None] = None,
    name: Optional[str] = None,
    target_var: str = "TARGET",
) -> MatrixCell:
    """
    One matrix cell.

    Example:
        cell("thumbv7em-none-eabi", "nightly",
             script="./build_nostd.sh",
             components=["rust-src"])

    Pass `skip` for install/script to run nothing for that field.
    """
    cell_env = {k: str(v) for k, v in (env or {}).items()}
    if target is not None:
        cell_env = {target_var: target, **cell_env}
    return MatrixCell(
        env=cell_env,
        toolchain=toolchain,
        install=_steps(install),
        script=_steps(script),
        components=_tuple(components),
        targets=_tuple(targets),
        name=name,
    )


def build_matrix(base: GlobalDefaults, *cells: MatrixCell) -> MatrixConfig:
    """
    Matrix definition helper for Python matrix files:

        from matrixci.dsl import build_matrix, defaults, cell

        MATRIX = build_matrix(
            defaults("rust", script="cargo test --target $TARGET"),
            cell("x86_64-unknown-linux-gnu", "stable"),
            cell("x86_64-unknown-linux-gnu", "nightly"),
        )
    """
    return MatrixConfig(defaults=base, cells=tuple(cells))


def expand(
    targets: Iterable[str],
    toolchains: Iterable[str],
    **kwargs,
) -> list[MatrixCell]:
    """Cartesian product of targets x toolchains, targets outermost."""
    toolchains = list(toolchains)
    return [cell(t, v, **kwargs) for t in targets for v in toolchains]


skip = SKIP
