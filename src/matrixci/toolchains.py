# toolchains.py
# How each language family provisions a toolchain for a cell.
from __future__ import annotations

import platform
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .model import ExecutionPlan


@dataclass(frozen=True)
class Toolchain:
    """
    Provisioning recipe for one language family.

    Command templates use str.format with `version`, `component`, `target`.
    """
    language: str
    version_key: Optional[str] = None          # config key naming the version, e.g. "rust"
    select_env: Optional[str] = None           # env var selecting the toolchain
    install_cmd: Optional[str] = None
    component_cmd: Optional[str] = None
    target_cmd: Optional[str] = None
    build_dir_env: Optional[str] = None        # per-cell build output dir
    cache_scopes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    cache_inputs: Tuple[str, ...] = ()
    cross: Optional[Tuple[str, str]] = None    # (native tool, cross helper)
    cross_subcommands: Tuple[str, ...] = ()


RUST = Toolchain(
    language="rust",
    version_key="rust",
    select_env="RUSTUP_TOOLCHAIN",
    install_cmd="rustup toolchain install {version} --profile minimal",
    component_cmd="rustup component add {component} --toolchain {version}",
    target_cmd="rustup target add {target} --toolchain {version}",
    build_dir_env="CARGO_TARGET_DIR",
    cache_scopes={"cargo": ("~/.cargo/registry", "~/.cargo/git")},
    cache_inputs=("Cargo.lock", "Cargo.toml"),
    cross=("cargo", "cross"),
    cross_subcommands=("build", "test", "run", "check", "bench", "clippy", "doc", "rustc"),
)

GENERIC = Toolchain(language="generic")

_REGISTRY: Dict[str, Toolchain] = {
    RUST.language: RUST,
}


def get_toolchain(language: str) -> Toolchain:
    return _REGISTRY.get((language or "").lower(), GENERIC)


def register_toolchain(toolchain: Toolchain) -> None:
    _REGISTRY[toolchain.language.lower()] = toolchain


def provisioning_commands(tc: Toolchain, plan: ExecutionPlan) -> List[str]:
    """Commands that install the cell's toolchain, components and extra targets."""
    cmds: List[str] = []
    if tc.install_cmd:
        cmds.append(tc.install_cmd.format(version=plan.toolchain))
    if tc.component_cmd:
        for c in plan.components:
            cmds.append(tc.component_cmd.format(component=c, version=plan.toolchain))
    if tc.target_cmd:
        for t in plan.targets:
            cmds.append(tc.target_cmd.format(target=t, version=plan.toolchain))
    return cmds


def cache_dirs_for(tc: Toolchain, plan: ExecutionPlan) -> List[str]:
    dirs: List[str] = []
    if plan.cache:
        dirs.extend(tc.cache_scopes.get(plan.cache, ()))
    dirs.extend(plan.cache_dirs)
    return dirs


def needs_cross(plan: ExecutionPlan, host: Optional[str]) -> bool:
    return bool(host) and plan.target != host


def wrap_cross(tc: Toolchain, cmd: str, *, cross: bool) -> str:
    """
    Route a native build command through the cross-compilation helper.

    `cargo test --target $TARGET` -> `cross test --target $TARGET` when the
    cell targets a foreign triple. Other commands pass through unchanged.
    """
    if not cross or tc.cross is None:
        return cmd
    native, helper = tc.cross
    stripped = cmd.lstrip()
    words = stripped.split()
    if len(words) < 2 or words[0] != native:
        return cmd
    if tc.cross_subcommands and words[1] not in tc.cross_subcommands:
        return cmd
    indent = cmd[: len(cmd) - len(stripped)]
    return indent + helper + stripped[len(native):]


# ---------------------------------------------------------------------
# Host triple
# ---------------------------------------------------------------------

_MACHINE_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}


def _guess_host_triple() -> str:
    machine = platform.machine().lower()
    machine = _MACHINE_ALIASES.get(machine, machine)
    system = platform.system().lower()
    if system == "linux":
        return f"{machine}-unknown-linux-gnu"
    if system == "darwin":
        return f"{machine}-apple-darwin"
    if system == "windows":
        return f"{machine}-pc-windows-msvc"
    return f"{machine}-unknown-{system}"


def host_triple() -> str:
    """Host target triple, from `rustc -vV` when available."""
    try:
        out = subprocess.run(
            ["rustc", "-vV"],
            text=True,
            capture_output=True,
            check=False,
        )
    except OSError:
        return _guess_host_triple()

    if out.returncode == 0:
        for line in out.stdout.splitlines():
            if line.startswith("host:"):
                return line.split(":", 1)[1].strip()
    return _guess_host_triple()
