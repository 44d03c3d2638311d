# runner.py
# Execution dispatcher: provisions each cell and runs its install + script steps.
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tarfile
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .aggregate import aggregate
from .cache import DEFAULT_CACHE_DIR, CacheStore
from .errors import ProvisioningError, StepFailure
from .model import CellResult, ExecutionPlan, RunVerdict
from .toolchains import (
    Toolchain,
    cache_dirs_for,
    get_toolchain,
    needs_cross,
    provisioning_commands,
    wrap_cross,
)
from .ui.console import Console, get_console

DEFAULT_WORK_DIR = ".matrixci"
OUTPUT_TAIL = 4000
CONTAINER_WORKSPACE = "/workspace"
CONTAINER_CELL_DIR = "/matrixci-cell"
CONTAINER_IDLE_COMMAND = ["tail", "-f", "/dev/null"]

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "rustup": "Install rustup (https://rustup.rs) or run with --no-provision.",
    "cross": "Install cross (cargo install cross) for foreign targets.",
    "sudo": "Run as root or make sudo available for cells that need privileges.",
}

# services with a real liveness probe; anything else only has to be on PATH
SERVICE_CHECKS: Dict[str, List[str]] = {
    "docker": ["docker", "info"],
}
SERVICE_CHECK_TIMEOUT = 30


@dataclass
class RunContext:
    """Everything a cell needs besides its plan. Shared read-only across workers."""
    repo_root: Path
    work_root: Path
    cache: Optional[CacheStore] = None
    step_timeout: Optional[float] = None
    host_triple: Optional[str] = None
    image: Optional[str] = None
    provision: bool = True
    console: Console = field(default_factory=get_console)

    def cell_dir(self, plan: ExecutionPlan) -> Path:
        return self.work_root / "cells" / f"{plan.index + 1:03d}"


# ----------------------------------------------------------------------
# Provisioning
# ----------------------------------------------------------------------

def _check_services(plan: ExecutionPlan, ctx: RunContext) -> None:
    services = list(plan.services)
    if ctx.image and "docker" not in services:
        services.append("docker")

    for service in services:
        probe = SERVICE_CHECKS.get(service)
        if probe is None:
            if shutil.which(service) is None:
                raise ProvisioningError(
                    cell=plan.identity,
                    message=f"required service not available: {service}",
                    details={"hint": TOOL_HINTS.get(service, f"Install {service} or fix PATH.")},
                )
            continue
        try:
            subprocess.run(probe, capture_output=True, check=True, timeout=SERVICE_CHECK_TIMEOUT)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise ProvisioningError(
                cell=plan.identity,
                message=f"required service not available: {service}",
                details={"hint": TOOL_HINTS.get(service, f"Install {service} or fix PATH.")},
            ) from e


def _check_privilege(plan: ExecutionPlan, ctx: RunContext) -> None:
    if not plan.privileged or ctx.image:
        # containers run as root
        return
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() == 0:
        return
    if shutil.which("sudo") is None:
        raise ProvisioningError(
            cell=plan.identity,
            message="cell requires elevated privileges",
            details={"hint": TOOL_HINTS["sudo"]},
        )


def _cell_env(plan: ExecutionPlan, tc: Toolchain, ctx: RunContext, cell_dir: Path) -> Dict[str, str]:
    """Variables matrixci adds on top of the plan's own environment."""
    in_container = ctx.image is not None
    cell_path = CONTAINER_CELL_DIR if in_container else str(cell_dir)

    env: Dict[str, str] = {}
    if tc.select_env:
        env[tc.select_env] = plan.toolchain
    if tc.build_dir_env:
        env[tc.build_dir_env] = f"{cell_path}/target"
    env["MATRIXCI"] = "true"
    env["MATRIXCI_CELL"] = str(plan.index + 1)
    env["MATRIXCI_CELL_DIR"] = cell_path
    env["MATRIXCI_TOOLCHAIN"] = plan.toolchain
    env.update(plan.env)
    return env


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _container_name(plan: ExecutionPlan) -> str:
    return f"matrixci-cell-{plan.index + 1:03d}-{uuid.uuid4().hex[:8]}"


def _docker_run_command(name: str, env: Dict[str, str], ctx: RunContext, cell_dir: Path) -> List[str]:
    """
    Start the cell's container in the background, repo mounted at /workspace.

    Every provisioning, install and script step of the cell is then run in
    this one container with `docker exec`, so whatever an earlier step
    installs is still there for the later ones.
    """
    argv = ["docker", "run", "-d", "--name", name]
    argv.extend(["-v", f"{ctx.repo_root}:{CONTAINER_WORKSPACE}"])
    argv.extend(["-v", f"{cell_dir}:{CONTAINER_CELL_DIR}"])
    argv.extend(["-w", CONTAINER_WORKSPACE])
    for key, value in env.items():
        argv.extend(["-e", f"{key}={value}"])
    argv.append(ctx.image)
    argv.extend(CONTAINER_IDLE_COMMAND)
    return argv


def _docker_exec_command(cmd: str, container: str) -> List[str]:
    return ["docker", "exec", container, "sh", "-c", cmd]


def _start_container(plan: ExecutionPlan, name: str, env: Dict[str, str], ctx: RunContext, cell_dir: Path) -> None:
    argv = _docker_run_command(name, env, ctx, cell_dir)
    ctx.console.print_debug(f"[#{plan.index + 1}] starting container {name} ({ctx.image})")
    try:
        proc = subprocess.run(argv, capture_output=True, text=True)
    except OSError as e:
        raise ProvisioningError(
            cell=plan.identity,
            message=f"could not start container from {ctx.image}",
            details={"error": str(e), "hint": TOOL_HINTS["docker"]},
        ) from e
    if proc.returncode != 0:
        # a created-but-not-started container still holds the name
        _remove_container(name)
        raise ProvisioningError(
            cell=plan.identity,
            message=f"could not start container from {ctx.image}",
            details={"exit_code": str(proc.returncode), "output": (proc.stdout + proc.stderr)[-OUTPUT_TAIL:]},
        )


def _remove_container(name: str) -> None:
    # rm -f also stops it; a container that is already gone is not an error
    subprocess.run(["docker", "rm", "-f", name], capture_output=True)


def _kill_group(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
    proc.kill()


def _exec(cmd: str, env: Dict[str, str], ctx: RunContext, container: Optional[str] = None) -> tuple[Optional[int], str, bool]:
    """
    Run one command to completion, on the host or inside the cell's container.

    Returns:
        (exit_code, combined output, timed_out)
    """
    if container:
        # the container already carries env from `docker run -e`
        args: str | List[str] = _docker_exec_command(cmd, container)
        shell = False
        proc_env = dict(os.environ)
    else:
        args = cmd
        shell = True
        proc_env = dict(os.environ)
        proc_env.update(env)

    proc = subprocess.Popen(
        args,
        shell=shell,
        cwd=str(ctx.repo_root),
        env=proc_env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=(os.name == "posix"),
    )
    try:
        out, _ = proc.communicate(timeout=ctx.step_timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        if container:
            # killing the docker client leaves the step running in the container
            _remove_container(container)
        out, _ = proc.communicate()
        return None, out or "", True
    return proc.returncode, out or "", False


def _run_step(plan: ExecutionPlan, phase: str, cmd: str, env: Dict[str, str], ctx: RunContext, container: Optional[str]) -> None:
    ctx.console.print_step(plan, phase, cmd)
    code, out, timed_out = _exec(cmd, env, ctx, container)
    ctx.console.print_debug(f"[#{plan.index + 1}] {phase} exit={code}\n{out}")
    if timed_out or code != 0:
        raise StepFailure(
            cell=plan.identity,
            phase=phase,
            step=cmd,
            exit_code=code,
            timed_out=timed_out,
            output=out[-OUTPUT_TAIL:],
        )


def _provision(plan: ExecutionPlan, tc: Toolchain, env: Dict[str, str], ctx: RunContext, container: Optional[str]) -> None:
    if not ctx.provision:
        return
    for cmd in provisioning_commands(tc, plan):
        ctx.console.print_step(plan, "provision", cmd)
        try:
            code, out, timed_out = _exec(cmd, env, ctx, container)
        except OSError as e:
            raise ProvisioningError(cell=plan.identity, message=f"could not run: {cmd}", details={"error": str(e)}) from e
        if timed_out or code != 0:
            tool = cmd.split()[0]
            raise ProvisioningError(
                cell=plan.identity,
                message=f"toolchain setup failed: {cmd}",
                details={
                    "exit_code": "timeout" if timed_out else str(code),
                    "hint": TOOL_HINTS.get(tool, ""),
                    "output": out[-OUTPUT_TAIL:],
                },
            )


# ----------------------------------------------------------------------
# Cells
# ----------------------------------------------------------------------

def run_cell(plan: ExecutionPlan, ctx: RunContext) -> CellResult:
    """
    Provision, restore cache, run install then script, save cache.

    With an image, every step of the cell runs in one container that is
    removed when the cell is done. Cell-local failures are returned as a
    failed CellResult, never raised.
    """
    started = time.monotonic()
    tc = get_toolchain(plan.language)
    cell_dir = ctx.cell_dir(plan)
    ctx.console.print_cell_start(plan)

    def _result(**kw) -> CellResult:
        return CellResult(plan=plan, duration=time.monotonic() - started, **kw)

    container: Optional[str] = None
    try:
        try:
            cell_dir.mkdir(parents=True, exist_ok=True)
            env = _cell_env(plan, tc, ctx, cell_dir)
            _check_services(plan, ctx)
            _check_privilege(plan, ctx)
            if ctx.image:
                name = _container_name(plan)
                _start_container(plan, name, env, ctx, cell_dir)
                container = name
            _provision(plan, tc, env, ctx, container)
        except ProvisioningError as e:
            return _result(
                success=False,
                exit_code=None,
                phase="provision",
                error=str(e),
                output=e.details.get("output", ""),
            )
        except OSError as e:
            return _result(success=False, exit_code=None, phase="provision", error=str(e))

        dirs = cache_dirs_for(tc, plan)
        if ctx.cache is not None and dirs:
            hit = ctx.cache.restore(plan, dirs, repo_root=ctx.repo_root, inputs=tc.cache_inputs)
            ctx.console.print_cache(plan, hit.reason)

        cross = needs_cross(plan, ctx.host_triple)
        phases = (
            ("install", list(plan.install)),
            ("script", [wrap_cross(tc, cmd, cross=cross) for cmd in plan.script]),
        )
        try:
            for phase, commands in phases:
                for cmd in commands:
                    _run_step(plan, phase, cmd, env, ctx, container)
        except StepFailure as e:
            return _result(
                success=False,
                exit_code=e.exit_code,
                phase=e.phase,
                failed_step=e.step,
                error=str(e),
                output=e.output,
            )
        except OSError as e:
            return _result(success=False, exit_code=None, phase="script", error=str(e))

        if ctx.cache is not None and dirs:
            # save failures never fail a passed cell
            try:
                key, _manifest = ctx.cache.save(plan, dirs, repo_root=ctx.repo_root, inputs=tc.cache_inputs)
                ctx.console.print_cache(plan, f"saved ({key[:12]}...)")
            except (OSError, tarfile.TarError) as e:
                ctx.console.print_cache(plan, f"save failed: {e}")

        return _result(success=True, exit_code=0)
    finally:
        if container is not None:
            _remove_container(container)


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def run_matrix(
    plans: Iterable[ExecutionPlan],
    *,
    repo_root: str | Path = ".",
    work_dir: str | Path = DEFAULT_WORK_DIR,
    cache_root: str | Path | None = DEFAULT_CACHE_DIR,
    cache_keep: int = 3,
    max_workers: int | None = None,
    step_timeout: float | None = None,
    host_triple: str | None = None,
    image: str | None = None,
    provision: bool = True,
    console: Console | None = None,
) -> RunVerdict:
    """
    Run every plan and aggregate the results.

    Cells run on a thread pool, one future per cell; a failing cell never
    cancels the others. With max_workers=1 cells run one after another.
    """
    plans = list(plans)
    repo_root_p = Path(repo_root).resolve()
    work_root = Path(work_dir)
    if not work_root.is_absolute():
        work_root = repo_root_p / work_root

    cache: Optional[CacheStore] = None
    if cache_root is not None:
        cache_path = Path(cache_root)
        if not cache_path.is_absolute():
            cache_path = repo_root_p / cache_path
        cache = CacheStore(cache_path)

    ctx = RunContext(
        repo_root=repo_root_p,
        work_root=work_root,
        cache=cache,
        step_timeout=step_timeout,
        host_triple=host_triple,
        image=image,
        provision=provision,
        console=console or get_console(),
    )

    if max_workers is None:
        max_workers = default_workers()

    results: List[CellResult] = []
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = {pool.submit(run_cell, plan, ctx): plan for plan in plans}
        for fut in as_completed(futures):
            plan = futures[fut]
            try:
                result = fut.result()
            except Exception as e:
                # run_cell already captures cell failures; this is an orchestrator bug
                result = CellResult(plan=plan, success=False, exit_code=None, error=f"internal error: {e}")
            ctx.console.print_cell_done(result)
            results.append(result)

    if cache is not None:
        for scope in sorted({p.cache or "custom" for p in plans if cache_dirs_for(get_toolchain(p.language), p)}):
            cache.prune(scope, keep=cache_keep)

    return aggregate(results)
