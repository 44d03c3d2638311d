"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import CellResult, ExecutionPlan, RunVerdict


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # cells print from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        with self._lock:
            print(f"\n{title}")
            print("-" * len(title))

    def print_run_started(
        self,
        config: str,
        language: str,
        cell_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        with self._lock:
            print("\nRUN STARTED")
            print(f"Config: {config}")
            print(f"Language: {language}")
            print(f"Cells: {cell_count}")
            print(f"Workers: {workers}")
            print()

    def print_plans(self, plans: Iterable[ExecutionPlan]) -> None:
        """Print resolved execution plans."""
        with self._lock:
            for plan in plans:
                print(f"\nCELL {plan.label}")
                print(f"  toolchain: {plan.toolchain}")
                print(f"  target: {plan.target}")
                if plan.components:
                    print(f"  components: {', '.join(plan.components)}")
                if plan.targets:
                    print(f"  extra targets: {', '.join(plan.targets)}")
                print("  install:")
                for cmd in plan.install or ("(none)",):
                    print(f"    {cmd}")
                print("  script:")
                for cmd in plan.script or ("(none)",):
                    print(f"    {cmd}")

    def print_cell_start(self, plan: ExecutionPlan) -> None:
        with self._lock:
            print(f"\nCELL STARTED: {plan.label}")

    def print_step(self, plan: ExecutionPlan, phase: str, cmd: str) -> None:
        with self._lock:
            print(f"[#{plan.index + 1}] {phase}: {cmd}")

    def print_cache(self, plan: ExecutionPlan, reason: str) -> None:
        with self._lock:
            print(f"[#{plan.index + 1}] cache: {reason}")

    def print_cell_done(self, result: CellResult) -> None:
        """Print the outcome of one cell, with output tail on failure."""
        plan = result.plan
        with self._lock:
            if result.success:
                print(f"[#{plan.index + 1}] STATUS: success ({result.duration:.1f}s)")
                return
            print(f"[#{plan.index + 1}] CELL FAILED: {plan.label}")
            if result.phase:
                print(f"  Phase: {result.phase}")
            if result.failed_step:
                print(f"  Step: {result.failed_step}")
            if result.exit_code is not None:
                print(f"  Exit code: {result.exit_code}")
            if result.error:
                if self.debug:
                    print(f"  Error details: {result.error}")
                else:
                    print(f"  Error: {result.error.splitlines()[0]}")
            if result.output:
                print("  Output (tail):")
                for line in result.output.rstrip().splitlines()[-20:]:
                    print(f"    {line}")

    def print_results(self, verdict: RunVerdict) -> None:
        """Print final results summary."""
        with self._lock:
            print("\n" + "=" * 40)
            print("RESULTS")
            print("=" * 40)
            for r in verdict.results:
                status = "SUCCESS" if r.success else "FAILED"
                print(f"  {r.plan.label}: {status}")
            print()
            if verdict.success:
                print(f"VERDICT: success ({len(verdict.results)} cell(s))")
            else:
                print(f"VERDICT: failed ({len(verdict.failures)} of {len(verdict.results)} cell(s))")
                for name in verdict.failing_cells:
                    print(f"  failed: {name}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        with self._lock:
            print(f"\nERROR: {title}", file=sys.stderr)
            print(f"{message}", file=sys.stderr)
            if details:
                for detail in details:
                    print(f"  {detail}", file=sys.stderr)
            if suggestion:
                print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        with self._lock:
            print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
