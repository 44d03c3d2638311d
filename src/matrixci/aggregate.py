# aggregate.py
from __future__ import annotations

from typing import Iterable

from .model import CellResult, RunVerdict


def aggregate(results: Iterable[CellResult]) -> RunVerdict:
    """
    Fold cell results into one verdict.

    Completion order does not matter: results are reported in matrix order.
    The verdict succeeds only if every cell succeeded.
    """
    ordered = sorted(results, key=lambda r: r.plan.index)
    return RunVerdict(results=tuple(ordered))
