from .dsl import cell, defaults, build_matrix, expand, skip
from .config import load_config, parse_config
from .resolver import resolve_cell, resolve_matrix
from .runner import run_cell, run_matrix
from .aggregate import aggregate
from .errors import ConfigError, ProvisioningError, StepFailure, AggregateFailure
from .model import ExecutionPlan, CellResult, RunVerdict, MatrixCell, GlobalDefaults, MatrixConfig

__all__ = [
    "cell", "defaults", "build_matrix", "expand", "skip",
    "load_config", "parse_config",
    "resolve_cell", "resolve_matrix",
    "run_cell", "run_matrix", "aggregate",
    "ConfigError", "ProvisioningError", "StepFailure", "AggregateFailure",
    "ExecutionPlan", "CellResult", "RunVerdict", "MatrixCell", "GlobalDefaults", "MatrixConfig",
]
