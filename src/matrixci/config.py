# config.py
# Typed configuration document: Travis-style YAML (or a Python matrix file) -> MatrixConfig.
from __future__ import annotations

import runpy
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .model import (
    INHERIT,
    SKIP,
    GlobalDefaults,
    MatrixCell,
    MatrixConfig,
    Override,
    StepSource,
)
from .toolchains import get_toolchain

DEFAULT_CONFIG_FILES = (".matrixci.yml", ".matrixci.yaml", ".travis.yml")


# ---------------------------------------------------------------------
# Coercion helpers (YAML is loose about scalars vs lists)
# ---------------------------------------------------------------------

def _scalar(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _split_assignments(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for token in shlex.split(text):
        if "=" not in token:
            raise ValueError(f"expected KEY=VALUE, got {token!r}")
        k, v = token.split("=", 1)
        if not k:
            raise ValueError(f"empty variable name in {token!r}")
        out[k] = v
    return out


def _coerce_env(v: Any) -> Dict[str, str]:
    """Accept a map, a `K=V` list, one `K=V K2=V2` string, or Travis' {global: [...]}."""
    if v is None:
        return {}
    if isinstance(v, dict):
        if "matrix" in v:
            raise ValueError("env.matrix is not supported: list cells under matrix.include")
        if "global" in v:
            return _coerce_env(v["global"])
        return {str(k): _scalar(val) for k, val in v.items()}
    if isinstance(v, str):
        return _split_assignments(v)
    if isinstance(v, list):
        out: Dict[str, str] = {}
        for item in v:
            out.update(_coerce_env(item))
        return out
    raise ValueError(f"env must be a map, a list of KEY=VALUE or a string, got {type(v).__name__}")


def _coerce_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, (str, int, float)):
        return [_scalar(v)]
    if isinstance(v, list):
        return [_scalar(x) for x in v]
    raise ValueError(f"expected a string or a list of strings, got {type(v).__name__}")


def _step_source(v: Optional[List[str]], *, skipped: bool) -> StepSource:
    if skipped:
        return SKIP
    if v is None:
        return INHERIT
    return Override(tuple(v))


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class CellDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: Dict[str, str] = Field(default_factory=dict)
    toolchain: Optional[str] = None
    install: Optional[List[str]] = None
    script: Optional[List[str]] = None
    components: List[str] = Field(default_factory=list)
    targets: List[str] = Field(default_factory=list)
    name: Optional[str] = None

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v):
        return _coerce_env(v)

    @field_validator("toolchain", mode="before")
    @classmethod
    def coerce_toolchain(cls, v):
        if isinstance(v, float):
            # YAML reads `1.20` as 1.2; the written version text is already gone
            raise ValueError(f"toolchain {v!r} was read as a number; quote the version, e.g. \"1.20\"")
        return None if v is None else _scalar(v)

    @field_validator("install", "script", mode="before")
    @classmethod
    def coerce_steps(cls, v):
        if v is None:
            return None
        return _coerce_list(v)

    @field_validator("components", "targets", mode="before")
    @classmethod
    def coerce_names(cls, v):
        return _coerce_list(v)

    def to_cell(self) -> MatrixCell:
        return MatrixCell(
            env=dict(self.env),
            toolchain=self.toolchain,
            install=_step_source(self.install, skipped=self.install == ["skip"]),
            script=_step_source(self.script, skipped=self.script == ["skip"]),
            components=tuple(self.components),
            targets=tuple(self.targets),
            name=self.name,
        )


class CacheDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    directories: List[str] = Field(default_factory=list)


class MatrixDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    include: List[CellDoc] = Field(default_factory=list)


class ConfigDoc(BaseModel):
    # Travis files carry plenty of keys we do not use
    model_config = ConfigDict(extra="ignore")

    language: str = "generic"
    services: List[str] = Field(default_factory=list)
    sudo: bool = False
    env: Dict[str, str] = Field(default_factory=dict)
    matrix: Optional[MatrixDoc] = None
    jobs: Optional[MatrixDoc] = None
    install: List[str] = Field(default_factory=list)
    script: List[str] = Field(default_factory=list)
    cache: Union[str, CacheDoc, None] = None
    target_var: str = "TARGET"

    @field_validator("services", mode="before")
    @classmethod
    def coerce_services(cls, v):
        return _coerce_list(v)

    @field_validator("sudo", mode="before")
    @classmethod
    def coerce_sudo(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ("required", "true", "yes", "enabled")
        return bool(v)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v):
        return _coerce_env(v)

    @field_validator("install", "script", mode="before")
    @classmethod
    def coerce_steps(cls, v):
        steps = _coerce_list(v)
        return [] if steps == ["skip"] else steps

    def to_config(self) -> MatrixConfig:
        if self.matrix is not None and self.jobs is not None:
            raise ConfigError("use either `matrix` or `jobs`, not both")
        matrix = self.matrix or self.jobs or MatrixDoc()

        cache_token: Optional[str] = None
        cache_dirs: Tuple[str, ...] = ()
        if isinstance(self.cache, str):
            cache_token = self.cache
        elif isinstance(self.cache, CacheDoc):
            cache_dirs = tuple(self.cache.directories)

        defaults = GlobalDefaults(
            language=self.language,
            env=dict(self.env),
            install=tuple(self.install),
            script=tuple(self.script),
            cache=cache_token,
            cache_dirs=cache_dirs,
            services=tuple(self.services),
            privileged=self.sudo,
            target_var=self.target_var,
        )
        return MatrixConfig(defaults=defaults, cells=tuple(c.to_cell() for c in matrix.include))


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc or '<root>'}: {err.get('msg')}")
    return "; ".join(parts)


def _normalize_cells(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map the language's version key (e.g. `rust: nightly`) onto `toolchain`
    and reject Travis matrix features that would weaken the verdict.
    """
    tc = get_toolchain(str(data.get("language") or ""))
    out = dict(data)

    for section in ("matrix", "jobs"):
        block = out.get(section)
        if block is None:
            continue
        if not isinstance(block, dict):
            raise ConfigError(f"`{section}` must be a mapping with an `include` list")
        if "allow_failures" in block:
            raise ConfigError(f"{section}.allow_failures is not supported: every cell must pass")
        block = dict(block)
        block.pop("fast_finish", None)

        include = block.get("include") or []
        if not isinstance(include, list):
            raise ConfigError(f"{section}.include must be a list")

        cells = []
        for i, raw in enumerate(include):
            if not isinstance(raw, dict):
                raise ConfigError(f"{section}.include[{i}] must be a mapping")
            cell = dict(raw)
            if tc.version_key and tc.version_key in cell:
                version = cell.pop(tc.version_key)
                if "toolchain" in cell and _scalar(cell["toolchain"]) != _scalar(version):
                    raise ConfigError(
                        f"{section}.include[{i}]: `{tc.version_key}` and `toolchain` disagree"
                    )
                cell["toolchain"] = version
            cells.append(cell)
        block["include"] = cells
        out[section] = block

    return out


def parse_config(data: Any) -> MatrixConfig:
    """
    Parse a loaded document (dict) into a MatrixConfig.

    Raises:
        ConfigError: on any schema violation.
    """
    if data is None:
        raise ConfigError("configuration is empty")
    if not isinstance(data, dict):
        raise ConfigError(f"configuration must be a mapping, got {type(data).__name__}")

    normalized = _normalize_cells(data)
    try:
        doc = ConfigDoc.model_validate(normalized)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e
    return doc.to_config()


def load_config(path: str | Path) -> MatrixConfig:
    """
    Load a matrix from a YAML file or a Python file.

    A Python matrix file must define either:
      - matrix() -> MatrixConfig
      - MATRIX = MatrixConfig(...)
    """
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise ConfigError(f"config file not found: {cfg_path}")

    if cfg_path.suffix == ".py":
        return _load_python_config(cfg_path)

    if cfg_path.suffix not in (".yml", ".yaml"):
        raise ConfigError(f"config must be .yml, .yaml or .py, got: {cfg_path.name}")

    try:
        with cfg_path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {cfg_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"cannot read {cfg_path}: {e}") from e

    return parse_config(data)


def _load_python_config(cfg_path: Path) -> MatrixConfig:
    globals_dict = runpy.run_path(str(cfg_path), run_name=f"matrixci_config_{cfg_path.stem}")

    config = None
    if "MATRIX" in globals_dict:
        config = globals_dict["MATRIX"]
    elif "matrix" in globals_dict and callable(globals_dict["matrix"]):
        try:
            config = globals_dict["matrix"]()
        except TypeError as e:
            raise ConfigError(
                f"{cfg_path.name}: matrix() must take no arguments "
                "(use `build_matrix` from matrixci.dsl to build the config)"
            ) from e

    if isinstance(config, dict):
        return parse_config(config)
    if not isinstance(config, MatrixConfig):
        raise ConfigError(
            f"{cfg_path.name} must define matrix() -> MatrixConfig or MATRIX = MatrixConfig(...)"
        )
    return config


def discover_config(config_arg: str | None, cwd: str | Path = ".") -> Path:
    """Explicit path if given, else the first default config file found in `cwd`."""
    base = Path(cwd)
    if config_arg:
        p = Path(config_arg)
        if not p.is_absolute():
            p = base / p
        if not p.exists():
            raise ConfigError(f"config file not found: {config_arg}")
        return p

    for name in DEFAULT_CONFIG_FILES:
        p = base / name
        if p.exists():
            return p

    raise ConfigError(
        "no config file found (looked for " + ", ".join(DEFAULT_CONFIG_FILES) + ")"
    )
