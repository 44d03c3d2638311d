# cache.py
from __future__ import annotations

import hashlib
import json
import os
import tarfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import ExecutionPlan

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Scope-level caching, one scope per cache policy token (e.g. "cargo"):
#   cache_key = hash(
#       scope,
#       toolchain version,
#       target,
#       cached directories,
#       contents of the language's key inputs (e.g. Cargo.lock),
#   )
#
# Artifact: a tar.gz of the cached directories. Member names are
# "<entry index>/<path inside entry>" so absolute and ~ paths restore to
# wherever they expand on the current machine.
#
# Cells only ever add artifacts. Two cells writing the same key build
# separate temp files and rename them into place; either one wins.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_CACHE_EXCLUDES = [
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def expand_entry(entry: str, repo_root: Path) -> Path:
    """`~/.cargo/registry` -> home path; relative entries are relative to the repo."""
    p = Path(os.path.expanduser(entry))
    if not p.is_absolute():
        p = repo_root / p
    return p


def _hash_inputs(repo_root: Path, inputs: Iterable[str]) -> Tuple[str, Dict]:
    fps: List[Tuple[str, str]] = []
    missing: List[str] = []
    for name in inputs:
        p = repo_root / name
        if p.is_file():
            fps.append((name, _hash_file_contents(p)))
        else:
            missing.append(name)
    payload = {"files": sorted(fps), "missing": sorted(missing)}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_cache_key(
    plan: ExecutionPlan,
    dirs: List[str],
    *,
    repo_root: str | Path = ".",
    inputs: Iterable[str] = (),
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest can be stored for explainability.
    """
    root = Path(repo_root).resolve()
    inputs_hash, inputs_manifest = _hash_inputs(root, inputs)

    payload = {
        "v": 1,  # bump on hashing format change
        "scope": plan.cache or "custom",
        "language": plan.language,
        "toolchain": plan.toolchain,
        "target": plan.target,
        "dirs": list(dirs),
        "inputs_hash": inputs_hash,
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "inputs": inputs_manifest,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


class CacheStore:
    """
    File-based cache store:
      root/
        <scope>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _scope_dir(self, scope: str) -> Path:
        d = self.root / scope
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, scope: str, key: str) -> Path:
        return self._scope_dir(scope) / f"{key}.tar.gz"

    def manifest_path(self, scope: str, key: str) -> Path:
        return self._scope_dir(scope) / f"{key}.manifest.json"

    def restore(
        self,
        plan: ExecutionPlan,
        dirs: List[str],
        *,
        repo_root: str | Path = ".",
        inputs: Iterable[str] = (),
    ) -> CacheHit:
        """
        Extract a previously saved artifact over the cached directories.
        Restore is "overwrite by extraction"; nothing is cleaned first.
        """
        if not dirs:
            return CacheHit(hit=False, key="", reason="no cache directories", manifest={})

        root = Path(repo_root).resolve()
        scope = plan.cache or "custom"
        key, manifest = compute_cache_key(plan, dirs, repo_root=root, inputs=inputs)

        art = self.artifact_path(scope, key)
        if not art.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest=manifest)

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                by_entry: Dict[int, List[tarfile.TarInfo]] = {}
                for m in tar.getmembers():
                    head, _, rest = m.name.partition("/")
                    if not head.isdigit() or not rest:
                        continue
                    m.name = rest
                    by_entry.setdefault(int(head), []).append(m)

                for i, entry in enumerate(dirs):
                    members = by_entry.get(i)
                    if not members:
                        continue
                    dest = expand_entry(entry, root)
                    dest.mkdir(parents=True, exist_ok=True)
                    tar.extractall(path=str(dest), members=members, filter="data")
        except (OSError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest=manifest)
        except TypeError as e:
            # interpreters before 3.10.12 / 3.11.4 have no extraction filters
            return CacheHit(hit=False, key=key, reason=f"cache restore unsupported here: {e}", manifest=manifest)

        stored: Dict = {}
        man = self.manifest_path(scope, key)
        if man.exists():
            try:
                stored = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored or manifest)

    def save(
        self,
        plan: ExecutionPlan,
        dirs: List[str],
        *,
        repo_root: str | Path = ".",
        inputs: Iterable[str] = (),
        excludes: Optional[List[str]] = None,
    ) -> Tuple[str, Dict]:
        """
        Archive the cached directories under this plan's key.
        Returns (key, manifest).
        """
        root = Path(repo_root).resolve()
        scope = plan.cache or "custom"
        key, manifest = compute_cache_key(plan, dirs, repo_root=root, inputs=inputs)
        if not dirs:
            return key, manifest

        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
        art = self.artifact_path(scope, key)
        man = self.manifest_path(scope, key)

        # unique temp name per writer: concurrent saves of one key never share a file
        tmp = art.with_name(f"{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for i, entry in enumerate(dirs):
                    src = expand_entry(entry, root)
                    if not src.is_dir():
                        continue
                    for f in _iter_files_under(src):
                        rel = f.relative_to(src).as_posix()
                        if _matches_any_glob(rel, exclude_globs):
                            continue
                        tar.add(str(f), arcname=f"{i}/{rel}", recursive=False)

            tmp.replace(art)
            man_tmp = man.with_name(f"{man.name}.{uuid.uuid4().hex}.tmp")
            man_tmp.write_text(
                json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            man_tmp.replace(man)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return key, manifest

    def prune(self, scope: str, keep: int = 3) -> None:
        """
        Keep only the newest N artifacts for a scope.
        Uses file mtime as "newest".
        """
        d = self._scope_dir(scope)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
