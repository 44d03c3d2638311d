"""Tests for the file-based cache store."""

import os
import tarfile

from matrixci.cache import CacheStore, compute_cache_key
from matrixci.model import ExecutionPlan


def _plan(toolchain="stable", target="x86_64-unknown-linux-gnu", cache="cargo"):
    return ExecutionPlan(
        index=0,
        toolchain=toolchain,
        env={"TARGET": target},
        install=(),
        script=(),
        language="rust",
        cache=cache,
    )


class TestCacheKey:
    def test_stable_for_same_inputs(self, tmp_path):
        (tmp_path / "Cargo.lock").write_text("v1")
        k1, _ = compute_cache_key(_plan(), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])
        k2, _ = compute_cache_key(_plan(), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])

        assert k1 == k2

    def test_changes_with_toolchain_target_and_inputs(self, tmp_path):
        (tmp_path / "Cargo.lock").write_text("v1")
        base, _ = compute_cache_key(_plan(), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])

        other_tc, _ = compute_cache_key(_plan(toolchain="nightly"), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])
        other_target, _ = compute_cache_key(_plan(target="thumbv7em-none-eabi"), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])
        (tmp_path / "Cargo.lock").write_text("v2")
        other_lock, _ = compute_cache_key(_plan(), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])

        assert len({base, other_tc, other_target, other_lock}) == 4

    def test_missing_inputs_recorded(self, tmp_path):
        _, manifest = compute_cache_key(_plan(), ["dir"], repo_root=tmp_path, inputs=["Cargo.lock"])
        assert manifest["inputs"]["missing"] == ["Cargo.lock"]


class TestCacheStore:
    def test_miss_then_hit(self, tmp_path):
        repo = tmp_path / "repo"
        (repo / "vendor" / "sub").mkdir(parents=True)
        (repo / "vendor" / "sub" / "lib.txt").write_text("cached")
        store = CacheStore(tmp_path / "cache")
        plan = _plan()

        assert store.restore(plan, ["vendor"], repo_root=repo).hit is False

        key, _ = store.save(plan, ["vendor"], repo_root=repo)
        assert store.artifact_path("cargo", key).exists()

        (repo / "vendor" / "sub" / "lib.txt").unlink()
        hit = store.restore(plan, ["vendor"], repo_root=repo)

        assert hit.hit is True
        assert hit.key == key
        assert (repo / "vendor" / "sub" / "lib.txt").read_text() == "cached"

    def test_absolute_entries_restore_to_their_own_location(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        outside = tmp_path / "home" / ".cargo" / "registry"
        outside.mkdir(parents=True)
        (outside / "index").write_text("crates")
        store = CacheStore(tmp_path / "cache")
        dirs = [str(outside), "missing-dir"]

        store.save(_plan(), dirs, repo_root=repo)
        (outside / "index").unlink()
        assert store.restore(_plan(), dirs, repo_root=repo).hit is True

        assert (outside / "index").read_text() == "crates"
        assert not (repo / "missing-dir").exists()

    def test_no_dirs_is_a_noop(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        assert store.restore(_plan(), [], repo_root=tmp_path).hit is False
        store.save(_plan(), [], repo_root=tmp_path)
        assert list((tmp_path / "cache").rglob("*.tar.gz")) == []

    def test_prune_keeps_newest(self, tmp_path):
        repo = tmp_path / "repo"
        (repo / "vendor").mkdir(parents=True)
        (repo / "vendor" / "f").write_text("x")
        store = CacheStore(tmp_path / "cache")

        keys = []
        for i, tc in enumerate(["1.0", "1.1", "1.2", "1.3"]):
            key, _ = store.save(_plan(toolchain=tc), ["vendor"], repo_root=repo)
            art = store.artifact_path("cargo", key)
            os.utime(art, (1000 + i, 1000 + i))
            keys.append(key)

        store.prune("cargo", keep=2)

        remaining = sorted(p.name for p in (tmp_path / "cache" / "cargo").glob("*.tar.gz"))
        assert remaining == sorted(f"{k}.tar.gz" for k in keys[2:])
        assert not store.manifest_path("cargo", keys[0]).exists()

    def test_restore_without_extraction_filter_is_a_miss(self, tmp_path, monkeypatch):
        repo = tmp_path / "repo"
        (repo / "vendor").mkdir(parents=True)
        (repo / "vendor" / "f").write_text("x")
        store = CacheStore(tmp_path / "cache")
        store.save(_plan(), ["vendor"], repo_root=repo)

        def old_extractall(self, path=".", members=None, *, numeric_owner=False):
            raise TypeError("extractall() got an unexpected keyword argument 'filter'")

        monkeypatch.setattr(tarfile.TarFile, "extractall", old_extractall)
        hit = store.restore(_plan(), ["vendor"], repo_root=repo)

        assert hit.hit is False
        assert "unsupported" in hit.reason
