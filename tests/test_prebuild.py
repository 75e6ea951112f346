"""Tests for the dependency pre-build stage."""

import json
import shutil
from pathlib import Path

import pytest
from conftest import compiled_packages, write_project

from stagedbuild.builds.prebuild import (
    CACHE_METADATA_FILE,
    cache_log_path,
    cache_store_dir,
    prebuild_dependencies,
)
from stagedbuild.builds.service import list_dependency_caches
from stagedbuild.errors import DependencyBuildError, ManifestError
from stagedbuild.pipeline.schema import PipelineSchema
from stagedbuild.types import CacheState


class TestPrebuildDependencies:
    """Tests for prebuild_dependencies."""

    def test_builds_cache(self, session, settings, pipeline, project, toolchain_log) -> None:
        """A fresh manifest is compiled into a ready cache."""
        cache, hit = prebuild_dependencies(session, project, pipeline, settings)

        assert not hit
        assert cache.state == CacheState.READY.value
        assert cache.pin_labels() == ["libfoo@1.2.3"]
        store = Path(cache.store_dir)
        assert store == cache_store_dir(settings, cache.manifest_key)
        assert (store / "target" / "release" / "deps" / "liblibfoo-1.2.3.rlib").exists()
        assert compiled_packages(toolchain_log) == ["Compiling libfoo v1.2.3"]

        metadata = json.loads((store / CACHE_METADATA_FILE).read_text())
        assert metadata["manifest_key"] == cache.manifest_key
        assert metadata["pins"][0]["name"] == "libfoo"

    def test_source_not_visible(self, session, settings, pipeline, project) -> None:
        """The pre-build compiles the placeholder, never the real source."""
        (project / "src" / "main.rs").write_text('compile_error!("real source");\n')

        cache, _ = prebuild_dependencies(session, project, pipeline, settings)

        assert cache.is_ready()

    def test_second_call_is_hit(
        self, session, settings, pipeline, project, toolchain_log
    ) -> None:
        """Same manifest reuses the cache without compiling."""
        first, _ = prebuild_dependencies(session, project, pipeline, settings)
        toolchain_log.unlink()

        second, hit = prebuild_dependencies(session, project, pipeline, settings)

        assert hit
        assert second.id == first.id
        assert second.hit_count == 1
        assert second.last_used_at is not None
        assert compiled_packages(toolchain_log) == []

    def test_force_rebuild(self, session, settings, pipeline, project, toolchain_log) -> None:
        """force_rebuild recompiles into a clean store."""
        prebuild_dependencies(session, project, pipeline, settings)
        toolchain_log.unlink()

        cache, hit = prebuild_dependencies(
            session, project, pipeline, settings, force_rebuild=True
        )

        assert not hit
        assert compiled_packages(toolchain_log) == ["Compiling libfoo v1.2.3"]
        assert cache.is_intact()

    def test_missing_store_rebuilds(self, session, settings, pipeline, project) -> None:
        """A ready row whose store vanished is rebuilt."""
        cache, _ = prebuild_dependencies(session, project, pipeline, settings)
        shutil.rmtree(cache.store_dir)

        rebuilt, hit = prebuild_dependencies(session, project, pipeline, settings)
        assert not hit
        assert rebuilt.id == cache.id
        assert rebuilt.is_intact()

    def test_manifest_error_before_compilation(
        self, session, settings, pipeline, tmp_path, toolchain_log
    ) -> None:
        """An unpinned manifest fails without running the toolchain."""
        project = write_project(tmp_path / "unpinned", lock=False)

        with pytest.raises(ManifestError) as exc_info:
            prebuild_dependencies(session, project, pipeline, settings)

        assert exc_info.value.code == "unpinned_manifest"
        assert not toolchain_log.exists()

    def test_dependency_failure_leaves_no_cache(
        self, session, settings, pipeline, tmp_path
    ) -> None:
        """A failing dependency marks the cache broken and removes the store."""
        project = write_project(
            tmp_path / "broken", deps={"libfoo": "1.2.3", "broken-dep": "0.1.0"}
        )

        with pytest.raises(DependencyBuildError) as exc_info:
            prebuild_dependencies(session, project, pipeline, settings)

        error = exc_info.value
        assert error.code == "dependency_build_failed"
        assert error.stage is not None and error.stage.value == "dependencies"
        assert error.log_path is not None
        assert "could not compile" in Path(error.log_path).read_text()

        (cache,) = list_dependency_caches(session)
        assert cache.state == CacheState.BROKEN.value
        assert not Path(cache.store_dir).exists()
        assert Path(error.log_path) == cache_log_path(settings, cache.manifest_key)

    def test_placeholder_outputs_not_cached(
        self, session, settings, pipeline, project
    ) -> None:
        """Only dependencies are kept; the placeholder's own build is dropped."""
        cache, _ = prebuild_dependencies(session, project, pipeline, settings)

        release = Path(cache.store_dir) / "target" / "release"
        assert (release / "deps" / "liblibfoo-1.2.3.rlib").exists()
        assert not (release / "hello-svc").exists()
        assert not list((release / ".fingerprint").glob("hello-svc-*"))
        assert not list((release / "deps").glob("hello_svc-*"))

    def test_placeholder_write_failure(self, session, settings, pipeline, project) -> None:
        """An unwritable placeholder marks the cache broken."""
        toolchain = pipeline.toolchain.model_copy(
            update={"placeholder_files": {"Cargo.toml/main.rs": "fn main(){}\n"}}
        )
        broken = PipelineSchema(toolchain=toolchain)

        with pytest.raises(DependencyBuildError) as exc_info:
            prebuild_dependencies(session, project, broken, settings)

        assert exc_info.value.code == "placeholder_write_error"
        (cache,) = list_dependency_caches(session)
        assert cache.state == CacheState.BROKEN.value
        assert not Path(cache.store_dir).exists()

    def test_unexpected_error_marks_cache_broken(
        self, session, settings, pipeline, project, monkeypatch
    ) -> None:
        """Errors outside the toolchain still leave a broken cache, not a pending one."""

        def explode(**kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("stagedbuild.builds.prebuild.run_toolchain", explode)

        with pytest.raises(DependencyBuildError) as exc_info:
            prebuild_dependencies(session, project, pipeline, settings)

        assert "disk on fire" in str(exc_info.value)
        (cache,) = list_dependency_caches(session)
        assert cache.state == CacheState.BROKEN.value

    def test_workspace_discarded(self, session, settings, pipeline, project) -> None:
        """Nothing is left in the work directory after the stage."""
        prebuild_dependencies(session, project, pipeline, settings)
        assert list(settings.tmp_dir.iterdir()) == []
