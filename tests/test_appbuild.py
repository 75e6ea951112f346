"""Tests for the application build stage."""

import hashlib
import json
import os
import shutil
from pathlib import Path

import pytest
from conftest import MAIN_RS, compiled_packages, write_project

from stagedbuild.builds.appbuild import build_application, check_cache_usable
from stagedbuild.builds.prebuild import prebuild_dependencies
from stagedbuild.builds.service import build_lock, list_application_builds
from stagedbuild.errors import ApplicationBuildError, CacheMismatchError
from stagedbuild.manifest.cache_key import key_hex
from stagedbuild.pipeline.schema import PipelineSchema
from stagedbuild.types import BuildStatus


@pytest.fixture
def ready_cache(session, settings, pipeline, project):
    """A ready dependency cache for the default project."""
    cache, _ = prebuild_dependencies(session, project, pipeline, settings)
    return cache


class TestBuildApplication:
    """Tests for build_application."""

    def test_produces_executable(
        self, session, settings, pipeline, project, ready_cache, toolchain_log
    ) -> None:
        """A successful build stores one executable at a stable path."""
        toolchain_log.unlink()

        build, hit = build_application(session, project, pipeline, ready_cache, settings)

        assert not hit
        assert build.status == BuildStatus.SUCCEEDED.value
        assert build.binary_name == "hello-svc"
        executable = Path(build.executable_path)
        assert executable == settings.artifacts_dir / key_hex(build.cache_key) / "hello-svc"
        assert executable.is_file()
        assert os.access(executable, os.X_OK)
        assert build.size_bytes == executable.stat().st_size
        assert len(build.sha256) == 64
        # Dependencies came from the cache
        assert compiled_packages(toolchain_log) == []

        manifest = json.loads((executable.parent / "manifest.json").read_text())
        assert manifest["executable"]["sha256"] == build.sha256
        assert manifest["manifest_key"] == ready_cache.manifest_key

    def test_executable_built_from_real_source(
        self, session, settings, pipeline, project, toolchain_log
    ) -> None:
        """The stored executable is the application, not the placeholder.

        The source predates the pre-build, as it does when a project is
        checked out before its first build.
        """
        os.utime(project / "src" / "main.rs", (1_000_000, 1_000_000))
        cache, _ = prebuild_dependencies(session, project, pipeline, settings)
        toolchain_log.unlink()

        build, _ = build_application(session, project, pipeline, cache, settings)

        source_hash = hashlib.sha256(MAIN_RS.encode("utf-8")).hexdigest()
        assert f"# source: {source_hash}" in Path(build.executable_path).read_text()
        assert "Compiling hello-svc (bin)" in toolchain_log.read_text()

    def test_waits_for_cache_lock(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """The cache is not copied while another holder has its lock."""
        impatient = settings.model_copy(update={"lock_timeout": 1})

        lock_dir = settings.cache_dir / ".locks"
        with build_lock(lock_dir, ready_cache.manifest_key), pytest.raises(TimeoutError):
            build_application(session, project, pipeline, ready_cache, impatient)

        (build,) = list_application_builds(session)
        assert build.status == BuildStatus.FAILED.value
        assert build.error_type == "lock_timeout"

    def test_cache_not_mutated(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """The dependency cache store is read-only for the application build."""
        store = Path(ready_cache.store_dir)
        before = sorted(p.relative_to(store) for p in store.rglob("*"))

        build_application(session, project, pipeline, ready_cache, settings)

        assert sorted(p.relative_to(store) for p in store.rglob("*")) == before

    def test_unchanged_source_is_hit(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """Rebuilding unchanged inputs reuses the executable."""
        first, _ = build_application(session, project, pipeline, ready_cache, settings)
        second, hit = build_application(session, project, pipeline, ready_cache, settings)
        assert hit
        assert second.id == first.id

    def test_source_change_new_build(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """A source edit produces a new build and a different executable."""
        first, _ = build_application(session, project, pipeline, ready_cache, settings)
        (project / "src" / "main.rs").write_text('fn main() { println!("v2"); }\n')

        second, hit = build_application(session, project, pipeline, ready_cache, settings)

        assert not hit
        assert second.cache_key != first.cache_key
        assert second.sha256 != first.sha256

    def test_missing_binary_name(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """A binary name the toolchain never produces fails the build."""
        renamed = PipelineSchema(
            toolchain=pipeline.toolchain.model_copy(update={"binary_name": "server"}),
        )
        with pytest.raises(ApplicationBuildError) as exc_info:
            build_application(session, project, renamed, ready_cache, settings)
        assert exc_info.value.code == "executable_not_found"

    def test_compile_error(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """A compile error fails the build and keeps no executable."""
        (project / "src" / "main.rs").write_text('compile_error!("boom");\n')

        with pytest.raises(ApplicationBuildError) as exc_info:
            build_application(session, project, pipeline, ready_cache, settings)

        error = exc_info.value
        assert error.code == "application_build_failed"
        assert "could not compile" in Path(error.log_path).read_text()
        assert not (Path(error.log_path).parent / "hello-svc").exists()

    def test_failed_build_recorded(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """Failed builds are recorded without an executable."""
        (project / "src" / "main.rs").write_text('compile_error!("boom");\n')
        with pytest.raises(ApplicationBuildError):
            build_application(session, project, pipeline, ready_cache, settings)

        (build,) = list_application_builds(session)
        assert build.status == BuildStatus.FAILED.value
        assert build.executable_path is None
        assert build.error_type == "application_build_failed"


class TestCheckCacheUsable:
    """Tests for check_cache_usable."""

    def test_manifest_changed_since_prebuild(
        self, session, settings, pipeline, project, ready_cache
    ) -> None:
        """A cache from another manifest is refused."""
        write_project(project, deps={"libfoo": "1.3.0"})

        with pytest.raises(CacheMismatchError) as exc_info:
            build_application(session, project, pipeline, ready_cache, settings)
        assert exc_info.value.code == "cache_mismatch"

    def test_broken_cache(self, ready_cache) -> None:
        """A broken cache is refused."""
        ready_cache.mark_broken("gone")
        with pytest.raises(CacheMismatchError):
            check_cache_usable(ready_cache, ready_cache.manifest_key)

    def test_missing_store(self, ready_cache) -> None:
        """A cache whose store vanished is refused."""
        shutil.rmtree(ready_cache.store_dir)
        with pytest.raises(CacheMismatchError):
            check_cache_usable(ready_cache, ready_cache.manifest_key)
