"""Tests for runtime image packaging, inspection and launch."""

import json
import logging
import tarfile
from pathlib import Path

import pytest

from stagedbuild.builds.appbuild import build_application
from stagedbuild.builds.prebuild import prebuild_dependencies
from stagedbuild.errors import PackagingError
from stagedbuild.packaging.image import (
    CONFIG_FILE,
    CONTAINERFILE,
    LAYER_FILE,
    MANIFEST_FILE,
    check_log_level,
    expected_layer_members,
    inspect_image,
    package_runtime_image,
    verify_layer,
    write_layer,
)
from stagedbuild.packaging.runtime import (
    launch_instance,
    parse_env_overrides,
    resolve_instance,
)
from stagedbuild.pipeline.schema import PipelineSchema, RuntimeImageSchema, host_architecture


@pytest.fixture
def app_build(session, settings, pipeline, project):
    """A succeeded application build for the default project."""
    cache, _ = prebuild_dependencies(session, project, pipeline, settings)
    build, _ = build_application(session, project, pipeline, cache, settings)
    return build


@pytest.fixture
def image(session, settings, pipeline, app_build):
    """A packaged runtime image."""
    image, _ = package_runtime_image(session, app_build, pipeline, settings)
    return image


class TestLayer:
    """Tests for write_layer and verify_layer."""

    def test_members(self, tmp_path: Path) -> None:
        """The layer holds only the workdir and the executable."""
        runtime = RuntimeImageSchema()
        exe = tmp_path / "exe"
        exe.write_bytes(b"\x7fELF")
        layer = tmp_path / "layer.tar"

        write_layer(exe, runtime, layer)

        with tarfile.open(layer) as tar:
            members = tar.getmembers()
        assert [m.name for m in members] == ["app", "app/app"]
        assert all(m.mtime == 0 and m.uid == 0 and m.gid == 0 for m in members)
        assert members[1].mode == 0o755

    def test_deterministic(self, tmp_path: Path) -> None:
        """The same executable always yields byte-identical layers."""
        runtime = RuntimeImageSchema()
        exe = tmp_path / "exe"
        exe.write_bytes(b"binary")
        write_layer(exe, runtime, tmp_path / "a.tar")
        write_layer(exe, runtime, tmp_path / "b.tar")
        assert (tmp_path / "a.tar").read_bytes() == (tmp_path / "b.tar").read_bytes()

    def test_nested_executable_path(self) -> None:
        """Every parent directory of the executable is a member."""
        runtime = RuntimeImageSchema(workdir="/srv", executable_path="/srv/bin/svc")
        assert expected_layer_members(runtime) == ["srv", "srv/bin", "srv/bin/svc"]

    def test_extra_content_rejected(self, tmp_path: Path) -> None:
        """Anything beyond the executable violates the image contract."""
        runtime = RuntimeImageSchema()
        src = tmp_path / "main.rs"
        src.write_text("fn main() {}")
        exe = tmp_path / "exe"
        exe.write_bytes(b"binary")
        layer = tmp_path / "layer.tar"
        with tarfile.open(layer, "w") as tar:
            tar.add(exe, arcname="app/app")
            tar.add(src, arcname="app/src/main.rs")

        with pytest.raises(PackagingError) as exc_info:
            verify_layer(layer, runtime)
        assert exc_info.value.code == "unexpected_layer_content"


class TestPackageRuntimeImage:
    """Tests for package_runtime_image."""

    def test_bundle_contents(self, image) -> None:
        """The bundle has layer, config, manifest and Containerfile."""
        bundle = Path(image.bundle_dir)
        for name in (LAYER_FILE, CONFIG_FILE, MANIFEST_FILE, CONTAINERFILE):
            assert (bundle / name).is_file()
        assert image.digest.startswith("sha256:")
        assert image.port == 8000
        assert image.env == {"RUST_LOG": "info"}
        assert image.command == ["/app/app"]

    def test_config_declarations(self, image) -> None:
        """Config declares port, env, command and workdir."""
        document = json.loads((Path(image.bundle_dir) / CONFIG_FILE).read_text())
        assert document["architecture"] == host_architecture()
        assert document["os"] == "linux"
        config = document["config"]
        assert config["ExposedPorts"] == {"8000/tcp": {}}
        assert config["Env"] == ["RUST_LOG=info"]
        assert config["Cmd"] == ["/app/app"]
        assert config["WorkingDir"] == "/app"

    def test_declared_architecture(self, session, settings, app_build) -> None:
        """An explicit architecture is written to the image config."""
        other = PipelineSchema(runtime=RuntimeImageSchema(architecture="arm64"))
        image, _ = package_runtime_image(session, app_build, other, settings)
        document = json.loads((Path(image.bundle_dir) / CONFIG_FILE).read_text())
        assert document["architecture"] == "arm64"

    def test_containerfile(self, image) -> None:
        """Containerfile reproduces the image on the minimal base."""
        text = (Path(image.bundle_dir) / CONTAINERFILE).read_text()
        assert text.startswith("FROM gcr.io/distroless/cc-debian12\n")
        assert "EXPOSE 8000\n" in text
        assert 'ENV RUST_LOG="info"\n' in text
        assert 'CMD ["/app/app"]\n' in text

    def test_executable_is_only_file(self, image, app_build) -> None:
        """Only the executable crosses into the image."""
        with tarfile.open(Path(image.bundle_dir) / LAYER_FILE) as tar:
            files = [m for m in tar.getmembers() if m.isfile()]
            assert [m.name for m in files] == ["app/app"]
            data = tar.extractfile(files[0]).read()
        assert data == Path(app_build.executable_path).read_bytes()

    def test_repackage_is_hit(self, session, settings, pipeline, app_build, image) -> None:
        """Packaging the same executable again reuses the image."""
        again, hit = package_runtime_image(session, app_build, pipeline, settings)
        assert hit
        assert again.id == image.id
        assert not any(p.name.startswith(".staging-") for p in settings.images_dir.iterdir())

    def test_runtime_change_changes_digest(
        self, session, settings, pipeline, app_build, image
    ) -> None:
        """A different declared port is a different image."""
        other = PipelineSchema(
            toolchain=pipeline.toolchain, runtime=RuntimeImageSchema(port=9000)
        )
        image_b, hit = package_runtime_image(session, app_build, other, settings)
        assert not hit
        assert image_b.digest != image.digest

    def test_missing_executable(self, session, settings, pipeline, app_build) -> None:
        """Packaging requires the executable artifact."""
        Path(app_build.executable_path).unlink()
        with pytest.raises(PackagingError) as exc_info:
            package_runtime_image(session, app_build, pipeline, settings)
        assert exc_info.value.code == "executable_not_found"

    def test_unknown_log_level_warns(self, caplog) -> None:
        """Unknown log levels are reported, not rejected."""
        assert check_log_level(RuntimeImageSchema(log_level="info,tower_http=debug"))
        with caplog.at_level(logging.WARNING):
            assert not check_log_level(RuntimeImageSchema(log_level="verbose"))
        assert "verbose" in caplog.text


class TestInspectAndLaunch:
    """Tests for inspect_image, resolve_instance and launch_instance."""

    def test_inspect(self, image) -> None:
        """Inspection reports files and declarations."""
        inspection = inspect_image(Path(image.bundle_dir))
        assert inspection.digest == image.digest
        assert inspection.files == ["app", "app/app"]
        assert inspection.exposed_ports == ["8000/tcp"]
        assert inspection.env == {"RUST_LOG": "info"}
        assert inspection.command == ["/app/app"]
        assert inspection.base_image == "gcr.io/distroless/cc-debian12"

    def test_inspect_incomplete_bundle(self, tmp_path: Path) -> None:
        """A bundle without config or layer cannot be inspected."""
        with pytest.raises(PackagingError) as exc_info:
            inspect_image(tmp_path)
        assert exc_info.value.code == "image_bundle_incomplete"

    def test_resolve_defaults(self, image) -> None:
        """Default instance: one port, no arguments, default log level."""
        spec = resolve_instance(inspect_image(Path(image.bundle_dir)))
        assert spec.ports == [8000]
        assert spec.command == ["/app/app"]
        assert spec.env == {"RUST_LOG": "info"}
        assert spec.workdir == "/app"

    def test_resolve_override(self, image) -> None:
        """Overrides replace the image default."""
        spec = resolve_instance(
            inspect_image(Path(image.bundle_dir)), {"RUST_LOG": "debug"}
        )
        assert spec.env["RUST_LOG"] == "debug"

    def test_parse_env_overrides(self) -> None:
        """NAME=VALUE pairs are parsed; values may contain '='."""
        assert parse_env_overrides(["RUST_LOG=debug", "A=b=c"]) == {
            "RUST_LOG": "debug",
            "A": "b=c",
        }
        with pytest.raises(ValueError):
            parse_env_overrides(["NOVALUE"])

    def test_launch_default(self, image, tmp_path: Path, app_output: Path) -> None:
        """The instance runs the executable with no arguments from the workdir."""
        rootfs = tmp_path / "rootfs"
        process = launch_instance(Path(image.bundle_dir), rootfs)
        assert process.wait(timeout=30) == 0

        seen = json.loads(app_output.read_text())
        assert seen["argv"] == [str(rootfs / "app" / "app")]
        assert seen["cwd"] == str(rootfs / "app")
        assert seen["env"]["RUST_LOG"] == "info"
        assert sorted(p.relative_to(rootfs).as_posix() for p in rootfs.rglob("*")) == [
            "app",
            "app/app",
        ]

    def test_launch_with_override(self, image, tmp_path: Path, app_output: Path) -> None:
        """An overridden log variable is what the process sees."""
        process = launch_instance(
            Path(image.bundle_dir), tmp_path / "rootfs", {"RUST_LOG": "debug"}
        )
        assert process.wait(timeout=30) == 0
        assert json.loads(app_output.read_text())["env"]["RUST_LOG"] == "debug"
