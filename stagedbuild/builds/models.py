"""Build ORM models.

This module defines the records kept for each pipeline stage:
- DependencyCache: one content-addressed dependency cache per manifest key
- ApplicationBuild: one compiled executable per application key
- RuntimeImage: one packaged image bundle per image digest
- PipelineRun: one end-to-end invocation and its state machine
"""

from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stagedbuild.db import Base
from stagedbuild.errors import InvalidTransitionError
from stagedbuild.pipeline.state import check_transition
from stagedbuild.types import BuildStatus, CacheState, PipelineState


class DependencyCache(Base):
    """ORM model for a compiled dependency cache.

    Attributes:
        id: Primary key.
        manifest_key: Hash of the manifest content; the cache identity.
        package_name: Application package the manifest belongs to.
        pins: JSON list of pinned dependencies compiled into the cache.
        store_dir: Content-addressed cache directory.
        log_path: Pre-build log file.
        state: pending, ready or broken.
        hit_count: Number of times the cache was reused.
    """

    __tablename__ = "dependency_caches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    manifest_key: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True
    )
    package_name: Mapped[str] = mapped_column(String(200), nullable=False)
    pins: Mapped[list[dict[str, object]] | None] = mapped_column(
        JSON, nullable=True, default=list
    )
    store_dir: Mapped[str] = mapped_column(String(500), nullable=False)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CacheState.PENDING.value, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    ready_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    builds: Mapped[list["ApplicationBuild"]] = relationship(
        "ApplicationBuild", back_populates="dependency_cache"
    )

    def __repr__(self) -> str:
        """Return string representation of DependencyCache."""
        return (
            f"<DependencyCache(id={self.id}, package='{self.package_name}', "
            f"state='{self.state}', key='{self.manifest_key[:16]}...')>"
        )

    def mark_ready(self) -> None:
        """Mark this cache as ready for use."""
        self.state = CacheState.READY.value
        self.ready_at = datetime.now()
        self.error_message = None

    def mark_broken(self, message: str | None = None) -> None:
        """Mark this cache as broken."""
        self.state = CacheState.BROKEN.value
        self.error_message = message

    def record_hit(self) -> None:
        """Record a reuse of this cache."""
        self.hit_count = (self.hit_count or 0) + 1
        self.last_used_at = datetime.now()

    def is_ready(self) -> bool:
        """Check if this cache is ready for use."""
        return self.state == CacheState.READY.value

    def is_intact(self) -> bool:
        """Check the cache is ready and its store still exists on disk."""
        return self.is_ready() and (Path(self.store_dir) / "target").is_dir()

    def pin_labels(self) -> list[str]:
        """Return pins as ``name@version`` labels."""
        return [f"{p['name']}@{p['version']}" for p in (self.pins or [])]


class ApplicationBuild(Base):
    """ORM model for an application build.

    Attributes:
        id: Primary key.
        dependency_cache_id: Cache the application was linked against.
        cache_key: Hash of manifest key, source hash and toolchain.
        source_hash: Hash of the application source tree.
        input_snapshot: JSON representation of the build inputs.
        binary_name: Name of the executable produced by the toolchain.
        status: pending, running, succeeded or failed.
        executable_path: Stable location of the executable artifact.
        sha256: SHA-256 of the executable.
        size_bytes: Size of the executable.
    """

    __tablename__ = "application_builds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dependency_cache_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("dependency_caches.id"), nullable=False, index=True
    )
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    binary_name: Mapped[str] = mapped_column(String(200), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    executable_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    dependency_cache: Mapped["DependencyCache"] = relationship(
        "DependencyCache", back_populates="builds"
    )
    images: Mapped[list["RuntimeImage"]] = relationship(
        "RuntimeImage", back_populates="application_build"
    )

    def __repr__(self) -> str:
        """Return string representation of ApplicationBuild."""
        return (
            f"<ApplicationBuild(id={self.id}, binary='{self.binary_name}', "
            f"status='{self.status}', cache_key='{self.cache_key[:16]}...')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed and drop any executable reference."""
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        self.executable_path = None
        self.sha256 = None
        self.size_bytes = None
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value

    def has_executable(self) -> bool:
        """Check the build succeeded and its executable is still on disk."""
        return (
            self.is_succeeded()
            and self.executable_path is not None
            and Path(self.executable_path).is_file()
        )


class RuntimeImage(Base):
    """ORM model for a packaged runtime image bundle.

    Attributes:
        id: Primary key.
        application_build_id: Build whose executable the image carries.
        digest: SHA-256 of the image config; the image identity.
        bundle_dir: Directory holding layer, config and manifest.
        base_image: Minimal base image reference.
        port: Declared listening port.
        env: Default environment values.
        command: Default startup command.
    """

    __tablename__ = "runtime_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("application_builds.id"), nullable=False, index=True
    )
    digest: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True
    )
    bundle_dir: Mapped[str] = mapped_column(String(500), nullable=False)
    base_image: Mapped[str] = mapped_column(String(300), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    env: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    command: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    layer_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    application_build: Mapped["ApplicationBuild"] = relationship(
        "ApplicationBuild", back_populates="images"
    )

    def __repr__(self) -> str:
        """Return string representation of RuntimeImage."""
        return f"<RuntimeImage(id={self.id}, digest='{self.digest[:23]}...')>"

    def is_intact(self) -> bool:
        """Check the bundle files are still on disk."""
        bundle = Path(self.bundle_dir)
        return (bundle / "config.json").is_file() and (bundle / "layer.tar").is_file()


class PipelineRun(Base):
    """ORM model for one end-to-end pipeline invocation.

    The ``state`` column is an explicit state machine; use ``advance`` and
    ``fail`` rather than assigning it.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_dir: Mapped[str] = mapped_column(String(500), nullable=False)
    state: Mapped[str] = mapped_column(
        String(30), nullable=False, default=PipelineState.PENDING.value, index=True
    )
    manifest_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    dependency_cache_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("dependency_caches.id"), nullable=True
    )
    application_build_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("application_builds.id"), nullable=True
    )
    runtime_image_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("runtime_images.id"), nullable=True
    )

    dependency_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    application_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    error_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    dependency_cache: Mapped["DependencyCache"] = relationship(
        "DependencyCache"
    )
    application_build: Mapped["ApplicationBuild"] = relationship(
        "ApplicationBuild"
    )
    runtime_image: Mapped["RuntimeImage"] = relationship("RuntimeImage")

    def __repr__(self) -> str:
        """Return string representation of PipelineRun."""
        return f"<PipelineRun(id={self.id}, state='{self.state}')>"

    def _require(self, target: PipelineState, ok: bool, reason: str) -> None:
        if not ok:
            raise InvalidTransitionError(self.state, target.value, reason)

    def advance(self, target: PipelineState) -> None:
        """Move to the next stage state.

        Each transition requires the prior stage's artifact to be attached
        and valid.

        Raises:
            InvalidTransitionError: If the transition or its precondition fails.
        """
        check_transition(self.state, target)
        if target == PipelineState.DEPENDENCIES_BUILT:
            cache = self.dependency_cache
            self._require(
                target,
                cache is not None and cache.is_intact(),
                "dependency cache is missing or not ready",
            )
        elif target == PipelineState.APPLICATION_BUILT:
            build = self.application_build
            self._require(
                target,
                build is not None and build.has_executable(),
                "executable artifact is missing",
            )
        elif target == PipelineState.IMAGE_PACKAGED:
            image = self.runtime_image
            self._require(
                target,
                image is not None and image.is_intact(),
                "runtime image bundle is missing",
            )
            self.finished_at = datetime.now()
        self.state = target.value

    def fail(
        self,
        error_type: str,
        message: str,
        stage: str | None = None,
    ) -> None:
        """Move the run to the failed state."""
        check_transition(self.state, PipelineState.FAILED)
        self.state = PipelineState.FAILED.value
        self.finished_at = datetime.now()
        self.error_type = error_type
        self.error_message = message
        self.error_stage = stage

    def is_complete(self) -> bool:
        """Check if the run packaged an image."""
        return self.state == PipelineState.IMAGE_PACKAGED.value


__all__ = ["ApplicationBuild", "DependencyCache", "PipelineRun", "RuntimeImage"]
