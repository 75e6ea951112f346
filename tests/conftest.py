"""Shared fixtures: in-memory database, isolated settings and a fake toolchain."""

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stagedbuild.builds import models  # noqa: F401 - registers ORM tables
from stagedbuild.config import Settings
from stagedbuild.db import Base
from stagedbuild.pipeline.schema import PipelineSchema, ToolchainSchema

FAKE_CARGO = Path(__file__).parent / "fake_cargo.py"

MAIN_RS = 'fn main() {\n    println!("hello");\n}\n'


def write_project(
    root: Path,
    name: str = "hello-svc",
    deps: dict[str, str] | None = None,
    source: str = MAIN_RS,
    lock: bool = True,
) -> Path:
    """Write a small cargo project with exact pins for every dependency."""
    if deps is None:
        deps = {"libfoo": "1.2.3"}
    root.mkdir(parents=True, exist_ok=True)

    manifest = [
        "[package]",
        f'name = "{name}"',
        'version = "0.1.0"',
        'edition = "2021"',
        "",
        "[dependencies]",
    ]
    manifest += [f'{dep} = "={version}"' for dep, version in deps.items()]
    (root / "Cargo.toml").write_text("\n".join(manifest) + "\n")

    if lock:
        entries = ["version = 3", ""]
        for dep, version in sorted(deps.items()):
            entries += [
                "[[package]]",
                f'name = "{dep}"',
                f'version = "{version}"',
                'source = "registry+https://github.com/rust-lang/crates.io-index"',
                f'checksum = "{"0" * 64}"',
                "",
            ]
        entries += ["[[package]]", f'name = "{name}"', 'version = "0.1.0"', ""]
        (root / "Cargo.lock").write_text("\n".join(entries))

    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "main.rs").write_text(source)
    return root


def compiled_packages(log_file: Path) -> list[str]:
    """Return the dependency compile lines the fake toolchain logged."""
    if not log_file.exists():
        return []
    return [
        line
        for line in log_file.read_text().splitlines()
        if line.startswith("Compiling ") and not line.endswith("(bin)")
    ]


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every directory inside tmp_path."""
    return Settings(
        cache_dir=tmp_path / "cache",
        artifacts_dir=tmp_path / "artifacts",
        images_dir=tmp_path / "images",
        db_url=f"sqlite:///{tmp_path / 'db.sqlite'}",
        tmp_dir=tmp_path / "work",
        lock_timeout=5,
    )


@pytest.fixture
def toolchain_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Log file the fake toolchain appends compile lines to."""
    log_file = tmp_path / "toolchain.log"
    monkeypatch.setenv("FAKE_TOOLCHAIN_LOG", str(log_file))
    return log_file


@pytest.fixture
def app_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """File the built executable records its argv, cwd and env to."""
    output = tmp_path / "app-output.json"
    monkeypatch.setenv("FAKE_APP_OUTPUT", str(output))
    return output


@pytest.fixture
def pipeline(toolchain_log: Path, app_output: Path) -> PipelineSchema:
    """Default pipeline with the fake toolchain in place of cargo."""
    toolchain = ToolchainSchema(
        build_command=[sys.executable, str(FAKE_CARGO), "build", "--release"],
    )
    return PipelineSchema(toolchain=toolchain)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project depending on libfoo 1.2.3."""
    return write_project(tmp_path / "project")
