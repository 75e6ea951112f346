"""Stand-in for ``cargo build --release`` used by the pipeline tests.

Reads Cargo.toml and Cargo.lock from the working directory and writes into
``$CARGO_TARGET_DIR``:

- ``release/deps/lib<name>-<version>.rlib`` for every locked package that is
  not already compiled, logging ``Compiling <name> v<version>`` to the file
  named by ``FAKE_TOOLCHAIN_LOG``
- ``release/<package>``, an executable script that records its argv, cwd
  and environment as JSON to the path that ``FAKE_APP_OUTPUT`` named at
  build time
- ``release/.fingerprint/<package>-<hash>/dep-bin-<package>`` and
  ``release/deps/<crate>-<hash>``, the bin's fingerprint and object

Like cargo, the bin is only recompiled when it or its fingerprint is
missing, or when a file under ``src/`` is newer than the fingerprint.

A locked package named ``broken-dep`` or a ``compile_error!`` in
``src/main.rs`` makes the build fail with exit code 101.
"""

import hashlib
import os
import sys
import tomllib
from pathlib import Path

APP_TEMPLATE = """#!{python}
# source: {source_hash}
import json
import os
import sys

with open({output!r}, "w") as f:
    json.dump({{"argv": sys.argv, "cwd": os.getcwd(), "env": dict(os.environ)}}, f)
"""


def _log(message: str) -> None:
    print(message)
    log_file = os.environ.get("FAKE_TOOLCHAIN_LOG")
    if log_file:
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(message + "\n")


def main() -> int:
    workdir = Path.cwd()
    target_dir = Path(os.environ["CARGO_TARGET_DIR"])
    release_dir = target_dir / "release"
    deps_dir = release_dir / "deps"
    deps_dir.mkdir(parents=True, exist_ok=True)

    with (workdir / "Cargo.toml").open("rb") as f:
        package_name = tomllib.load(f)["package"]["name"]
    with (workdir / "Cargo.lock").open("rb") as f:
        lock = tomllib.load(f)

    for entry in lock.get("package", []):
        name, version = entry["name"], entry["version"]
        if name == package_name and "source" not in entry:
            continue
        if name == "broken-dep":
            print(f"error: could not compile `{name}`", file=sys.stderr)
            return 101
        rlib = deps_dir / f"lib{name}-{version}.rlib"
        if not rlib.exists():
            _log(f"Compiling {name} v{version}")
            rlib.write_text(f"{name} {version}\n", encoding="utf-8")

    unit_hash = hashlib.sha256(package_name.encode("utf-8")).hexdigest()[:16]
    fingerprint = release_dir / ".fingerprint" / f"{package_name}-{unit_hash}"
    dep_info = fingerprint / f"dep-bin-{package_name}"
    binary = release_dir / package_name

    sources = (workdir / "src").rglob("*.rs")
    src_mtime = max((p.stat().st_mtime_ns for p in sources), default=0)
    fresh = dep_info.exists() and src_mtime <= dep_info.stat().st_mtime_ns
    if binary.exists() and fresh:
        _log(f"Fresh {package_name} (bin)")
        print(f"Finished release target(s) for {package_name}")
        return 0

    main_rs = workdir / "src" / "main.rs"
    source = main_rs.read_text(encoding="utf-8")
    if "compile_error!" in source:
        print(f"error: could not compile `{package_name}`", file=sys.stderr)
        return 101

    _log(f"Compiling {package_name} (bin)")
    binary.write_text(
        APP_TEMPLATE.format(
            python=sys.executable,
            source_hash=hashlib.sha256(source.encode("utf-8")).hexdigest(),
            output=os.environ.get("FAKE_APP_OUTPUT", os.devnull),
        ),
        encoding="utf-8",
    )
    binary.chmod(0o755)
    crate = package_name.replace("-", "_")
    (deps_dir / f"{crate}-{unit_hash}").write_text(source, encoding="utf-8")
    fingerprint.mkdir(parents=True, exist_ok=True)
    dep_info.write_text("src/main.rs\n", encoding="utf-8")
    print(f"Finished release target(s) for {package_name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
