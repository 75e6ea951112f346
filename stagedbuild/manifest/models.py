"""Dependency manifest model."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DependencyPin:
    """An exact (name, version) pin from the lockfile."""

    name: str
    version: str
    source: str | None = None
    checksum: str | None = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class DependencyManifest:
    """Immutable, fully pinned declaration of external dependencies.

    Attributes:
        package_name: Name of the application package.
        package_version: Version of the application package.
        declared: Names of directly declared dependencies.
        pins: Every locked external package, sorted by (name, version).
        file_digests: SHA-256 of each manifest file, keyed by file name.
    """

    package_name: str
    package_version: str | None
    declared: tuple[str, ...] = ()
    pins: tuple[DependencyPin, ...] = ()
    file_digests: dict[str, str] = field(default_factory=dict)

    def pins_as_dicts(self) -> list[dict[str, str | None]]:
        """Return pins in a JSON-friendly form."""
        return [
            {
                "name": p.name,
                "version": p.version,
                "source": p.source,
                "checksum": p.checksum,
            }
            for p in self.pins
        ]


__all__ = ["DependencyManifest", "DependencyPin"]
