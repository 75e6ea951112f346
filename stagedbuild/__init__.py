"""stagedbuild - Two-stage build and minimal runtime packaging.

This package orchestrates a dependency pre-build, an application build that
reuses the compiled dependency cache, and packaging of the resulting
executable into a minimal runtime image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
