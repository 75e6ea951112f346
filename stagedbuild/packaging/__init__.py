"""Runtime image packaging module.

This module handles:
- Writing minimal single-executable image bundles
- Inspecting bundle contents and declarations
- Starting local instances of a bundle
"""

from stagedbuild.packaging.image import (
    ImageInspection,
    inspect_image,
    package_runtime_image,
)
from stagedbuild.packaging.runtime import InstanceSpec, launch_instance, resolve_instance

__all__ = [
    "ImageInspection",
    "InstanceSpec",
    "inspect_image",
    "launch_instance",
    "package_runtime_image",
    "resolve_instance",
]
