"""Exception types raised by the merge engine.

Everything except :class:`SchemaVersionError` is recoverable at the level of
a single path or mod: batch code catches these, records them and moves on.
"""

from __future__ import annotations


class ModMergerError(Exception):
    """Base class for errors the command line reports without a traceback."""


class ContainerError(ModMergerError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class SchemaVersionError(ModMergerError):
    """Data was written by a newer release. Reinstall or update to fix."""

    def __init__(self, path: str, found: object, supported: object) -> None:
        super().__init__(
            f"{path} uses data version {found}, newer than supported version {supported}. "
            "Update ModMerger or reinstall the mod with a compatible release."
        )
        self.path = path
        self.found = found
        self.supported = supported


class SizingError(ModMergerError):
    pass


class DeploymentError(ModMergerError):
    def __init__(self, path: str, method: str, reason: str) -> None:
        super().__init__(f"Could not deploy {path} using {method}: {reason}")
        self.path = path
        self.method = method
        self.reason = reason


class PackageError(ModMergerError):
    pass


class RegistryError(ModMergerError):
    pass


__all__ = [
    "ModMergerError",
    "ContainerError",
    "SchemaVersionError",
    "SizingError",
    "DeploymentError",
    "PackageError",
    "RegistryError",
]
