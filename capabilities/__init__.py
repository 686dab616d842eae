"""Capability packages loaded into every bot runtime."""
from capabilities.base import (
    CapabilityPackage,
    DialogDefinition,
    PackageFactory,
    load_factories,
    load_factory,
)

__all__ = [
    "CapabilityPackage", "DialogDefinition", "PackageFactory",
    "load_factories", "load_factory",
]
