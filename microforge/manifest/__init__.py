"""Solution manifest: data model, atomic store and pure mutations.

Usage::

    from microforge.manifest import ManifestStore, ServiceDescriptor, add_service

    store = ManifestStore("/path/to/solution")
    manifest = store.load()
    manifest = add_service(manifest, ServiceDescriptor(name="people", path="src/Services/People"))
    store.save(manifest)
"""

from microforge.manifest.models import (
    EntityDescriptor,
    FieldDescriptor,
    FieldType,
    InfrastructureDescriptor,
    InfrastructureKind,
    Manifest,
    ProbeDescriptor,
    ProbeProtocol,
    RelationshipDescriptor,
    RelationshipKind,
    RunKind,
    RunSpec,
    ServiceDescriptor,
)
from microforge.manifest.store import (
    ManifestStore,
    add_dependency,
    add_entity,
    add_infrastructure,
    add_infrastructure_dependency,
    add_service,
    new_manifest,
    remove_service,
)

__all__ = [
    "EntityDescriptor",
    "FieldDescriptor",
    "FieldType",
    "InfrastructureDescriptor",
    "InfrastructureKind",
    "Manifest",
    "ManifestStore",
    "ProbeDescriptor",
    "ProbeProtocol",
    "RelationshipDescriptor",
    "RelationshipKind",
    "RunKind",
    "RunSpec",
    "ServiceDescriptor",
    "add_dependency",
    "add_entity",
    "add_infrastructure",
    "add_infrastructure_dependency",
    "add_service",
    "new_manifest",
    "remove_service",
]
