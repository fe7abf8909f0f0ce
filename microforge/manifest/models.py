"""Pydantic v2 models for the solution manifest.

The manifest (``microforge.yaml``) is the single source of truth for a
solution: which services are registered, which entities they own, and which
infrastructure the local orchestrator must bring up before them.

Every model allows extra keys so a manifest written by a newer tool version
stays readable, and unknown keys survive a rewrite.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class FieldType(str, Enum):
    """Semantic field types understood by the entity templates."""
    STRING = "string"
    TEXT = "text"
    INT = "int"
    LONG = "long"
    DECIMAL = "decimal"
    DOUBLE = "double"
    BOOL = "bool"
    DATETIME = "datetime"
    DATE = "date"
    GUID = "guid"


class RelationshipKind(str, Enum):
    """Supported entity relationship cardinalities."""
    ONE_TO_MANY = "one-to-many"
    MANY_TO_MANY = "many-to-many"


class InfrastructureKind(str, Enum):
    """Broad category of a supporting infrastructure node."""
    RELATIONAL_STORE = "relational-store"
    DOCUMENT_STORE = "document-store"
    MESSAGE_BROKER = "message-broker"
    CACHE = "cache"
    IDENTITY = "identity"
    OTHER = "other"


class RunKind(str, Enum):
    """How the orchestrator realizes a node."""
    PROCESS = "process"
    CONTAINER = "container"
    EXTERNAL = "external"


class ProbeProtocol(str, Enum):
    """Readiness probe flavours."""
    TCP = "tcp"
    HTTP = "http"
    EXIT_CODE = "exit-code"


class _ManifestModel(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class FieldDescriptor(_ManifestModel):
    """A typed property on an entity."""
    name: str = Field(..., description="Property name, e.g. 'FirstName'")
    type: FieldType = Field(default=FieldType.STRING, description="Semantic type")
    nullable: bool = Field(default=False, description="Whether the property is optional")


class RelationshipDescriptor(_ManifestModel):
    """A navigation from one entity to another."""
    kind: RelationshipKind = Field(..., description="Relationship cardinality")
    target: str = Field(..., description="Name of the related entity")
    navigation: Optional[str] = Field(
        default=None, description="Navigation property name; defaults to the target's plural"
    )


class EntityDescriptor(_ManifestModel):
    """A persisted domain entity owned by a service."""
    name: str = Field(..., description="Entity name in PascalCase, e.g. 'Company'")
    fields: list[FieldDescriptor] = Field(default_factory=list)
    relationships: list[RelationshipDescriptor] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Runtime descriptors
# ---------------------------------------------------------------------------

class ProbeDescriptor(_ManifestModel):
    """How to tell that a started node is usable by its dependents."""
    protocol: ProbeProtocol = Field(..., description="tcp, http or exit-code")
    address: Optional[str] = Field(
        default=None, description="'host:port' for tcp, a URL for http"
    )
    expect: Optional[int] = Field(
        default=None, description="Expected HTTP status (200) or exit code (0)"
    )
    command: Optional[list[str]] = Field(
        default=None, description="Check command for exit-code probes"
    )
    timeout: Optional[float] = Field(default=None, gt=0)
    interval: Optional[float] = Field(default=None, gt=0)
    max_interval: Optional[float] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @property
    def expected(self) -> int:
        """Expected result with the protocol default applied."""
        if self.expect is not None:
            return self.expect
        return 200 if self.protocol == ProbeProtocol.HTTP else 0


class RunSpec(_ManifestModel):
    """Launch instructions for a node."""
    kind: RunKind = Field(default=RunKind.PROCESS)
    command: list[str] = Field(default_factory=list, description="argv for process nodes")
    cwd: Optional[str] = Field(default=None, description="Relative to the solution root")
    env: dict[str, str] = Field(default_factory=dict)
    image: Optional[str] = Field(default=None, description="Container image")
    ports: list[str] = Field(default_factory=list, description="'host:container' mappings")
    volumes: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list, description="Extra container arguments")


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class ServiceDescriptor(_ManifestModel):
    """A scaffolded microservice registered in the solution."""
    name: str = Field(..., description="Canonical service name, e.g. 'people'")
    path: str = Field(..., description="Root path relative to the solution root")
    entities: list[EntityDescriptor] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    run: Optional[RunSpec] = Field(default=None)
    probe: Optional[ProbeDescriptor] = Field(default=None)

    def get_entity(self, name: str) -> Optional[EntityDescriptor]:
        """Return the entity named *name* (case-insensitive), if any."""
        for entity in self.entities:
            if entity.name.lower() == name.lower():
                return entity
        return None


class InfrastructureDescriptor(_ManifestModel):
    """A supporting dependency such as a database or message broker."""
    name: str = Field(..., description="Node name, e.g. 'db'")
    kind: InfrastructureKind = Field(default=InfrastructureKind.OTHER)
    dependencies: list[str] = Field(default_factory=list)
    run: Optional[RunSpec] = Field(default=None)
    probe: Optional[ProbeDescriptor] = Field(default=None)


NodeDescriptor = Union[ServiceDescriptor, InfrastructureDescriptor]


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

class Manifest(_ManifestModel):
    """Root record describing a solution."""
    schema_version: int = Field(default=SCHEMA_VERSION)
    solution: str = Field(..., description="Solution name")
    services: list[ServiceDescriptor] = Field(default_factory=list)
    infrastructure: list[InfrastructureDescriptor] = Field(default_factory=list)

    def get_service(self, name: str) -> Optional[ServiceDescriptor]:
        """Return the service named *name* (case-insensitive), if any."""
        for service in self.services:
            if service.name.lower() == name.lower():
                return service
        return None

    def get_infrastructure(self, name: str) -> Optional[InfrastructureDescriptor]:
        """Return the infrastructure node named *name* (case-insensitive), if any."""
        for infra in self.infrastructure:
            if infra.name.lower() == name.lower():
                return infra
        return None

    def get_node(self, name: str) -> Optional[NodeDescriptor]:
        """Return the service or infrastructure node named *name*."""
        return self.get_service(name) or self.get_infrastructure(name)

    def iter_nodes(self) -> Iterator[NodeDescriptor]:
        """Yield every node in declaration order (infrastructure first)."""
        yield from self.infrastructure
        yield from self.services

    def iter_entities(self) -> Iterator[tuple[ServiceDescriptor, EntityDescriptor]]:
        """Yield ``(service, entity)`` pairs across the whole solution."""
        for service in self.services:
            for entity in service.entities:
                yield service, entity

    def find_entity(self, name: str) -> Optional[tuple[ServiceDescriptor, EntityDescriptor]]:
        """Locate an entity by name anywhere in the solution."""
        for service, entity in self.iter_entities():
            if entity.name.lower() == name.lower():
                return service, entity
        return None

    def to_document(self) -> dict[str, Any]:
        """Plain data suitable for YAML serialisation."""
        return self.model_dump(mode="json", exclude_none=True)
