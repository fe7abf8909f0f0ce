"""Durable storage and pure mutations for the solution manifest.

``ManifestStore`` reads and writes ``microforge.yaml``. Writes are atomic
(temporary file in the same directory, fsync, rename) and refuse to clobber a
file that changed since it was read: the store remembers the sha256 digest of
the bytes it last loaded or saved and compares it against the file on disk
before every write.

The mutation helpers never touch the disk. Each takes the current manifest,
validates the change and returns a new manifest, leaving the input untouched.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from microforge.errors import (
    AlreadyExistsError,
    ManifestFormatError,
    ManifestStaleError,
    ManifestWriteError,
    NotFoundError,
    UnknownEntityReferenceError,
    UnknownReferenceError,
    ValidationError,
)
from microforge.manifest.models import (
    SCHEMA_VERSION,
    EntityDescriptor,
    InfrastructureDescriptor,
    Manifest,
    NodeDescriptor,
    ServiceDescriptor,
)
from microforge.naming import NameForms

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_FILENAME = "microforge.yaml"

_HEADER = "# microforge solution manifest. Edit with care; the CLI rewrites this file.\n"

# ---------------------------------------------------------------------------
# Identifier rules
# ---------------------------------------------------------------------------

_NODE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_][A-Za-z0-9]+)*$")
_SOLUTION_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_.][A-Za-z0-9]+)*$")
_MEMBER_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_MAX_NAME_LENGTH = 64

# C# keywords and type names that cannot be used as generated identifiers.
_RESERVED_WORDS = frozenset({
    "abstract", "base", "bool", "byte", "case", "catch", "char", "class",
    "const", "decimal", "default", "delegate", "double", "enum", "event",
    "false", "float", "int", "interface", "internal", "long", "namespace",
    "new", "null", "object", "operator", "override", "params", "private",
    "protected", "public", "return", "sealed", "short", "static", "string",
    "struct", "this", "throw", "true", "void",
})


def validate_node_name(name: str, what: str = "service") -> str:
    """Check a service or infrastructure name and return it unchanged.

    Names start with a letter and contain letters and digits, optionally
    separated by single hyphens or underscores (``people``, ``order-history``).

    Raises:
        ValidationError: If the name breaks the rule.
    """
    if not name or len(name) > _MAX_NAME_LENGTH or not _NODE_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid {what} name '{name}': must start with a letter, contain only "
            f"letters, digits and single '-' or '_' separators, and be at most "
            f"{_MAX_NAME_LENGTH} characters",
            name=name,
            rule="identifier",
        )
    return name


def validate_solution_name(name: str) -> str:
    """Check a solution name (dots are allowed, e.g. ``Contoso.Platform``)."""
    if not name or len(name) > _MAX_NAME_LENGTH or not _SOLUTION_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid solution name '{name}': must start with a letter and contain "
            f"only letters, digits and single '-', '_' or '.' separators",
            name=name,
            rule="identifier",
        )
    return name


def validate_member_name(name: str, what: str = "entity") -> str:
    """Check an entity, field or navigation name.

    These become C# identifiers, so they must be plain identifiers and not
    a reserved word.
    """
    if not name or len(name) > _MAX_NAME_LENGTH or not _MEMBER_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid {what} name '{name}': must start with a letter and contain only "
            f"letters, digits and underscores",
            name=name,
            rule="identifier",
        )
    if name.lower() in _RESERVED_WORDS:
        raise ValidationError(
            f"Invalid {what} name '{name}': '{name}' is a reserved word",
            name=name,
            rule="reserved-word",
        )
    return name


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ManifestStore:
    """Loads and atomically saves the manifest of one solution.

    The store is single-writer: it assumes exclusive access for the duration of
    a mutation and fails fast with ``ManifestStaleError`` when the file
    changed underneath it.
    """

    def __init__(self, root: str | Path, filename: str = DEFAULT_MANIFEST_FILENAME) -> None:
        self.root = Path(root)
        self.path = self.root / filename
        self._digest: Optional[str] = None

    @property
    def digest(self) -> Optional[str]:
        """sha256 of the content last loaded or saved by this store."""
        return self._digest

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Manifest:
        """Read and validate the manifest.

        Raises:
            NotFoundError: If the manifest file does not exist.
            ManifestFormatError: If the file is not valid YAML or violates the schema.
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(self.path) from None

        manifest = parse_manifest(raw, source=str(self.path))
        self._digest = _sha256(raw)
        logger.debug("Loaded manifest %s (%d services)", self.path, len(manifest.services))
        return manifest

    def save(self, manifest: Manifest) -> Path:
        """Atomically replace the manifest on disk.

        Raises:
            ManifestStaleError: If the file changed since the last load/save.
            ManifestWriteError: If the write fails; the previous file is kept.
        """
        if self._current_digest() != self._digest:
            raise ManifestStaleError(self.path)
        return self._write(manifest)

    def create(self, manifest: Manifest) -> Path:
        """Write a brand-new manifest.

        Raises:
            AlreadyExistsError: If a manifest already exists at the location.
        """
        if self.exists():
            raise AlreadyExistsError(
                f"A manifest already exists at {self.path}",
                name=str(self.path),
                rule="unique-solution",
            )
        self._digest = None
        return self._write(manifest)

    # -- Internal ----------------------------------------------------------

    def _current_digest(self) -> Optional[str]:
        try:
            return _sha256(self.path.read_bytes())
        except FileNotFoundError:
            return None

    def _write(self, manifest: Manifest) -> Path:
        data = dump_manifest(manifest).encode("utf-8")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
        except OSError as exc:
            raise ManifestWriteError(self.path, str(exc)) from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise ManifestWriteError(self.path, str(exc)) from exc

        self._digest = _sha256(data)
        logger.debug("Saved manifest %s", self.path)
        return self.path


def parse_manifest(raw: bytes | str, source: str = "<manifest>") -> Manifest:
    """Parse YAML manifest content into a validated ``Manifest``.

    Raises:
        ManifestFormatError: If the content is unparsable, not a mapping,
            violates the schema, or declares a node name twice.
    """
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ManifestFormatError(
            f"Manifest {source} is not valid YAML: {exc}", name=source, rule="yaml"
        ) from exc

    if not isinstance(data, dict):
        raise ManifestFormatError(
            f"Manifest {source} must be a mapping at the top level", name=source, rule="schema"
        )

    try:
        manifest = Manifest.model_validate(data)
    except PydanticValidationError as exc:
        raise ManifestFormatError(
            f"Manifest {source} violates the schema: {exc}", name=source, rule="schema"
        ) from exc

    if manifest.schema_version > SCHEMA_VERSION:
        logger.warning(
            "Manifest %s uses schema version %d; this tool understands %d. "
            "Unknown fields are carried through unchanged.",
            source, manifest.schema_version, SCHEMA_VERSION,
        )

    seen: dict[str, str] = {}
    for node in manifest.iter_nodes():
        key = node.name.lower()
        if key in seen:
            raise ManifestFormatError(
                f"Manifest {source} declares '{node.name}' more than once "
                f"(conflicts with '{seen[key]}'); node names are case-insensitive",
                name=node.name,
                rule="unique-node",
            )
        seen[key] = node.name
    return manifest


def dump_manifest(manifest: Manifest) -> str:
    """Serialise a manifest to the YAML text written on disk."""
    body = yaml.safe_dump(
        manifest.to_document(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
    return _HEADER + body


# ---------------------------------------------------------------------------
# Pure mutations
# ---------------------------------------------------------------------------


def new_manifest(solution: str) -> Manifest:
    """Return an empty manifest for *solution*."""
    validate_solution_name(solution)
    return Manifest(solution=solution)


def add_service(manifest: Manifest, service: ServiceDescriptor) -> Manifest:
    """Register a new service.

    Raises:
        ValidationError: Invalid name.
        AlreadyExistsError: A node with the same name (case-insensitive) exists.
        UnknownReferenceError: A declared dependency is not registered.
    """
    validate_node_name(service.name, "service")
    _ensure_unique_node(manifest, service.name)
    _ensure_dependencies(manifest, service.name, service.dependencies)

    updated = manifest.model_copy(deep=True)
    updated.services.append(service.model_copy(deep=True))
    return updated


def add_infrastructure(manifest: Manifest, infra: InfrastructureDescriptor) -> Manifest:
    """Register a supporting infrastructure node (database, broker, cache...)."""
    validate_node_name(infra.name, "infrastructure")
    _ensure_unique_node(manifest, infra.name)
    _ensure_dependencies(manifest, infra.name, infra.dependencies)

    updated = manifest.model_copy(deep=True)
    updated.infrastructure.append(infra.model_copy(deep=True))
    return updated


def add_entity(manifest: Manifest, service_name: str, entity: EntityDescriptor) -> Manifest:
    """Add *entity* to the service named *service_name*.

    Raises:
        UnknownReferenceError: The service does not exist.
        ValidationError: Invalid entity, field or navigation names, or
            duplicated member names.
        AlreadyExistsError: The service already has an entity with this name.
        UnknownEntityReferenceError: A relationship target is not registered.
    """
    service = require_service(manifest, service_name)
    validate_entity(manifest, service, entity)

    updated = manifest.model_copy(deep=True)
    require_service(updated, service_name).entities.append(entity.model_copy(deep=True))
    return updated


def add_dependency(manifest: Manifest, node_name: str, dependency: str) -> Manifest:
    """Declare that *node_name* requires *dependency* to be running first.

    Cycles are not checked here; the dependency graph rejects them.

    Raises:
        UnknownReferenceError: Either node is not registered.
        ValidationError: A node cannot depend on itself.
        AlreadyExistsError: The dependency is already declared.
    """
    node = require_node(manifest, node_name)
    _ensure_dependencies(manifest, node.name, [dependency])
    if dependency.lower() == node.name.lower():
        raise ValidationError(
            f"Node '{node.name}' cannot depend on itself", name=node.name, rule="self-dependency"
        )
    if any(dep.lower() == dependency.lower() for dep in node.dependencies):
        raise AlreadyExistsError(
            f"Node '{node.name}' already depends on '{dependency}'",
            name=dependency,
            rule="unique-dependency",
        )

    updated = manifest.model_copy(deep=True)
    canonical = require_node(manifest, dependency).name
    require_node(updated, node_name).dependencies.append(canonical)
    return updated


add_infrastructure_dependency = add_dependency


def remove_service(manifest: Manifest, name: str) -> Manifest:
    """Unregister a service. Generated files are left on disk.

    Raises:
        UnknownReferenceError: The service does not exist.
        ValidationError: Other nodes depend on it, or other services have
            relationships to its entities.
    """
    service = require_service(manifest, name)

    dependents = [
        node.name for node in manifest.iter_nodes()
        if any(dep.lower() == service.name.lower() for dep in node.dependencies)
    ]
    if dependents:
        raise ValidationError(
            f"Cannot remove service '{service.name}': required by {', '.join(dependents)}",
            name=service.name,
            rule="in-use",
        )

    owned = {entity.name.lower() for entity in service.entities}
    referrers = sorted({
        f"{other.name}.{entity.name}"
        for other, entity in manifest.iter_entities()
        if other.name != service.name
        for rel in entity.relationships
        if rel.target.lower() in owned
    })
    if referrers:
        raise ValidationError(
            f"Cannot remove service '{service.name}': its entities are referenced by "
            f"{', '.join(referrers)}",
            name=service.name,
            rule="in-use",
        )

    updated = manifest.model_copy(deep=True)
    updated.services = [s for s in updated.services if s.name != service.name]
    return updated


def validate_entity(manifest: Manifest, service: ServiceDescriptor, entity: EntityDescriptor) -> None:
    """Run every entity rule against *manifest* without mutating it."""
    validate_member_name(entity.name, "entity")
    if service.get_entity(entity.name) is not None:
        raise AlreadyExistsError(
            f"Service '{service.name}' already has an entity named '{entity.name}'",
            name=entity.name,
            rule="unique-entity",
        )

    members: dict[str, str] = {"id": "Id"}
    for field in entity.fields:
        validate_member_name(field.name, "field")
        _claim_member(members, field.name, entity.name)

    for rel in entity.relationships:
        if rel.navigation is not None:
            validate_member_name(rel.navigation, "navigation")
        resolve_relationship_target(manifest, service, entity, rel.target)

    # Navigation names are checked once every target is known to exist.
    for rel in entity.relationships:
        navigation = rel.navigation or NameForms.from_name(rel.target).plural_pascal
        _claim_member(members, navigation, entity.name)


def resolve_relationship_target(
    manifest: Manifest,
    service: ServiceDescriptor,
    entity: EntityDescriptor,
    target: str,
) -> tuple[ServiceDescriptor, EntityDescriptor]:
    """Find the entity a relationship points at.

    Lookup order: the entity itself (self reference), the owning service,
    then every other service in declaration order.

    Raises:
        UnknownEntityReferenceError: No entity with that name is registered.
    """
    if target.lower() == entity.name.lower():
        return service, entity
    local = service.get_entity(target)
    if local is not None:
        return service, local
    found = manifest.find_entity(target)
    if found is None:
        raise UnknownEntityReferenceError(
            f"Entity '{entity.name}' in service '{service.name}' has a relationship to "
            f"'{target}', which is not an entity registered in the manifest",
            reference=target,
            referrer=entity.name,
        )
    return found


def require_service(manifest: Manifest, name: str) -> ServiceDescriptor:
    """Look up a service (case-insensitive) or raise ``UnknownReferenceError``."""
    service = manifest.get_service(name)
    if service is None:
        raise UnknownReferenceError(
            f"Service '{name}' is not registered in the manifest", reference=name
        )
    return service


def require_node(manifest: Manifest, name: str) -> NodeDescriptor:
    """Look up a service or infrastructure node or raise ``UnknownReferenceError``."""
    node = manifest.get_node(name)
    if node is None:
        raise UnknownReferenceError(
            f"Node '{name}' is not registered in the manifest", reference=name
        )
    return node


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_unique_node(manifest: Manifest, name: str) -> None:
    existing = manifest.get_node(name)
    if existing is not None:
        raise AlreadyExistsError(
            f"'{name}' is already registered in the manifest as '{existing.name}' "
            f"(service and infrastructure names are unique, case-insensitive)",
            name=name,
            rule="unique-node",
        )


def _ensure_dependencies(manifest: Manifest, referrer: str, dependencies: Iterable[str]) -> None:
    for dep in dependencies:
        if manifest.get_node(dep) is None:
            raise UnknownReferenceError(
                f"'{referrer}' depends on '{dep}', which is not a registered "
                f"service or infrastructure node",
                reference=dep,
                referrer=referrer,
            )


def _claim_member(members: dict[str, str], name: str, entity: str) -> None:
    key = name.lower()
    if key in members:
        raise ValidationError(
            f"Entity '{entity}' declares member '{name}' more than once "
            f"(clashes with '{members[key]}')",
            name=name,
            rule="unique-member",
        )
    members[key] = name


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
