"""Main scaffolding engine.

Translates one high-level intent ("init solution X", "add service X", "add
entity Y to service X") into a ``GenerationPlan``, renders it completely in
memory, writes it through a ``StagedTransaction`` and only then commits the
matching manifest mutation. A failure at any step leaves the manifest and the
solution tree exactly as they were.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Optional

from microforge.config import Config
from microforge.errors import AlreadyExistsError, ValidationError
from microforge.manifest import store as manifest_ops
from microforge.manifest.models import (
    EntityDescriptor,
    FieldType,
    InfrastructureDescriptor,
    InfrastructureKind,
    Manifest,
    ProbeDescriptor,
    ProbeProtocol,
    RelationshipKind,
    RunSpec,
    ServiceDescriptor,
)
from microforge.manifest.store import ManifestStore
from microforge.naming import NameForms, pascal_case
from microforge.orchestrator.graph import build_graph
from microforge.scaffolder.plan import GenerationPlan, StagedTransaction
from microforge.scaffolder.templates import TemplateCatalog, TemplateRenderer, WriteMode

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

SERVICES_DIR = "src/Services"
FIRST_SERVICE_PORT = 5100
STRING_MAX_LENGTH = 256


@dataclass
class ScaffoldResult:
    """Outcome of a successful scaffolding command."""

    description: str
    manifest: Manifest
    files: list[Path] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ScaffoldingEngine:
    """Applies scaffolding intents to one solution.

    Templates are looked up by key group (``solution``, ``service``,
    ``entity``), so adding a template kind to the catalog requires no change
    here.
    """

    def __init__(
        self,
        root: str | Path,
        config: Config | None = None,
        renderer: TemplateRenderer | None = None,
        store: ManifestStore | None = None,
    ) -> None:
        self.root = Path(root)
        config = config or Config()
        self.config = config.model_copy(update={"root": self.root})
        self.renderer = renderer or TemplateRenderer(TemplateCatalog.load(self.config.template_dir))
        self.store = store or ManifestStore(self.root, self.config.manifest_filename)

    @property
    def catalog(self) -> TemplateCatalog:
        return self.renderer.catalog

    # -- Public API --------------------------------------------------------

    async def init(self, solution_name: str) -> ScaffoldResult:
        """Create the manifest and solution-level files for a new solution.

        Raises:
            ValidationError: Invalid solution name.
            AlreadyExistsError: A manifest already exists at the root.
        """
        manifest = manifest_ops.new_manifest(solution_name)
        if self.store.exists():
            raise AlreadyExistsError(
                f"A manifest already exists at {self.store.path}",
                name=str(self.store.path),
                rule="unique-solution",
            )

        plan = GenerationPlan(description=f"init solution {solution_name}")
        ctx = self._build_context(manifest)
        for template in self.catalog.group("solution"):
            plan.add(template, self.renderer.render_output_path(template, ctx), ctx)

        files = await self._apply(plan, lambda: self.store.create(manifest))
        logger.info("Initialised solution %s in %s", solution_name, self.root)
        return ScaffoldResult(description=plan.description, manifest=manifest, files=files)

    async def add_service(
        self,
        name: str,
        path: Optional[str] = None,
        dependencies: Iterable[str] = (),
        port: Optional[int] = None,
    ) -> ScaffoldResult:
        """Scaffold a new service and register it in the manifest.

        Raises:
            NotFoundError: No manifest at the root.
            ValidationError: Invalid name or path.
            AlreadyExistsError: The name is taken, or a target file exists.
            UnknownReferenceError: A dependency is not registered.
            TemplateError: A template cannot be rendered.
            ManifestStaleError: The manifest changed during the run.
        """
        manifest = self.store.load()
        manifest_ops.validate_node_name(name, "service")
        names = NameForms.from_name(name)
        service_path = _validate_relative_path(path or f"{SERVICES_DIR}/{names.pascal}")
        service_port = _check_port(manifest, name, port) if port is not None else _next_free_port(manifest)

        descriptor = ServiceDescriptor(
            name=name,
            path=service_path,
            dependencies=[_canonical_node_name(manifest, dep) for dep in dependencies],
            port=service_port,
            probe=ProbeDescriptor(
                protocol=ProbeProtocol.HTTP,
                address=f"http://localhost:{service_port}/health",
            ),
        )
        updated = manifest_ops.add_service(manifest, descriptor)
        service = manifest_ops.require_service(updated, name)

        plan = self.plan_service(updated, service)
        files = await self._apply(plan, lambda: self.store.save(updated))
        logger.info("Added service %s at %s (%d files)", name, service_path, len(files))
        return ScaffoldResult(description=plan.description, manifest=updated, files=files)

    async def add_entity(self, service_name: str, entity: EntityDescriptor) -> ScaffoldResult:
        """Scaffold an entity's artifacts inside an existing service.

        Relationship targets are resolved before any file is written.

        Raises:
            UnknownReferenceError: The service does not exist.
            UnknownEntityReferenceError: A relationship target does not exist.
            AlreadyExistsError: The entity exists in the service, or a target
                file exists.
            ValidationError: Invalid entity, field or navigation names.
        """
        manifest = self.store.load()
        updated = manifest_ops.add_entity(manifest, service_name, entity)
        service = manifest_ops.require_service(updated, service_name)
        added = service.entities[-1]

        plan = self.plan_entity(updated, service, added)
        files = await self._apply(plan, lambda: self.store.save(updated))
        logger.info("Added entity %s to service %s (%d files)", entity.name, service.name, len(files))
        return ScaffoldResult(description=plan.description, manifest=updated, files=files)

    def add_infrastructure(
        self,
        name: str,
        kind: InfrastructureKind = InfrastructureKind.OTHER,
        run: Optional[RunSpec] = None,
        probe: Optional[ProbeDescriptor] = None,
        dependencies: Iterable[str] = (),
    ) -> Manifest:
        """Register an infrastructure node. No files are generated."""
        manifest = self.store.load()
        infra = InfrastructureDescriptor(
            name=name,
            kind=kind,
            dependencies=[_canonical_node_name(manifest, d) for d in dependencies],
            run=run,
            probe=probe,
        )
        updated = manifest_ops.add_infrastructure(manifest, infra)
        self.store.save(updated)
        logger.info("Added infrastructure %s (%s)", name, infra.kind.value)
        return updated

    def add_dependency(self, node: str, dependency: str) -> Manifest:
        """Declare that *node* requires *dependency* to be running first.

        Raises:
            UnknownReferenceError: Either node is not registered.
            AlreadyExistsError: The dependency is already declared.
            CycleError: The new edge would close a dependency cycle; the
                manifest is left unchanged.
        """
        manifest = self.store.load()
        updated = manifest_ops.add_dependency(manifest, node, dependency)
        # Reject cycles now rather than at the next 'run local'.
        build_graph(updated)
        self.store.save(updated)
        logger.info("%s now depends on %s", node, dependency)
        return updated

    def remove_service(self, name: str) -> Manifest:
        """Unregister a service; its generated files stay on disk."""
        manifest = self.store.load()
        updated = manifest_ops.remove_service(manifest, name)
        self.store.save(updated)
        logger.info("Removed service %s from the manifest", name)
        return updated

    # -- Planning ----------------------------------------------------------

    def plan_service(self, manifest: Manifest, service: ServiceDescriptor) -> GenerationPlan:
        """Plan every ``service.*`` artifact for *service*."""
        plan = GenerationPlan(description=f"add service {service.name}")
        ctx = self._build_context(manifest, service)
        for template in self.catalog.group("service"):
            plan.add(template, self.renderer.render_output_path(template, ctx), ctx)
        return plan

    def plan_entity(
        self, manifest: Manifest, service: ServiceDescriptor, entity: EntityDescriptor
    ) -> GenerationPlan:
        """Plan the ``entity.*`` artifacts plus the regenerated service bootstrap."""
        plan = GenerationPlan(description=f"add entity {entity.name} to service {service.name}")
        ctx = self._build_context(manifest, service, entity)
        for template in self.catalog.group("entity"):
            plan.add(template, self.renderer.render_output_path(template, ctx), ctx)
        for template in self.catalog.group("service"):
            if template.mode == WriteMode.REGENERATE:
                plan.add(template, self.renderer.render_output_path(template, ctx), ctx)
        return plan

    async def _apply(self, plan: GenerationPlan, finalize) -> list[Path]:
        artifacts = plan.render(self.renderer)
        txn = StagedTransaction(self.root, self.config.staging_path)
        return await txn.apply(artifacts, finalize=finalize)

    # -- Context building --------------------------------------------------

    def _build_context(
        self,
        manifest: Manifest,
        service: Optional[ServiceDescriptor] = None,
        entity: Optional[EntityDescriptor] = None,
    ) -> dict[str, Any]:
        """Build the Jinja2 template context."""
        ctx: dict[str, Any] = {
            "solution": NameForms.from_name(manifest.solution),
            "generator": {
                "name": "microforge",
                "catalog_version": self.catalog.version,
            },
        }
        if service is not None:
            ctx["service"] = _enrich_service(manifest, service)
            if entity is not None:
                ctx["entity"] = _enrich_entity(manifest, service, entity)
        return ctx


# ---------------------------------------------------------------------------
# Service / entity enrichment
# ---------------------------------------------------------------------------

_CSHARP_TYPE_MAP: dict[FieldType, str] = {
    FieldType.STRING: "string",
    FieldType.TEXT: "string",
    FieldType.INT: "int",
    FieldType.LONG: "long",
    FieldType.DECIMAL: "decimal",
    FieldType.DOUBLE: "double",
    FieldType.BOOL: "bool",
    FieldType.DATETIME: "DateTime",
    FieldType.DATE: "DateOnly",
    FieldType.GUID: "Guid",
}


def _enrich_service(manifest: Manifest, service: ServiceDescriptor) -> dict[str, Any]:
    """Enrich a service descriptor with computed template variables."""
    names = NameForms.from_name(service.name)
    solution = NameForms.from_name(manifest.solution)
    root_namespace = ".".join(pascal_case(part) for part in manifest.solution.split("."))
    return {
        "name": service.name,
        "names": names,
        "namespace": f"{root_namespace}.{names.pascal}",
        "path": service.path,
        "port": service.port or FIRST_SERVICE_PORT,
        "database": f"{solution.pascal}{names.pascal}",
        "dependencies": list(service.dependencies),
        "entities": [
            _enrich_entity(manifest, service, entity) for entity in service.entities
        ],
    }


def _enrich_entity(
    manifest: Manifest, service: ServiceDescriptor, entity: EntityDescriptor
) -> dict[str, Any]:
    """Enrich an entity with names, C# types and resolved relationships.

    Relationships to entities of the same service become EF navigations;
    relationships to another service's entity become a list of identifiers,
    since services do not share a database.
    """
    names = NameForms.from_name(entity.name)

    fields = []
    for f in entity.fields:
        cs_type = _CSHARP_TYPE_MAP[f.type]
        is_string = f.type in (FieldType.STRING, FieldType.TEXT)
        fields.append({
            "name": f.name,
            "pascal": NameForms.from_name(f.name).pascal,
            "camel": NameForms.from_name(f.name).camel,
            "type": f.type.value,
            "cs_type": f"{cs_type}?" if f.nullable else cs_type,
            "nullable": f.nullable,
            "is_string": is_string,
            "max_length": STRING_MAX_LENGTH if f.type == FieldType.STRING else None,
            "initializer": " = string.Empty;" if is_string and not f.nullable else "",
        })

    relationships = []
    for rel in entity.relationships:
        target_service, target = manifest_ops.resolve_relationship_target(
            manifest, service, entity, rel.target
        )
        target_names = NameForms.from_name(target.name)
        navigation = rel.navigation or target_names.plural_pascal
        local = target_service.name == service.name
        relationships.append({
            "kind": rel.kind.value,
            "many_to_many": rel.kind == RelationshipKind.MANY_TO_MANY,
            "target": target_names.pascal,
            "target_service": target_service.name,
            "navigation": navigation,
            "local": local,
            "ids_property": f"{target_names.pascal}Ids" if rel.navigation is None else f"{navigation}Ids",
        })

    return {
        "name": entity.name,
        "names": names,
        "route": names.plural_kebab,
        "fields": fields,
        "relationships": relationships,
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validate_relative_path(path: str) -> str:
    """Normalise a service root path and keep it inside the solution."""
    pure = PurePosixPath(path.replace("\\", "/"))
    if not path.strip() or pure.is_absolute() or ".." in pure.parts:
        raise ValidationError(
            f"Invalid service path '{path}': must be relative to the solution root "
            f"and must not contain '..'",
            name=path,
            rule="relative-path",
        )
    return str(pure)


def _canonical_node_name(manifest: Manifest, name: str) -> str:
    """Registered spelling of *name*; unknown names pass through for validation."""
    node = manifest.get_node(name)
    return node.name if node is not None else name


def _check_port(manifest: Manifest, service: str, port: int) -> int:
    """Validate an explicitly requested service port.

    Raises:
        ValidationError: The port is outside 1-65535.
        AlreadyExistsError: Another service already listens on it.
    """
    if not 0 < port < 65536:
        raise ValidationError(
            f"Port {port} for service '{service}' must be between 1 and 65535",
            name=service,
            rule="port-range",
        )
    for other in manifest.services:
        if other.port == port:
            raise AlreadyExistsError(
                f"Port {port} is already assigned to service '{other.name}'",
                name=service,
                rule="unique-port",
            )
    return port


def _next_free_port(manifest: Manifest) -> int:
    """Allocate the next sequential service port."""
    used = [s.port for s in manifest.services if s.port]
    return max(used, default=FIRST_SERVICE_PORT - 1) + 1
