"""Unit tests for manifest persistence and mutations (microforge.manifest.store).

Covers:
- ManifestStore: create, load, atomic save, stale detection, write failures
- parse_manifest: invalid YAML, schema errors, duplicate node names
- Unknown keys surviving a load/save cycle
- Identifier rules (node, solution and member names)
- Pure mutations: add_service, add_infrastructure, add_entity,
  add_dependency, remove_service
- require_service / require_node lookups
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

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
    EntityDescriptor,
    FieldDescriptor,
    InfrastructureDescriptor,
    Manifest,
    RelationshipDescriptor,
    ServiceDescriptor,
)
from microforge.manifest.store import (
    ManifestStore,
    add_dependency,
    add_entity,
    add_infrastructure,
    add_service,
    dump_manifest,
    new_manifest,
    parse_manifest,
    remove_service,
    require_node,
    require_service,
    resolve_relationship_target,
    validate_member_name,
    validate_node_name,
    validate_solution_name,
)

pytestmark = pytest.mark.unit


def _service(name: str, *deps: str, entities=None) -> ServiceDescriptor:
    return ServiceDescriptor(
        name=name,
        path=f"src/Services/{name.title()}",
        dependencies=list(deps),
        entities=entities or [],
    )


# ---------------------------------------------------------------------------
# ManifestStore
# ---------------------------------------------------------------------------


class TestManifestStore:
    def test_create_then_load(self, tmp_path: Path):
        store = ManifestStore(tmp_path)
        path = store.create(new_manifest("Contoso"))

        assert path == tmp_path / "microforge.yaml"
        assert store.exists()
        assert store.digest is not None
        loaded = ManifestStore(tmp_path).load()
        assert loaded.solution == "Contoso"
        assert loaded.services == []

    def test_create_refuses_existing(self, tmp_path: Path):
        ManifestStore(tmp_path).create(new_manifest("Contoso"))
        with pytest.raises(AlreadyExistsError) as exc_info:
            ManifestStore(tmp_path).create(new_manifest("Other"))
        assert exc_info.value.rule == "unique-solution"

    def test_load_missing(self, tmp_path: Path):
        with pytest.raises(NotFoundError) as exc_info:
            ManifestStore(tmp_path).load()
        assert exc_info.value.path == tmp_path / "microforge.yaml"

    def test_save_round_trip(self, tmp_path: Path):
        store = ManifestStore(tmp_path)
        store.create(new_manifest("Contoso"))
        manifest = add_service(store.load(), _service("people"))
        store.save(manifest)

        reloaded = ManifestStore(tmp_path).load()
        assert [s.name for s in reloaded.services] == ["people"]

    def test_save_leaves_no_temp_files(self, tmp_path: Path):
        store = ManifestStore(tmp_path)
        store.create(new_manifest("Contoso"))
        store.save(add_service(store.load(), _service("people")))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["microforge.yaml"]

    def test_stale_manifest_is_not_overwritten(self, tmp_path: Path):
        store = ManifestStore(tmp_path)
        store.create(new_manifest("Contoso"))
        manifest = store.load()

        store.path.write_text("solution: EditedElsewhere\n", encoding="utf-8")
        with pytest.raises(ManifestStaleError):
            store.save(add_service(manifest, _service("people")))
        assert store.path.read_text(encoding="utf-8") == "solution: EditedElsewhere\n"

    def test_deleted_manifest_counts_as_stale(self, tmp_path: Path):
        store = ManifestStore(tmp_path)
        store.create(new_manifest("Contoso"))
        manifest = store.load()
        store.path.unlink()
        with pytest.raises(ManifestStaleError):
            store.save(manifest)

    def test_failed_replace_keeps_previous_file(self, tmp_path: Path):
        store = ManifestStore(tmp_path)
        store.create(new_manifest("Contoso"))
        before = store.path.read_bytes()

        with patch("microforge.manifest.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ManifestWriteError, match="disk full"):
                store.save(add_service(store.load(), _service("people")))

        assert store.path.read_bytes() == before
        assert sorted(p.name for p in tmp_path.iterdir()) == ["microforge.yaml"]

    def test_unknown_keys_survive_rewrite(self, tmp_path: Path):
        (tmp_path / "microforge.yaml").write_text(
            "schema_version: 1\n"
            "solution: Contoso\n"
            "owner: platform-team\n"
            "services:\n"
            "- name: people\n"
            "  path: src/Services/People\n"
            "  replicas: 3\n",
            encoding="utf-8",
        )
        store = ManifestStore(tmp_path)
        store.save(add_service(store.load(), _service("billing")))

        reloaded = ManifestStore(tmp_path).load().to_document()
        assert reloaded["owner"] == "platform-team"
        assert reloaded["services"][0]["replicas"] == 3
        assert reloaded["services"][1]["name"] == "billing"

    def test_custom_filename(self, tmp_path: Path):
        store = ManifestStore(tmp_path, "solution.yaml")
        store.create(new_manifest("Contoso"))
        assert (tmp_path / "solution.yaml").is_file()


# ---------------------------------------------------------------------------
# parse_manifest / dump_manifest
# ---------------------------------------------------------------------------


class TestParseManifest:
    def test_invalid_yaml(self):
        with pytest.raises(ManifestFormatError) as exc_info:
            parse_manifest("solution: [unclosed")
        assert exc_info.value.rule == "yaml"

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ManifestFormatError) as exc_info:
            parse_manifest("- just\n- a list\n")
        assert exc_info.value.rule == "schema"

    def test_schema_violation(self):
        with pytest.raises(ManifestFormatError, match="violates the schema"):
            parse_manifest("services: []\n")

    def test_duplicate_node_names_case_insensitive(self):
        raw = (
            "solution: Contoso\n"
            "infrastructure:\n- name: db\n"
            "services:\n- name: DB\n  path: src/Services/Db\n"
        )
        with pytest.raises(ManifestFormatError) as exc_info:
            parse_manifest(raw)
        assert exc_info.value.rule == "unique-node"

    def test_dump_starts_with_header_and_keeps_order(self, sample_manifest: Manifest):
        text = dump_manifest(sample_manifest)
        assert text.startswith("# microforge solution manifest")
        assert text.index("name: people") < text.index("name: gateway")
        assert parse_manifest(text).model_dump() == sample_manifest.model_dump()


# ---------------------------------------------------------------------------
# Identifier rules
# ---------------------------------------------------------------------------


class TestIdentifierRules:
    @pytest.mark.parametrize("name", ["people", "order-history", "order_history", "Api2"])
    def test_valid_node_names(self, name):
        assert validate_node_name(name) == name

    @pytest.mark.parametrize("name", ["", "2fast", "bad name", "trailing-", "a--b", "x" * 65])
    def test_invalid_node_names(self, name):
        with pytest.raises(ValidationError) as exc_info:
            validate_node_name(name)
        assert exc_info.value.rule == "identifier"

    def test_solution_name_allows_dots(self):
        assert validate_solution_name("Contoso.Platform") == "Contoso.Platform"
        with pytest.raises(ValidationError):
            validate_solution_name("Contoso..Platform")

    def test_member_name_rejects_reserved_words(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_member_name("class", "field")
        assert exc_info.value.rule == "reserved-word"

    def test_member_name_rejects_hyphens(self):
        with pytest.raises(ValidationError):
            validate_member_name("first-name", "field")


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class TestAddService:
    def test_returns_new_manifest(self):
        original = new_manifest("Contoso")
        updated = add_service(original, _service("people"))
        assert original.services == []
        assert [s.name for s in updated.services] == ["people"]

    def test_duplicate_is_case_insensitive(self):
        manifest = add_service(new_manifest("Contoso"), _service("people"))
        with pytest.raises(AlreadyExistsError) as exc_info:
            add_service(manifest, _service("People"))
        assert exc_info.value.rule == "unique-node"

    def test_clashes_with_infrastructure(self):
        manifest = add_infrastructure(new_manifest("Contoso"), InfrastructureDescriptor(name="db"))
        with pytest.raises(AlreadyExistsError):
            add_service(manifest, _service("db"))

    def test_unknown_dependency(self):
        with pytest.raises(UnknownReferenceError) as exc_info:
            add_service(new_manifest("Contoso"), _service("people", "db"))
        assert exc_info.value.reference == "db"
        assert exc_info.value.referrer == "people"

    def test_invalid_name(self):
        with pytest.raises(ValidationError):
            add_service(new_manifest("Contoso"), _service("bad name"))


class TestAddEntity:
    @pytest.fixture
    def manifest(self) -> Manifest:
        manifest = new_manifest("Contoso")
        manifest = add_service(manifest, _service("people", entities=[EntityDescriptor(name="Person")]))
        return add_service(manifest, _service("tags", entities=[EntityDescriptor(name="Tag")]))

    def test_adds_entity(self, manifest: Manifest):
        entity = EntityDescriptor(name="Company", fields=[FieldDescriptor(name="Name")])
        updated = add_entity(manifest, "people", entity)
        assert [e.name for e in updated.get_service("people").entities] == ["Person", "Company"]
        assert len(manifest.get_service("people").entities) == 1

    def test_unknown_service(self, manifest: Manifest):
        with pytest.raises(UnknownReferenceError):
            add_entity(manifest, "billing", EntityDescriptor(name="Invoice"))

    def test_duplicate_entity(self, manifest: Manifest):
        with pytest.raises(AlreadyExistsError) as exc_info:
            add_entity(manifest, "people", EntityDescriptor(name="person"))
        assert exc_info.value.rule == "unique-entity"

    def test_field_named_id_clashes_with_key(self, manifest: Manifest):
        entity = EntityDescriptor(name="Company", fields=[FieldDescriptor(name="Id")])
        with pytest.raises(ValidationError) as exc_info:
            add_entity(manifest, "people", entity)
        assert exc_info.value.rule == "unique-member"

    def test_navigation_clashes_with_field(self, manifest: Manifest):
        entity = EntityDescriptor(
            name="Company",
            fields=[FieldDescriptor(name="Tags")],
            relationships=[RelationshipDescriptor(kind="many-to-many", target="Tag")],
        )
        with pytest.raises(ValidationError) as exc_info:
            add_entity(manifest, "people", entity)
        assert exc_info.value.rule == "unique-member"

    def test_unknown_relationship_target(self, manifest: Manifest):
        entity = EntityDescriptor(
            name="Company",
            relationships=[RelationshipDescriptor(kind="one-to-many", target="Invoice")],
        )
        with pytest.raises(UnknownEntityReferenceError) as exc_info:
            add_entity(manifest, "people", entity)
        assert exc_info.value.reference == "Invoice"
        assert exc_info.value.referrer == "Company"

    def test_self_reference_allowed(self, manifest: Manifest):
        entity = EntityDescriptor(
            name="Company",
            relationships=[
                RelationshipDescriptor(kind="one-to-many", target="Company", navigation="Subsidiaries")
            ],
        )
        updated = add_entity(manifest, "people", entity)
        assert updated.get_service("people").get_entity("Company") is not None

    def test_resolve_prefers_local_service(self, manifest: Manifest):
        service = manifest.get_service("people")
        entity = EntityDescriptor(name="Company")
        owner, target = resolve_relationship_target(manifest, service, entity, "tag")
        assert owner.name == "tags"
        assert target.name == "Tag"
        owner, target = resolve_relationship_target(manifest, service, entity, "Person")
        assert owner.name == "people"


class TestAddDependency:
    def test_adds_canonical_name(self, sample_manifest: Manifest):
        updated = add_dependency(sample_manifest, "gateway", "DB")
        assert updated.get_service("gateway").dependencies == ["people", "db"]
        assert sample_manifest.get_service("gateway").dependencies == ["people"]

    def test_self_dependency(self, sample_manifest: Manifest):
        with pytest.raises(ValidationError) as exc_info:
            add_dependency(sample_manifest, "people", "people")
        assert exc_info.value.rule == "self-dependency"

    def test_duplicate_dependency(self, sample_manifest: Manifest):
        with pytest.raises(AlreadyExistsError):
            add_dependency(sample_manifest, "people", "db")

    def test_unknown_nodes(self, sample_manifest: Manifest):
        with pytest.raises(UnknownReferenceError):
            add_dependency(sample_manifest, "billing", "db")
        with pytest.raises(UnknownReferenceError):
            add_dependency(sample_manifest, "people", "cache")

    def test_cycle_left_to_graph_builder(self):
        manifest = Manifest(
            solution="Contoso",
            services=[_service("a", "b"), _service("b", "c"), _service("c")],
        )
        updated = add_dependency(manifest, "c", "a")
        assert updated.get_service("c").dependencies == ["a"]


class TestRequireLookups:
    def test_require_service_is_case_insensitive(self, sample_manifest: Manifest):
        assert require_service(sample_manifest, "PEOPLE").name == "people"

    def test_require_service_rejects_infrastructure(self, sample_manifest: Manifest):
        with pytest.raises(UnknownReferenceError) as exc_info:
            require_service(sample_manifest, "db")
        assert exc_info.value.reference == "db"

    def test_require_node_finds_both_kinds(self, sample_manifest: Manifest):
        assert require_node(sample_manifest, "db").name == "db"
        assert require_node(sample_manifest, "Gateway").name == "gateway"
        with pytest.raises(UnknownReferenceError):
            require_node(sample_manifest, "cache")


class TestRemoveService:
    def test_removes_unused_service(self, sample_manifest: Manifest):
        updated = remove_service(sample_manifest, "Gateway")
        assert [s.name for s in updated.services] == ["people"]
        assert len(sample_manifest.services) == 2

    def test_refuses_when_depended_on(self, sample_manifest: Manifest):
        with pytest.raises(ValidationError) as exc_info:
            remove_service(sample_manifest, "people")
        assert exc_info.value.rule == "in-use"
        assert "gateway" in str(exc_info.value)

    def test_refuses_when_entities_referenced(self):
        company = EntityDescriptor(
            name="Company",
            relationships=[RelationshipDescriptor(kind="many-to-many", target="Tag")],
        )
        manifest = Manifest(
            solution="Contoso",
            services=[
                _service("people", entities=[company]),
                _service("tags", entities=[EntityDescriptor(name="Tag")]),
            ],
        )
        with pytest.raises(ValidationError, match="people.Company"):
            remove_service(manifest, "tags")

    def test_unknown_service(self, sample_manifest: Manifest):
        with pytest.raises(UnknownReferenceError):
            remove_service(sample_manifest, "billing")
