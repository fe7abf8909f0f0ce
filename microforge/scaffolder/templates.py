"""Jinja2 template catalog and renderer for service scaffolding.

Templates live under ``microforge/scaffolder/templates/`` and are indexed by
``catalog.yaml``: each entry maps a stable key (``service.dbcontext``,
``entity.controller``...) to a ``.j2`` source, an output path pattern, the
variables the template requires and its write mode. The catalog is loaded
eagerly, so a generation run works against an immutable snapshot.

Rendering fails fast: declared variables are checked before anything is
rendered, and the environment uses ``StrictUndefined`` so a typo inside a
template surfaces as a ``TemplateError`` instead of an empty string.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Iterator, Mapping

import yaml
from jinja2 import (
    DictLoader,
    Environment,
    StrictUndefined,
    TemplateSyntaxError,
    UndefinedError,
)

from microforge.errors import MissingVariableError, TemplateError
from microforge.naming import (
    NameForms,
    camel_case,
    kebab_case,
    pascal_case,
    pluralize,
    snake_case,
)


# ---------------------------------------------------------------------------
# Template directory discovery
# ---------------------------------------------------------------------------

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"
CATALOG_FILENAME = "catalog.yaml"


class WriteMode(str, Enum):
    """What happens when the output file already exists."""
    CREATE = "create"          # never overwrite; conflicts abort the plan
    REGENERATE = "regenerate"  # tool-owned bootstrap code, rewritten every run


@dataclass(frozen=True)
class Template:
    """A named, versioned blueprint loaded from the catalog."""

    key: str
    version: int
    path: str
    output: str
    variables: frozenset[str]
    mode: WriteMode
    source: str

    @property
    def group(self) -> str:
        """Key prefix (``solution``, ``service`` or ``entity``)."""
        return self.key.split(".", 1)[0]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TemplateCatalog:
    """Immutable, versioned set of templates keyed by stable names."""

    def __init__(self, templates: list[Template], version: int, template_dir: Path) -> None:
        self._templates = {t.key: t for t in templates}
        self.version = version
        self.template_dir = template_dir

    @classmethod
    def load(cls, template_dir: str | Path | None = None) -> "TemplateCatalog":
        """Load ``catalog.yaml`` and every template it references.

        Raises:
            TemplateError: If the catalog or a template is missing, unreadable
                or syntactically invalid.
        """
        base = Path(template_dir) if template_dir is not None else _DEFAULT_TEMPLATE_DIR
        catalog_path = base / CATALOG_FILENAME
        try:
            raw = yaml.safe_load(catalog_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise TemplateError(
                f"Cannot read template catalog {catalog_path}: {exc}", template=str(catalog_path)
            ) from exc

        if not isinstance(raw, dict) or not isinstance(raw.get("templates"), dict):
            raise TemplateError(
                f"Template catalog {catalog_path} must define a 'templates' mapping",
                template=str(catalog_path),
            )

        syntax_env = Environment()
        templates: list[Template] = []
        for key, entry in raw["templates"].items():
            if not isinstance(entry, dict) or "path" not in entry or "output" not in entry:
                raise TemplateError(
                    f"Catalog entry '{key}' in {catalog_path} needs 'path' and 'output'",
                    template=key,
                )
            source_path = base / entry["path"]
            try:
                source = source_path.read_text(encoding="utf-8")
                syntax_env.parse(source)
            except OSError as exc:
                raise TemplateError(
                    f"Cannot read template '{key}' at {source_path}: {exc}", template=key
                ) from exc
            except TemplateSyntaxError as exc:
                raise TemplateError(
                    f"Template '{key}' at {source_path} is invalid (line {exc.lineno}): "
                    f"{exc.message}",
                    template=key,
                ) from exc

            try:
                mode = WriteMode(entry.get("mode", WriteMode.CREATE.value))
            except ValueError as exc:
                raise TemplateError(
                    f"Catalog entry '{key}' has unknown mode '{entry.get('mode')}'",
                    template=key,
                ) from exc

            templates.append(Template(
                key=key,
                version=int(entry.get("version", 1)),
                path=entry["path"],
                output=entry["output"],
                variables=frozenset(entry.get("variables", [])),
                mode=mode,
                source=source,
            ))

        return cls(templates, version=int(raw.get("version", 1)), template_dir=base)

    def get(self, key: str) -> Template:
        """Look a template up by its stable key."""
        try:
            return self._templates[key]
        except KeyError:
            raise TemplateError(f"No template registered under key '{key}'", template=key) from None

    def group(self, prefix: str) -> list[Template]:
        """Templates whose key starts with ``<prefix>.``, in catalog order."""
        return [t for t in self._templates.values() if t.group == prefix]

    def keys(self) -> list[str]:
        return list(self._templates)

    def __iter__(self) -> Iterator[Template]:
        return iter(self._templates.values())

    def __contains__(self, key: object) -> bool:
        return key in self._templates

    def __len__(self) -> int:
        return len(self._templates)


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders catalog templates with StrictUndefined and naming filters."""

    def __init__(self, catalog: TemplateCatalog | None = None) -> None:
        self.catalog = catalog if catalog is not None else TemplateCatalog.load()
        self.env = Environment(
            loader=DictLoader({t.path: t.source for t in self.catalog}),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["pascal_case"] = pascal_case
        self.env.filters["camel_case"] = camel_case
        self.env.filters["snake_case"] = snake_case
        self.env.filters["kebab_case"] = kebab_case
        self.env.filters["pluralize"] = pluralize

    def render(self, template: Template | str, variables: Mapping[str, Any]) -> str:
        """Render *template* with *variables*.

        Raises:
            MissingVariableError: A declared variable is absent.
            TemplateError: The template references an undefined value.
        """
        if isinstance(template, str):
            template = self.catalog.get(template)
        self._check_variables(template, variables)
        try:
            return self.env.get_template(template.path).render(**variables)
        except UndefinedError as exc:
            raise TemplateError(
                f"Template '{template.key}' references an undefined value: {exc.message}",
                template=template.key,
            ) from exc

    def render_output_path(self, template: Template, variables: Mapping[str, Any]) -> PurePosixPath:
        """Render the template's output path pattern into a relative path.

        Raises:
            TemplateError: The pattern is undefined or escapes the solution root.
        """
        self._check_variables(template, variables)
        try:
            rendered = self.env.from_string(template.output).render(**variables)
        except (UndefinedError, TemplateSyntaxError) as exc:
            raise TemplateError(
                f"Output path of template '{template.key}' cannot be rendered: {exc}",
                template=template.key,
            ) from exc

        path = PurePosixPath(rendered.strip())
        if not rendered.strip() or path.is_absolute() or ".." in path.parts:
            raise TemplateError(
                f"Template '{template.key}' renders output path '{rendered}', which must be "
                f"relative to the solution root",
                template=template.key,
            )
        return path

    @staticmethod
    def _check_variables(template: Template, variables: Mapping[str, Any]) -> None:
        missing = template.variables - set(variables)
        if missing:
            raise MissingVariableError(template.key, list(missing))
