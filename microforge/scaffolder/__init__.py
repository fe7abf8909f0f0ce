"""microforge scaffolder -- generates services and entities from templates.

Every command renders a ``GenerationPlan`` fully in memory, writes it through
a staged transaction and only then commits the manifest change.

Quick usage::

    from microforge.scaffolder import ScaffoldingEngine

    engine = ScaffoldingEngine("/path/to/solution")
    await engine.init("Contoso")
    await engine.add_service("people")
"""

from microforge.naming import NameForms
from microforge.scaffolder.generator import ScaffoldingEngine, ScaffoldResult
from microforge.scaffolder.plan import GenerationPlan, StagedTransaction
from microforge.scaffolder.templates import TemplateCatalog, TemplateRenderer

__all__ = [
    "GenerationPlan",
    "NameForms",
    "ScaffoldResult",
    "ScaffoldingEngine",
    "StagedTransaction",
    "TemplateCatalog",
    "TemplateRenderer",
]
