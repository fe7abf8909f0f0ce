"""Error taxonomy for microforge.

Every error carries the offending name or path and the rule it violated so
the CLI can report it verbatim on stderr:

- ValidationError: bad/duplicate names, malformed identifiers. Raised before
  any side effect.
- UnknownReferenceError: a service, dependency or entity that is not
  registered. Raised before any file write.
- TemplateError: missing variable, unreadable template. Aborts the plan.
- ManifestStaleError: the manifest changed on disk since it was read.
- CycleError: dependency declarations form a cycle.
- NodeStartError / ReadinessTimeoutError: a node could not be brought up.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class MicroforgeError(Exception):
    """Base exception for microforge."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(MicroforgeError):
    """A name, identifier or descriptor breaks a manifest rule."""

    def __init__(self, message: str, name: str = "", rule: str = "") -> None:
        self.name = name
        self.rule = rule
        super().__init__(message)


class AlreadyExistsError(ValidationError):
    """A service, entity, node or file with this name is already registered."""


class ManifestFormatError(ValidationError):
    """The manifest file cannot be parsed or violates the schema."""


class NotFoundError(MicroforgeError):
    """No manifest exists at the expected location."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            f"No manifest found at {path}. Run 'microforge init <solution-name>' first."
        )


class UnknownReferenceError(MicroforgeError):
    """A referenced service, infrastructure node or entity is not registered."""

    def __init__(self, message: str, reference: str = "", referrer: str = "") -> None:
        self.reference = reference
        self.referrer = referrer
        super().__init__(message)


class UnknownEntityReferenceError(UnknownReferenceError):
    """A relationship targets an entity that does not exist in the manifest."""


# ---------------------------------------------------------------------------
# Manifest persistence
# ---------------------------------------------------------------------------


class ManifestStaleError(MicroforgeError):
    """The manifest on disk no longer matches the content that was read."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            f"Manifest {path} was modified since it was read; "
            "refusing to overwrite. Re-run the command."
        )


class ManifestWriteError(MicroforgeError):
    """Writing the manifest failed; the previous file is left intact."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Could not write manifest {path}: {reason}")


# ---------------------------------------------------------------------------
# Templates & scaffolding
# ---------------------------------------------------------------------------


class TemplateError(MicroforgeError):
    """A template is unreadable or cannot be rendered."""

    def __init__(self, message: str, template: str = "") -> None:
        self.template = template
        super().__init__(message)


class MissingVariableError(TemplateError):
    """A template's declared variable was not supplied."""

    def __init__(self, template: str, missing: list[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            f"Template '{template}' requires variable(s) "
            f"{', '.join(self.missing)} which were not supplied",
            template=template,
        )


class ArtifactWriteError(MicroforgeError):
    """A generated file could not be staged or moved into place."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Could not write {path}: {reason}")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class CycleError(MicroforgeError):
    """Dependency declarations form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(self.cycle)
            + ". Remove one of these dependencies from the manifest."
        )


class NodeStartError(MicroforgeError):
    """A node failed to launch or exited before it became ready."""

    def __init__(self, node: str, reason: str) -> None:
        self.node = node
        self.reason = reason
        super().__init__(f"Node '{node}' failed to start: {reason}")


class ReadinessTimeoutError(NodeStartError):
    """A node's readiness probe did not succeed within its timeout."""

    def __init__(
        self,
        node: str,
        timeout: float,
        attempts: int,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.timeout = timeout
        self.attempts = attempts
        self.max_attempts = max_attempts
        if max_attempts is not None:
            detail = f"readiness probe did not succeed within the limit of {max_attempts} attempt(s)"
        else:
            detail = f"readiness probe did not succeed within {timeout:g}s ({attempts} attempt(s))"
        super().__init__(node, detail)


class InvalidTransitionError(MicroforgeError):
    """A node was moved between two states that are not connected."""

    def __init__(self, node: str, current: str, target: str) -> None:
        self.node = node
        super().__init__(f"Node '{node}' cannot move from {current} to {target}")
