"""Generation plans and the staged file transaction that applies them.

A ``GenerationPlan`` is the ordered list of ``(template, output path,
variables)`` produced for one ``add service`` / ``add entity`` invocation.
It is rendered completely in memory first, so a template error never leaves a
half-written file behind. The rendered artifacts are then written to a
staging directory and moved into place; if a move fails (or the caller's
finalize step, typically the manifest save, fails) every file moved so far is
removed and overwritten files are restored from backups.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator, Mapping, Optional

from microforge.errors import AlreadyExistsError, ArtifactWriteError, TemplateError
from microforge.scaffolder.templates import Template, TemplateRenderer, WriteMode

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlannedArtifact:
    """One template to render and where it goes."""

    template: Template
    output: PurePosixPath
    variables: Mapping[str, Any]


@dataclass(frozen=True)
class RenderedArtifact:
    """A fully rendered file waiting to be written."""

    path: PurePosixPath
    content: str
    mode: WriteMode
    template_key: str


@dataclass
class GenerationPlan:
    """Ordered list of artifacts for a single scaffolding intent."""

    description: str
    artifacts: list[PlannedArtifact] = field(default_factory=list)

    def add(self, template: Template, output: PurePosixPath, variables: Mapping[str, Any]) -> None:
        self.artifacts.append(PlannedArtifact(template=template, output=output, variables=variables))

    def outputs(self) -> list[PurePosixPath]:
        return [a.output for a in self.artifacts]

    def __iter__(self) -> Iterator[PlannedArtifact]:
        return iter(self.artifacts)

    def __len__(self) -> int:
        return len(self.artifacts)

    def render(self, renderer: TemplateRenderer) -> list[RenderedArtifact]:
        """Render every artifact in memory.

        Raises:
            TemplateError: Any template fails, or two artifacts target the
                same output path.
        """
        rendered: list[RenderedArtifact] = []
        seen: dict[PurePosixPath, str] = {}
        for artifact in self.artifacts:
            if artifact.output in seen:
                raise TemplateError(
                    f"Templates '{seen[artifact.output]}' and '{artifact.template.key}' both "
                    f"write {artifact.output}",
                    template=artifact.template.key,
                )
            seen[artifact.output] = artifact.template.key
            content = renderer.render(artifact.template, artifact.variables)
            rendered.append(RenderedArtifact(
                path=artifact.output,
                content=content,
                mode=artifact.template.mode,
                template_key=artifact.template.key,
            ))
        return rendered


# ---------------------------------------------------------------------------
# Staged transaction
# ---------------------------------------------------------------------------


class StagedTransaction:
    """Writes rendered artifacts through a staging area with rollback.

    Usage::

        txn = StagedTransaction(root, staging_root)
        written = await txn.apply(artifacts, finalize=lambda: store.save(manifest))
    """

    def __init__(self, root: Path, staging_root: Path) -> None:
        self.root = Path(root)
        self.staging_dir = Path(staging_root) / uuid.uuid4().hex[:12]
        self._backup_dir = self.staging_dir / ".backup"
        self._staged: list[tuple[RenderedArtifact, Path]] = []
        self._committed: list[Path] = []
        self._backups: dict[Path, Path] = {}
        self._created_dirs: list[Path] = []

    @property
    def written(self) -> list[Path]:
        """Files moved into place by :meth:`commit`."""
        return list(self._committed)

    async def apply(
        self,
        artifacts: list[RenderedArtifact],
        finalize: Optional[Callable[[], Any]] = None,
    ) -> list[Path]:
        """Stage, commit and finalize; roll everything back on any failure."""
        try:
            await self.stage(artifacts)
            await self.commit()
            if finalize is not None:
                finalize()
        except BaseException:
            self.rollback()
            raise
        finally:
            self.cleanup()
        return self.written

    async def stage(self, artifacts: list[RenderedArtifact]) -> None:
        """Check for conflicts, then write every artifact under the staging dir.

        Raises:
            AlreadyExistsError: A ``create``-mode target already exists.
            ArtifactWriteError: The staging area cannot be written.
        """
        for artifact in artifacts:
            target = self.root / artifact.path
            if artifact.mode == WriteMode.CREATE and target.exists():
                raise AlreadyExistsError(
                    f"{target} already exists; refusing to overwrite a generated file "
                    f"that may have been edited by hand",
                    name=str(target),
                    rule="no-overwrite",
                )

        for artifact in artifacts:
            staged = self.staging_dir / artifact.path
            try:
                await asyncio.to_thread(_write_file, staged, artifact.content)
            except OSError as exc:
                raise ArtifactWriteError(staged, str(exc)) from exc
            self._staged.append((artifact, staged))

    async def commit(self) -> None:
        """Move staged files into place, backing up files that get replaced.

        Raises:
            ArtifactWriteError: A move failed. Already-moved files stay in place
                until :meth:`rollback` runs.
        """
        for artifact, staged in self._staged:
            target = self.root / artifact.path
            try:
                if target.exists():
                    backup = self._backup_dir / artifact.path
                    await asyncio.to_thread(_copy_file, target, backup)
                    self._backups[target] = backup
                self._make_parents(target.parent)
                await asyncio.to_thread(shutil.move, str(staged), str(target))
            except OSError as exc:
                raise ArtifactWriteError(target, str(exc)) from exc
            self._committed.append(target)
            logger.debug("Wrote %s (%s)", target, artifact.template_key)

    def rollback(self) -> None:
        """Best-effort undo of :meth:`commit`."""
        for target in reversed(self._committed):
            backup = self._backups.get(target)
            try:
                if backup is not None:
                    shutil.copy2(backup, target)
                else:
                    target.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Rollback could not restore %s: %s", target, exc)
        for directory in reversed(self._created_dirs):
            try:
                directory.rmdir()
            except OSError:
                # Not empty: something else lives there now.
                logger.debug("Leaving directory %s in place", directory)
        if self._committed:
            logger.info("Rolled back %d generated file(s)", len(self._committed))
        self._committed.clear()

    def cleanup(self) -> None:
        """Remove the staging directory."""
        shutil.rmtree(self.staging_dir, ignore_errors=True)
        parent = self.staging_dir.parent
        if parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()

    def _make_parents(self, directory: Path) -> None:
        missing: list[Path] = []
        current = directory
        while not current.exists() and current != self.root:
            missing.append(current)
            current = current.parent
        directory.mkdir(parents=True, exist_ok=True)
        self._created_dirs.extend(reversed(missing))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _write_file(path: Path, content: str) -> None:
    """Synchronous helper: create parent dirs and write content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _copy_file(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
