"""Launchers: how a node is actually started and stopped.

- ``ProcessLauncher`` runs a local command (``dotnet run --project ...`` for
  services) in its own session and appends its output to
  ``.microforge/logs/<node>.log``.
- ``ContainerLauncher`` runs a detached container through the docker CLI.
- ``ExternalLauncher`` starts nothing; the node is managed elsewhere and
  only its readiness is probed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import IO, Optional, Protocol

from microforge.config import Config
from microforge.errors import NodeStartError
from microforge.manifest.models import RunKind, RunSpec, ServiceDescriptor
from microforge.orchestrator.graph import GraphNode
from microforge.utils import run_command

logger = logging.getLogger(__name__)


class Launcher(Protocol):
    """Starts and stops one node."""

    name: str

    @property
    def long_running(self) -> bool:
        """Whether an exit before readiness means the node failed."""
        ...

    @property
    def returncode(self) -> Optional[int]:
        """Exit code once the launched process has exited, else ``None``."""
        ...

    async def start(self) -> None: ...

    async def stop(self, grace: float) -> None: ...


# ---------------------------------------------------------------------------
# Local process
# ---------------------------------------------------------------------------


class ProcessLauncher:
    """Runs a command as a child process group."""

    long_running = True

    def __init__(
        self,
        name: str,
        command: list[str],
        cwd: Path,
        log_path: Path,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        self.name = name
        self.command = list(command)
        self.cwd = cwd
        self.log_path = log_path
        self.env = dict(env or {})
        self._process: Optional[asyncio.subprocess.Process] = None
        self._log: Optional[IO[bytes]] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    async def start(self) -> None:
        """Spawn the process.

        Raises:
            NodeStartError: If the executable is missing or cannot be run.
        """
        if not self.command:
            raise NodeStartError(self.name, "no command configured")

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log = open(self.log_path, "ab")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd),
                env={**os.environ, **self.env},
                stdout=self._log,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            self._close_log()
            raise NodeStartError(self.name, f"cannot run {self.command[0]!r}: {exc}") from exc
        logger.debug("Started %s (pid %d): %s", self.name, self._process.pid, " ".join(self.command))

    async def stop(self, grace: float) -> None:
        """SIGTERM the process group, then SIGKILL after *grace* seconds."""
        process = self._process
        try:
            if process is None or process.returncode is not None:
                return
            self._signal(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("%s did not exit within %gs; killing it", self.name, grace)
                self._signal(process, signal.SIGKILL)
                await process.wait()
        finally:
            self._close_log()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass

    def _close_log(self) -> None:
        if self._log is not None:
            self._log.close()
            self._log = None


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


class ContainerLauncher:
    """Runs a detached, auto-removed container via the docker CLI."""

    long_running = True
    returncode = None

    def __init__(
        self,
        name: str,
        spec: RunSpec,
        docker: str = "docker",
        container_prefix: str = "microforge",
    ) -> None:
        if not spec.image:
            raise NodeStartError(name, "container nodes need an 'image'")
        self.name = name
        self.spec = spec
        self.docker = docker
        self.container_name = f"{container_prefix}-{name}"
        self.container_id: Optional[str] = None
        self._run_attempted = False

    def run_args(self) -> list[str]:
        """The ``docker run`` argument vector."""
        cmd = [self.docker, "run", "-d", "--rm", "--name", self.container_name]
        for mapping in self.spec.ports:
            cmd += ["-p", mapping]
        for key, value in self.spec.env.items():
            cmd += ["-e", f"{key}={value}"]
        for volume in self.spec.volumes:
            cmd += ["-v", volume]
        cmd.append(self.spec.image or "")
        cmd += self.spec.args
        return cmd

    async def start(self) -> None:
        self._run_attempted = True
        try:
            rc, stdout, stderr = await run_command(self.run_args(), timeout=300)
        except FileNotFoundError as exc:
            self._run_attempted = False
            raise NodeStartError(self.name, f"docker binary '{self.docker}' not found") from exc
        if rc != 0:
            raise NodeStartError(self.name, f"docker run failed: {stderr or stdout}")
        self.container_id = stdout.splitlines()[-1] if stdout else None
        logger.debug("Started container %s (%s)", self.container_name, self.container_id)

    async def stop(self, grace: float) -> None:
        """Stop the container by name.

        A ``docker run`` that was interrupted may still have created the
        container, so any attempted start is followed by a stop even when no
        container id was read back.
        """
        if not self._run_attempted:
            return
        confirmed = self.container_id is not None
        rc, _, stderr = await run_command(
            [self.docker, "stop", "-t", str(int(grace)), self.container_name],
            timeout=grace + 30,
        )
        if rc != 0:
            log = logger.warning if confirmed else logger.debug
            log("docker stop %s failed: %s", self.container_name, stderr)
        self.container_id = None
        self._run_attempted = False


# ---------------------------------------------------------------------------
# External
# ---------------------------------------------------------------------------


class ExternalLauncher:
    """A node managed outside microforge; nothing to start or stop."""

    long_running = False
    returncode = None

    def __init__(self, name: str) -> None:
        self.name = name

    async def start(self) -> None:
        logger.debug("%s is external; only probing readiness", self.name)

    async def stop(self, grace: float) -> None:
        return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def default_run_spec(node: GraphNode) -> RunSpec:
    """Services run ``dotnet run``; infrastructure is external by default."""
    descriptor = node.descriptor
    if descriptor.run is not None:
        return descriptor.run
    if isinstance(descriptor, ServiceDescriptor):
        return RunSpec(kind=RunKind.PROCESS, command=["dotnet", "run", "--project", descriptor.path])
    return RunSpec(kind=RunKind.EXTERNAL)


def create_launcher(node: GraphNode, config: Config) -> Launcher:
    """Build the launcher described by a node's run spec."""
    spec = default_run_spec(node)
    if spec.kind == RunKind.PROCESS:
        return ProcessLauncher(
            name=node.name,
            command=spec.command,
            cwd=config.root / spec.cwd if spec.cwd else config.root,
            log_path=config.logs_path / f"{node.name}.log",
            env=spec.env,
        )
    if spec.kind == RunKind.CONTAINER:
        return ContainerLauncher(node.name, spec, docker=config.docker_binary)
    return ExternalLauncher(node.name)
