"""Shared pytest fixtures for the microforge test suite.

Provides reusable fixtures for:
- Temporary solution roots and fast test configuration
- Scaffolding engines (fresh and already initialised)
- Sample manifests
- Fake launchers and probes for the process supervisor
- Directory snapshots for "nothing was written" assertions
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from microforge.config import Config, SupervisorConfig
from microforge.manifest.models import (
    InfrastructureDescriptor,
    InfrastructureKind,
    Manifest,
    ProbeDescriptor,
    ProbeProtocol,
    ServiceDescriptor,
)
from microforge.scaffolder.generator import ScaffoldingEngine


# ---------------------------------------------------------------------------
# Paths & configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def solution_root(tmp_path: Path) -> Path:
    """Empty directory used as the solution root."""
    root = tmp_path / "solution"
    root.mkdir()
    yield root


@pytest.fixture
def fast_config(solution_root: Path) -> Config:
    """Config with tiny probe intervals so supervisor tests run quickly."""
    return Config(
        root=solution_root,
        supervisor=SupervisorConfig(
            probe_timeout=1.0,
            probe_interval=0.01,
            probe_max_interval=0.05,
            grace_period=1.0,
        ),
    )


# ---------------------------------------------------------------------------
# Scaffolding engines
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(solution_root: Path, fast_config: Config) -> ScaffoldingEngine:
    return ScaffoldingEngine(solution_root, fast_config)


@pytest.fixture
async def initialized_engine(engine: ScaffoldingEngine) -> ScaffoldingEngine:
    """Engine for a solution named ``Contoso`` that has been initialised."""
    await engine.init("Contoso")
    return engine


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_manifest() -> Manifest:
    """``db`` (tcp probe) <- ``people`` <- ``gateway``."""
    return Manifest(
        solution="Contoso",
        infrastructure=[
            InfrastructureDescriptor(
                name="db",
                kind=InfrastructureKind.RELATIONAL_STORE,
                probe=ProbeDescriptor(protocol=ProbeProtocol.TCP, address="localhost:5432"),
            ),
        ],
        services=[
            ServiceDescriptor(name="people", path="src/Services/People", dependencies=["db"], port=5100),
            ServiceDescriptor(name="gateway", path="src/Services/Gateway", dependencies=["people"], port=5101),
        ],
    )


# ---------------------------------------------------------------------------
# Fake launchers & probes
# ---------------------------------------------------------------------------


class FakeLauncher:
    """Launcher double that records start/stop calls in a shared journal."""

    def __init__(
        self,
        name: str,
        journal: list[tuple[str, str]],
        fail_start: bool = False,
        long_running: bool = True,
    ) -> None:
        self.name = name
        self.journal = journal
        self.fail_start = fail_start
        self.long_running = long_running
        self.returncode: Optional[int] = None
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        from microforge.errors import NodeStartError

        self.journal.append(("start", self.name))
        if self.fail_start:
            raise NodeStartError(self.name, "boom")
        self.started = True

    async def stop(self, grace: float) -> None:
        self.journal.append(("stop", self.name))
        self.stopped = True


class FakeProbe:
    """Probe double: succeeds after ``succeed_after`` checks, or never."""

    def __init__(self, succeed_after: Optional[int] = 1) -> None:
        self.succeed_after = succeed_after
        self.checks = 0

    async def check(self) -> bool:
        self.checks += 1
        return self.succeed_after is not None and self.checks >= self.succeed_after

    def describe(self) -> str:
        return "fake"


@pytest.fixture
def journal() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def fake_launchers(journal) -> Callable[..., Callable]:
    """Build a launcher factory; ``failing`` names raise on start."""

    def build(failing: tuple[str, ...] = ()) -> Callable:
        created: dict[str, FakeLauncher] = {}

        def factory(node):
            launcher = FakeLauncher(node.name, journal, fail_start=node.name in failing)
            created[node.name] = launcher
            return launcher

        factory.created = created
        return factory

    return build


@pytest.fixture
def fake_probes() -> Callable[..., Callable]:
    """Build a probe factory; ``never_ready`` names never pass their probe."""

    def build(never_ready: tuple[str, ...] = ()) -> Callable:
        def factory(node, launcher):
            return FakeProbe(succeed_after=None if node.name in never_ready else 1)

        return factory

    return build


# ---------------------------------------------------------------------------
# Filesystem snapshots
# ---------------------------------------------------------------------------

@pytest.fixture
def snapshot() -> Callable[[Path], dict[str, bytes]]:
    """Return a function mapping every file under a root to its bytes."""

    def take(root: Path) -> dict[str, bytes]:
        return {
            str(path.relative_to(root)): path.read_bytes()
            for path in sorted(root.rglob("*"))
            if path.is_file()
        }

    return take
