"""Process supervisor for ``run local``.

Starts the nodes of a ``DependencyGraph`` wave by wave. Nodes in the same
wave start concurrently (optionally capped by ``max_concurrency``) and each
is polled until its readiness probe succeeds. The next wave only begins once
every node of the current wave is Ready.

On the first failure the remaining polls of the wave are cancelled, no later
wave starts, and everything that was started is stopped in strictly reverse
start order before the original error propagates.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Callable, Optional

from microforge.config import Config
from microforge.manifest.models import ProbeProtocol
from microforge.orchestrator.graph import DependencyGraph, GraphNode
from microforge.orchestrator.launchers import Launcher, create_launcher
from microforge.orchestrator.probes import (
    Probe,
    ProbeSettings,
    create_probe,
    wait_until_ready,
)
from microforge.orchestrator.state import NodeEvent, NodeRuntimeState, NodeStatus

logger = logging.getLogger(__name__)

LauncherFactory = Callable[[GraphNode], Launcher]
ProbeFactory = Callable[[GraphNode, Launcher], Optional[Probe]]
EventCallback = Callable[[NodeEvent], None]


class ProcessSupervisor:
    """Brings a dependency graph up in order and tears it down in reverse.

    Usage::

        supervisor = ProcessSupervisor(graph, config, on_event=print)
        await supervisor.run(stop_event)
    """

    def __init__(
        self,
        graph: DependencyGraph,
        config: Optional[Config] = None,
        launcher_factory: Optional[LauncherFactory] = None,
        probe_factory: Optional[ProbeFactory] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.graph = graph
        self.config = config or Config()
        self.settings = self.config.supervisor
        self._launcher_factory = launcher_factory or (lambda node: create_launcher(node, self.config))
        self._probe_factory = probe_factory or self._default_probe
        self._on_event = on_event

        self.states: dict[str, NodeRuntimeState] = {
            node.name: NodeRuntimeState(name=node.name, wave=node.wave) for node in graph.order
        }
        self._launchers: dict[str, Launcher] = {}
        self._start_order: list[str] = []
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(self.settings.max_concurrency) if self.settings.max_concurrency else None
        )
        self._shutdown_lock = asyncio.Lock()

    # -- Introspection -----------------------------------------------------

    @property
    def start_order(self) -> list[str]:
        """Names in the order their launchers were started."""
        return list(self._start_order)

    def status_of(self, name: str) -> NodeStatus:
        return self.states[self.graph.node(name).name].status

    def summary(self) -> dict[str, str]:
        return {name: state.status.value for name, state in self.states.items()}

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Start every wave in order.

        Raises:
            NodeStartError: A node failed to launch, exited early, or
                (``ReadinessTimeoutError``) never became ready. Everything
                started so far has been shut down when this propagates.
        """
        for wave_index, wave in enumerate(self.graph.waves):
            logger.info(
                "Starting wave %d: %s", wave_index, ", ".join(n.name for n in wave),
                extra={"wave": wave_index},
            )
            tasks = [
                asyncio.create_task(self._start_node(node), name=f"start-{node.name}")
                for node in wave
            ]
            try:
                done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            except asyncio.CancelledError:
                await _cancel_all(tasks)
                raise

            errors = [
                t.exception() for t in tasks
                if t in done and not t.cancelled() and t.exception() is not None
            ]
            if errors:
                await _cancel_all(pending)
                error = errors[0]
                logger.error("Wave %d failed: %s", wave_index, error, extra={"wave": wave_index})
                await self.shutdown()
                raise error

        logger.info("All %d node(s) ready", len(self.states))

    async def shutdown(self) -> None:
        """Stop every Starting or Ready node in reverse start order.

        Safe to call more than once; already stopped nodes are skipped.
        """
        async with self._shutdown_lock:
            for name in reversed(self._start_order):
                state = self.states[name]
                if not state.is_active:
                    continue
                await self._stop_launcher(name)
                self._emit(state.transition(NodeStatus.STOPPED))

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start everything, then wait for *stop_event* and shut down.

        A stop requested during startup cancels the in-flight startup and
        shuts down whatever was already started.
        """
        start_task = asyncio.create_task(self.start(), name="supervisor-start")
        stop_task = asyncio.create_task(stop_event.wait(), name="supervisor-stop")
        try:
            done, _ = await asyncio.wait(
                {start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if start_task in done:
                start_task.result()
                await stop_task
            else:
                logger.info("Stop requested during startup")
                start_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await start_task
        finally:
            for task in (start_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(start_task, stop_task, return_exceptions=True)
            await self.shutdown()

    # -- Internal ----------------------------------------------------------

    async def _start_node(self, node: GraphNode) -> None:
        state = self.states[node.name]
        async with self._slot():
            self._emit(state.transition(NodeStatus.STARTING))
            try:
                launcher = self._launcher_factory(node)
                self._launchers[node.name] = launcher
                self._start_order.append(node.name)
                await launcher.start()

                probe = self._probe_factory(node, launcher)
                detail = "launched"
                if probe is not None:
                    settings = ProbeSettings.resolve(node.descriptor.probe, self.settings)
                    attempts = await wait_until_ready(
                        node.name, probe, settings, exited=self._exit_watch(node, launcher)
                    )
                    detail = f"{probe.describe()} after {attempts} attempt(s)"
            except Exception as exc:
                self._emit(state.transition(NodeStatus.FAILED, str(exc)))
                await self._stop_launcher(node.name)
                raise
            self._emit(state.transition(NodeStatus.READY, detail))

    @contextlib.asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        if self._semaphore is None:
            yield
            return
        async with self._semaphore:
            yield

    async def _stop_launcher(self, name: str) -> None:
        launcher = self._launchers.pop(name, None)
        if launcher is None:
            return
        try:
            await launcher.stop(self.settings.grace_period)
        except Exception as exc:
            logger.warning("Failed to stop %s cleanly: %s", name, exc, extra={"node": name})

    def _default_probe(self, node: GraphNode, launcher: Launcher) -> Optional[Probe]:
        return create_probe(
            node.name,
            node.descriptor.probe,
            cwd=self.config.root,
            returncode=lambda: launcher.returncode,
        )

    @staticmethod
    def _exit_watch(node: GraphNode, launcher: Launcher) -> Optional[Callable[[], Optional[int]]]:
        """Early-exit detection for long-running launchers."""
        probe = node.descriptor.probe
        if not launcher.long_running or (probe is not None and probe.protocol == ProbeProtocol.EXIT_CODE):
            return None
        return lambda: launcher.returncode

    def _emit(self, event: NodeEvent) -> None:
        level = logging.ERROR if event.current == NodeStatus.FAILED else logging.INFO
        logger.log(
            level,
            "%s: %s -> %s%s",
            event.node, event.previous.value, event.current.value,
            f" ({event.detail})" if event.detail else "",
            extra={"node": event.node, "status": event.current.value, "wave": event.wave},
        )
        if self._on_event is not None:
            self._on_event(event)


async def _cancel_all(tasks) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
