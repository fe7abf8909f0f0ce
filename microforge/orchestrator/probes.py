"""Readiness probes and the backoff loop that polls them.

A probe answers one question: is this node usable by its dependents yet?

- ``tcp``: a TCP connection to ``host:port`` succeeds.
- ``http``: a GET on the URL returns the expected status (200 by default).
- ``exit-code``: a check command exits with the expected code (0 by
  default); without a command, the node's own process must exit with it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from microforge.config import SupervisorConfig
from microforge.errors import NodeStartError, ReadinessTimeoutError, ValidationError
from microforge.manifest.models import ProbeDescriptor, ProbeProtocol
from microforge.utils import run_command

logger = logging.getLogger(__name__)


class Probe(Protocol):
    async def check(self) -> bool: ...

    def describe(self) -> str: ...


# ---------------------------------------------------------------------------
# Probe implementations
# ---------------------------------------------------------------------------


class TcpProbe:
    """Ready once a TCP connection can be opened."""

    def __init__(self, host: str, port: int, connect_timeout: float = 3.0) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

    async def check(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    def describe(self) -> str:
        return f"tcp {self.host}:{self.port}"


class HttpProbe:
    """Ready once a GET returns the expected status code."""

    def __init__(self, url: str, expect: int = 200) -> None:
        self.url = url
        self.expect = expect

    async def check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(5.0, connect=3.0)) as client:
                response = await client.get(self.url)
        except httpx.HTTPError:
            return False
        return response.status_code == self.expect

    def describe(self) -> str:
        return f"http {self.url} -> {self.expect}"


class ExitCodeProbe:
    """Ready once a command (or the node's own process) exits as expected."""

    def __init__(
        self,
        node: str,
        expect: int = 0,
        command: Optional[list[str]] = None,
        cwd: Optional[Path] = None,
        returncode: Optional[Callable[[], Optional[int]]] = None,
    ) -> None:
        self.node = node
        self.expect = expect
        self.command = list(command) if command else None
        self.cwd = cwd
        self._returncode = returncode

    async def check(self) -> bool:
        if self.command:
            try:
                rc, _, _ = await run_command(self.command, cwd=self.cwd, timeout=30)
            except FileNotFoundError:
                return False
            return rc == self.expect

        rc = self._returncode() if self._returncode else None
        if rc is None:
            return False
        if rc != self.expect:
            raise NodeStartError(self.node, f"exited with code {rc}, expected {self.expect}")
        return True

    def describe(self) -> str:
        target = " ".join(self.command) if self.command else "process"
        return f"exit-code {target} -> {self.expect}"


def parse_tcp_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (``[::1]:port`` for IPv6).

    Raises:
        ValidationError: If the address has no valid port.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise ValidationError(
            f"Invalid tcp probe address '{address}': expected HOST:PORT",
            name=address,
            rule="probe-address",
        )
    return host.strip("[]"), int(port)


def create_probe(
    node: str,
    descriptor: Optional[ProbeDescriptor],
    cwd: Optional[Path] = None,
    returncode: Optional[Callable[[], Optional[int]]] = None,
) -> Optional[Probe]:
    """Build the probe described by *descriptor*; ``None`` means no probe."""
    if descriptor is None:
        return None
    if descriptor.protocol == ProbeProtocol.TCP:
        if not descriptor.address:
            raise ValidationError(
                f"Node '{node}' has a tcp probe without an address", name=node, rule="probe-address"
            )
        host, port = parse_tcp_address(descriptor.address)
        return TcpProbe(host, port)
    if descriptor.protocol == ProbeProtocol.HTTP:
        if not descriptor.address:
            raise ValidationError(
                f"Node '{node}' has an http probe without a URL", name=node, rule="probe-address"
            )
        return HttpProbe(descriptor.address, expect=descriptor.expected)
    return ExitCodeProbe(
        node,
        expect=descriptor.expected,
        command=descriptor.command,
        cwd=cwd,
        returncode=returncode,
    )


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeSettings:
    """Polling parameters for one node."""

    timeout: float
    interval: float
    max_interval: float
    max_attempts: Optional[int] = None

    @classmethod
    def resolve(cls, descriptor: Optional[ProbeDescriptor], defaults: SupervisorConfig) -> "ProbeSettings":
        """Per-node settings take precedence over the configured defaults."""
        def pick(attr: str, default):
            value = getattr(descriptor, attr) if descriptor is not None else None
            return value if value is not None else default

        interval = pick("interval", defaults.probe_interval)
        return cls(
            timeout=pick("timeout", defaults.probe_timeout),
            interval=interval,
            max_interval=max(interval, pick("max_interval", defaults.probe_max_interval)),
            max_attempts=pick("max_attempts", defaults.probe_max_attempts),
        )


async def wait_until_ready(
    node: str,
    probe: Probe,
    settings: ProbeSettings,
    exited: Optional[Callable[[], Optional[int]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Poll *probe* with exponential backoff until it succeeds.

    Args:
        node: Node name, for errors and logs.
        probe: The readiness probe.
        settings: Timeout, initial interval, backoff cap and attempt limit.
        exited: Returns the exit code of a long-running process, or ``None``
            while it is alive; an exit before readiness is a failure.
        sleep: Injectable for tests.
        clock: Injectable for tests.

    Returns:
        The number of attempts it took.

    Raises:
        ReadinessTimeoutError: The timeout or attempt limit was reached.
        NodeStartError: The process exited before becoming ready.
    """
    deadline = clock() + settings.timeout
    delay = settings.interval
    attempts = 0

    while True:
        remaining = deadline - clock()
        if attempts and remaining <= 0:
            raise ReadinessTimeoutError(node, settings.timeout, attempts)

        # A single check never runs past the node's deadline.
        attempts += 1
        try:
            ready = await asyncio.wait_for(probe.check(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.debug("%s probe attempt %d hit the deadline", node, attempts)
            ready = False
        if ready:
            logger.debug("%s ready after %d probe(s) (%s)", node, attempts, probe.describe())
            return attempts

        rc = exited() if exited else None
        if rc is not None:
            raise NodeStartError(node, f"process exited with code {rc} before becoming ready")

        if settings.max_attempts is not None and attempts >= settings.max_attempts:
            raise ReadinessTimeoutError(
                node, settings.timeout, attempts, max_attempts=settings.max_attempts
            )
        remaining = deadline - clock()
        if remaining <= 0:
            raise ReadinessTimeoutError(node, settings.timeout, attempts)

        await sleep(min(delay, remaining))
        delay = min(delay * 2, settings.max_interval)
